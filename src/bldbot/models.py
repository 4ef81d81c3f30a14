from __future__ import annotations

import posixpath
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .errors import BuildError, UnreachableSlave

SCRIPT_NAME = "build.sh"


class BuildStage(str, Enum):
    START = "start"
    VALIDATE_SCRIPT = "validating build-script"
    PREPARE_WORKSPACE = "preparing workspace"
    UPLOAD_SCRIPT = "copying build-script"
    EXECUTE_BUILD = "running build-script"
    RETRIEVE_ARTIFACTS = "retrieving output(s)"
    CLEANUP = "cleaning up"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class SlaveDescriptor:
    address: str
    name: str
    workspace: str = ""

    def local_script_path(self, scripts_root: Path = Path(".")) -> Path:
        return scripts_root / self.name / SCRIPT_NAME

    def remote_script_path(self) -> str:
        return posixpath.join(self.workspace, SCRIPT_NAME)

    def with_workspace(self, workspace: str) -> SlaveDescriptor:
        return replace(self, workspace=workspace)


@dataclass(frozen=True, slots=True)
class BuildReport:
    slave: SlaveDescriptor
    message: str
    error: BuildError | None = None
    stage: BuildStage = BuildStage.DONE
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class FleetResult:
    live: list[SlaveDescriptor] = field(default_factory=list)
    unreachable: dict[str, UnreachableSlave] = field(default_factory=dict)
    reports: list[BuildReport] = field(default_factory=list)
    all_good: bool = True

    def record(self, report: BuildReport) -> None:
        self.reports.append(report)
        self.all_good = self.all_good and report.ok

    @property
    def failed(self) -> list[BuildReport]:
        return [report for report in self.reports if not report.ok]

    @property
    def exit_code(self) -> int:
        return 0 if self.all_good else 1

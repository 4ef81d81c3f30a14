from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path
from typing import IO

from .app_logging import LOGGER_NAME, log_with_fields
from .errors import STAGE_ERRORS
from .models import BuildReport, BuildStage, SlaveDescriptor
from .remote import RemoteError, RemoteExecutor
from .utils import utc_now_iso

ARTIFACT_GLOB = "output/*.tar.gz"

Stage = tuple[BuildStage, str, Callable[[], None]]


class BuildPipeline:
    """One build attempt against one slave.

    Stages run strictly in order and the first failure ends the run. The log
    sink is owned by the pipeline and is closed exactly once when `run`
    returns, whatever the outcome. Everything the remote commands print is
    written to the sink next to the `## build --` progress lines.
    """

    def __init__(
        self,
        slave: SlaveDescriptor,
        remote: RemoteExecutor,
        sink: IO[str],
        *,
        scripts_root: Path = Path("."),
        output_dir: Path = Path("output"),
        cleanup: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        if not slave.workspace:
            raise ValueError(f"slave [{slave.name}] has no remote workspace assigned")
        self.slave = slave
        self.remote = remote
        self.sink = sink
        self.scripts_root = scripts_root
        self.output_dir = output_dir
        self.cleanup = cleanup
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._sink_closed = False
        self._started = False

    def run(self) -> BuildReport:
        if self._started:
            raise RuntimeError(f"pipeline for slave [{self.slave.name}] already ran")
        self._started = True
        started = time.monotonic()
        try:
            report = self._run_stages()
        finally:
            self._close_sink()
        return replace(report, duration_seconds=time.monotonic() - started)

    def _run_stages(self) -> BuildReport:
        self._journal("start")
        for stage, failure_message, action in self._stages():
            self._journal(f"{stage.value}...")
            try:
                action()
            except (RemoteError, OSError) as exc:
                return self._failure(stage, failure_message, exc)
        self._journal(f"{BuildStage.DONE.value}")
        return BuildReport(slave=self.slave, message="ok", stage=BuildStage.DONE)

    def _stages(self) -> Iterator[Stage]:
        slave = self.slave
        script = slave.local_script_path(self.scripts_root)
        relative_script = slave.local_script_path()
        workspace = shlex.quote(slave.workspace)
        remote_script = slave.remote_script_path()

        yield (
            BuildStage.VALIDATE_SCRIPT,
            f"no such file [{relative_script}]",
            lambda: self._validate_script(script),
        )
        yield (
            BuildStage.PREPARE_WORKSPACE,
            f"failed to prepare workspace [{slave.workspace}]",
            lambda: self.remote.execute(slave.address, f"mkdir -p {workspace}", self.sink),
        )
        yield (
            BuildStage.UPLOAD_SCRIPT,
            f"failed to copy [{relative_script}]",
            lambda: self.remote.copy(str(script), f"{slave.address}:{remote_script}", self.sink),
        )
        yield (
            BuildStage.EXECUTE_BUILD,
            "build failed",
            lambda: self.remote.execute(
                slave.address,
                f"time {shlex.quote(remote_script)} {workspace}",
                self.sink,
            ),
        )
        yield (
            BuildStage.RETRIEVE_ARTIFACTS,
            "failed to retrieve outputs",
            lambda: self.remote.copy(
                f"{slave.address}:{slave.workspace.rstrip('/')}/{ARTIFACT_GLOB}",
                f"{self.output_dir}/.",
                self.sink,
            ),
        )
        if self.cleanup:
            yield (
                BuildStage.CLEANUP,
                "clean-up failed",
                lambda: self.remote.execute(slave.address, f"/bin/rm -rf {workspace}", self.sink),
            )

    def _validate_script(self, script: Path) -> None:
        with script.open("rb"):
            pass

    def _failure(self, stage: BuildStage, message: str, exc: Exception) -> BuildReport:
        error = STAGE_ERRORS[stage](self.slave.name, f"{message}: {exc}")
        error.__cause__ = exc
        self._journal(f"{stage.value} failed ({exc})")
        log_with_fields(
            self.logger,
            logging.WARNING,
            "build_stage_failed",
            slave=self.slave.name,
            stage=stage.name.lower(),
            error=str(exc),
        )
        return BuildReport(slave=self.slave, message=message, error=error, stage=stage)

    def _journal(self, text: str) -> None:
        self.sink.write(f"## build -- {text} [{utc_now_iso()}]\n")
        self.sink.flush()

    def _close_sink(self) -> None:
        if self._sink_closed:
            return
        self._sink_closed = True
        try:
            self.sink.flush()
        finally:
            self.sink.close()

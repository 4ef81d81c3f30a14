from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import SlaveDescriptor
from .utils import is_filesystem_safe

DEFAULT_SSH_OPTIONS = "-o BatchMode=yes -o ConnectTimeout=10"
WORKSPACE_MODES = {"tempdir", "fixed"}
TRANSFER_MODES = {"scp", "rsync"}


@dataclass(slots=True)
class PathsConfig:
    scripts: Path
    logs: Path
    output: Path
    log: Path | None = None


@dataclass(slots=True)
class DispatchConfig:
    parallel: bool = True
    max_workers: int | None = None
    ssh_options: str = DEFAULT_SSH_OPTIONS
    transfer_mode: str = "scp"
    timeout_seconds: float | None = None


@dataclass(slots=True)
class WorkspaceConfig:
    mode: str = "tempdir"
    prefix: str = "bldbot-"

    @property
    def cleanup(self) -> bool:
        return self.mode == "tempdir"


@dataclass(slots=True)
class SlaveConfig:
    address: str
    name: str
    path: str = ""

    def descriptor(self) -> SlaveDescriptor:
        return SlaveDescriptor(address=self.address, name=self.name)

    def workspace_path(self) -> str:
        # only `{name}` is expanded; any other braces belong to the remote path
        return self.path.replace("{name}", self.name)


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    dispatch: DispatchConfig
    workspace: WorkspaceConfig
    slaves: list[SlaveConfig] = field(default_factory=list)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _lower_keys(mapping: dict) -> dict:
    return {str(key).lower(): value for key, value in mapping.items()}


def _optional_bool(raw: dict, key: str, default: bool, section: str) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"`{section}.{key}` must be true or false, got {value!r}")
    return value


def _optional_number(raw: dict, key: str, kind: type) -> int | float | None:
    value = raw.get(key)
    if value is None:
        return None
    return kind(value)


def _load_slaves(slaves_raw: object, workspace: WorkspaceConfig) -> list[SlaveConfig]:
    if not isinstance(slaves_raw, list) or not slaves_raw:
        raise ValueError("`slaves` must be a non-empty list")

    slaves: list[SlaveConfig] = []
    seen_names: set[str] = set()
    for idx, item in enumerate(slaves_raw):
        if not isinstance(item, dict):
            raise ValueError(f"`slaves[{idx}]` must be a mapping")
        # legacy slaves.json entries use Addr/Name/Path
        item = _lower_keys(item)
        if "addr" in item and "address" not in item:
            item["address"] = item["addr"]
        slave = SlaveConfig(
            address=str(_require(item, "address", f"slaves[{idx}]")),
            name=str(_require(item, "name", f"slaves[{idx}]")),
            path=str(item.get("path") or ""),
        )
        if not is_filesystem_safe(slave.name):
            raise ValueError(f"Slave name is not filesystem-safe: {slave.name!r}")
        if slave.name in seen_names:
            raise ValueError(f"Duplicate slave name: {slave.name}")
        if workspace.mode == "fixed" and not slave.path:
            raise ValueError(f"`slaves[{idx}].path` is required when `workspace.mode` is `fixed`")
        seen_names.add(slave.name)
        slaves.append(slave)
    return slaves


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if isinstance(raw, list):
        raw = {"slaves": raw}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping or a list of slaves")

    paths_raw = raw.get("paths", {})
    dispatch_raw = raw.get("dispatch", {})
    workspace_raw = raw.get("workspace", {})
    slaves_raw = _require(raw, "slaves", "root")

    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    if not isinstance(dispatch_raw, dict):
        raise ValueError("`dispatch` must be a mapping")
    if not isinstance(workspace_raw, dict):
        raise ValueError("`workspace` must be a mapping")

    def to_path(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        scripts=to_path(paths_raw.get("scripts", ".")),
        logs=to_path(paths_raw.get("logs", "logs")),
        output=to_path(paths_raw.get("output", "output")),
        log=to_path(paths_raw["log"]) if paths_raw.get("log") else None,
    )

    dispatch = DispatchConfig(
        parallel=_optional_bool(dispatch_raw, "parallel", True, "dispatch"),
        max_workers=_optional_number(dispatch_raw, "max_workers", int),
        ssh_options=str(dispatch_raw.get("ssh_options", DEFAULT_SSH_OPTIONS)),
        transfer_mode=str(dispatch_raw.get("transfer_mode", "scp")).lower(),
        timeout_seconds=_optional_number(dispatch_raw, "timeout_seconds", float),
    )
    if dispatch.transfer_mode not in TRANSFER_MODES:
        raise ValueError("`dispatch.transfer_mode` must be either `scp` or `rsync`")
    if dispatch.max_workers is not None and dispatch.max_workers < 1:
        raise ValueError("`dispatch.max_workers` must be >= 1")
    if dispatch.timeout_seconds is not None and dispatch.timeout_seconds <= 0:
        raise ValueError("`dispatch.timeout_seconds` must be > 0")

    workspace = WorkspaceConfig(
        mode=str(workspace_raw.get("mode", "tempdir")).lower(),
        prefix=str(workspace_raw.get("prefix", "bldbot-")),
    )
    if workspace.mode not in WORKSPACE_MODES:
        raise ValueError("`workspace.mode` must be either `tempdir` or `fixed`")

    slaves = _load_slaves(slaves_raw, workspace)
    return AppConfig(paths=paths, dispatch=dispatch, workspace=workspace, slaves=slaves)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.logs.mkdir(parents=True, exist_ok=True)
    config.paths.output.mkdir(parents=True, exist_ok=True)
    if config.paths.log is not None:
        config.paths.log.parent.mkdir(parents=True, exist_ok=True)

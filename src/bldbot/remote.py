from __future__ import annotations

import shlex
import subprocess
from typing import IO

from .config import DispatchConfig
from .models import SlaveDescriptor

PING_COMMAND = "echo hello"


class RemoteError(RuntimeError):
    pass


class RemoteTimeout(RemoteError):
    pass


class RemoteExecutor:
    def __init__(self, dispatch_config: DispatchConfig) -> None:
        self.dispatch_config = dispatch_config
        self.ssh_options = shlex.split(dispatch_config.ssh_options)
        self.timeout = dispatch_config.timeout_seconds

    def _run(self, cmd: list[str], sink: IO[str] | None = None) -> subprocess.CompletedProcess[str]:
        try:
            if sink is None:
                return subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self.timeout)
            sink.flush()
            return subprocess.run(
                cmd,
                stdout=sink,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise RemoteTimeout(f"{shlex.join(cmd)} timed out after {exc.timeout}s") from exc
        except OSError as exc:
            raise RemoteError(f"could not start {cmd[0]}: {exc}") from exc

    def _require_ok(self, process: subprocess.CompletedProcess[str], context: str) -> None:
        if process.returncode != 0:
            stderr = (process.stderr or "").strip()
            stdout = (process.stdout or "").strip()
            output = stderr if stderr else stdout
            raise RemoteError(f"{context} failed: {output or 'exit code ' + str(process.returncode)}")

    def ssh_command(self, address: str, command: str) -> list[str]:
        return ["ssh", *self.ssh_options, address, command]

    def copy_command(self, source: str, destination: str) -> list[str]:
        if self.dispatch_config.transfer_mode == "rsync":
            rsh = "ssh " + " ".join(shlex.quote(item) for item in self.ssh_options)
            return ["rsync", "-az", "-e", rsh.strip(), source, destination]
        return ["scp", *self.ssh_options, source, destination]

    def ping(self, slave: SlaveDescriptor) -> None:
        process = self._run(self.ssh_command(slave.address, PING_COMMAND))
        if process.returncode != 0:
            output = (process.stderr or process.stdout or "").strip()
            raise RemoteError(
                f"slave [{slave.name}] did not respond (exit code {process.returncode}: {output})"
            )

    def execute(self, address: str, command: str, sink: IO[str]) -> None:
        process = self._run(self.ssh_command(address, command), sink)
        self._require_ok(process, f"`{command}` on {address}")

    def copy(self, source: str, destination: str, sink: IO[str]) -> None:
        process = self._run(self.copy_command(source, destination), sink)
        self._require_ok(process, f"copy {source} -> {destination}")

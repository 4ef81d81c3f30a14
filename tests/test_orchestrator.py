from __future__ import annotations

from itertools import permutations
from pathlib import Path
from tempfile import TemporaryDirectory
import io
import logging
import threading
import unittest

from bldbot.config import AppConfig, DispatchConfig, PathsConfig, SlaveConfig, WorkspaceConfig
from bldbot.errors import UnreachableSlave
from bldbot.models import BuildReport, FleetResult, SlaveDescriptor
from bldbot.orchestrator import FleetOrchestrator
from bldbot.remote import RemoteError


class FakeRemote:
    """Records every remote operation by slave address; thread-safe."""

    def __init__(
        self,
        dead: set[str] | None = None,
        failures: dict[str, str] | None = None,
        crash: set[str] | None = None,
    ) -> None:
        self.dead = dead or set()
        self.failures = failures or {}
        self.crash = crash or set()
        self.pinged: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.lock = threading.Lock()

    def ping(self, slave: SlaveDescriptor) -> None:
        with self.lock:
            self.pinged.append(slave.address)
        if slave.address in self.dead:
            raise RemoteError(f"slave [{slave.name}] did not respond (exit code 255: no route to host)")

    def _record(self, address: str, operation: str) -> None:
        with self.lock:
            self.calls.append((address, operation))
        if address in self.crash and operation == "execute":
            raise ValueError("unexpected fake crash")
        if self.failures.get(address) == operation:
            raise RemoteError(f"{operation} failed: exit code 1")

    def execute(self, address: str, command: str, sink: io.TextIOBase) -> None:
        sink.write(f"$ {command}\n")
        if command.startswith("mkdir"):
            self._record(address, "prepare")
        elif command.startswith("time"):
            self._record(address, "execute")
        else:
            self._record(address, "cleanup")

    def copy(self, source: str, destination: str, sink: io.TextIOBase) -> None:
        sink.write(f"$ copy {source} {destination}\n")
        if source.endswith("*.tar.gz"):
            self._record(source.split(":", 1)[0], "retrieve")
        else:
            self._record(destination.split(":", 1)[0], "upload")

    def operations_for(self, address: str) -> list[str]:
        return [operation for addr, operation in self.calls if addr == address]


class FleetOrchestratorTest(unittest.TestCase):
    def setUp(self) -> None:
        temp_dir = TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.root = Path(temp_dir.name)
        self.logger = logging.getLogger("test_bldbot_fleet")
        self.logger.handlers.clear()
        self.logger.addHandler(logging.NullHandler())
        self.logger.propagate = False

    def make_config(
        self,
        names: list[str],
        *,
        parallel: bool = True,
        with_scripts: set[str] | None = None,
        mode: str = "tempdir",
        max_workers: int | None = None,
    ) -> AppConfig:
        scripts = with_scripts if with_scripts is not None else set(names)
        for name in scripts:
            (self.root / name).mkdir(exist_ok=True)
            (self.root / name / "build.sh").write_text("#!/bin/sh\n", encoding="utf-8")
        return AppConfig(
            paths=PathsConfig(
                scripts=self.root,
                logs=self.root / "logs",
                output=self.root / "output",
            ),
            dispatch=DispatchConfig(parallel=parallel, ssh_options="", max_workers=max_workers),
            workspace=WorkspaceConfig(mode=mode, prefix="bldbot-test-"),
            slaves=[SlaveConfig(address=f"builder@{name}", name=name, path="/srv/build/{name}") for name in names],
        )

    def run_fleet(self, config: AppConfig, remote: FakeRemote) -> FleetResult:
        return FleetOrchestrator(config, remote, self.logger).run()

    def test_all_slaves_succeed(self) -> None:
        for parallel in (True, False):
            with self.subTest(parallel=parallel):
                remote = FakeRemote()
                result = self.run_fleet(self.make_config(["a", "b"], parallel=parallel), remote)

                self.assertTrue(result.all_good)
                self.assertEqual(result.exit_code, 0)
                self.assertEqual(sorted(report.message for report in result.reports), ["ok", "ok"])
                self.assertTrue((self.root / "logs" / "a.txt").exists())
                self.assertIn("## build -- start", (self.root / "logs" / "b.txt").read_text(encoding="utf-8"))

    def test_unreachable_slave_is_excluded(self) -> None:
        remote = FakeRemote(dead={"builder@X"})
        result = self.run_fleet(self.make_config(["X", "Y"]), remote)

        self.assertEqual([slave.name for slave in result.live], ["Y"])
        self.assertIn("X", result.unreachable)
        self.assertIsInstance(result.unreachable["X"], UnreachableSlave)
        self.assertIsInstance(result.unreachable["X"].__cause__, RemoteError)
        self.assertEqual([report.slave.name for report in result.reports], ["Y"])
        self.assertEqual(result.reports[0].message, "ok")
        self.assertTrue(result.all_good)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(remote.operations_for("builder@X"), [])
        self.assertFalse((self.root / "logs" / "X.txt").exists())

    def test_missing_script_fails_the_fleet(self) -> None:
        remote = FakeRemote()
        config = self.make_config(["Z"], with_scripts=set())
        result = self.run_fleet(config, remote)

        self.assertFalse(result.all_good)
        self.assertEqual(result.exit_code, 1)
        report = result.reports[0]
        self.assertEqual(report.message, "no such file [Z/build.sh]")
        self.assertIsNotNone(report.error)
        self.assertEqual(remote.operations_for("builder@Z"), [])

    def test_failed_build_in_either_mode(self) -> None:
        for parallel in (True, False):
            with self.subTest(parallel=parallel):
                remote = FakeRemote(failures={"builder@W": "execute"})
                result = self.run_fleet(self.make_config(["W", "V"], parallel=parallel), remote)

                self.assertFalse(result.all_good)
                self.assertEqual(result.exit_code, 1)
                failed = result.failed
                self.assertEqual(len(failed), 1)
                self.assertEqual(failed[0].message, "build failed")
                self.assertNotIn("retrieve", remote.operations_for("builder@W"))
                # siblings run to completion
                self.assertEqual(remote.operations_for("builder@V")[-1], "cleanup")

    def test_verdict_independent_of_order(self) -> None:
        for order in permutations(["a", "b", "c"]):
            with self.subTest(order=order):
                remote = FakeRemote(failures={"builder@b": "upload"})
                result = self.run_fleet(self.make_config(list(order)), remote)
                self.assertFalse(result.all_good)
                self.assertEqual(len(result.reports), 3)
                self.assertEqual([report.slave.name for report in result.failed], ["b"])

    def test_sequential_reports_follow_discovery_order(self) -> None:
        result = self.run_fleet(self.make_config(["c", "a", "b"], parallel=False), FakeRemote())
        self.assertEqual([report.slave.name for report in result.reports], ["c", "a", "b"])

    def test_bounded_pool_collects_every_report(self) -> None:
        names = [f"slave{idx}" for idx in range(6)]
        result = self.run_fleet(self.make_config(names, max_workers=2), FakeRemote())
        self.assertEqual(sorted(report.slave.name for report in result.reports), names)
        self.assertTrue(result.all_good)

    def test_crashing_pipeline_still_reports(self) -> None:
        remote = FakeRemote(crash={"builder@a"})
        result = self.run_fleet(self.make_config(["a", "b"]), remote)

        self.assertEqual(len(result.reports), 2)
        self.assertFalse(result.all_good)
        self.assertEqual([report.message for report in result.failed], ["unexpected error"])

    def test_tempdir_workspaces_are_unique(self) -> None:
        result = self.run_fleet(self.make_config(["a", "b"]), FakeRemote())
        workspaces = [slave.workspace for slave in result.live]
        self.assertEqual(len(set(workspaces)), 2)
        for workspace in workspaces:
            self.assertIn("bldbot-test-", workspace)
            self.assertFalse(Path(workspace).exists())

    def test_fixed_workspace_uses_template_and_skips_cleanup(self) -> None:
        remote = FakeRemote()
        result = self.run_fleet(self.make_config(["a"], mode="fixed"), remote)
        self.assertEqual(result.live[0].workspace, "/srv/build/a")
        self.assertEqual(remote.operations_for("builder@a"), ["prepare", "upload", "execute", "retrieve"])

    def test_no_live_slaves(self) -> None:
        result = self.run_fleet(self.make_config(["a"]), FakeRemote(dead={"builder@a"}))
        self.assertEqual(result.reports, [])
        self.assertTrue(result.all_good)

    def test_log_directory_failure_is_fatal(self) -> None:
        config = self.make_config(["a"])
        config.paths.logs.write_text("not a directory", encoding="utf-8")
        remote = FakeRemote()
        with self.assertRaises(OSError):
            self.run_fleet(config, remote)
        self.assertEqual(remote.calls, [])

    def test_fixed_workspace_keeps_other_braces(self) -> None:
        config = self.make_config(["a", "b"], mode="fixed")
        config.slaves[0].path = "/srv/build-${HOME}/{name}"
        remote = FakeRemote()
        result = self.run_fleet(config, remote)

        self.assertEqual(result.live[0].workspace, "/srv/build-${HOME}/a")
        self.assertEqual(len(result.reports), 2)
        self.assertTrue(result.all_good)

    def test_on_discovered_sees_roster_before_dispatch(self) -> None:
        remote = FakeRemote(dead={"builder@b"})
        seen: list[tuple[list[str], int]] = []

        def on_discovered(result: FleetResult) -> None:
            seen.append(([slave.name for slave in result.live], len(remote.calls)))

        FleetOrchestrator(self.make_config(["a", "b"]), remote, self.logger).run(on_discovered=on_discovered)
        self.assertEqual(seen, [(["a"], 0)])

    def test_interrupt_does_not_wait_for_running_builds(self) -> None:
        release = threading.Event()
        started = threading.Event()
        finished = threading.Event()
        self.addCleanup(release.set)

        class SlowRemote(FakeRemote):
            def execute(self, address: str, command: str, sink: io.TextIOBase) -> None:
                if address == "builder@slow" and command.startswith("time"):
                    started.set()
                    release.wait(timeout=5)
                    finished.set()
                super().execute(address, command, sink)

        class InterruptedOrchestrator(FleetOrchestrator):
            def _fold(self, result: FleetResult, report: BuildReport) -> None:
                started.wait(timeout=5)
                raise KeyboardInterrupt

        orchestrator = InterruptedOrchestrator(self.make_config(["fast", "slow"]), SlowRemote(), self.logger)
        with self.assertRaises(KeyboardInterrupt):
            orchestrator.run(parallel=True)
        self.assertTrue(started.is_set())
        self.assertFalse(finished.is_set())


if __name__ == "__main__":
    unittest.main()

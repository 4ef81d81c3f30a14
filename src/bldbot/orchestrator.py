from __future__ import annotations

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from collections.abc import Callable
from typing import IO

from .app_logging import log_with_fields
from .config import AppConfig, SlaveConfig
from .errors import BuildError, UnreachableSlave
from .models import BuildReport, BuildStage, FleetResult, SlaveDescriptor
from .pipeline import BuildPipeline
from .remote import RemoteError, RemoteExecutor
from .utils import generate_workspace_name


class FleetOrchestrator:
    """Fans one build out to every live slave and folds the reports into a verdict.

    Only the calling thread touches the `FleetResult`. In parallel mode the
    pipelines hand their reports back through a queue.
    """

    def __init__(self, config: AppConfig, remote: RemoteExecutor, logger: logging.Logger) -> None:
        self.config = config
        self.remote = remote
        self.logger = logger

    def run(
        self,
        *,
        parallel: bool | None = None,
        on_discovered: Callable[[FleetResult], None] | None = None,
    ) -> FleetResult:
        result = FleetResult()
        live = self.discover(result)
        if on_discovered is not None:
            on_discovered(result)
        pipelines = self.build_pipelines(live)
        self.dispatch(pipelines, result, parallel=parallel)
        return result

    def discover(self, result: FleetResult) -> list[SlaveDescriptor]:
        for slave_config in self.config.slaves:
            slave = slave_config.descriptor()
            try:
                self.remote.ping(slave)
            except RemoteError as exc:
                error = UnreachableSlave(slave.name, str(exc))
                error.__cause__ = exc
                result.unreachable[slave.name] = error
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "slave_unreachable",
                    slave=slave.name,
                    address=slave.address,
                    error=str(exc),
                )
                continue
            slave = self.assign_workspace(slave_config)
            result.live.append(slave)
            log_with_fields(
                self.logger,
                logging.INFO,
                "slave_live",
                slave=slave.name,
                address=slave.address,
                workspace=slave.workspace,
            )
        return list(result.live)

    def assign_workspace(self, slave_config: SlaveConfig) -> SlaveDescriptor:
        slave = slave_config.descriptor()
        if self.config.workspace.mode == "fixed":
            return slave.with_workspace(slave_config.workspace_path())
        return slave.with_workspace(generate_workspace_name(self.config.workspace.prefix))

    def build_pipelines(self, live: list[SlaveDescriptor]) -> list[BuildPipeline]:
        self.config.paths.logs.mkdir(parents=True, exist_ok=True)
        self.config.paths.output.mkdir(parents=True, exist_ok=True)
        sinks: list[IO[str]] = []
        pipelines: list[BuildPipeline] = []
        try:
            for slave in live:
                log_path = self.config.paths.logs / f"{slave.name}.txt"
                sink = log_path.open("w", encoding="utf-8")
                sinks.append(sink)
                pipelines.append(
                    BuildPipeline(
                        slave,
                        self.remote,
                        sink,
                        scripts_root=self.config.paths.scripts,
                        output_dir=self.config.paths.output,
                        cleanup=self.config.workspace.cleanup,
                        logger=self.logger,
                    )
                )
        except OSError:
            for sink in sinks:
                sink.close()
            raise
        return pipelines

    def dispatch(
        self,
        pipelines: list[BuildPipeline],
        result: FleetResult,
        *,
        parallel: bool | None = None,
    ) -> None:
        if parallel is None:
            parallel = self.config.dispatch.parallel
        if parallel:
            self._dispatch_parallel(pipelines, result)
        else:
            self._dispatch_sequential(pipelines, result)
        log_with_fields(
            self.logger,
            logging.INFO if result.all_good else logging.ERROR,
            "fleet_verdict",
            all_good=result.all_good,
            dispatched=len(result.reports),
            failed=len(result.failed),
            unreachable=sorted(result.unreachable),
        )

    def _dispatch_sequential(self, pipelines: list[BuildPipeline], result: FleetResult) -> None:
        for pipeline in pipelines:
            self._announce(pipeline)
            self._fold(result, self._run_guarded(pipeline))

    def _dispatch_parallel(self, pipelines: list[BuildPipeline], result: FleetResult) -> None:
        if not pipelines:
            return
        reports: queue.Queue[BuildReport] = queue.Queue()
        max_workers = self.config.dispatch.max_workers or len(pipelines)
        pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bldbot")
        try:
            for pipeline in pipelines:
                self._announce(pipeline)
                pool.submit(lambda p=pipeline: reports.put(self._run_guarded(p)))
            for _ in pipelines:
                self._fold(result, reports.get())
        except KeyboardInterrupt:
            # queued builds are dropped; builds already running are left to their ssh children
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

    def _run_guarded(self, pipeline: BuildPipeline) -> BuildReport:
        try:
            return pipeline.run()
        except Exception as exc:
            error = BuildError(pipeline.slave.name, f"unexpected error: {exc}")
            error.__cause__ = exc
            self.logger.exception("pipeline for slave [%s] crashed", pipeline.slave.name)
            return BuildReport(
                slave=pipeline.slave,
                message="unexpected error",
                error=error,
                stage=BuildStage.START,
            )

    def _announce(self, pipeline: BuildPipeline) -> None:
        log_with_fields(
            self.logger,
            logging.INFO,
            "build_dispatched",
            slave=pipeline.slave.name,
            workspace=pipeline.slave.workspace,
        )

    def _fold(self, result: FleetResult, report: BuildReport) -> None:
        result.record(report)
        if report.ok:
            log_with_fields(
                self.logger,
                logging.INFO,
                "build_succeeded",
                slave=report.slave.name,
                duration_seconds=round(report.duration_seconds, 3),
            )
            return
        log_with_fields(
            self.logger,
            logging.ERROR,
            "build_failed",
            slave=report.slave.name,
            stage=report.stage.name.lower(),
            error=str(report.error),
            msg=report.message,
        )

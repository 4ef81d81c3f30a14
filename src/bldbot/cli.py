from __future__ import annotations

import argparse
import logging

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .models import FleetResult
from .orchestrator import FleetOrchestrator
from .remote import RemoteError, RemoteExecutor

BANNER = ">>>\n>>> bldbot <<<\n>>>"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bldbot", description="Run a build script on a fleet of SSH build slaves")
    parser.add_argument(
        "--config",
        default="slaves.json",
        help="Path to bldbot YAML config, or a legacy JSON list of slaves",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Build on every live slave and report the verdict")
    run_parser.add_argument(
        "--parallel",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Run the build-slaves in parallel (default: dispatch.parallel from config)",
    )
    subparsers.add_parser("ping", help="Check which slaves respond")
    return parser


def _print_roster(result: FleetResult) -> None:
    print(">>> found the following builders:")
    for slave in result.live:
        print(f" {slave.name} \t({slave.address}:{slave.workspace})")


def cmd_run(config: AppConfig, *, parallel: bool | None = None) -> int:
    print(BANNER)
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    remote = RemoteExecutor(config.dispatch)
    orchestrator = FleetOrchestrator(config=config, remote=remote, logger=logger)
    if parallel is None:
        parallel = config.dispatch.parallel

    def announce(discovered: FleetResult) -> None:
        _print_roster(discovered)
        print(f">>> launching builders... (parallel={parallel})")

    try:
        result = orchestrator.run(parallel=parallel, on_discovered=announce)
    except KeyboardInterrupt:
        log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 1
    print(f">>> launching builders... (parallel={parallel}) [done]")

    for report in result.failed:
        print(f"build failed for slave [{report.slave.name}]:\n{report.error}\nmsg={report.message}")
    print(f">>> all good: {result.all_good}")
    return result.exit_code


def cmd_ping(config: AppConfig) -> int:
    remote = RemoteExecutor(config.dispatch)
    all_live = True
    for slave_config in config.slaves:
        slave = slave_config.descriptor()
        try:
            remote.ping(slave)
        except RemoteError as exc:
            all_live = False
            print(f"  {slave.name:20} dead  {exc}")
            continue
        print(f"  {slave.name:20} live  ({slave.address})")
    return 0 if all_live else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "run":
        return cmd_run(config, parallel=args.parallel)
    if args.command == "ping":
        return cmd_ping(config)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())

"""
Command line entry point for the Nexus worker supervisor.

Usage:
    nexus-supervisor run                 Build, launch and supervise the worker
    nexus-supervisor run --no-build      Launch an already built worker
    nexus-supervisor config              Print the effective configuration
"""

import argparse
import asyncio
import json
import signal
import sys
import time
from typing import List, Optional

from pydantic import ValidationError

from .config import SupervisorConfig, load_config_from_env
from .exceptions import BuildFailedError, ConfigurationError, NexusSupervisorError
from .logger import configure_logging, get_logger
from .persistence import SQLiteMetricsStore
from .supervisor import SupervisorState, WorkerSupervisor

logger = get_logger(__name__)


def apply_overrides(config: SupervisorConfig, args: argparse.Namespace) -> SupervisorConfig:
    """Return a copy of ``config`` with command line overrides applied."""
    worker = config.worker
    build = config.build
    restart = config.restart

    if getattr(args, "executable", None):
        worker = worker.model_copy(update={"executable": args.executable})
    worker_args = list(getattr(args, "worker_args", None) or [])
    if worker_args and worker_args[0] == "--":
        worker_args = worker_args[1:]
    if worker_args:
        worker = worker.model_copy(update={"args": worker_args})
    if getattr(args, "no_build", False):
        build = build.model_copy(update={"enabled": False})
    if getattr(args, "auto_restart", False):
        restart = restart.model_copy(update={"auto_restart": True})

    return config.model_copy(update={"worker": worker, "build": build, "restart": restart})


async def run_supervisor(config: SupervisorConfig, sync_metrics: bool = True) -> int:
    """Run the supervisor until a signal arrives or the worker is lost for good."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def request_stop(signame: str) -> None:
        logger.info("Received signal, initiating shutdown", signal=signame)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig.name)

    supervisor = WorkerSupervisor(config)
    store: Optional[SQLiteMetricsStore] = None
    exit_code = 0

    try:
        try:
            await supervisor.initialize()
        except BuildFailedError as e:
            logger.error("Worker build failed", returncode=e.returncode, output=e.output[-2000:])
            return 1
        except NexusSupervisorError as e:
            logger.error("Worker failed to start", error=str(e))
            return 1

        if sync_metrics:
            store = SQLiteMetricsStore(config.persistence.db_path)
            await store.initialize()

        status_interval = config.monitoring.status_interval
        sync_interval = config.persistence.sync_interval
        last_sync = time.monotonic()

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=status_interval)
                break
            except asyncio.TimeoutError:
                pass

            logger.info(
                "Worker status", state=supervisor.state.value, **supervisor.get_status().to_dict()
            )

            if supervisor.state == SupervisorState.TERMINATED:
                exit_code = 1
                break
            if supervisor.state == SupervisorState.DEGRADED and not supervisor.restart_pending:
                logger.error("Worker lost and no restart is pending, exiting")
                exit_code = 1
                break

            if store is not None and time.monotonic() - last_sync >= sync_interval:
                try:
                    await supervisor.sync_metrics(store)
                except Exception as e:
                    # A failed sync is reported and retried on the next interval
                    logger.error("Metrics sync failed", error=str(e))
                last_sync = time.monotonic()

        return exit_code

    finally:
        await supervisor.shutdown()
        if store is not None:
            try:
                await supervisor.sync_metrics(store)
            except Exception as e:
                logger.error("Final metrics sync failed", error=str(e))
            await store.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nexus-supervisor",
        description="Supervisor for the Nexus trader worker process",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    nexus-supervisor run                       Build and supervise the worker
    nexus-supervisor run --no-build --no-sync  Launch only, without metrics storage
    nexus-supervisor config                    Show the effective configuration

Settings are read from NEXUS_* environment variables (and a .env file).
        """,
    )
    parser.add_argument("--log-level", help="Override NEXUS_LOG_LEVEL for this run")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Build, launch and supervise the worker")
    run_parser.add_argument("--executable", help="Worker executable path")
    run_parser.add_argument(
        "--no-build", action="store_true", help="Skip the build step before launching"
    )
    run_parser.add_argument(
        "--auto-restart", action="store_true", help="Relaunch the worker automatically on crash"
    )
    run_parser.add_argument(
        "--no-sync", action="store_true", help="Do not write metrics to the SQLite store"
    )
    run_parser.add_argument(
        "worker_args", nargs=argparse.REMAINDER, help="Arguments passed to the worker"
    )

    subparsers.add_parser("config", help="Print the effective configuration as JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = apply_overrides(load_config_from_env(), args)
    except (ConfigurationError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(
        level=args.log_level or config.monitoring.log_level,
        log_format=config.monitoring.log_format,
    )

    if args.command == "config":
        print(json.dumps(config.model_dump(mode="json"), indent=2))
        return 0

    elif args.command == "run":
        try:
            return asyncio.run(run_supervisor(config, sync_metrics=not args.no_sync))
        except KeyboardInterrupt:
            return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
OpStatus command line tool.

Commands:
    show       Print the current snapshot once
    watch      Follow status changes until interrupted
    serve      Run the status daemon (registry, retention sweeper, optional HTTP)
    simulate   Run one synthetic download -> process -> upload operation

Examples:
    opstatus show --json
    opstatus --dir /tmp/opstatus watch
    opstatus --dir /tmp/opstatus simulate --app Firefox --fail
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
import uuid
from pathlib import Path
from typing import List, Optional

from .clients.status_client import StatusChange, StatusClient, UpdateSource
from .core.config import StatusSyncConfig
from .core.models import Operation
from .core.registry import OperationRegistry
from .core.snapshot_store import SnapshotStore
from .daemon import StatusDaemon
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def build_config(args: argparse.Namespace) -> StatusSyncConfig:
    overrides = {}
    if getattr(args, "http", False):
        overrides["http_enabled"] = True
    if getattr(args, "port", None):
        overrides["http_port"] = args.port
    if args.dir:
        return StatusSyncConfig.for_directory(Path(args.dir).expanduser(), **overrides)
    return StatusSyncConfig(**overrides)


def format_operation(operation: Operation, now: Optional[float] = None) -> str:
    line = (
        f"{operation.operation_id:<24} {operation.app_name:<20} "
        f"{operation.status.description:<22} {operation.progress_percentage:>4}  "
        f"{operation.current_phase.name}"
    )
    if operation.current_phase.detail:
        line += f" - {operation.current_phase.detail}"
    if operation.status.is_active:
        line += f" [{operation.elapsed_text(now)}"
        if operation.time_remaining_text:
            line += f", {operation.time_remaining_text}"
        line += "]"
    if operation.error_message:
        line += f"\n{'':<24} error: {operation.error_message}"
    return line


# =============================================================================
# COMMANDS
# =============================================================================


def cmd_show(args: argparse.Namespace, config: StatusSyncConfig) -> int:
    state = SnapshotStore(config.state_file).load()
    if args.json:
        print(state.to_json())
        return 0

    client = StatusClient(config)
    client.reconcile(state, UpdateSource.MANUAL)
    operations = client.get_all_operations()
    if not operations:
        print("No operations")
        return 0
    for operation in operations:
        print(format_operation(operation))
    print(client.status_summary)
    return 0


async def _run_until_signalled(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass
    await stop_event.wait()


async def cmd_watch(args: argparse.Namespace, config: StatusSyncConfig) -> int:
    client = StatusClient(config)

    def on_change(change: StatusChange) -> None:
        print(f"[{change.source.value}] {client.status_summary}", flush=True)
        for operation_id in change.changed_ids:
            operation = client.get_operation(operation_id)
            if operation is not None:
                print(f"  {format_operation(operation)}", flush=True)
        for operation_id in change.removed_ids:
            print(f"  {operation_id} removed", flush=True)

    client.subscribe(on_change)
    stop_event = asyncio.Event()
    try:
        await client.start()
        print(client.status_summary, flush=True)
        await _run_until_signalled(stop_event)
    finally:
        await client.stop()
    return 0


async def cmd_serve(args: argparse.Namespace, config: StatusSyncConfig) -> int:
    daemon = StatusDaemon(config)
    stop_event = asyncio.Event()
    try:
        await daemon.start()
        await _run_until_signalled(stop_event)
    finally:
        await daemon.stop()
    return 0


def cmd_simulate(args: argparse.Namespace, config: StatusSyncConfig) -> int:
    operation_id = args.id or f"{args.app.lower().replace(' ', '_')}_{uuid.uuid4().hex[:6]}"
    delay = max(0.0, args.step_delay)
    total = 10_000_000

    with OperationRegistry(config) as registry:
        registry.start_operation(operation_id, args.app.lower(), args.app)

        for step in range(1, 6):
            registry.update_download_progress(
                operation_id, step * total // 5, total, "https://downloads.example.com/installer.pkg"
            )
            time.sleep(delay)

        for step_name in ("Extracting", "Signing", "Packaging"):
            registry.update_processing_progress(operation_id, step_name, 0.5)
            time.sleep(delay)
            registry.update_processing_progress(operation_id, step_name, 1.0)

        if args.fail:
            registry.fail_operation(operation_id, "Simulated upload failure")
        else:
            for step in range(1, 5):
                registry.update_upload_progress(operation_id, step * total // 4, total)
                time.sleep(delay)
            registry.complete_operation(operation_id)

        operation = registry.get_operation(operation_id)
        print(format_operation(operation))
    return 0 if not args.fail else 1


# =============================================================================
# ENTRY POINT
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opstatus",
        description="Cross-process operation status synchronization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dir",
        type=str,
        default=None,
        help="Status directory (default: OPSTATUS_DIR or the platform default)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (default: OPSTATUS_LOG_LEVEL or INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show = subparsers.add_parser("show", help="Print the current snapshot")
    show.add_argument("--json", action="store_true", help="Print the raw snapshot JSON")

    subparsers.add_parser("watch", help="Follow status changes until interrupted")

    serve = subparsers.add_parser("serve", help="Run the status daemon")
    serve.add_argument("--http", action="store_true", help="Serve the read-only HTTP endpoint")
    serve.add_argument("--port", type=int, default=None, help="HTTP port (default: OPSTATUS_HTTP_PORT or 8765)")

    simulate = subparsers.add_parser("simulate", help="Run one synthetic operation")
    simulate.add_argument("--id", type=str, default=None, help="Operation id (default: derived from --app)")
    simulate.add_argument("--app", type=str, default="Firefox", help="Application name")
    simulate.add_argument("--fail", action="store_true", help="Fail during upload")
    simulate.add_argument("--step-delay", type=float, default=0.3, help="Seconds between progress updates")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = build_config(args)
    configure_logging(args.log_level or config.log_level)

    try:
        if args.command == "show":
            return cmd_show(args, config)
        if args.command == "simulate":
            return cmd_simulate(args, config)
        if args.command == "watch":
            return asyncio.run(cmd_watch(args, config))
        if args.command == "serve":
            return asyncio.run(cmd_serve(args, config))
    except KeyboardInterrupt:
        logger.info("Shutdown by keyboard interrupt")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())

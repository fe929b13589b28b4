"""Command-line entry point.

Usage:
    pgguard daemon                 # monitor continuously, alert, auto-terminate
    pgguard status [--json|-q|-v]  # one snapshot; exit code 0 ok, 1 warning, 2 critical
    pgguard watch [-i 5s]          # print changes as they happen until Ctrl+C
    pgguard kill PID [-f] [--cancel]
    pgguard version
    # or without installing:
    python -m pgguard.cli status
"""

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import timedelta
from importlib.metadata import PackageNotFoundError, version

import uvicorn
from pydantic import ValidationError

from pgguard.alerts.dispatcher import AlertDispatcher, channels_from_settings
from pgguard.api.main import create_app
from pgguard.config import Settings, load_settings
from pgguard.errors import ConfigurationError, SnapshotError, TerminationError
from pgguard.monitor.cooldown import utc_now
from pgguard.monitor.driver import PollDriver
from pgguard.observability.metrics import APP_INFO
from pgguard.postgres.client import PostgresClient
from pgguard.status import build_status, exit_code, format_status
from pgguard.util import format_duration, parse_duration, truncate_query
from pgguard.watch import Watcher

logger = logging.getLogger("pgguard")

STATUS_TIMEOUT_SECONDS = 10


def _version() -> str:
    try:
        return version("pg-idle-guard")
    except PackageNotFoundError:
        return "dev"


# ---------------------------------------------------------------------------
# daemon
# ---------------------------------------------------------------------------


async def run_daemon(settings: Settings) -> int:
    """Run the poll loop (and optional HTTP API) until SIGINT/SIGTERM."""
    APP_INFO.info({"version": _version()})
    logger.info("pgguard daemon starting")

    client = await PostgresClient.connect(settings)
    try:
        logger.info(
            "Configuration loaded (polling_interval=%s, warning_threshold=%s, critical_threshold=%s, alert_cooldown=%s)",
            format_duration(settings.poll_interval),
            format_duration(settings.idle_warning),
            format_duration(settings.idle_critical),
            format_duration(settings.alert_cooldown),
        )
        if settings.auto_terminate_enabled:
            if settings.auto_terminate_dry_run:
                logger.info("Auto-terminate enabled (mode=dry-run)")
            else:
                logger.info("Auto-terminate enabled (after=%s)", format_duration(settings.auto_terminate_after))

        dispatcher = AlertDispatcher(channels_from_settings(settings))
        await dispatcher.test_channels()
        driver = PollDriver(client, dispatcher, settings)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop, sig, stop)

        server: uvicorn.Server | None = None
        server_task: asyncio.Task[None] | None = None
        if settings.api_enabled:
            app = create_app(driver, client)
            server = uvicorn.Server(
                uvicorn.Config(app, host=settings.api_host, port=settings.api_port, log_level="warning")
            )
            server_task = asyncio.create_task(server.serve())
            server_task.add_done_callback(lambda _: stop.set())
            logger.info("HTTP API listening on %s:%d", settings.api_host, settings.api_port)

        await driver.run(stop)

        if server is not None and server_task is not None:
            server.should_exit = True
            with contextlib.suppress(asyncio.CancelledError):
                await server_task
    finally:
        await client.close()
    return 0


def _request_stop(sig: signal.Signals, stop: asyncio.Event) -> None:
    logger.info("Received shutdown signal %s", sig.name)
    stop.set()


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


async def run_status(settings: Settings, as_json: bool, quiet: bool, verbose: bool) -> int:
    client = await PostgresClient.connect(settings)
    try:
        async with asyncio.timeout(STATUS_TIMEOUT_SECONDS):
            pool = await client.get_pool_stats()
            connections = await client.get_connections()
    finally:
        await client.close()

    report = build_status(pool, connections, settings, utc_now(), verbose=verbose)
    if quiet:
        return exit_code(report)
    if as_json:
        print(json.dumps(report, indent=2))
    else:
        print(format_status(report, settings))
    return exit_code(report)


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


async def run_watch(settings: Settings, interval: timedelta) -> int:
    """Print idle-transaction changes in the foreground until Ctrl+C."""
    if interval <= timedelta(0):
        raise ConfigurationError("watch interval must be positive")

    client = await PostgresClient.connect(settings)
    try:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _stop_watching, stop)
        await Watcher(client, settings).run(interval, stop)
    finally:
        await client.close()
    return 0


def _stop_watching(stop: asyncio.Event) -> None:
    print("\nStopping...")
    stop.set()


# ---------------------------------------------------------------------------
# kill
# ---------------------------------------------------------------------------


async def run_kill(settings: Settings, pid: int, force: bool, cancel_only: bool) -> int:
    client = await PostgresClient.connect(settings)
    try:
        connections = await client.get_connections()
        target = next((c for c in connections if c.pid == pid), None)
        if target is None:
            print(f"No connection found with PID {pid}", file=sys.stderr)
            return 1

        now = utc_now()
        print()
        print("Connection Details")
        print("-" * 44)
        print(f"PID:             {target.pid}")
        print(f"Application:     {target.application_name}")
        print(f"Client:          {target.client_addr}")
        print(f"User:            {target.username}")
        print(f"State:           {target.state.value}")
        print(f"State duration:  {format_duration(target.idle_duration(now))}")
        if target.xact_start is not None:
            print(f"Transaction:     {format_duration(target.transaction_duration(now))}")
        print()
        print("Query:")
        print(f"  {truncate_query(target.query, 70)}")
        print()

        action = "cancel the current query on" if cancel_only else "terminate"
        if not force:
            if target.is_idle_in_transaction:
                print(f"Warning: This will {action} the backend and rollback any uncommitted work.")
            elif target.state.value == "active":
                print("Warning: This connection is actively running a query.")
            print()
            answer = await asyncio.to_thread(input, "Proceed? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                print("Canceled.")
                return 0

        try:
            if cancel_only:
                success = await client.cancel_backend(pid)
            else:
                success = await client.terminate_backend(pid)
        except TerminationError as e:
            print(f"Failed to {action} backend: {e}", file=sys.stderr)
            return 1

        if not success:
            print(f"[!] Backend {pid} may have already terminated")
        elif cancel_only:
            print(f"[+] Query canceled on PID {pid}")
        else:
            print(f"[+] Backend {pid} terminated")
        return 0
    finally:
        await client.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgguard",
        description="Monitor PostgreSQL connections and catch idle transactions.",
    )
    parser.add_argument("--config", help="YAML config file (default: ~/.config/pguard/config.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("daemon", help="Run continuously, alerting and auto-terminating")

    status = sub.add_parser("status", help="Show current connection pool status")
    status.add_argument("-v", "--verbose", action="store_true", help="Show all connections")
    status.add_argument("--json", action="store_true", help="Output in JSON format")
    status.add_argument("-q", "--quiet", action="store_true", help="No output, only exit code")

    watch = sub.add_parser("watch", help="Monitor connections in real-time")
    watch.add_argument(
        "-i", "--interval", type=parse_duration, default=timedelta(seconds=5), help="Polling interval (default: 5s)"
    )

    kill = sub.add_parser("kill", help="Terminate a database connection by PID")
    kill.add_argument("pid", type=int)
    kill.add_argument("-f", "--force", action="store_true", help="Skip confirmation prompt")
    kill.add_argument("--cancel", action="store_true", help="Cancel current query instead of terminating")

    sub.add_parser("version", help="Print version information")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "version":
        print(f"pgguard {_version()}")
        return 0

    try:
        settings = load_settings(args.config)
    except (ValidationError, ConfigurationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "daemon":
            return asyncio.run(run_daemon(settings))
        if args.command == "status":
            return asyncio.run(run_status(settings, args.json, args.quiet, args.verbose))
        if args.command == "watch":
            return asyncio.run(run_watch(settings, args.interval))
        return asyncio.run(run_kill(settings, args.pid, args.force, args.cancel))
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1
    except (SnapshotError, TimeoutError) as e:
        print(f"Database error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

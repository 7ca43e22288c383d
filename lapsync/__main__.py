"""CLI entry point for lapsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .client import (
    AgentState,
    APIError,
    ClientSyncAgent,
    LapSyncAPI,
    ReplayBuffer,
    SyncListener,
    WebSocketTransport,
)
from .config import Config, load_config
from .errors import LapSyncError, StaleReplayDiscarded
from .ledger import LapRecord
from .timefmt import format_time_with_ms, lap_splits

logger = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (error, warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "error": logging.ERROR,
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def logging_options(args: argparse.Namespace, config: Config) -> tuple[str | None, bool]:
    """Resolve log level and JSON output; command line flags win over config.

    Returns:
        Tuple of (explicit log level or None, whether to emit JSON lines).
    """
    if args.log_level:
        log_level = args.log_level
    elif args.verbose:
        log_level = None
    else:
        log_level = config.logging.level

    # --json on snapshot/status formats their output, not the logs
    json_flag = getattr(args, "json", False) and args.command not in ("snapshot", "status")
    return log_level, bool(json_flag or config.logging.json)


def _api(config: Config) -> LapSyncAPI:
    return LapSyncAPI(
        config.client.server_url,
        timeout=config.client.request_timeout_seconds,
        max_retries=config.client.request_retries,
    )


def _agent(config: Config, listener: SyncListener | None = None) -> ClientSyncAgent:
    buffer = ReplayBuffer(config.client.replay_db_path)
    buffer.connect()
    return ClientSyncAgent(
        transport_factory=lambda: WebSocketTransport(
            config.client.websocket_url,
            open_timeout=config.client.resync_timeout_seconds,
        ),
        buffer=buffer,
        listener=listener,
        reconnect_backoff=config.client.reconnect_backoff_seconds,
        max_backoff=config.client.reconnect_max_backoff_seconds,
        max_reconnect_attempts=config.client.max_reconnect_attempts,
        resync_timeout=config.client.resync_timeout_seconds,
        min_uptime=config.client.min_uptime_seconds,
    )


def print_records(records: list[LapRecord]) -> None:
    """Print laps as a table with splits."""
    if not records:
        print("  No laps recorded")
        return

    print(f"  {'#':>4}  {'Elapsed':>12}  {'Split':>12}  Captured")
    for record, split in zip(records, lap_splits(records)):
        print(
            f"  {record.sequence_number:>4}  "
            f"{format_time_with_ms(record.elapsed_ms):>12}  "
            f"{format_time_with_ms(split):>12}  "
            f"{record.captured_at.strftime('%H:%M:%S')}"
        )


class ConsoleListener(SyncListener):
    """Prints the live view of the current session."""

    def on_snapshot(self, session_id, state, records):
        print(f"Session {session_id} ({state}), {len(records)} lap(s)")
        print_records(records)

    def on_record_appended(self, record):
        print(
            f"  {record.sequence_number:>4}  "
            f"{format_time_with_ms(record.elapsed_ms):>12}"
        )

    def on_session_cleared(self, session_id):
        print(f"Session {session_id} cleared")

    def on_session_started(self, session_id):
        print(f"Session {session_id} started")

    def on_connectivity_changed(self, is_connected):
        print("Connected" if is_connected else "Offline, laps will be buffered")

    def on_replay_discarded(self, warning: StaleReplayDiscarded):
        print(f"Warning: {warning}", file=sys.stderr)

    def on_record_rejected(self, client_record_id, reason):
        print(f"Lap {client_record_id} rejected ({reason})", file=sys.stderr)

    def on_gave_up(self, attempts):
        print(f"Server unreachable after {attempts} attempts", file=sys.stderr)


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the timing server."""
    config = load_config(args.config)

    import uvicorn

    from .hub import BroadcastHub
    from .ledger import RecordLedger
    from .server import create_app, install_log_buffer
    from .session import SessionController

    host = args.host or config.server.host
    port = args.port or config.server.port

    log_buffer = install_log_buffer(capacity=config.logging.buffer_size)

    ledger = RecordLedger(config.ledger.db_path)
    ledger.connect()
    hub = BroadcastHub(max_pending=config.hub.max_pending_events)
    controller = SessionController(
        ledger,
        hub,
        clear_retry_attempts=config.ledger.clear_retry_attempts,
        clear_retry_backoff=config.ledger.clear_retry_backoff_seconds,
    )

    bridge = None
    if config.mqtt.enabled:
        from .mqtt_bridge import MQTTEventBridge

        bridge = MQTTEventBridge(config.mqtt, hub)

    print("Starting lapsync server")
    print(f"Ledger: {ledger.db_path}")
    print(f"URL: http://{host}:{port} (live channel at /ws)")
    if bridge is not None:
        print(f"MQTT mirror: {config.mqtt.broker}:{config.mqtt.port} ({bridge.events_topic})")

    app = create_app(config, controller, log_buffer=log_buffer, bridge=bridge)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        ledger.close()

    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    """Follow the live session, replaying any buffered laps."""
    config = load_config(args.config)
    agent = _agent(config, ConsoleListener())

    print(f"Watching {config.client.websocket_url} (Ctrl-C to stop)")
    gave_up = False
    await agent.start()
    try:
        while not gave_up:
            await asyncio.sleep(0.5)
            gave_up = agent.state == AgentState.DISCONNECTED
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nStopping...")
    finally:
        await agent.stop()
        agent.buffer.close()

    return 1 if gave_up else 0


async def cmd_record(args: argparse.Namespace) -> int:
    """Record one or more laps through the sync agent.

    Laps that cannot be confirmed in time stay in the replay buffer and are
    replayed by the next ``record`` or ``watch`` run.
    """
    config = load_config(args.config)
    agent = _agent(config)

    await agent.start()
    try:
        ids = [await agent.submit_record(elapsed_ms) for elapsed_ms in args.elapsed_ms]

        confirmed = 0
        for client_record_id in ids:
            try:
                record = await agent.wait_for_record(client_record_id, timeout=args.timeout)
            except asyncio.TimeoutError:
                continue
            except StaleReplayDiscarded as e:
                print(f"Warning: {e}", file=sys.stderr)
                continue
            except LapSyncError as e:
                print(f"Lap {client_record_id} not recorded: {e}", file=sys.stderr)
                continue
            confirmed += 1
            print(
                f"Lap #{record.sequence_number}: "
                f"{format_time_with_ms(record.elapsed_ms)} ({record.session_id})"
            )

        pending = len(agent.buffer)
        if pending:
            print(f"{pending} lap(s) buffered for replay ({config.client.replay_db_path})")
    finally:
        await agent.stop()
        agent.buffer.close()

    return 0 if confirmed == len(ids) else 1


async def cmd_snapshot(args: argparse.Namespace) -> int:
    """Print the current session and its laps."""
    config = load_config(args.config)

    try:
        session, records = await _api(config).get_snapshot()
    except APIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({**session, "records": [r.to_dict() for r in records]}, indent=2))
        return 0

    print(f"Session {session['session_id']} ({session['state']})")
    if session.get("started_at"):
        print(f"Started: {session['started_at']}")
    print_records(records)
    return 0


async def cmd_reset(args: argparse.Namespace) -> int:
    """Clear every lap and start a new session."""
    config = load_config(args.config)

    if not args.yes:
        answer = input(f"Clear every lap on {config.client.server_url}? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted")
            return 1

    try:
        session = await _api(config).request_reset()
    except APIError as e:
        print(f"Reset failed: {e}", file=sys.stderr)
        return 1

    print(f"New session {session['session_id']}")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check server status."""
    config = load_config(args.config)
    api = _api(config)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "server_url": config.client.server_url,
        "reachable": False,
    }

    try:
        status_data["health"] = await api.health()
        status_data["stats"] = await api.get_stats()
        status_data["reachable"] = True
    except APIError as e:
        status_data["error"] = str(e)

    buffer = ReplayBuffer(config.client.replay_db_path)
    buffer.connect()
    try:
        status_data["pending_laps"] = len(buffer)
    finally:
        buffer.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0 if status_data["reachable"] else 1

    print("lapsync Status Check")
    print("====================")
    print(f"Server ({status_data['server_url']}):")
    if status_data["reachable"]:
        session = status_data["health"].get("session", {})
        stats = status_data["stats"]
        print("  Status: Reachable")
        print(f"  Session: {session.get('session_id')} ({session.get('state')})")
        print(f"  Laps: {stats.get('ledger', {}).get('record_count', 0)}")
        print(f"  Subscribers: {stats.get('subscribers', 0)}")
    else:
        print("  Status: Not reachable")
        print(f"  {status_data['error']}")

    print()
    print(f"Local replay buffer: {status_data['pending_laps']} lap(s) pending")

    return 0 if status_data["reachable"] else 1


async def cmd_logs(args: argparse.Namespace) -> int:
    """Show or clear recent server log lines."""
    config = load_config(args.config)
    api = _api(config)

    try:
        if args.clear:
            cleared = await api.clear_server_logs()
            print(f"Cleared {cleared} log line(s)")
            return 0
        logs = await api.get_server_logs(limit=args.limit)
    except APIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for entry in logs:
        print(f"{entry['timestamp']} - {entry['component']} - {entry['level']} - {entry['message']}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="lapsync",
        description="Live lap timing synchronization engine",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["error", "warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the timing server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 5000)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Follow the live session")
    watch_parser.set_defaults(func=cmd_watch)

    # Record command
    record_parser = subparsers.add_parser("record", help="Record laps")
    record_parser.add_argument(
        "elapsed_ms",
        type=int,
        nargs="+",
        help="Elapsed time of each lap in milliseconds",
    )
    record_parser.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="Seconds to wait for each lap to be confirmed (default: 5)",
    )
    record_parser.set_defaults(func=cmd_record)

    # Snapshot command
    snapshot_parser = subparsers.add_parser("snapshot", help="Show the current session")
    snapshot_parser.add_argument(
        "--json",
        action="store_true",
        help="Output snapshot as JSON",
    )
    snapshot_parser.set_defaults(func=cmd_snapshot)

    # Reset command
    reset_parser = subparsers.add_parser("reset", help="Clear all laps and start a new session")
    reset_parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Do not ask for confirmation",
    )
    reset_parser.set_defaults(func=cmd_reset)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Logs command
    logs_parser = subparsers.add_parser("logs", help="Show recent server logs")
    logs_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=None,
        help="Show only the last N lines",
    )
    logs_parser.add_argument(
        "--clear",
        action="store_true",
        help="Clear the server log buffer",
    )
    logs_parser.set_defaults(func=cmd_logs)

    args = parser.parse_args()

    log_level, json_logs = logging_options(args, load_config(args.config))
    setup_logging(args.verbose, log_level, json_logs)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())

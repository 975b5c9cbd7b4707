#!/usr/bin/env python3
"""Relay: scheduled news and research streams with real-time delivery.

This CLI runs the real-time server and scheduler, and offers one-shot
commands for operating streams without a connected client.

Commands:
    serve       Run the WebSocket/HTTP server and the scheduler loop
    tick        Run one scheduler tick and wait for its executions
    trigger     Run a stream now, outside its schedule
    create      Create a stream
    status      Show configuration and store statistics
    streams     List an owner's streams
    replay      Print a stream's messages after a sequence number

Examples:
    python main.py serve
    python main.py tick
    python main.py create --owner alice --title "Quantum computing" --frequency weekly --day monday --time 09:00
    python main.py trigger <stream-id>
    python main.py streams --owner alice --focus news
    python main.py replay <stream-id> --since 10

Environment:
    AUTH_TOKENS: token:owner pairs accepted by the server
    GEMINI_API_KEY: Enables the AI synthesizer (template synthesis otherwise)
    See config.py for all configuration options
"""

import argparse
import asyncio
import json
import logging
import sys

from config import Config
from database import Database
from observability.logging import setup_logging


def cmd_serve(args: argparse.Namespace, config: Config) -> int:
    """Run the server and scheduler until interrupted."""
    from runtime import Runtime

    if args.port:
        config.port = args.port

    logger = logging.getLogger(__name__)
    try:
        asyncio.run(Runtime(config).serve())
    except KeyboardInterrupt:
        logger.info("Stopped by user (Ctrl+C)")
        return 130
    return 0


def cmd_tick(args: argparse.Namespace, config: Config) -> int:
    """Run one tick, execute everything it queued and record the outcomes.

    Returns:
        Exit code (0 for success)
    """
    from runtime import Runtime

    async def run_tick() -> dict:
        runtime = Runtime(config)
        try:
            runtime.scheduler.recover()
            runtime.workers.start()
            created = await runtime.scheduler.tick()
            recorded = await runtime.run_pending()
            await runtime.workers.stop()
            executions = [runtime.db.get_execution(execution.id) for execution in created]
            return {
                "queued": len(created),
                "recorded": recorded,
                "executions": [
                    {"id": e.id, "stream_id": e.stream_id, "status": e.status.value, "error": e.error}
                    for e in executions if e is not None
                ],
            }
        finally:
            runtime.db.close()

    result = asyncio.run(run_tick())
    print(json.dumps(result, indent=2))
    return 0


def cmd_trigger(args: argparse.Namespace, config: Config) -> int:
    """Run one stream immediately and wait for it to finish."""
    from runtime import Runtime

    async def run_trigger() -> dict:
        runtime = Runtime(config)
        try:
            runtime.workers.start()
            execution = await runtime.scheduler.manual_trigger(args.stream_id)
            await runtime.run_pending()
            await runtime.workers.stop()
            finished = runtime.db.get_execution(execution.id) or execution
            return {
                "id": finished.id,
                "status": finished.status.value,
                "sources_analyzed": finished.sources_analyzed,
                "insights_found": finished.insights_found,
                "error": finished.error,
            }
        finally:
            runtime.db.close()

    result = asyncio.run(run_trigger())
    print(json.dumps(result, indent=2))
    return 0 if result["status"] == "completed" else 1


def cmd_create(args: argparse.Namespace, config: Config) -> int:
    """Create a stream, optionally scheduled."""
    from models.stream import FocusType, ScheduleSpec
    from runtime import Runtime

    schedule = None
    if args.frequency:
        schedule = ScheduleSpec.model_validate({
            "frequency": args.frequency,
            "dayOfWeek": args.day,
            "time": args.time,
            "timezone": args.timezone,
            "dayOfMonth": args.day_of_month,
        })

    runtime = Runtime(config)
    try:
        stream = runtime.scheduler.create_stream(
            owner=args.owner,
            title=args.title,
            description=args.description or "",
            focus_type=FocusType(args.focus),
            schedule=schedule,
        )
    finally:
        runtime.db.close()

    print(json.dumps(stream.to_wire(), indent=2))
    return 0


def cmd_status(args: argparse.Namespace, config: Config) -> int:
    """Display configuration and store statistics.

    Args:
        args: Parsed command line arguments
        config: Application configuration

    Returns:
        Exit code (0 for success)
    """
    with Database(config.db_path) as db:
        db_stats = db.stats()

    status = {
        "config": {
            "host": config.host,
            "port": config.port,
            "auth_tokens": len(config.auth_tokens),
            "tick_interval": config.tick_interval_seconds,
            "max_workers": config.max_workers,
            "stage_timeout": config.stage_timeout_seconds,
            "stage_retry_budget": config.stage_retry_budget,
            "scheduler_max_retries": config.scheduler_max_retries,
            "synthesizer": config.synthesis_model if config.gemini_api_key else "template",
            "language": config.language,
            "enable_logfire": config.enable_logfire,
        },
        "database": {"path": str(config.db_path), **db_stats},
    }

    print(json.dumps(status, indent=2))
    return 0


def cmd_streams(args: argparse.Namespace, config: Config) -> int:
    """List an owner's streams."""
    from models.stream import FocusType

    focus = FocusType(args.focus) if args.focus else None
    with Database(config.db_path) as db:
        streams = db.list_streams(args.owner, focus)

    if not streams:
        print(f"No streams for {args.owner}.")
        return 0

    for stream in streams:
        state = "active" if stream.is_active else "paused"
        next_run = stream.next_run.strftime("%Y-%m-%d %H:%M UTC") if stream.next_run else "-"
        print(f"{stream.id}  [{stream.focus_type.value}] {stream.title}")
        print(f"   State: {state}  Next run: {next_run}  Failures: {stream.consecutive_failures}")
        print(f"   Sources: {stream.sources_count}  Insights: {stream.insights_count}")
        print()
    return 0


def cmd_replay(args: argparse.Namespace, config: Config) -> int:
    """Print messages after a sequence number as JSON lines."""
    with Database(config.db_path) as db:
        db.require_stream(args.stream_id)
        messages = db.messages_since(args.stream_id, args.since, limit=args.limit or None)

    for message in messages:
        print(json.dumps(message.to_wire(), ensure_ascii=False))
    return 0


def main() -> int:
    """Main entry point.

    Returns:
        Exit code
    """
    parser = argparse.ArgumentParser(
        description="Relay: scheduled news and research streams",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the server and scheduler")
    serve_parser.add_argument(
        "--port",
        type=int,
        help="Listen port (default: config PORT)",
    )

    # tick command
    subparsers.add_parser("tick", help="Run one scheduler tick to completion")

    # trigger command
    trigger_parser = subparsers.add_parser("trigger", help="Run a stream now")
    trigger_parser.add_argument("stream_id", help="Stream id")

    # create command
    create_parser = subparsers.add_parser("create", help="Create a stream")
    create_parser.add_argument("--owner", required=True, help="Owner id")
    create_parser.add_argument("--title", required=True, help="Stream topic")
    create_parser.add_argument("--description", help="Longer description")
    create_parser.add_argument(
        "--focus",
        choices=["news", "research"],
        default="research",
        help="Focus type (default: research)",
    )
    create_parser.add_argument(
        "--frequency",
        choices=["daily", "weekly", "bi-weekly", "monthly"],
        help="Schedule frequency (omit for an unscheduled stream)",
    )
    create_parser.add_argument("--day", help="Day of week for weekly/bi-weekly schedules")
    create_parser.add_argument("--time", default="09:00", help="Local time HH:MM (default: 09:00)")
    create_parser.add_argument("--timezone", default="UTC", help="IANA timezone (default: UTC)")
    create_parser.add_argument("--day-of-month", type=int, help="Day of month for monthly schedules")

    # status command
    subparsers.add_parser("status", help="Show configuration and statistics")

    # streams command
    streams_parser = subparsers.add_parser("streams", help="List streams")
    streams_parser.add_argument("--owner", required=True, help="Owner id")
    streams_parser.add_argument(
        "--focus",
        choices=["news", "research"],
        help="Only streams with this focus",
    )

    # replay command
    replay_parser = subparsers.add_parser("replay", help="Print stream messages")
    replay_parser.add_argument("stream_id", help="Stream id")
    replay_parser.add_argument(
        "--since",
        type=int,
        default=0,
        help="Print messages with seq greater than this (default: 0)",
    )
    replay_parser.add_argument(
        "--limit",
        type=int,
        default=0,
        help="Max messages to print (0 = unlimited)",
    )

    args = parser.parse_args()

    # Load configuration
    try:
        config = Config.load()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    # Setup logging
    setup_logging(config, verbose=args.verbose)

    # Validate configuration for commands that run executions
    if args.command in ("serve", "tick", "trigger"):
        error = config.validate()
        if error:
            print(f"Configuration error: {error}", file=sys.stderr)
            return 1

    # Route to command handler
    commands = {
        "serve": cmd_serve,
        "tick": cmd_tick,
        "trigger": cmd_trigger,
        "create": cmd_create,
        "status": cmd_status,
        "streams": cmd_streams,
        "replay": cmd_replay,
    }

    if args.command in commands:
        try:
            return commands[args.command](args, config)
        except Exception as e:
            logging.getLogger(__name__).error("Command failed | cmd=%s error=%s", args.command, e, exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())

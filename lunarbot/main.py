"""Main entry point with CLI."""
import argparse
import asyncio
import getpass
import logging
import sys

import orjson

from lunarbot.auth.vault import CredentialVault
from lunarbot.config import Config, config
from lunarbot.jobs.supervisor import METRICS_FILE
from lunarbot.logging_conf import setup_logging
from lunarbot.runtime import Runtime
from lunarbot.store.db import Database

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="LunarBot purchase automation")
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Log level (default: {config.LOG_LEVEL})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run worker pools, monitoring and the bot supervisor")
    run.add_argument("--no-scan", action="store_true", help="Do not start the batch scan loop")
    run.add_argument(
        "--no-schedule-all",
        action="store_true",
        help="Do not schedule per-item monitoring for watchlist items",
    )
    run.add_argument("--no-supervise", action="store_true", help="Do not run the bot supervisor")
    run.add_argument(
        "--task-concurrency",
        type=int,
        default=None,
        help=f"Task worker pool size (default: {config.TASK_CONCURRENCY})",
    )
    run.add_argument(
        "--monitor-concurrency",
        type=int,
        default=None,
        help=f"Monitoring worker pool size (default: {config.MONITOR_CONCURRENCY})",
    )

    api = sub.add_parser("api", help="Serve the control API")
    api.add_argument("--host", default="0.0.0.0")
    api.add_argument("--port", type=int, default=8000)

    sub.add_parser("scan-once", help="Check every active product once, run spawned tasks, exit")
    sub.add_parser("metrics", help="Print task counts and the last exported metrics snapshot")
    sub.add_parser("encrypt", help="Encrypt a store credential read from stdin")

    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    runtime = Runtime.from_config()
    await runtime.initialize()
    await runtime.start(
        scan=not args.no_scan,
        schedule_all=not args.no_schedule_all,
        supervise=not args.no_supervise,
    )
    logger.info("LunarBot running, press Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        await runtime.stop()


async def _scan_once() -> None:
    runtime = Runtime.from_config()
    await runtime.initialize()
    await runtime.start(scan=False, schedule_all=False, supervise=False, recover=False)
    try:
        stats = await runtime.monitor.check_all_products()
        await runtime.task_queue.join()
        logger.info(f"Scan stats: {stats}")
    finally:
        await runtime.stop()


async def _metrics() -> None:
    db = Database()
    await db.initialize()
    output = {"tasks": await db.task_stats(), "last_snapshot": None}
    if METRICS_FILE.exists():
        lines = METRICS_FILE.read_bytes().splitlines()
        if lines:
            output["last_snapshot"] = orjson.loads(lines[-1])
    print(orjson.dumps(output, option=orjson.OPT_INDENT_2).decode())


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "metrics":
        asyncio.run(_metrics())
        return

    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if args.command == "encrypt":
        secret = getpass.getpass("Value to encrypt: ") if sys.stdin.isatty() else sys.stdin.readline().rstrip("\n")
        print(CredentialVault().encrypt(secret))
        return

    if args.command == "api":
        import uvicorn

        uvicorn.run("lunarbot.api.main:app", host=args.host, port=args.port)
        return

    if args.command == "run":
        if args.task_concurrency:
            config.TASK_CONCURRENCY = args.task_concurrency
        if args.monitor_concurrency:
            config.MONITOR_CONCURRENCY = args.monitor_concurrency

    logger.info("=" * 60)
    logger.info(f"LunarBot {args.command}")
    logger.info(f"Task concurrency: {config.TASK_CONCURRENCY}")
    logger.info(f"Monitor concurrency: {config.MONITOR_CONCURRENCY}")
    logger.info(f"Monitor interval: {config.MONITOR_INTERVAL_MINUTES} min")
    logger.info(f"Scan interval: {config.SCAN_INTERVAL_MINUTES} min")
    logger.info("=" * 60)

    try:
        if args.command == "run":
            asyncio.run(_run(args))
        elif args.command == "scan-once":
            asyncio.run(_scan_once())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

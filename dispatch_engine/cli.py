"""
Command-line entry point.

Usage:
    dispatch-engine run records.jsonl --endpoint https://api.example.com/ingest
    dispatch-engine run records.jsonl --endpoint URL --deadline 600 --decoupled --ordered

Configuration comes from the environment (see Settings); flags override it.
The summary is printed to stdout as JSON, logs go to stderr.
"""

import argparse
import asyncio
import signal
import sys
from enum import Enum
from pathlib import Path

import orjson

from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.exceptions import ConfigurationError
from dispatch_engine.core.logging.logger import get_logger, setup_logging
from dispatch_engine.engine.aggregator import OutcomeSummary
from dispatch_engine.engine.dispatch_engine import DispatchEngine
from dispatch_engine.infrastructure.sources.jsonl_source import JsonLinesSource
from dispatch_engine.infrastructure.transports.http_transport import HttpTransport

logger = get_logger(__name__)


class ExitCode(Enum):
    """Standardized exit codes."""

    SUCCESS = 0
    RECORDS_FAILED = 1
    CONFIGURATION_ERROR = 2
    CANCELLED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="dispatch-engine",
        description="Bounded-concurrency record dispatcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run records.jsonl --endpoint http://localhost:8080/ingest
  %(prog)s run records.jsonl --endpoint URL --concurrency-cap 20 --max-retries 5
  %(prog)s run records.jsonl --endpoint URL --decoupled --ordered --batch-size 25
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Dispatch every record of a JSON-lines file")
    run.add_argument("source", metavar="SOURCE", help="Path to a JSON-lines file")
    run.add_argument("--endpoint", required=True, metavar="URL", help="HTTP endpoint receiving the payloads")
    run.add_argument("--deadline", type=float, metavar="SECONDS", help="Cancel the run after this many seconds")
    run.add_argument("--timeout", type=float, default=30.0, metavar="SECONDS", help="Per-request timeout (default: 30)")
    run.add_argument("--concurrency-cap", type=int, metavar="N", help="Maximum invocations in flight")
    run.add_argument("--max-retries", type=int, metavar="N", help="Maximum attempts per record")
    run.add_argument("--decoupled", action="store_true", help="Route records through the backpressure buffer")
    run.add_argument("--ordered", action="store_true", help="Deliver records in source order (implies --decoupled)")
    run.add_argument("--batch-size", type=int, metavar="N", help="Records per batch in decoupling mode")
    run.add_argument("--include-outcomes", action="store_true", help="Add per-record outcomes to the summary")
    run.add_argument("--log-level", metavar="LEVEL", help="Override LOG_LEVEL")
    run.add_argument("--log-format", choices=["json", "console"], help="Override LOG_FORMAT")

    return parser


def build_config(args: argparse.Namespace) -> DispatchConfig:
    overrides = {}
    if args.concurrency_cap is not None:
        overrides["concurrency_cap"] = args.concurrency_cap
    if args.max_retries is not None:
        overrides["max_retries"] = args.max_retries
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if args.decoupled or args.ordered:
        overrides["decoupling_enabled"] = True
    if args.ordered:
        overrides["ordering_required"] = True
    if args.include_outcomes:
        overrides["keep_record_outcomes"] = True

    config = DispatchConfig.from_settings()
    return config.with_overrides(**overrides) if overrides else config


async def run_dispatch(args: argparse.Namespace, config: DispatchConfig) -> OutcomeSummary:
    async with HttpTransport(
        args.endpoint,
        timeout=args.timeout,
        max_connections=max(config.concurrency_cap, 1),
    ) as transport:
        engine = DispatchEngine(transport, config)

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, engine.cancel)
            loop.add_signal_handler(signal.SIGTERM, engine.cancel)
        except NotImplementedError:
            # Windows event loops; Ctrl-C then aborts without a summary
            pass

        try:
            return await engine.run(JsonLinesSource(args.source), deadline=args.deadline)
        finally:
            await engine.close()


def exit_code_for(summary: OutcomeSummary) -> ExitCode:
    if summary.cancelled_run:
        return ExitCode.CANCELLED
    if summary.failed or summary.source_error:
        return ExitCode.RECORDS_FAILED
    return ExitCode.SUCCESS


def main(argv: list[str] | None = None) -> int:
    """Application entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_format, stream=sys.stderr)

    if not Path(args.source).is_file():
        logger.error("Source file not found", path=args.source)
        return ExitCode.CONFIGURATION_ERROR.value

    try:
        config = build_config(args)
        summary = asyncio.run(run_dispatch(args, config))
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=e.message, details=e.details)
        return ExitCode.CONFIGURATION_ERROR.value

    sys.stdout.write(
        orjson.dumps(
            summary.to_dict(include_outcomes=args.include_outcomes),
            option=orjson.OPT_INDENT_2,
        ).decode("utf-8")
        + "\n"
    )
    return exit_code_for(summary).value


if __name__ == "__main__":
    sys.exit(main())

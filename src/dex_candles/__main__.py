"""Command line entry point.

Usage:
    python -m dex_candles run
    python -m dex_candles refresh 0xee7d... --timeframe 1h
    python -m dex_candles gaps 0xee7d... --fix
    python -m dex_candles append-history 0xee7d... --batches 3
    python -m dex_candles clear 0xee7d... --purge
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys
from typing import Any

from dex_candles.candles import TIMEFRAMES
from dex_candles.config import Settings, get_settings
from dex_candles.errors import CandleServiceError
from dex_candles.pipeline import CandlePipeline

logger = logging.getLogger("dex_candles")


def _print_json(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run(settings: Settings) -> None:
    pipeline = CandlePipeline(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.request_stop)
        except NotImplementedError:
            pass
    await pipeline.run()


async def _refresh(settings: Settings, args: argparse.Namespace) -> None:
    async with CandlePipeline(settings, scheduler_enabled=False) as pipeline:
        response = await pipeline.service.get_series(
            args.token,
            days=args.days,
            timeframe=args.timeframe,
            force=args.force,
        )
    data = response.to_dict()
    for key in ("candles", "swaps"):
        if key in data:
            data[f"{key}Total"] = len(data[key])
            # Candles are oldest first, swaps newest first; show the latest either way.
            data[key] = data[key][-args.limit :] if key == "candles" else data[key][: args.limit]
    _print_json(data)


async def _gaps(settings: Settings, args: argparse.Namespace) -> None:
    async with CandlePipeline(settings, scheduler_enabled=False) as pipeline:
        if args.fix or args.dry_run:
            report = await pipeline.service.fix_gaps(args.token, dry_run=args.dry_run)
        else:
            report = await pipeline.service.detect_gaps(args.token)
    _print_json(report.to_dict())


async def _append_history(settings: Settings, args: argparse.Namespace) -> None:
    async with CandlePipeline(settings, scheduler_enabled=False) as pipeline:
        result = await pipeline.service.append_historical(args.token, args.batches)
    _print_json(dataclasses.asdict(result))


async def _clear(settings: Settings, args: argparse.Namespace) -> None:
    async with CandlePipeline(settings, scheduler_enabled=False) as pipeline:
        result = await pipeline.service.clear_cache(args.token, purge_durable=args.purge)
    _print_json(dataclasses.asdict(result))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dex_candles", description="DEX swap ingestion and OHLC candles")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the maintenance scheduler until interrupted")

    refresh = sub.add_parser("refresh", help="Fetch (if due) and print a token's series")
    refresh.add_argument("token", help="Token address")
    refresh.add_argument("--days", "-d", type=int, default=365, help="Days of history to return (1-365)")
    refresh.add_argument("--timeframe", "-t", choices=sorted(TIMEFRAMES), help="Return candles at this timeframe")
    refresh.add_argument("--force", "-f", action="store_true", help="Refresh even inside the refresh interval")
    refresh.add_argument("--limit", type=int, default=20, help="Items to print")

    gaps = sub.add_parser("gaps", help="Detect (and optionally fix) gaps in 5m candles")
    gaps.add_argument("token", help="Token address")
    gaps.add_argument("--fix", action="store_true", help="Backfill detected gaps")
    gaps.add_argument("--dry-run", action="store_true", help="Report what a fix would do")

    append = sub.add_parser("append-history", help="Extend durable swap history backwards")
    append.add_argument("token", help="Token address")
    append.add_argument("--batches", "-b", type=int, default=1, help="Number of batches (1-5)")

    clear = sub.add_parser("clear", help="Clear a token's cached series")
    clear.add_argument("token", help="Token address")
    clear.add_argument("--purge", action="store_true", help="Also delete durable rows")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    settings.validate_requirements(command=args.command)
    logger.debug("Settings: %s", settings.redacted_summary())

    handlers = {
        "refresh": _refresh,
        "gaps": _gaps,
        "append-history": _append_history,
        "clear": _clear,
    }
    try:
        if args.command == "run":
            asyncio.run(_run(settings))
        else:
            asyncio.run(handlers[args.command](settings, args))
    except CandleServiceError as e:
        logger.error("%s failed (%d): %s", args.command, e.http_status, e)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())

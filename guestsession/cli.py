"""CLI entrypoints for guest session operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

from guestsession.config import configure_structlog, get_settings
from guestsession.dependencies import get_rate_limiter, get_redis_client, get_session_service


async def _run_cleanup() -> int:
    """Sweep expired sessions once."""
    service = get_session_service()
    try:
        removed = await service.clean_expired_sessions()
    finally:
        await get_redis_client().aclose()
    print(json.dumps({"removed": removed}))
    return 0


async def _run_stats(store_id: str | None) -> int:
    """Print session counters, optionally for one store."""
    service = get_session_service()
    try:
        stats = await service.get_session_stats(store_id)
    finally:
        await get_redis_client().aclose()
    print(json.dumps({"store_id": store_id, **stats.model_dump(mode="json")}))
    return 0


async def _run_unblock(identifier: str, operation_class: str) -> int:
    """Lift a rate limiter block."""
    try:
        await get_rate_limiter().unblock(identifier, operation_class)
    finally:
        await get_redis_client().aclose()
    print(json.dumps({"identifier": identifier, "operation_class": operation_class}))
    return 0


async def _run_rate_limit_stats(operation_class: str | None) -> int:
    """Print attempt and block counters."""
    try:
        statistics = await get_rate_limiter().get_statistics(operation_class)
    finally:
        await get_redis_client().aclose()
    print(json.dumps({"operation_class": operation_class, **statistics.model_dump(mode="json")}))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m guestsession.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)

    subcommands.add_parser("cleanup")

    stats_parser = subcommands.add_parser("stats")
    stats_parser.add_argument("--store-id", default=None, help="Limit counters to one store.")

    unblock_parser = subcommands.add_parser("unblock")
    unblock_parser.add_argument("identifier")
    unblock_parser.add_argument("operation_class")

    rate_stats_parser = subcommands.add_parser("rate-limit-stats")
    rate_stats_parser.add_argument(
        "--operation-class",
        default=None,
        help="Limit counters to one operation class.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_structlog(get_settings())
    if args.command == "cleanup":
        return asyncio.run(_run_cleanup())
    if args.command == "stats":
        return asyncio.run(_run_stats(store_id=args.store_id))
    if args.command == "unblock":
        return asyncio.run(_run_unblock(args.identifier, args.operation_class))
    if args.command == "rate-limit-stats":
        return asyncio.run(_run_rate_limit_stats(operation_class=args.operation_class))
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())

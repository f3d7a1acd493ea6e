#!/usr/bin/env python3
"""stowage CLI - inspect and maintain configured caches."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .cache.errors import CacheError
from .cache.registry import CacheRegistry
from .commands.cache import clear_cache, list_keys, show_stats, show_value
from .config.settings import load_cache_config, setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="stowage cache administration")
    parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, OFF, ...)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    keys_parser = subparsers.add_parser("keys", help="List live keys of a cache")
    keys_parser.add_argument("name", help="Cache name")

    get_parser = subparsers.add_parser("get", help="Show a cached value")
    get_parser.add_argument("name", help="Cache name")
    get_parser.add_argument("key", help="Cache key")

    clear_parser = subparsers.add_parser("clear", help="Remove every entry of a cache")
    clear_parser.add_argument("name", help="Cache name")

    stats_parser = subparsers.add_parser("stats", help="Show cache statistics")
    stats_parser.add_argument("name", nargs="?", default=None, help="Cache name (all if omitted)")

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    if args.command is None:
        parser.print_help()
        return 1

    try:
        registry = CacheRegistry(load_cache_config())
        await registry.initialize()
    except CacheError as e:
        print(f"❌ Cache setup failed: {e}")
        return 1

    try:
        if args.command == "keys":
            return await list_keys(registry, args.name)
        if args.command == "get":
            return await show_value(registry, args.name, args.key)
        if args.command == "clear":
            return await clear_cache(registry, args.name)
        if args.command == "stats":
            return await show_stats(registry, args.name)
        return 1
    finally:
        await registry.close()


def app() -> None:
    """Entry point for the CLI application."""
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)


if __name__ == "__main__":
    app()

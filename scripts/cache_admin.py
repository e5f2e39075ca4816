#!/usr/bin/env python3
"""
Operator CLI for the site cache.

Runs the same CacheService the HTTP service uses against the backing store
named by SITECACHE_* settings (or --redis-url), for debugging from a
workstation or a CI job.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from service_cache.app.caching.cache_service import CacheService
from shared.config import get_config
from shared.logging import configure_logging


async def run(args: argparse.Namespace) -> Dict[str, Any]:
    """Execute one admin command and return its summary."""
    overrides = {}
    if args.redis_url is not None:
        overrides["redis_url"] = args.redis_url
    if args.backend is not None:
        overrides["cache_backend"] = args.backend
    config = get_config("cache-admin", 0, **overrides)

    cache = CacheService.from_config(config)
    try:
        await cache.start()
        return await _dispatch(cache, args)
    finally:
        await cache.close()


async def _dispatch(cache: CacheService, args: argparse.Namespace) -> Dict[str, Any]:
    command = args.command
    if command == "get":
        value = await cache.get(args.key)
        return {"key": args.key, "value": value, "exists": value is not None}
    if command == "set":
        value = _parse_value(args.value)
        return {"key": args.key, "success": await cache.set(args.key, value, args.ttl), "ttl": args.ttl}
    if command == "delete":
        return {"key": args.key, "success": await cache.delete(args.key)}
    if command == "invalidate":
        return {"pattern": args.pattern, "deleted_count": await cache.invalidate_pattern(args.pattern)}
    if command == "invalidate-entity":
        result = await cache.invalidate_related_with_report(args.entity_type, args.entity_id)
        return {
            "entity_type": result.entity_type,
            "entity_id": result.entity_id,
            "invalidated_count": result.deleted,
            "failed_patterns": result.failed_patterns,
        }
    if command == "flush":
        return {"success": await cache.flush_all()}
    if command == "stats":
        return await cache.stats()
    raise ValueError(f"Unknown command: {command}")


def _parse_value(raw: str) -> Any:
    """Values are JSON when they parse as JSON, plain strings otherwise."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and invalidate the site cache.")
    parser.add_argument("--redis-url", default=os.getenv("SITECACHE_REDIS_URL"), help="Redis connection URL")
    parser.add_argument("--backend", choices=["redis", "memory", "none"], default=None, help="Override the configured backend")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    parser.add_argument("--verbose", action="store_true", help="Emit cache logs on stdout")

    commands = parser.add_subparsers(dest="command", required=True)

    get_cmd = commands.add_parser("get", help="Read a raw key")
    get_cmd.add_argument("key")

    set_cmd = commands.add_parser("set", help="Write a raw key")
    set_cmd.add_argument("key")
    set_cmd.add_argument("value", help="JSON value (bare strings are stored as-is)")
    set_cmd.add_argument("--ttl", type=int, default=3600, help="Time to live in seconds")

    delete_cmd = commands.add_parser("delete", help="Delete a raw key")
    delete_cmd.add_argument("key")

    invalidate_cmd = commands.add_parser("invalidate", help="Delete every key matching a glob pattern")
    invalidate_cmd.add_argument("pattern")

    entity_cmd = commands.add_parser("invalidate-entity", help="Fan-out invalidation for an entity change")
    entity_cmd.add_argument("entity_type")
    entity_cmd.add_argument("entity_id", nargs="?", default=None)

    commands.add_parser("flush", help="Flush the backing store")
    commands.add_parser("stats", help="Key counts and hit rates")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging("cache-admin", "debug" if args.verbose else "error")
    try:
        summary = asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-admin] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2, default=str))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2, default=str))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

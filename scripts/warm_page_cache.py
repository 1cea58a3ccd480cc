#!/usr/bin/env python3
"""
Preheat page artifacts and fragments for the most requested paths.

This helper mirrors the cache service warm endpoint but can be executed
manually from a developer workstation or CI job after a deploy. It loads the
curated hot path list (or explicit --paths) and issues synthetic GET requests
against a running application.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import List, Optional
import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from service_cache.app.caching.hot_path_loader import HotPathLoader  # noqa: E402
from service_cache.app.caching.warmer import CacheWarmer  # noqa: E402


async def warm(
    *,
    base_url: str,
    paths: Optional[List[str]],
    hot_paths_path: Optional[Path],
    concurrency: int,
    dry_run: bool,
) -> dict:
    """Execute cache warming and return the summary."""
    warmer = CacheWarmer(
        base_url,
        concurrency=concurrency,
        hot_paths=HotPathLoader(hot_paths_path),
    )
    return await warmer.warm(paths or None, dry_run=dry_run)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm page and fragment caches for hot paths.")
    parser.add_argument("--base-url", default=os.getenv("ACCESS_CACHE_WARM_BASE_URL") or "http://localhost:8020", help="Application base URL")
    parser.add_argument("--paths", nargs="*", default=None, help="Explicit paths to warm (overrides the hot path file)")
    parser.add_argument("--hot-paths-file", type=Path, default=os.getenv("ACCESS_HOT_PATHS_FILE"), help="Path to hot paths JSON override")
    parser.add_argument("--concurrency", type=int, default=int(os.getenv("ACCESS_CACHE_WARM_CONCURRENCY", 5)), help="Concurrent warm requests")
    parser.add_argument("--dry-run", action="store_true", help="Do not issue requests; print planned paths")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        summary = asyncio.run(
            warm(
                base_url=args.base_url,
                paths=args.paths,
                hot_paths_path=args.hot_paths_file,
                concurrency=args.concurrency,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-warm] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[cache-warm] DRY RUN - no requests issued")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0 if not summary["failed"] else 2


if __name__ == "__main__":
    raise SystemExit(main())

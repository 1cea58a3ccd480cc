"""
Cache preheating through synthetic requests.
"""

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional

import httpx

from shared.logging import get_logger

from .hot_path_loader import HotPathLoader


WARM_HEADER = "X-Cache-Warm"


class CacheWarmer:
    """Issues GET requests for path keys so fragments and pages are populated ahead of load."""

    def __init__(
        self,
        base_url: str,
        *,
        concurrency: int = 5,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        hot_paths: Optional[HotPathLoader] = None,
        metrics=None,
    ):
        self.base_url = base_url
        self.concurrency = max(1, concurrency)
        self.timeout = timeout
        self.transport = transport
        self.hot_paths = hot_paths
        self.metrics = metrics
        self.logger = get_logger("cache.warmer")

    async def warm(self, paths: Optional[Iterable[str]] = None, *, dry_run: bool = False) -> Dict[str, Any]:
        """Request every path once; per-path failures are reported, not raised."""
        targets = self._resolve_paths(paths)
        summary: Dict[str, Any] = {
            "requested": len(targets),
            "warmed": [],
            "failed": {},
            "planned": list(targets),
            "dry_run": dry_run,
        }
        if dry_run or not targets:
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)
        start = time.time()

        async with httpx.AsyncClient(
            base_url=self.base_url,
            transport=self.transport,
            timeout=self.timeout,
            headers={WARM_HEADER: "1"},
        ) as client:

            async def _warm_one(path: str):
                async with semaphore:
                    try:
                        response = await client.get(path)
                    except httpx.HTTPError as e:
                        return path, None, str(e) or type(e).__name__
                    return path, response.status_code, None

            results = await asyncio.gather(*(_warm_one(path) for path in targets))

        for path, status_code, error in results:
            if error is None and status_code is not None and status_code < 400:
                summary["warmed"].append(path)
            else:
                summary["failed"][path] = error or f"HTTP {status_code}"

        summary["duration_ms"] = round((time.time() - start) * 1000, 2)
        if self.metrics:
            for _ in summary["failed"]:
                self.metrics.record_error("cache_warm")

        self.logger.info(
            "Cache warm completed",
            requested=summary["requested"],
            warmed=len(summary["warmed"]),
            failed=len(summary["failed"]),
        )
        return summary

    def _resolve_paths(self, paths: Optional[Iterable[str]]) -> List[str]:
        if paths is None:
            if self.hot_paths is None:
                return []
            paths = self.hot_paths.paths()

        resolved: List[str] = []
        for path in paths:
            candidate = str(path).strip()
            if not candidate:
                continue
            if not candidate.startswith("/"):
                candidate = f"/{candidate}"
            if candidate not in resolved:
                resolved.append(candidate)
        return resolved

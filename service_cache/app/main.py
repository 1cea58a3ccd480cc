"""
Cache service for the Access Layer.

Hosts the cache tiers (fragment store, conditional GET, page artifacts) and
the administrative surface used by operators and mutation hooks.
"""

from typing import Any, Dict, List, Optional

import httpx
from fastapi import Request, Response
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ValidationError

from .caching.backends import create_backend
from .caching.cache_manager import CachedResponse, CacheManager
from .caching.conditional import CachePolicy, ConditionalResponseEvaluator
from .caching.dependency_graph import DependencyGraph, InvalidationPropagator, VersionRegistry
from .caching.fragment_store import FragmentCacheStore
from .caching.hot_path_loader import HotPathLoader
from .caching.keys import CacheKeyGenerator
from .caching.page_cache import PageCacheMaterializer
from .caching.warmer import WARM_HEADER, CacheWarmer


ADMIN_PREFIXES = ("/admin", "/health", "/metrics", "/docs", "/redoc", "/openapi.json")


class PrefixRequest(BaseModel):
    prefix: str = Field(min_length=1)


class PageInvalidationRequest(BaseModel):
    path: Optional[str] = None
    prefix: Optional[str] = None


class DependencyRequest(BaseModel):
    dependent: str = Field(min_length=1)
    dependency: str = Field(min_length=1)


class TouchRequest(BaseModel):
    identity: str = Field(min_length=1)
    also: List[str] = Field(default_factory=list)
    delete: bool = False


class WarmRequest(BaseModel):
    paths: Optional[List[str]] = None
    dry_run: bool = False


class CacheService(BaseService):
    """Cache service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("cache", 8020, config=config)

        self.backend = create_backend(self.config)
        self.fragments = FragmentCacheStore(
            self.backend,
            default_ttl=self.config.cache_default_ttl,
            timeout=self.config.cache_operation_timeout,
            metrics=self.metrics,
        )
        self.versions = VersionRegistry()
        self.graph = DependencyGraph()
        self.propagator = InvalidationPropagator(
            self.graph,
            self.versions,
            max_depth=self.config.cache_max_propagation_depth,
            metrics=self.metrics,
        )
        self.pages = PageCacheMaterializer(
            self.config.page_cache_root,
            extension=self.config.page_cache_extension,
            compress=self.config.page_cache_compress,
            metrics=self.metrics,
        )
        self.evaluator = ConditionalResponseEvaluator(
            CachePolicy(
                public=self.config.conditional_public,
                max_age=self.config.conditional_max_age,
                must_revalidate=self.config.conditional_must_revalidate,
            ),
            metrics=self.metrics,
        )
        self.cache_manager = CacheManager(
            self.fragments,
            keys=CacheKeyGenerator(self.config.cache_namespace, versions=self.versions),
            graph=self.graph,
            propagator=self.propagator,
            evaluator=self.evaluator,
            pages=self.pages,
            metrics=self.metrics,
        )
        self.hot_paths = HotPathLoader(self.config.hot_paths_file)
        self.warmer = self._create_warmer()

        self._setup_cache_routes()

        self.app.state.cache_service = self

    def _create_warmer(self) -> CacheWarmer:
        if self.config.cache_warm_base_url:
            return CacheWarmer(
                self.config.cache_warm_base_url,
                concurrency=self.config.cache_warm_concurrency,
                hot_paths=self.hot_paths,
                metrics=self.metrics,
            )
        return CacheWarmer(
            "http://cache.internal",
            concurrency=self.config.cache_warm_concurrency,
            transport=httpx.ASGITransport(app=self.app),
            hot_paths=self.hot_paths,
            metrics=self.metrics,
        )

    async def shutdown(self):
        await self.cache_manager.close()
        self.logger.info("Cache service stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "fragment_store": "ok" if await self.fragments.ping() else "unavailable",
            "page_cache": "ok" if self._page_root_writable() else "unavailable",
        }

    def _page_root_writable(self) -> bool:
        try:
            self.pages.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return self.pages.root.is_dir()

    def to_response(self, cached: CachedResponse, media_type: str = "text/html") -> Response:
        """Turn a cache manager outcome into an HTTP response."""
        if cached.not_modified:
            return Response(status_code=304, headers=cached.headers)
        response = Response(content=cached.body, status_code=cached.status_code, media_type=media_type, headers=cached.headers)
        if cached.materialized:
            response.headers["X-Page-Cache"] = "stored"
        return response

    def _setup_middleware(self):
        # Registered first so request timing stays the outermost layer
        self._setup_page_cache_middleware()
        super()._setup_middleware()

    def _setup_page_cache_middleware(self):
        """Serve materialized pages before the dynamic handlers run."""

        @self.app.middleware("http")
        async def serve_page_artifact(request: Request, call_next):
            path = request.url.path
            if request.method not in ("GET", "HEAD") or path.startswith(ADMIN_PREFIXES):
                return await call_next(request)

            accept_gzip = "gzip" in request.headers.get("accept-encoding", "").lower()
            artifact = self.pages.lookup(path, accept_gzip=accept_gzip)
            if artifact is None:
                if request.headers.get(WARM_HEADER) is None:
                    self.metrics.increment_counter("cache_misses_total", cache_type="page")
                return await call_next(request)

            compressed = artifact.compressed_path is not None
            try:
                body = artifact.read(compressed=compressed)
            except FileNotFoundError:
                # Invalidated between lookup and read
                return await call_next(request)

            self.metrics.increment_counter("cache_hits_total", cache_type="page")
            headers = {"X-Page-Cache": "hit", "Vary": "Accept-Encoding"}
            if compressed:
                headers["Content-Encoding"] = "gzip"
            media_type = "text/html" if self.pages.extension in (".html", ".htm") else "application/octet-stream"
            return Response(
                content=b"" if request.method == "HEAD" else body,
                media_type=media_type,
                headers=headers,
            )

    def _setup_cache_routes(self):
        """Set up cache administration routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "cache",
                "message": "Access Layer - Content Cache",
                "backend": self.backend.name,
                "namespace": self.config.cache_namespace,
            }

        @self.app.post("/admin/cache/invalidate")
        async def invalidate_fragments(body: PrefixRequest):
            """Purge fragments by key prefix (operational escape hatch)."""
            deleted = await self.fragments.delete_by_prefix(body.prefix)
            return {"prefix": body.prefix, "deleted": deleted}

        @self.app.post("/admin/pages/invalidate")
        async def invalidate_pages(body: PageInvalidationRequest):
            if bool(body.path) == bool(body.prefix):
                raise ValidationError("Provide exactly one of 'path' or 'prefix'")
            try:
                if body.path:
                    removed = self.pages.invalidate(body.path)
                    return {"path": body.path, "removed": int(removed)}
                removed = self.pages.invalidate_prefix(body.prefix)
                return {"prefix": body.prefix, "removed": removed}
            except ValueError as e:
                raise ValidationError(str(e)) from e

        @self.app.post("/admin/resources/dependencies")
        async def declare_dependency(body: DependencyRequest):
            self.graph.declare_dependency(body.dependent, body.dependency)
            return {
                "dependency": body.dependency,
                "dependents": sorted(self.graph.dependents_of(body.dependency)),
            }

        @self.app.post("/admin/resources/touch")
        async def touch_resource(body: TouchRequest):
            """Mutation hook: bump a resource and everything depending on it."""
            if body.delete:
                result = self.cache_manager.delete(body.identity)
            else:
                result = self.cache_manager.touch(body.identity, also=body.also)
            return {
                "root": result.root,
                "touched": [{"identity": identity, "version": version} for identity, version in result.touched],
                "cycles": [f"{a}->{b}" for a, b in result.cycles],
            }

        @self.app.post("/admin/cache/warm")
        async def warm_cache(body: Optional[WarmRequest] = None):
            request = body or WarmRequest()
            return await self.warmer.warm(request.paths, dry_run=request.dry_run)

        @self.app.get("/admin/cache/stats")
        async def cache_stats() -> Dict[str, Any]:
            return await self.cache_manager.stats()


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI app."""
    service = CacheService(config)
    return service.app


if __name__ == "__main__":
    service = CacheService()
    service.run()

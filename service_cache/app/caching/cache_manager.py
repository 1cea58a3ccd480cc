"""
Cache manager tying the cache tiers into one request flow.

    key -> validators -> 304?  -> fragment store (fail open) -> render
        -> page artifact (best effort) -> 200 with validators
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Union

from shared.errors import ArtifactWriteError
from shared.logging import get_logger

from .conditional import CachePolicy, ConditionalResponseEvaluator, RequestValidators
from .dependency_graph import DependencyGraph, InvalidationPropagator, PropagationResult, VersionRegistry
from .fragment_store import FragmentCacheStore
from .keys import Cacheable, CacheKey, CacheKeyGenerator, ResourceCollection, ResourceLike
from .page_cache import PageCacheMaterializer

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


Renderer = Callable[[], Awaitable[bytes]]


@dataclass
class CachedResponse:
    """Outcome of the cached request flow, ready to become an HTTP response."""

    status_code: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    key: Optional[CacheKey] = None
    materialized: bool = False

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


class CacheManager:
    """Manager for the fragment, conditional and page cache tiers."""

    def __init__(
        self,
        fragments: FragmentCacheStore,
        *,
        keys: Optional[CacheKeyGenerator] = None,
        graph: Optional[DependencyGraph] = None,
        propagator: Optional[InvalidationPropagator] = None,
        evaluator: Optional[ConditionalResponseEvaluator] = None,
        pages: Optional[PageCacheMaterializer] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.logger = get_logger("cache.cache_manager")
        self.metrics = metrics
        self.fragments = fragments
        self.graph = graph or (propagator.graph if propagator else DependencyGraph())
        versions = propagator.versions if propagator else VersionRegistry()
        self.propagator = propagator or InvalidationPropagator(self.graph, versions, metrics=metrics)
        self.keys = keys or CacheKeyGenerator(versions=self.propagator.versions)
        self.evaluator = evaluator or ConditionalResponseEvaluator(metrics=metrics)
        self.pages = pages
        if self.pages is not None:
            self.propagator.subscribe(self.pages.handle_invalidation)

    def key_for(self, target: ResourceLike, context: Optional[Mapping[str, Any]] = None) -> CacheKey:
        return self.keys.key_for(target, context)

    async def respond(
        self,
        resources: ResourceLike,
        headers: Mapping[str, str],
        render: Renderer,
        *,
        context: Optional[Mapping[str, Any]] = None,
        policy: Optional[CachePolicy] = None,
        path: Optional[str] = None,
        page_cache: bool = False,
        fragment: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> CachedResponse:
        """
        Serve ``resources`` honoring conditional headers and cache tiers.

        A page artifact is only written for context-free responses whose key
        is still current once the body is available.

        Raises:
            InvalidResourceError: a resource has no stable identity.
        """
        key = self.keys.key_for(resources, context)
        validators = self.evaluator.validators_for(key)
        result = self.evaluator.conditional(validators, RequestValidators.from_headers(headers), policy)

        if result.not_modified:
            self.logger.debug("Conditional hit", key=str(key))
            return CachedResponse(status_code=304, headers=dict(result.headers), key=key)

        fragment_key = key.child(fragment) if fragment else key
        body = await self.fragments.fetch(fragment_key, render, ttl=ttl)

        materialized = False
        if page_cache and path and self.pages is not None:
            if context:
                # Artifacts are served by path alone, to every client
                self.logger.info("Page cache skipped for contextual response", path=path, key=str(key))
            elif self.keys.key_for(resources, context) != key:
                self.logger.info("Page cache skipped, content changed during render", path=path, key=str(key))
            else:
                materialized = self._materialize(path, body, resources)

        return CachedResponse(
            status_code=200,
            body=body,
            headers=dict(result.headers),
            key=key,
            materialized=materialized,
        )

    async def fragment(self, target: ResourceLike, name: str, render: Renderer, *, context: Optional[Mapping[str, Any]] = None) -> bytes:
        """Cache a named sub-fragment of ``target``."""
        key = self.keys.key_for(target, context).child(name)
        return await self.fragments.fetch(key, render)

    def touch(self, target: Union[Cacheable, str], also: Iterable[Union[Cacheable, str]] = ()) -> PropagationResult:
        return self.propagator.touch(target, also=also)

    def delete(self, target: Union[Cacheable, str]) -> PropagationResult:
        """Invalidate everything derived from a resource that is being removed."""
        identity = target if isinstance(target, str) else target.identity()
        try:
            return self.propagator.touch(target)
        finally:
            self.graph.forget(identity)

    def declare_dependency(self, dependent: Union[Cacheable, str], dependency: Union[Cacheable, str]) -> None:
        self.graph.declare_dependency(dependent, dependency)

    async def stats(self) -> Dict[str, Any]:
        stats = {
            "fragments": await self.fragments.stats(),
            "graph": {
                "resources": len(self.graph.identities()),
                "edges": self.graph.edge_count(),
            },
            "versions": len(self.propagator.versions),
        }
        if self.pages is not None:
            stats["pages"] = {"root": str(self.pages.root), "artifacts": self.pages.artifact_count()}
        return stats

    async def close(self) -> None:
        await self.fragments.close()

    def _materialize(self, path: str, body: bytes, resources: ResourceLike) -> bool:
        try:
            self.pages.materialize(path, body, sources=_identities(resources))
        except ArtifactWriteError as e:
            # The requester still gets the rendered body
            self.logger.warning("Page cache skipped", path=path, error=e.message)
            return False
        except ValueError as e:
            self.logger.warning("Page cache path rejected", path=path, error=str(e))
            return False
        return True


def _identities(resources: ResourceLike) -> Iterable[str]:
    if isinstance(resources, ResourceCollection):
        members = resources.members
    elif isinstance(resources, (list, tuple, set, frozenset)):
        members = list(resources)
    else:
        members = [resources]
    identities = []
    for member in members:
        if isinstance(member, ResourceCollection):
            identities.extend(_identities(member))
        else:
            identities.append(member.identity())
    return identities

"""
Content caching package.

Cache keys embed resource versions, so correctness never depends on deleting
fragments: a touch advances versions and propagates across declared
dependencies, and page artifacts are erased only by those touch events.
"""

from .backends import CacheEntry, CacheStoreBackend, InMemoryBackend, RedisBackend, create_backend
from .cache_manager import CachedResponse, CacheManager
from .conditional import (
    CachePolicy,
    ConditionalResponseEvaluator,
    ConditionalResult,
    ConditionalValidators,
    Freshness,
    RequestValidators,
)
from .dependency_graph import (
    DependencyGraph,
    InvalidationEvent,
    InvalidationPropagator,
    PropagationResult,
    VersionRegistry,
)
from .fragment_store import FragmentCacheStore
from .keys import Cacheable, CacheKey, CacheKeyGenerator, Resource, ResourceCollection
from .page_cache import PageArtifact, PageCacheMaterializer, normalize_path

__all__ = [
    "CacheEntry",
    "CacheStoreBackend",
    "InMemoryBackend",
    "RedisBackend",
    "create_backend",
    "CachedResponse",
    "CacheManager",
    "CachePolicy",
    "ConditionalResponseEvaluator",
    "ConditionalResult",
    "ConditionalValidators",
    "Freshness",
    "RequestValidators",
    "DependencyGraph",
    "InvalidationEvent",
    "InvalidationPropagator",
    "PropagationResult",
    "VersionRegistry",
    "FragmentCacheStore",
    "Cacheable",
    "CacheKey",
    "CacheKeyGenerator",
    "Resource",
    "ResourceCollection",
    "PageArtifact",
    "PageCacheMaterializer",
    "normalize_path",
]

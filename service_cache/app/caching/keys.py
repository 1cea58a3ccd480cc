"""
Cache key derivation for cacheable resources.

Keys are value objects built from identity, version token and an optional
request context. Any mutation of a resource (or of a dependent reached by
touch propagation) advances its version token and therefore its key.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    TYPE_CHECKING,
    Any,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    Tuple,
    Union,
    runtime_checkable,
)

from shared.errors import InvalidResourceError

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .dependency_graph import VersionRegistry


NULL_CONTEXT = "ctx=none"


@runtime_checkable
class Cacheable(Protocol):
    """Capability implemented by everything that participates in caching."""

    def identity(self) -> str:
        ...

    def version_token(self) -> int:
        ...


@dataclass(eq=False)
class Resource:
    """
    A mutable domain entity exposed through the cache.

    ``version`` is a monotonic microsecond timestamp maintained by the
    invalidation propagator. ``dependents`` lists identities that must be
    invalidated when this resource changes; ``dependency_of`` is the inverse
    back-reference and never implies ownership.
    """

    kind: str
    id: Any
    version: int = 0
    dependents: Set[str] = field(default_factory=set)
    dependency_of: Set[str] = field(default_factory=set)

    def identity(self) -> str:
        if not self.kind or self.id is None or self.id == "":
            raise InvalidResourceError(
                "Resource has no stable identity",
                details={"kind": self.kind, "id": self.id},
            )
        return f"{self.kind}/{self.id}"

    def version_token(self) -> int:
        return self.version

    def last_modified(self) -> Optional[datetime]:
        return version_to_datetime(self.version)

    def __repr__(self) -> str:
        return f"Resource({self.kind}/{self.id}@{self.version})"


class ResourceCollection:
    """A named group of cacheables keyed by member set and newest member."""

    def __init__(self, name: str, members: Iterable[Cacheable]):
        self.name = name
        self.members: List[Cacheable] = list(members)

    def member_identities(self) -> List[str]:
        return sorted(_identity_of(member) for member in self.members)

    def identity(self) -> str:
        identities = self.member_identities()
        digest = hashlib.md5("|".join(identities).encode()).hexdigest()
        return f"{self.name}/{len(identities)}-{digest}"

    def version_token(self) -> int:
        if not self.members:
            return 0
        return max(_version_of(member) for member in self.members)

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self):
        return iter(self.members)


@dataclass(frozen=True)
class CacheKey:
    """
    Immutable cache address: namespace + identity + version + discriminators.

    ``version`` is the token carried by the resource itself. ``generation`` is
    the propagated token from the version registry when it is newer than the
    resource's own; both take part in the address so that either one moving
    produces a new key.
    """

    namespace: str
    identity: str
    version: int
    discriminators: Tuple[str, ...] = (NULL_CONTEXT,)
    generation: int = 0

    def __str__(self) -> str:
        token = f"{self.version}.{self.generation}" if self.generation else str(self.version)
        parts = [self.namespace, f"{self.identity}-{token}"]
        parts.extend(self.discriminators)
        return ":".join(parts)

    def child(self, name: str) -> "CacheKey":
        """Derive the key of a named sub-fragment of this content."""
        return CacheKey(
            namespace=self.namespace,
            identity=f"{self.identity}#{name}",
            version=self.version,
            discriminators=self.discriminators,
            generation=self.generation,
        )

    def last_modified(self) -> Optional[datetime]:
        return version_to_datetime(max(self.version, self.generation))


ResourceLike = Union[Cacheable, ResourceCollection, List[Cacheable], Tuple[Cacheable, ...], Set[Cacheable]]


class CacheKeyGenerator:
    """Derives stable, version-sensitive cache keys."""

    def __init__(self, namespace: str = "views", versions: Optional["VersionRegistry"] = None):
        self.namespace = namespace
        self.versions = versions

    def key_for(self, target: ResourceLike, context: Optional[Mapping[str, Any]] = None) -> CacheKey:
        """Return the current key for a resource or collection."""
        if isinstance(target, (list, tuple, set, frozenset)):
            target = ResourceCollection("collection", target)

        if isinstance(target, ResourceCollection):
            if not target.members:
                raise InvalidResourceError(
                    "Cannot key an empty collection",
                    details={"collection": target.name},
                )
            identity = target.identity()
            tokens = [self._effective_version(member) for member in target.members]
            version = max(own for own, _ in tokens)
            generation = max(propagated for _, propagated in tokens)
        else:
            identity = _identity_of(target)
            version, generation = self._effective_version(target)

        return CacheKey(
            namespace=self.namespace,
            identity=identity,
            version=version,
            discriminators=self._discriminators(context),
            generation=generation,
        )

    def fragment_key(self, key: CacheKey, name: str) -> CacheKey:
        return key.child(name)

    def _effective_version(self, resource: Cacheable) -> Tuple[int, int]:
        """Return the resource's own token and the newer propagated token, if any."""
        version = _version_of(resource)
        generation = 0
        if self.versions is not None:
            registered = self.versions.current(_identity_of(resource))
            if registered is not None and registered > version:
                generation = registered
        return version, generation

    @staticmethod
    def _discriminators(context: Optional[Mapping[str, Any]]) -> Tuple[str, ...]:
        if not context:
            return (NULL_CONTEXT,)
        parts = []
        for name in sorted(context):
            value = context[name]
            parts.append(f"{name}=" + ("~" if value is None else str(value)))
        return tuple(parts)


def version_to_datetime(version: int) -> Optional[datetime]:
    """Interpret a version token as a UTC timestamp (microseconds)."""
    if not version:
        return None
    return datetime.fromtimestamp(version / 1_000_000, tz=timezone.utc)


def _identity_of(resource: Any) -> str:
    if not isinstance(resource, Cacheable):
        raise InvalidResourceError(
            "Object does not implement the Cacheable capability",
            details={"type": type(resource).__name__},
        )
    identity = resource.identity()
    if not identity:
        raise InvalidResourceError(
            "Resource has no stable identity",
            details={"type": type(resource).__name__},
        )
    return str(identity)


def _version_of(resource: Cacheable) -> int:
    token = resource.version_token()
    return int(token or 0)

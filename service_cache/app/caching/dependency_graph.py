"""
Dependency tracking and touch propagation.

Edges point from a dependency to its dependents: when ``employee/7`` changes,
``company/1`` must be invalidated. Propagation is synchronous; every reachable
identity is bumped exactly once per pass and each bump is announced to the
subscribers (page cache, stats, ...) before ``touch`` returns.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union

from shared.errors import PropagationIncompleteError
from shared.logging import get_logger

from .keys import Cacheable, Resource


def _now_us() -> int:
    return time.time_ns() // 1000


class VersionRegistry:
    """Per-identity monotonic version counters."""

    def __init__(self, clock: Callable[[], int] = _now_us):
        self._clock = clock
        self._versions: Dict[str, int] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, identity: str) -> threading.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(identity, threading.Lock())
        return lock

    def current(self, identity: str) -> Optional[int]:
        return self._versions.get(identity)

    def observe(self, identity: str, version: int) -> int:
        """Record a version seen elsewhere without lowering the stored one."""
        with self._lock_for(identity):
            stored = max(self._versions.get(identity, 0), int(version or 0))
            self._versions[identity] = stored
            return stored

    def bump(self, identity: str, floor: int = 0) -> int:
        """Advance the version of ``identity`` to a fresh value and return it."""
        with self._lock_for(identity):
            previous = max(self._versions.get(identity, 0), floor)
            version = max(previous + 1, self._clock())
            self._versions[identity] = version
            return version

    def __len__(self) -> int:
        return len(self._versions)


class DependencyGraph:
    """Process-wide, append-mostly graph of invalidation edges."""

    def __init__(self):
        self._dependents: Dict[str, Set[str]] = defaultdict(set)
        self._dependencies: Dict[str, Set[str]] = defaultdict(set)
        self._resources: Dict[str, Cacheable] = {}
        self._lock = threading.RLock()
        self.logger = get_logger("cache.dependency_graph")

    def register(self, resource: Cacheable) -> str:
        """Track a resource instance and its statically declared dependents."""
        identity = resource.identity()
        with self._lock:
            self._resources[identity] = resource
            for dependent in list(getattr(resource, "dependents", ()) or ()):
                self._add_edge(str(dependent), identity)
            for dependency in list(getattr(resource, "dependency_of", ()) or ()):
                self._add_edge(identity, str(dependency))
        return identity

    def declare_dependency(self, dependent: Union[Cacheable, str], dependency: Union[Cacheable, str]) -> None:
        """Register that ``dependent`` must be invalidated when ``dependency`` changes."""
        dependent_id = _as_identity(dependent)
        dependency_id = _as_identity(dependency)
        with self._lock:
            for item in (dependent, dependency):
                if not isinstance(item, str):
                    self._resources.setdefault(item.identity(), item)
            self._add_edge(dependent_id, dependency_id)
        self.logger.debug("Dependency declared", dependent=dependent_id, dependency=dependency_id)

    def remove_dependency(self, dependent: Union[Cacheable, str], dependency: Union[Cacheable, str]) -> None:
        dependent_id = _as_identity(dependent)
        dependency_id = _as_identity(dependency)
        with self._lock:
            self._dependents[dependency_id].discard(dependent_id)
            self._dependencies[dependent_id].discard(dependency_id)
            resource = self._resources.get(dependency_id)
            if isinstance(resource, Resource):
                resource.dependents.discard(dependent_id)
            resource = self._resources.get(dependent_id)
            if isinstance(resource, Resource):
                resource.dependency_of.discard(dependency_id)

    def forget(self, identity: str) -> None:
        """Drop a resource and every edge touching it (e.g. after deletion)."""
        with self._lock:
            for dependent in self._dependents.pop(identity, set()):
                self._dependencies[dependent].discard(identity)
            for dependency in self._dependencies.pop(identity, set()):
                self._dependents[dependency].discard(identity)
            self._resources.pop(identity, None)

    def dependents_of(self, identity: str) -> Set[str]:
        with self._lock:
            return set(self._dependents.get(identity, ()))

    def dependencies_of(self, identity: str) -> Set[str]:
        with self._lock:
            return set(self._dependencies.get(identity, ()))

    def resource(self, identity: str) -> Optional[Cacheable]:
        return self._resources.get(identity)

    def identities(self) -> List[str]:
        with self._lock:
            known = set(self._resources) | set(self._dependents) | set(self._dependencies)
        return sorted(known)

    def edge_count(self) -> int:
        with self._lock:
            return sum(len(targets) for targets in self._dependents.values())

    def _add_edge(self, dependent_id: str, dependency_id: str) -> None:
        if dependent_id == dependency_id:
            self.logger.warning("Ignoring self dependency", identity=dependent_id)
            return
        self._dependents[dependency_id].add(dependent_id)
        self._dependencies[dependent_id].add(dependency_id)
        resource = self._resources.get(dependency_id)
        if isinstance(resource, Resource):
            resource.dependents.add(dependent_id)
        resource = self._resources.get(dependent_id)
        if isinstance(resource, Resource):
            resource.dependency_of.add(dependency_id)


@dataclass(frozen=True)
class InvalidationEvent:
    """Announcement that ``identity`` now carries ``version``."""

    identity: str
    version: int
    origin: str
    depth: int


@dataclass
class PropagationResult:
    root: str
    touched: List[Tuple[str, int]] = field(default_factory=list)
    cycles: List[Tuple[str, str]] = field(default_factory=list)
    truncated: List[str] = field(default_factory=list)

    @property
    def identities(self) -> List[str]:
        return [identity for identity, _ in self.touched]

    def version_of(self, identity: str) -> Optional[int]:
        for touched, version in self.touched:
            if touched == identity:
                return version
        return None


InvalidationListener = Callable[[InvalidationEvent], None]


class InvalidationPropagator:
    """Touches resources and cascades the touch across the dependency graph."""

    def __init__(
        self,
        graph: DependencyGraph,
        versions: Optional[VersionRegistry] = None,
        *,
        max_depth: Optional[int] = None,
        metrics=None,
    ):
        self.graph = graph
        self.versions = versions or VersionRegistry()
        self.max_depth = max_depth
        self.metrics = metrics
        self.logger = get_logger("cache.propagator")
        self._listeners: List[InvalidationListener] = []

    def subscribe(self, listener: InvalidationListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: InvalidationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def touch(
        self,
        target: Union[Cacheable, str],
        also: Iterable[Union[Cacheable, str]] = (),
    ) -> PropagationResult:
        """
        Bump ``target`` and everything that depends on it.

        ``also`` adds dynamic edges for this pass only, e.g. the parent that a
        child mutation must refresh without a declared relation.

        Raises:
            PropagationIncompleteError: a subscriber failed for at least one
                touched identity. Version bumps already applied are kept.
        """
        root = _as_identity(target)
        if not isinstance(target, str):
            self.graph.register(target)
            # Never move below the token the caller already holds
            self.versions.observe(root, target.version_token())

        extra = [_as_identity(item) for item in also]
        result = PropagationResult(root=root)
        failed: List[str] = []
        visited: Set[str] = {root}
        queue: Deque[Tuple[str, int, Optional[str]]] = deque([(root, 0, None)])
        for identity in extra:
            if identity not in visited:
                visited.add(identity)
                queue.append((identity, 1, root))

        while queue:
            identity, depth, parent = queue.popleft()
            version = self._bump(identity)
            result.touched.append((identity, version))

            event = InvalidationEvent(identity=identity, version=version, origin=root, depth=depth)
            if not self._notify(event):
                failed.append(identity)

            if self.max_depth is not None and depth >= self.max_depth:
                pending = self.graph.dependents_of(identity) - visited
                if pending:
                    result.truncated.extend(sorted(pending))
                    self.logger.warning(
                        "Propagation depth limit reached",
                        root=root,
                        identity=identity,
                        max_depth=self.max_depth,
                        skipped=sorted(pending),
                    )
                continue

            for dependent in sorted(self.graph.dependents_of(identity)):
                if dependent in visited:
                    if dependent == root or dependent in self._ancestors(result, identity):
                        result.cycles.append((identity, dependent))
                    continue
                visited.add(dependent)
                queue.append((dependent, depth + 1, identity))

        if result.cycles:
            self.logger.warning(
                "dependency_cycle_detected",
                root=root,
                edges=[f"{a}->{b}" for a, b in result.cycles],
            )

        if self.metrics:
            self.metrics.increment_counter("cache_invalidations_total", kind="touch")

        self.logger.info(
            "Touch propagated",
            root=root,
            touched=result.identities,
            failed=failed,
        )

        if failed or result.truncated:
            self.logger.critical(
                "stale_content_risk",
                root=root,
                failed=failed,
                truncated=result.truncated,
            )
            raise PropagationIncompleteError(
                root,
                failed + result.truncated,
                touched=result.identities,
            )

        return result

    def _bump(self, identity: str) -> int:
        resource = self.graph.resource(identity)
        floor = resource.version_token() if resource is not None else 0
        version = self.versions.bump(identity, floor=int(floor or 0))
        if isinstance(resource, Resource):
            resource.version = version
        return version

    def _notify(self, event: InvalidationEvent) -> bool:
        ok = True
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                ok = False
                if self.metrics:
                    self.metrics.record_error("invalidation_listener")
                self.logger.error(
                    "Invalidation listener failed",
                    identity=event.identity,
                    origin=event.origin,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                )
        return ok

    def _ancestors(self, result: PropagationResult, identity: str) -> Set[str]:
        # Touched identities from which ``identity`` is reachable in this pass
        touched = set(result.identities)
        seen: Set[str] = set()
        pending = [identity]
        while pending:
            current = pending.pop()
            for dependency in self.graph.dependencies_of(current):
                if dependency in touched and dependency not in seen:
                    seen.add(dependency)
                    pending.append(dependency)
        return seen


def _as_identity(item: Union[Cacheable, str]) -> str:
    if isinstance(item, str):
        return item
    return item.identity()

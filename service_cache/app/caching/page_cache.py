"""
Page-level materialization.

Whole responses are written as static files under a root directory that
mirrors the request path, with an optional ``.gz`` sibling for clients that
accept gzip. An upstream static server (or the page cache middleware) serves
them before the dynamic handler runs.

Query strings are stripped when deriving the artifact path, so two requests
that differ only by query parameters share one artifact. Routes that need
parameter-specific output must encode it in the path instead.
"""

import gzip
import os
import tempfile
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional, Set, Union
from urllib.parse import unquote, urlsplit

from shared.errors import ArtifactWriteError
from shared.logging import get_logger

from .dependency_graph import InvalidationEvent

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


INDEX_NAME = "index"


@dataclass(frozen=True)
class PageArtifact:
    path_key: str
    path: Path
    compressed_path: Optional[Path] = None
    sources: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def read(self, compressed: bool = False) -> bytes:
        if compressed and self.compressed_path is not None:
            return self.compressed_path.read_bytes()
        return self.path.read_bytes()


def normalize_path(path: str) -> str:
    """
    Derive the artifact key for a request path.

    ``/companies/1/?page=2`` and ``/companies/1`` both map to ``companies/1``;
    ``/`` maps to ``index``.
    """
    raw = urlsplit(path).path if "://" in path else path.split("?", 1)[0].split("#", 1)[0]
    segments = [segment for segment in unquote(raw).split("/") if segment]
    for segment in segments:
        if segment in (".", "..") or "\\" in segment or "\x00" in segment:
            raise ValueError(f"Unsafe path segment in {path!r}")
    if not segments:
        return INDEX_NAME
    return "/".join(segments)


class PageCacheMaterializer:
    """Writes and erases page artifacts; erasure is driven by touch events."""

    def __init__(
        self,
        root: Union[str, Path],
        *,
        extension: str = ".html",
        compress: bool = True,
        compress_level: int = 9,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.root = Path(root)
        self.extension = extension if extension.startswith(".") or not extension else f".{extension}"
        self.compress = compress
        self.compress_level = compress_level
        self.metrics = metrics
        self.logger = get_logger("cache.page_cache")
        self._bindings: Dict[str, Set[str]] = defaultdict(set)
        self._sources: Dict[str, Set[str]] = defaultdict(set)
        self._lock = threading.Lock()

    def artifact_path(self, path_key: str) -> Path:
        key = normalize_path(path_key)
        return self.root / f"{key}{self.extension}"

    def compressed_path(self, path_key: str) -> Path:
        artifact = self.artifact_path(path_key)
        return artifact.with_name(artifact.name + ".gz")

    def bind(self, identity: str, path_key: str) -> None:
        """Invalidate ``path_key`` whenever ``identity`` is touched."""
        key = normalize_path(path_key)
        with self._lock:
            self._bindings[identity].add(key)
            self._sources[key].add(identity)

    def paths_for(self, identity: str) -> Set[str]:
        with self._lock:
            return set(self._bindings.get(identity, ()))

    def materialize(
        self,
        path_key: str,
        payload: bytes,
        compressed_variant: Optional[bytes] = None,
        sources: Iterable[str] = (),
    ) -> PageArtifact:
        """
        Write the artifact (and gzip sibling) atomically, replacing any previous one.

        Raises:
            ArtifactWriteError: the filesystem refused the write.
        """
        key = normalize_path(path_key)
        artifact = self.artifact_path(key)
        compressed = self.compressed_path(key)

        if compressed_variant is None and self.compress:
            # mtime=0 keeps the gzip bytes identical across rewrites
            compressed_variant = gzip.compress(payload, compresslevel=self.compress_level, mtime=0)

        try:
            artifact.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(artifact, payload)
            if compressed_variant is not None:
                _atomic_write(compressed, compressed_variant)
            elif compressed.exists():
                compressed.unlink()
        except OSError as e:
            self.logger.error("Page artifact write failed", path_key=key, error=str(e))
            if self.metrics:
                self.metrics.record_error("artifact_write")
            raise ArtifactWriteError(key, str(e)) from e

        for identity in sources:
            self.bind(identity, key)

        if self.metrics:
            self.metrics.increment_counter("page_artifacts_written_total", variant="plain")
            if compressed_variant is not None:
                self.metrics.increment_counter("page_artifacts_written_total", variant="gzip")

        self.logger.info("Page materialized", path_key=key, size=len(payload), compressed=compressed_variant is not None)
        return PageArtifact(
            path_key=key,
            path=artifact,
            compressed_path=compressed if compressed_variant is not None else None,
            sources=frozenset(self._sources.get(key, ())),
        )

    def lookup(self, path_key: str, accept_gzip: bool = False) -> Optional[PageArtifact]:
        """Return the artifact for ``path_key`` if one is materialized."""
        try:
            key = normalize_path(path_key)
        except ValueError:
            return None
        artifact = self.artifact_path(key)
        if not artifact.is_file():
            return None
        compressed = self.compressed_path(key)
        return PageArtifact(
            path_key=key,
            path=artifact,
            compressed_path=compressed if accept_gzip and compressed.is_file() else None,
            sources=frozenset(self._sources.get(key, ())),
        )

    def invalidate(self, path_key: str) -> bool:
        """
        Remove the artifact and its compressed sibling.

        Raises:
            ArtifactWriteError: a file exists but could not be removed.
        """
        key = normalize_path(path_key)
        removed = False
        # Sibling first so a static server never prefers a stale .gz
        for target in (self.compressed_path(key), self.artifact_path(key)):
            try:
                target.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                self.logger.error("Page artifact removal failed", path_key=key, error=str(e))
                raise ArtifactWriteError(key, f"could not remove artifact: {e}") from e

        with self._lock:
            for identity in self._sources.pop(key, set()):
                self._bindings[identity].discard(key)

        if removed:
            if self.metrics:
                self.metrics.increment_counter("cache_invalidations_total", kind="page")
            self.logger.info("Page invalidated", path_key=key)
        return removed

    def invalidate_prefix(self, prefix: str) -> int:
        """Administrative removal of every artifact under ``prefix``."""
        key = normalize_path(prefix)
        base = self.root if key == INDEX_NAME else self.root / key
        candidates: List[Path] = []
        if base.is_dir():
            candidates.extend(base.rglob(f"*{self.extension}"))
        single = self.artifact_path(key)
        if single.is_file():
            candidates.append(single)

        count = 0
        for artifact in sorted(set(candidates)):
            relative = artifact.relative_to(self.root).as_posix()
            if self.invalidate(relative[: -len(self.extension)] if self.extension else relative):
                count += 1
        return count

    def handle_invalidation(self, event: InvalidationEvent) -> None:
        """Touch listener: drop every page derived from the touched identity."""
        failures = []
        for key in sorted(self.paths_for(event.identity)):
            try:
                self.invalidate(key)
            except ArtifactWriteError as e:
                failures.append(e)
        if failures:
            raise failures[0]

    def artifact_count(self) -> int:
        if not self.root.exists():
            return 0
        return sum(1 for _ in self.root.rglob(f"*{self.extension}"))


def _atomic_write(target: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

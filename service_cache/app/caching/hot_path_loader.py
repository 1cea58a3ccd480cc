"""
Utility helpers for loading the curated list of hot paths used for cache warming.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
import json
import threading


DEFAULT_DATA_FILE = Path(__file__).resolve().parent / "data" / "hot_paths.json"


@dataclass(frozen=True)
class HotPathEntry:
    """Simple view of a hot path entry."""

    path: str
    weight: float = 0.0


class HotPathLoader:
    """
    Loads the curated set of "hot" paths to preheat.

    Expected format::

        {"max_entries": 50, "paths": [{"path": "/companies/1", "weight": 0.9}]}

    Missing or malformed files yield an empty list so warming degrades to a no-op.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self._path = Path(config_path) if config_path else DEFAULT_DATA_FILE
        self._lock = threading.Lock()
        self._data = self._load()

    @property
    def path(self) -> Path:
        """Return the resolved path to the data file."""
        return self._path

    @property
    def description(self) -> Optional[str]:
        return self._data.get("metadata", {}).get("description")

    def refresh(self) -> None:
        """Reload the hot path data from disk."""
        with self._lock:
            self._data = self._load()

    def get_entries(self, *, limit: Optional[int] = None) -> List[HotPathEntry]:
        """Return hot paths ordered by descending weight, deduplicated by path."""
        entries: Iterable[Any] = self._data.get("paths", [])
        resolved_limit = limit or self._data.get("max_entries")

        seen = set()
        result: List[HotPathEntry] = []
        for entry in entries:
            if isinstance(entry, str):
                entry = {"path": entry}
            if not isinstance(entry, dict):
                continue
            path = str(entry.get("path") or "").strip()
            if not path or path in seen:
                continue
            seen.add(path)
            result.append(
                HotPathEntry(path=path, weight=float(entry.get("weight", 0.0)))
            )

        result.sort(key=lambda item: item.weight, reverse=True)
        if resolved_limit:
            result = result[: int(resolved_limit)]
        return result

    def paths(self, *, limit: Optional[int] = None) -> List[str]:
        return [entry.path for entry in self.get_entries(limit=limit)]

    def _load(self) -> Dict[str, Any]:
        """Read JSON payload from disk. Returns empty configuration on failure."""
        if not self._path.exists():
            return {
                "metadata": {"description": "No hot path dataset found; cache warming will no-op."},
                "paths": [],
            }

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (ValueError, OSError):
            return {
                "metadata": {"description": f"Failed to parse hot path file at {self._path}"},
                "paths": [],
            }

        if isinstance(data, list):
            return {"metadata": {}, "paths": data}
        if not isinstance(data, dict):
            return {"metadata": {"description": f"Unexpected hot path payload in {self._path}"}, "paths": []}
        return data

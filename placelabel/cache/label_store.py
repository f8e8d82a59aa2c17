"""Disk-backed cache of resolved location labels, one JSON file per key."""
from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import orjson
import structlog
from pydantic import ValidationError

from placelabel.cache.location_key import LocationKey
from placelabel.observability.metrics import MetricsRegistry
from placelabel.resolver.models import LocationLabel

LOGGER = structlog.get_logger(__name__)

_ENTRY_SUFFIX = ".json"
_TEMP_PREFIX = ".tmp-"

LabelPredicate = Callable[[LocationLabel], bool]


class DiskLabelCacheStore:
    """Persist ``LocationLabel`` entries under a shared cache directory.

    Reads that fail for any reason delete the entry and report a miss.
    Writes go through a temp file and ``os.replace`` so a concurrent reader
    sees either the old entry, the new one, or nothing.
    """

    def __init__(self, root: Path, *, metrics: Optional[MetricsRegistry] = None) -> None:
        self._root = root
        self._metrics = metrics or MetricsRegistry()
        self._available = True
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._available = False
            LOGGER.warning("cache_dir_unavailable", path=str(root), error=str(exc))

    @property
    def available(self) -> bool:
        return self._available

    def path_for(self, key: LocationKey) -> Path:
        return self._root / f"{key.encoded}{_ENTRY_SUFFIX}"

    async def get(self, key: LocationKey) -> Optional[LocationLabel]:
        label = await asyncio.to_thread(self._read, key)
        self._metrics.incr("cache_hits" if label is not None else "cache_misses")
        return label

    async def set(self, key: LocationKey, label: LocationLabel) -> None:
        await asyncio.to_thread(self._write, key, label)

    async def purge(self, predicate: LabelPredicate) -> int:
        """Remove entries whose label matches; unreadable entries go too."""
        return await asyncio.to_thread(self._purge, predicate)

    async def prune_versions(self, current_rules_version: int) -> int:
        """Remove entries keyed under any other rules version."""
        return await asyncio.to_thread(self._prune_versions, current_rules_version)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)

    def _read(self, key: LocationKey) -> Optional[LocationLabel]:
        if not self._available:
            return None
        path = self.path_for(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning("cache_read_failed", key=key.encoded, error=str(exc))
            return None
        label = self._decode(raw)
        if label is None:
            self._metrics.incr("cache_corrupt")
            LOGGER.warning("cache_corrupt_entry", key=key.encoded, size=len(raw))
            self._discard(path)
        return label

    @staticmethod
    def _decode(raw: bytes) -> Optional[LocationLabel]:
        try:
            return LocationLabel.model_validate_json(raw)
        except ValidationError:
            return None

    def _write(self, key: LocationKey, label: LocationLabel) -> None:
        if not self._available:
            return
        blob = orjson.dumps(label.to_payload())
        target = self.path_for(key)
        tmp_name: Optional[str] = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=_TEMP_PREFIX, suffix=_ENTRY_SUFFIX, dir=self._root)
            with os.fdopen(fd, "wb") as handle:
                handle.write(blob)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as exc:
            self._metrics.incr("cache_write_errors")
            LOGGER.warning("cache_write_failed", key=key.encoded, error=str(exc))
        finally:
            if tmp_name is not None:
                self._discard(Path(tmp_name))

    def _entries(self) -> List[Path]:
        if not self._available:
            return []
        try:
            return [
                path
                for path in self._root.iterdir()
                if path.suffix == _ENTRY_SUFFIX and not path.name.startswith(_TEMP_PREFIX)
            ]
        except OSError as exc:
            LOGGER.warning("cache_list_failed", path=str(self._root), error=str(exc))
            return []

    def _purge(self, predicate: LabelPredicate) -> int:
        removed = 0
        for path in self._entries():
            try:
                label = self._decode(path.read_bytes())
            except OSError:
                continue
            if label is None or predicate(label):
                self._discard(path)
                removed += 1
        if removed:
            LOGGER.info("cache_purged", removed=removed)
        return removed

    def _prune_versions(self, current_rules_version: int) -> int:
        removed = 0
        for path in self._entries():
            key = LocationKey.decode(path.stem)
            if key is None or key.rules_version != current_rules_version:
                self._discard(path)
                removed += 1
        if removed:
            LOGGER.info("cache_pruned", removed=removed, rules_version=current_rules_version)
        return removed

    def _clear(self) -> None:
        if not self._available:
            return
        shutil.rmtree(self._root, ignore_errors=True)
        self._root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("cache_delete_failed", path=str(path), error=str(exc))


class InMemoryLabelCacheStore:
    """Process-local store with the same interface, for tests and fallbacks."""

    def __init__(self, *, metrics: Optional[MetricsRegistry] = None) -> None:
        self._entries: Dict[str, LocationLabel] = {}
        self._metrics = metrics or MetricsRegistry()

    async def get(self, key: LocationKey) -> Optional[LocationLabel]:
        label = self._entries.get(key.encoded)
        self._metrics.incr("cache_hits" if label is not None else "cache_misses")
        return label

    async def set(self, key: LocationKey, label: LocationLabel) -> None:
        self._entries[key.encoded] = label

    async def purge(self, predicate: LabelPredicate) -> int:
        doomed = [name for name, label in self._entries.items() if predicate(label)]
        for name in doomed:
            del self._entries[name]
        return len(doomed)

    async def prune_versions(self, current_rules_version: int) -> int:
        doomed = []
        for name in self._entries:
            key = LocationKey.decode(name)
            if key is None or key.rules_version != current_rules_version:
                doomed.append(name)
        for name in doomed:
            del self._entries[name]
        return len(doomed)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


LabelCacheStore = Union[DiskLabelCacheStore, InMemoryLabelCacheStore]

"""Record persistence for migration sweeps."""
from __future__ import annotations

import abc
import asyncio
import os
import tempfile
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Collection, Dict, Iterable, List

import orjson
import structlog
from dateutil import parser as date_parser

from placelabel.resolver.models import Record, Tier

LOGGER = structlog.get_logger(__name__)

_DATETIME_FIELDS = ("created_at", "resolved_at")
_RECORD_FIELDS = {item.name for item in fields(Record)}


class RecordStoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class RecordStore(abc.ABC):
    """Where migration reads pending records and writes resolved ones."""

    @abc.abstractmethod
    async def fetch_unresolved(
        self,
        limit: int,
        rules_version: int,
        exclude: Collection[str] = (),
    ) -> List[Record]:
        """Return up to ``limit`` unresolved or stale records, newest first."""

    @abc.abstractmethod
    async def save(self, records: Iterable[Record]) -> None:
        """Persist ``records`` in one write."""

    @abc.abstractmethod
    async def count_pending(self, rules_version: int) -> int:
        ...


def record_to_payload(record: Record) -> Dict[str, Any]:
    payload = asdict(record)
    for key in _DATETIME_FIELDS:
        value = payload.get(key)
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
    if isinstance(record.display_tier, Tier):
        payload["display_tier"] = record.display_tier.value
    return payload


def record_from_payload(data: Dict[str, Any]) -> Record:
    if not isinstance(data, dict):
        raise TypeError(f"record payload must be an object, got {type(data).__name__}")
    data = {key: value for key, value in data.items() if key in _RECORD_FIELDS}
    for key in _DATETIME_FIELDS:
        value = data.get(key)
        if isinstance(value, str):
            data[key] = date_parser.isoparse(value)
    if data.get("display_tier") is not None:
        data["display_tier"] = Tier(data["display_tier"])
    return Record(**data)


class JsonlRecordStore(RecordStore):
    """Records kept one JSON object per line, rewritten atomically on save."""

    def __init__(self, *, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load_all(self) -> List[Record]:
        async with self._lock:
            return await asyncio.to_thread(self._read_all)

    async def fetch_unresolved(
        self,
        limit: int,
        rules_version: int,
        exclude: Collection[str] = (),
    ) -> List[Record]:
        if limit <= 0:
            return []
        records = await self.load_all()
        skipped = set(exclude)
        pending = [
            record
            for record in records
            if record.record_id not in skipped and record.needs_resolution(rules_version)
        ]
        pending.sort(key=lambda record: record.created_at, reverse=True)
        return pending[:limit]

    async def count_pending(self, rules_version: int) -> int:
        records = await self.load_all()
        return sum(1 for record in records if record.needs_resolution(rules_version))

    async def save(self, records: Iterable[Record]) -> None:
        updates = {record.record_id: record for record in records}
        if not updates:
            return
        async with self._lock:
            await asyncio.to_thread(self._merge_and_write, updates)

    async def add(self, records: Iterable[Record]) -> None:
        """Insert new records or replace existing ones by id."""
        await self.save(records)

    def _read_all(self) -> List[Record]:
        if not self._path.exists():
            return []
        records: List[Record] = []
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise RecordStoreError(f"Cannot read {self._path}: {exc}") from exc
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(record_from_payload(orjson.loads(line)))
            except (orjson.JSONDecodeError, TypeError, ValueError) as exc:
                LOGGER.warning("record_line_invalid", path=str(self._path), line=number, error=str(exc))
        return records

    def _merge_and_write(self, updates: Dict[str, Record]) -> None:
        # Lines that fail to parse are carried over untouched.
        try:
            lines = self._path.read_bytes().splitlines() if self._path.exists() else []
        except OSError as exc:
            raise RecordStoreError(f"Cannot read {self._path}: {exc}") from exc
        merged: List[bytes] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                record_id = orjson.loads(line).get("record_id")
            except (orjson.JSONDecodeError, AttributeError):
                record_id = None
            if isinstance(record_id, str) and record_id in updates:
                merged.append(orjson.dumps(record_to_payload(updates.pop(record_id))))
            else:
                merged.append(line)
        merged.extend(orjson.dumps(record_to_payload(record)) for record in updates.values())

        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle, tmp_name = tempfile.mkstemp(prefix=".tmp-", dir=self._path.parent)
        try:
            with os.fdopen(handle, "wb") as stream:
                for line in merged:
                    stream.write(line)
                    stream.write(b"\n")
                stream.flush()
                os.fsync(stream.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            _remove_quietly(Path(tmp_name))
            raise RecordStoreError(f"Cannot write {self._path}: {exc}") from exc


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass

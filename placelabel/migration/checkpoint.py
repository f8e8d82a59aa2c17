"""Checkpoint utilities for resumable migration runs."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import orjson
import structlog
from dateutil import parser as date_parser

from placelabel.resolver.models import utcnow

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class MigrationCheckpoint:
    """Progress of one migration run, written after every batch."""

    run_id: str
    rules_version: int
    batches_completed: int = 0
    resolved: int = 0
    failed: int = 0
    updated_at: str = field(default_factory=lambda: utcnow().isoformat())

    def touch(self) -> None:
        self.updated_at = utcnow().isoformat()

    @property
    def updated(self) -> datetime:
        return date_parser.isoparse(self.updated_at)


def checkpoint_path(root: Path, run_id: str) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    return root / f"{run_id}.json"


def load_checkpoint(root: Path, run_id: str) -> Optional[MigrationCheckpoint]:
    path = checkpoint_path(root, run_id)
    if not path.exists():
        return None
    try:
        payload = orjson.loads(path.read_bytes())
        return MigrationCheckpoint(**payload)
    except (orjson.JSONDecodeError, TypeError) as exc:
        LOGGER.warning("checkpoint_unreadable", path=str(path), error=str(exc))
        return None


def save_checkpoint(root: Path, checkpoint: MigrationCheckpoint) -> Path:
    checkpoint.touch()
    path = checkpoint_path(root, checkpoint.run_id)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_bytes(orjson.dumps(asdict(checkpoint)))
    tmp.replace(path)
    return path


def clear_checkpoint(root: Path, run_id: str) -> None:
    path = checkpoint_path(root, run_id)
    if path.exists():
        path.unlink()

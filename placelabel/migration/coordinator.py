"""Background backfill of labels for historical records."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set, Tuple

import structlog

from placelabel.cache.label_store import LabelCacheStore
from placelabel.migration.checkpoint import (
    MigrationCheckpoint,
    clear_checkpoint,
    load_checkpoint,
    save_checkpoint,
)
from placelabel.migration.records import RecordStore, RecordStoreError
from placelabel.observability.metrics import MetricsRegistry, record_duration
from placelabel.observability.tracing import clear_context, clear_record_context, set_context
from placelabel.privacy.sanitizer import is_placeholder
from placelabel.resolver.models import Record, utcnow
from placelabel.resolver.resolver import LocationResolver
from placelabel.settings import MigrationConfig

LOGGER = structlog.get_logger(__name__)


@dataclass
class MigrationReport:
    run_id: str
    rules_version: int
    batches: int = 0
    resolved: int = 0
    failed: int = 0
    purged: int = 0
    batch_errors: int = 0
    exhausted: bool = False
    failed_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "rules_version": self.rules_version,
            "batches": self.batches,
            "resolved": self.resolved,
            "failed": self.failed,
            "purged": self.purged,
            "batch_errors": self.batch_errors,
            "exhausted": self.exhausted,
            "failed_ids": list(self.failed_ids),
        }


class BatchMigrationCoordinator:
    """Resolve unresolved and stale records in small, checkpointed batches.

    Each record is resolved independently; one failure never aborts the
    batch. Failed records are skipped for the rest of the run and picked up
    again by the next one. A crash loses at most the batch in progress.
    """

    def __init__(
        self,
        *,
        resolver: LocationResolver,
        store: RecordStore,
        cache: LabelCacheStore,
        config: Optional[MigrationConfig] = None,
        checkpoint_dir: Optional[Path] = None,
        metrics: Optional[MetricsRegistry] = None,
        run_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._cache = cache
        self._config = config or MigrationConfig()
        self._checkpoint_dir = checkpoint_dir
        self._metrics = metrics or resolver.metrics
        self._run_id = run_id or utcnow().strftime("%Y%m%dT%H%M%S")
        self._sleep = sleep
        self._task: Optional["asyncio.Task[MigrationReport]"] = None

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "asyncio.Task[MigrationReport]":
        """Schedule ``run`` on the current loop; calling again reuses the task."""
        task = self._task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self.run())
            self._task = task
        return task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            LOGGER.info("migration_cancel_requested", run_id=self._run_id)
            self._task.cancel()

    async def run(self) -> MigrationReport:
        rules_version = self._resolver.config.rules_version
        report = MigrationReport(run_id=self._run_id, rules_version=rules_version)
        checkpoint = self._load_checkpoint(rules_version)
        failed_ids: Set[str] = set()

        set_context(run_id=self._run_id)
        try:
            with record_duration(self._metrics, "run_duration_ms"):
                report.purged = await self._purge_cache(rules_version)
                for _ in range(self._config.max_batches_per_run):
                    try:
                        records = await self._store.fetch_unresolved(
                            self._config.batch_size,
                            rules_version,
                            exclude=failed_ids,
                        )
                    except (RecordStoreError, OSError) as exc:
                        await self._batch_failed(report, exc, stage="fetch")
                        continue
                    if not records:
                        report.exhausted = True
                        break

                    resolved, failed = await self._run_batch(records)
                    failed_ids.update(record.record_id for record in failed)
                    try:
                        await self._store.save(resolved)
                    except (RecordStoreError, OSError) as exc:
                        await self._batch_failed(report, exc, stage="save")
                        continue

                    report.batches += 1
                    report.resolved += len(resolved)
                    report.failed += len(failed)
                    self._metrics.incr("migration_batches")
                    self._metrics.incr("migration_resolved", len(resolved))
                    self._metrics.incr("migration_failed", len(failed))
                    self._save_checkpoint(checkpoint, resolved=len(resolved), failed=len(failed))
                    LOGGER.info(
                        "migration_batch_done",
                        batch=report.batches,
                        resolved=len(resolved),
                        failed=len(failed),
                    )
                    await self._sleep(self._config.pause_seconds)

            report.failed_ids = sorted(failed_ids)
            if report.exhausted:
                self._clear_checkpoint()
            LOGGER.info("migration_run_done", **report.as_dict())
            return report
        finally:
            clear_context()

    async def _purge_cache(self, rules_version: int) -> int:
        removed = await self._cache.purge(lambda label: is_placeholder(label.name))
        removed += await self._cache.prune_versions(rules_version)
        return removed

    async def _run_batch(self, records: List[Record]) -> Tuple[List[Record], List[Record]]:
        slots = asyncio.Semaphore(self._config.concurrency)

        async def resolve_one(record: Record) -> bool:
            async with slots:
                set_context(run_id=self._run_id, record_id=record.record_id)
                try:
                    resolution = await self._resolver.resolve_record(record)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    LOGGER.warning(
                        "migration_record_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    return False
                finally:
                    clear_record_context()
                if not resolution.resolved:
                    LOGGER.info("migration_record_unresolved", record_id=record.record_id)
                return resolution.resolved

        outcomes = await asyncio.gather(*(resolve_one(record) for record in records))
        resolved = [record for record, ok in zip(records, outcomes) if ok]
        failed = [record for record, ok in zip(records, outcomes) if not ok]
        return resolved, failed

    async def _batch_failed(self, report: MigrationReport, exc: Exception, *, stage: str) -> None:
        report.batch_errors += 1
        self._metrics.incr("migration_batch_errors")
        LOGGER.error("migration_batch_failed", stage=stage, error_type=type(exc).__name__, error=str(exc))
        await self._sleep(self._config.failure_backoff_seconds)

    def _load_checkpoint(self, rules_version: int) -> Optional[MigrationCheckpoint]:
        if self._checkpoint_dir is None:
            return None
        try:
            existing = load_checkpoint(self._checkpoint_dir, self._run_id)
        except OSError as exc:
            LOGGER.warning("checkpoint_read_failed", error=str(exc))
            existing = None
        if existing is not None and existing.rules_version == rules_version:
            LOGGER.info(
                "migration_resumed",
                batches_completed=existing.batches_completed,
                resolved=existing.resolved,
                failed=existing.failed,
            )
            return existing
        return MigrationCheckpoint(run_id=self._run_id, rules_version=rules_version)

    def _clear_checkpoint(self) -> None:
        if self._checkpoint_dir is None:
            return
        try:
            clear_checkpoint(self._checkpoint_dir, self._run_id)
        except OSError as exc:
            LOGGER.warning("checkpoint_clear_failed", error=str(exc))

    def _save_checkpoint(self, checkpoint: Optional[MigrationCheckpoint], *, resolved: int, failed: int) -> None:
        if checkpoint is None or self._checkpoint_dir is None:
            return
        checkpoint.batches_completed += 1
        checkpoint.resolved += resolved
        checkpoint.failed += failed
        try:
            save_checkpoint(self._checkpoint_dir, checkpoint)
        except OSError as exc:
            LOGGER.warning("checkpoint_write_failed", error=str(exc))

"""Tracing helpers for lookup and migration stages."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, unbind_contextvars


def _logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger("placelabel.trace")


def set_context(*, run_id: str, record_id: Optional[str] = None) -> None:
    bind_contextvars(run_id=run_id)
    if record_id is not None:
        bind_contextvars(record_id=record_id)
    _logger().debug("trace_context", run_id=run_id, record_id=record_id)


def clear_record_context() -> None:
    unbind_contextvars("record_id")


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, key: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().debug("trace_span", span=name, key=key, elapsed_ms=elapsed_ms)


def log_retry(attempt: int, *, provider: str, reason: str) -> None:
    _logger().warning("provider_retry", attempt=attempt, provider=provider, reason=reason)


def log_lookup_result(*, provider: str, key: str, candidates: int, elapsed_ms: int) -> None:
    _logger().info(
        "lookup_result",
        provider=provider,
        key=key,
        candidates=candidates,
        elapsed_ms=elapsed_ms,
    )

"""HTTP plumbing for provider calls: client factory and retrying JSON GET."""
from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import orjson

from placelabel.observability.metrics import MetricsRegistry
from placelabel.observability.tracing import log_retry, span
from placelabel.providers.base import ProviderFailure, ProviderQuotaExceeded


@contextlib.asynccontextmanager
async def create_http_client(
    *,
    user_agent: str,
    timeout: float,
    max_connections: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield a configured ``httpx.AsyncClient`` for the duration of the context."""
    headers = {"User-Agent": user_agent, "Accept": "application/json"}
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    async with httpx.AsyncClient(headers=headers, limits=limits, timeout=timeout, transport=transport) as client:
        yield client


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Dict[str, str],
    provider: str,
    max_attempts: int = 2,
    metrics: Optional[MetricsRegistry] = None,
) -> Dict[str, Any]:
    """GET ``url`` and decode a JSON object, retrying transport errors."""
    delay = 0.2
    for attempt in range(1, max_attempts + 1):
        try:
            with span(name=f"{provider}_request"):
                start = time.perf_counter()
                response = await client.get(url, params=params)
            elapsed_ms = int((time.perf_counter() - start) * 1000)
        except httpx.TransportError as exc:
            if metrics is not None:
                metrics.incr("provider_retries")
            log_retry(attempt=attempt, provider=provider, reason=str(exc) or type(exc).__name__)
            if attempt == max_attempts:
                raise
            await asyncio.sleep(delay)
            delay *= 2
            continue

        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise ProviderQuotaExceeded(provider, "HTTP 429")
        if response.status_code != httpx.codes.OK:
            raise ProviderFailure(provider, f"HTTP {response.status_code} after {elapsed_ms}ms")
        try:
            payload = orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            raise ProviderFailure(provider, "response is not JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderFailure(provider, "response is not a JSON object")
        return payload
    raise ProviderFailure(provider, "no attempts made")

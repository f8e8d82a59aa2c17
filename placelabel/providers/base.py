"""Provider contracts for nearby-place search and reverse geocoding."""
from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, List, Optional, Tuple, TypeVar

import httpx

from placelabel.observability.metrics import MetricsRegistry
from placelabel.resolver.models import Coordinate

T = TypeVar("T")


class CandidateKind(str, Enum):
    POI = "poi"
    STREET = "street"
    AREA = "area"


@dataclass(frozen=True)
class Candidate:
    """A named place returned by a provider, measured from the query point."""

    name: str
    kind: CandidateKind
    coordinate: Coordinate
    distance_meters: float
    place_id: Optional[str] = None
    types: Tuple[str, ...] = field(default_factory=tuple)
    # Geocoder-reported precision in [0, 1]; POI candidates leave it unset.
    precision: Optional[float] = None


class ProviderFailure(Exception):
    """A lookup failed for network, quota, timeout or payload reasons."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class ProviderTimeout(ProviderFailure):
    pass


class ProviderQuotaExceeded(ProviderFailure):
    pass


class PlaceSearchProvider(abc.ABC):
    """Short-radius point-of-interest search."""

    name = "places"

    @abc.abstractmethod
    async def search_nearby_places(self, coordinate: Coordinate, radius: float) -> List[Candidate]:
        """Return candidates within ``radius`` metres, nearest first."""


class ReverseGeocoder(abc.ABC):
    """Street- and area-level reverse geocoding."""

    name = "geocoder"

    @abc.abstractmethod
    async def reverse_geocode(self, coordinate: Coordinate) -> List[Candidate]:
        """Return street and/or area candidates for the coordinate."""


def sort_by_distance(candidates: List[Candidate]) -> List[Candidate]:
    return sorted(candidates, key=lambda candidate: candidate.distance_meters)


async def guarded_call(
    awaitable: Awaitable[T],
    *,
    provider: str,
    timeout: float,
    metrics: Optional[MetricsRegistry] = None,
) -> T:
    """Await a provider call with a deadline, normalising failures.

    Timeouts, transport errors and anything else a provider raises become
    ``ProviderFailure`` so callers only ever handle one exception family.
    Cancellation still propagates.
    """
    if metrics is not None:
        metrics.incr("provider_calls")
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except ProviderFailure:
        raise
    except asyncio.TimeoutError as exc:
        if metrics is not None:
            metrics.incr("provider_timeouts")
        raise ProviderTimeout(provider, f"no response within {timeout:.1f}s") from exc
    except httpx.HTTPError as exc:
        raise ProviderFailure(provider, str(exc) or type(exc).__name__) from exc
    except Exception as exc:
        raise ProviderFailure(provider, f"{type(exc).__name__}: {exc}") from exc

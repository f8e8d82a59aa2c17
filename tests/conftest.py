import asyncio
import math
from typing import Iterable, List, Optional, Set

import pytest

from placelabel.cache.label_store import InMemoryLabelCacheStore
from placelabel.observability.metrics import MetricsRegistry
from placelabel.providers.base import (
    Candidate,
    CandidateKind,
    PlaceSearchProvider,
    ProviderFailure,
    ReverseGeocoder,
)
from placelabel.resolver.models import Coordinate
from placelabel.resolver.resolver import LocationResolver
from placelabel.settings import ResolverConfig

ORIGIN = Coordinate(51.5390, -0.1426)


def offset(origin: Coordinate, *, north_m: float = 0.0, east_m: float = 0.0) -> Coordinate:
    dlat = north_m / 111_320.0
    dlon = east_m / (111_320.0 * math.cos(math.radians(origin.latitude)))
    return Coordinate(origin.latitude + dlat, origin.longitude + dlon)


def poi(name: str, distance: float, *, types: Iterable[str] = ("cafe",), origin: Coordinate = ORIGIN) -> Candidate:
    return Candidate(
        name=name,
        kind=CandidateKind.POI,
        coordinate=offset(origin, north_m=distance),
        distance_meters=distance,
        place_id=name.lower().replace(" ", "-"),
        types=tuple(types),
    )


def street(name: str, *, precision: float = 0.95, origin: Coordinate = ORIGIN) -> Candidate:
    return Candidate(name=name, kind=CandidateKind.STREET, coordinate=origin, distance_meters=0.0, precision=precision)


def area(name: str, *, precision: float = 0.75, origin: Coordinate = ORIGIN) -> Candidate:
    return Candidate(name=name, kind=CandidateKind.AREA, coordinate=origin, distance_meters=0.0, precision=precision)


class FakePlaces(PlaceSearchProvider):
    name = "fake_places"

    def __init__(
        self,
        candidates: Iterable[Candidate] = (),
        *,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        failing_latitudes: Iterable[float] = (),
    ) -> None:
        self.candidates = list(candidates)
        self.error = error
        self.delay = delay
        self.failing_latitudes: Set[float] = set(failing_latitudes)
        self.calls = 0
        self.seen: List[Coordinate] = []

    async def search_nearby_places(self, coordinate: Coordinate, radius: float) -> List[Candidate]:
        self.calls += 1
        self.seen.append(coordinate)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if coordinate.latitude in self.failing_latitudes:
            raise ProviderFailure(self.name, "simulated outage")
        return list(self.candidates)


class FakeGeocoder(ReverseGeocoder):
    name = "fake_geocoder"

    def __init__(
        self,
        candidates: Iterable[Candidate] = (),
        *,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        failing_latitudes: Iterable[float] = (),
    ) -> None:
        self.candidates = list(candidates)
        self.error = error
        self.delay = delay
        self.failing_latitudes: Set[float] = set(failing_latitudes)
        self.calls = 0

    async def reverse_geocode(self, coordinate: Coordinate) -> List[Candidate]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if coordinate.latitude in self.failing_latitudes:
            raise ProviderFailure(self.name, "simulated outage")
        return list(self.candidates)


@pytest.fixture()
def config() -> ResolverConfig:
    return ResolverConfig()


@pytest.fixture()
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def cache(metrics) -> InMemoryLabelCacheStore:
    return InMemoryLabelCacheStore(metrics=metrics)


@pytest.fixture()
def places() -> FakePlaces:
    return FakePlaces([poi("Corner Cafe", 6.0)])


@pytest.fixture()
def geocoder() -> FakeGeocoder:
    return FakeGeocoder([street("Camden High Street, London"), area("Camden Town")])


@pytest.fixture()
def make_resolver(config, cache, metrics, places, geocoder):
    def _build(**overrides) -> LocationResolver:
        options = {
            "config": config,
            "cache": cache,
            "places": places,
            "geocoder": geocoder,
            "metrics": metrics,
        }
        options.update(overrides)
        return LocationResolver(**options)

    return _build

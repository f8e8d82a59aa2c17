"""Google Places nearby search and Google reverse geocoding over httpx."""
from __future__ import annotations

from typing import List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from placelabel.observability.metrics import MetricsRegistry
from placelabel.providers.base import (
    Candidate,
    CandidateKind,
    PlaceSearchProvider,
    ProviderFailure,
    ProviderQuotaExceeded,
    ReverseGeocoder,
    sort_by_distance,
)
from placelabel.providers.http import get_json
from placelabel.providers.rate_limiter import RateLimiter
from placelabel.resolver.models import Coordinate
from placelabel.settings import ProviderSettings

LOGGER = structlog.get_logger(__name__)

_QUOTA_STATUSES = {"OVER_QUERY_LIMIT", "OVER_DAILY_LIMIT"}
_EMPTY_STATUSES = {"ZERO_RESULTS"}


class _LatLng(BaseModel):
    lat: float
    lng: float


class _Geometry(BaseModel):
    location: Optional[_LatLng] = None
    location_type: Optional[str] = None


class _Place(BaseModel):
    name: str = ""
    place_id: Optional[str] = None
    types: List[str] = Field(default_factory=list)
    geometry: Optional[_Geometry] = None
    business_status: Optional[str] = None


class _NearbyResponse(BaseModel):
    status: str
    results: List[_Place] = Field(default_factory=list)
    error_message: Optional[str] = None


class _AddressComponent(BaseModel):
    long_name: str
    short_name: str = ""
    types: List[str] = Field(default_factory=list)


class _GeocodeResult(BaseModel):
    address_components: List[_AddressComponent] = Field(default_factory=list)
    geometry: Optional[_Geometry] = None


class _GeocodeResponse(BaseModel):
    status: str
    results: List[_GeocodeResult] = Field(default_factory=list)
    error_message: Optional[str] = None


def _check_status(provider: str, status: str, message: Optional[str]) -> bool:
    """Return False for an empty result set, raise for errors."""
    if status == "OK":
        return True
    if status in _EMPTY_STATUSES:
        return False
    if status in _QUOTA_STATUSES:
        raise ProviderQuotaExceeded(provider, status)
    raise ProviderFailure(provider, f"{status}: {message or 'no detail'}")


class GooglePlacesProvider(PlaceSearchProvider):
    """Nearby Search restricted to a short radius around the report."""

    name = "google_places"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        api_key: str,
        settings: Optional[ProviderSettings] = None,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._settings = settings or ProviderSettings()
        self._rate_limiter = rate_limiter or RateLimiter(
            capacity=self._settings.rate_capacity,
            refill_interval=self._settings.rate_refill_seconds,
            max_concurrent=self._settings.max_concurrent,
        )
        self._metrics = metrics

    async def search_nearby_places(self, coordinate: Coordinate, radius: float) -> List[Candidate]:
        params = {
            "location": f"{coordinate.latitude},{coordinate.longitude}",
            "radius": str(max(1, int(radius))),
            "key": self._api_key,
        }
        payload = await self._rate_limiter.run(
            lambda: get_json(
                self._client,
                self._settings.places_url,
                params=params,
                provider=self.name,
                max_attempts=self._settings.max_attempts,
                metrics=self._metrics,
            )
        )
        try:
            response = _NearbyResponse.model_validate(payload)
        except ValidationError as exc:
            raise ProviderFailure(self.name, "unexpected payload shape") from exc
        if not _check_status(self.name, response.status, response.error_message):
            return []

        candidates: List[Candidate] = []
        for place in response.results:
            if not place.name or place.geometry is None or place.geometry.location is None:
                continue
            if place.business_status not in (None, "OPERATIONAL"):
                continue
            location = Coordinate(place.geometry.location.lat, place.geometry.location.lng)
            distance = coordinate.distance_to(location)
            if distance > radius:
                continue
            candidates.append(
                Candidate(
                    name=place.name,
                    kind=CandidateKind.POI,
                    coordinate=location,
                    distance_meters=distance,
                    place_id=place.place_id,
                    types=tuple(place.types),
                )
            )
        return sort_by_distance(candidates)


class GoogleGeocoder(ReverseGeocoder):
    """Reverse geocoding yielding one street and one area candidate at most."""

    name = "google_geocoder"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        api_key: str,
        settings: Optional[ProviderSettings] = None,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[MetricsRegistry] = None,
        language: Optional[str] = None,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._settings = settings or ProviderSettings()
        self._rate_limiter = rate_limiter or RateLimiter(
            capacity=self._settings.rate_capacity,
            refill_interval=self._settings.rate_refill_seconds,
            max_concurrent=self._settings.max_concurrent,
        )
        self._metrics = metrics
        self._language = language

    async def reverse_geocode(self, coordinate: Coordinate) -> List[Candidate]:
        params = {
            "latlng": f"{coordinate.latitude},{coordinate.longitude}",
            "key": self._api_key,
        }
        if self._language:
            params["language"] = self._language
        payload = await self._rate_limiter.run(
            lambda: get_json(
                self._client,
                self._settings.geocode_url,
                params=params,
                provider=self.name,
                max_attempts=self._settings.max_attempts,
                metrics=self._metrics,
            )
        )
        try:
            response = _GeocodeResponse.model_validate(payload)
        except ValidationError as exc:
            raise ProviderFailure(self.name, "unexpected payload shape") from exc
        if not _check_status(self.name, response.status, response.error_message) or not response.results:
            return []
        return candidates_from_geocode(coordinate, response.results[0])


def _component(result: _GeocodeResult, *types: str) -> Optional[str]:
    for wanted in types:
        for component in result.address_components:
            if wanted in component.types and component.long_name.strip():
                return component.long_name.strip()
    return None


def candidates_from_geocode(origin: Coordinate, result: _GeocodeResult) -> List[Candidate]:
    location = origin
    if result.geometry is not None and result.geometry.location is not None:
        location = Coordinate(result.geometry.location.lat, result.geometry.location.lng)
    distance = origin.distance_to(location)

    route = _component(result, "route")
    locality = _component(result, "locality", "postal_town")
    area = _component(result, "sublocality", "neighborhood", "locality", "postal_town", "administrative_area_level_1")

    candidates: List[Candidate] = []
    if route:
        parts = [route] + ([locality] if locality else [])
        candidates.append(
            Candidate(
                name=", ".join(parts),
                kind=CandidateKind.STREET,
                coordinate=location,
                distance_meters=distance,
                precision=0.95 if locality else 0.85,
            )
        )
    if area:
        candidates.append(
            Candidate(
                name=area,
                kind=CandidateKind.AREA,
                coordinate=location,
                distance_meters=distance,
                precision=0.75,
            )
        )
    LOGGER.debug("geocode_candidates", count=len(candidates))
    return candidates

"""Tiered location label resolution with cache write-through."""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from placelabel.cache.label_store import LabelCacheStore
from placelabel.cache.location_key import LocationKey
from placelabel.observability.metrics import MetricsRegistry
from placelabel.observability.tracing import log_lookup_result, span
from placelabel.privacy.sanitizer import PrivacySanitizer, compile_denylist
from placelabel.providers.base import (
    Candidate,
    CandidateKind,
    PlaceSearchProvider,
    ProviderFailure,
    ReverseGeocoder,
    guarded_call,
)
from placelabel.resolver.models import (
    AreaResolution,
    Coordinate,
    PoiResolution,
    Record,
    Resolution,
    ResolutionState,
    StreetResolution,
    Tier,
    Unresolved,
    clamp_confidence,
    label_from_resolution,
    resolution_from_label,
    utcnow,
)
from placelabel.resolver.scoring import is_acceptable, is_sensitive_place, rank_candidates
from placelabel.settings import ConfigurationError, ResolverConfig

LOGGER = structlog.get_logger(__name__)

_DEFAULT_STREET_PRECISION = 0.85


class LocationResolver:
    """Turns coordinates into privacy-safe labels.

    Tier order is POI, street, area, then the fixed placeholder. Cache hits
    short-circuit all provider calls; only successful results are written
    back so placeholders are retried once providers recover. Concurrent
    requests for the same key share one in-flight lookup.
    """

    def __init__(
        self,
        *,
        config: ResolverConfig,
        cache: LabelCacheStore,
        places: Optional[PlaceSearchProvider] = None,
        geocoder: Optional[ReverseGeocoder] = None,
        sanitizer: Optional[PrivacySanitizer] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if config is None:
            raise ConfigurationError("LocationResolver requires a ResolverConfig")
        if cache is None:
            raise ConfigurationError("LocationResolver requires a cache store")
        self._config = config
        self._cache = cache
        self._places = places
        self._geocoder = geocoder
        self._sanitizer = sanitizer or PrivacySanitizer(config.denylist)
        self._venue_names = compile_denylist(config.sensitive_name_terms)
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock
        self._inflight: Dict[str, "asyncio.Task[Resolution]"] = {}

    @property
    def config(self) -> ResolverConfig:
        return self._config

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    def key_for(self, coordinate: Coordinate, *, locale: Optional[str] = None) -> LocationKey:
        return LocationKey.build(
            coordinate,
            locale=locale or self._config.locale,
            rules_version=self._config.rules_version,
            quantization_factor=self._config.quantization_factor,
        )

    def is_resolving(self, coordinate: Coordinate, *, locale: Optional[str] = None) -> bool:
        prefix = f"{self.key_for(coordinate, locale=locale).encoded}:"
        return any(name.startswith(prefix) for name in self._inflight)

    def state_of(self, record: Record) -> ResolutionState:
        if self.is_resolving(record.coordinate):
            return ResolutionState.RESOLVING
        return record.state(self._config.rules_version)

    async def resolve(
        self,
        coordinate: Coordinate,
        *,
        locale: Optional[str] = None,
        area_only: bool = False,
    ) -> Resolution:
        """Resolve a coordinate. Never raises for provider or cache trouble."""
        area_only = area_only or self._config.area_only_override
        key = self.key_for(coordinate, locale=locale)
        flight = f"{key.encoded}:{'area' if area_only else 'any'}"
        task = self._inflight.get(flight)
        if task is None:
            task = asyncio.ensure_future(self._resolve_key(key, coordinate, area_only=area_only))
            self._inflight[flight] = task
            task.add_done_callback(lambda _done, name=flight: self._inflight.pop(name, None))
        else:
            self._metrics.incr("lookups_coalesced")
        # A cancelled caller must not cancel the lookup other callers share.
        return await asyncio.shield(task)

    async def resolve_record(self, record: Record) -> Resolution:
        """Resolve and copy a successful result onto ``record``."""
        resolution = await self.resolve(record.coordinate, area_only=record.area_only)
        record.apply_resolution(
            resolution,
            rules_version=self._config.rules_version,
            resolved_at=self._clock(),
        )
        return resolution

    async def resolve_pending(self, records: Iterable[Record]) -> int:
        """Resolve every record that is unresolved or stale; return successes."""
        pending = [record for record in records if record.needs_resolution(self._config.rules_version)]
        if not pending:
            return 0
        results = await asyncio.gather(*(self.resolve_record(record) for record in pending))
        return sum(1 for resolution in results if resolution.resolved)

    async def aclose(self) -> None:
        """Cancel in-flight lookups, e.g. on shutdown."""
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    async def _resolve_key(self, key: LocationKey, coordinate: Coordinate, *, area_only: bool) -> Resolution:
        with span(name="resolve", key=key.encoded):
            cached = await self._cache.get(key)
            if cached is not None and (not area_only or cached.tier is Tier.AREA):
                resolution = resolution_from_label(cached, hedge_threshold=self._config.confidence_hedge_threshold)
                self._record_outcome(resolution)
                return resolution

            resolution = await self._lookup(coordinate, key=key, area_only=area_only)
            self._record_outcome(resolution)

            label = label_from_resolution(resolution, now=self._clock())
            # Per-request area-only results would shadow richer labels for everyone else.
            cacheable = not area_only or self._config.area_only_override
            if label is not None and cacheable:
                await self._cache.set(key, label)
            return resolution

    async def _lookup(self, coordinate: Coordinate, *, key: LocationKey, area_only: bool) -> Resolution:
        force_area = area_only
        places = self._places
        if not area_only and self._config.use_places_enrichment and places is not None:
            poi, force_area = await self._resolve_poi(places, coordinate, key=key)
            if poi is not None:
                return poi

        geocoded = await self._geocode(coordinate, key=key)
        if not force_area:
            street = self._first_clean(geocoded, CandidateKind.STREET)
            if street is not None:
                candidate, name = street
                precision = candidate.precision if candidate.precision is not None else _DEFAULT_STREET_PRECISION
                return StreetResolution(name=name, confidence=clamp_confidence(precision))

        area = self._first_clean(geocoded, CandidateKind.AREA)
        if area is not None:
            candidate, name = area
            precision = candidate.precision if candidate.precision is not None else self._config.area_confidence_cap
            return AreaResolution(name=name, confidence=clamp_confidence(min(precision, self._config.area_confidence_cap)))

        LOGGER.info("resolution_unresolved", key=key.encoded)
        return Unresolved(placeholder=self._sanitizer.placeholder)

    async def _resolve_poi(
        self,
        places: PlaceSearchProvider,
        coordinate: Coordinate,
        *,
        key: LocationKey,
    ) -> Tuple[Optional[PoiResolution], bool]:
        """Return a POI resolution (or None) and whether to force the area tier."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            candidates = await guarded_call(
                places.search_nearby_places(coordinate, self._config.poi_search_radius),
                provider=places.name,
                timeout=self._config.provider_timeout_seconds,
                metrics=self._metrics,
            )
        except ProviderFailure as exc:
            self._provider_failed(exc, tier=Tier.POI, key=key)
            return None, False
        log_lookup_result(
            provider=places.name,
            key=key.encoded,
            candidates=len(candidates),
            elapsed_ms=int((loop.time() - started) * 1000),
        )

        for score in rank_candidates(candidates, self._config):
            candidate = score.candidate
            if is_sensitive_place(candidate, self._config.sensitive_place_types, self._venue_names):
                self._metrics.incr("sensitive_skips")
                if score.snap:
                    # Standing at a sensitive venue: even the street would narrow it down.
                    LOGGER.info("poi_sensitive_snap", key=key.encoded)
                    return None, True
                continue
            sanitized = self._sanitizer.sanitize(candidate.name)
            if sanitized.rejected:
                if sanitized.reason == "denylist":
                    self._metrics.incr("denylist_hits")
                continue
            if not is_acceptable(score, self._config):
                continue
            if score.snap:
                self._metrics.incr("poi_snaps")
            return (
                PoiResolution(
                    name=sanitized.text,
                    confidence=score.confidence,
                    hedged=score.confidence < self._config.confidence_hedge_threshold,
                    place_id=candidate.place_id,
                ),
                False,
            )
        return None, False

    async def _geocode(self, coordinate: Coordinate, *, key: LocationKey) -> List[Candidate]:
        if self._geocoder is None:
            return []
        try:
            return await guarded_call(
                self._geocoder.reverse_geocode(coordinate),
                provider=self._geocoder.name,
                timeout=self._config.provider_timeout_seconds,
                metrics=self._metrics,
            )
        except ProviderFailure as exc:
            self._provider_failed(exc, tier=Tier.STREET, key=key)
            return []

    def _first_clean(self, candidates: List[Candidate], kind: CandidateKind) -> Optional[Tuple[Candidate, str]]:
        for candidate in candidates:
            if candidate.kind is not kind:
                continue
            sanitized = self._sanitizer.sanitize(candidate.name)
            if sanitized.rejected:
                if sanitized.reason == "denylist":
                    self._metrics.incr("denylist_hits")
                continue
            return candidate, sanitized.text
        return None

    def _provider_failed(self, exc: ProviderFailure, *, tier: Tier, key: LocationKey) -> None:
        self._metrics.incr("provider_failures")
        LOGGER.warning(
            "provider_failed",
            provider=exc.provider,
            reason=exc.reason,
            error_type=type(exc).__name__,
            tier=tier.value,
            key=key.encoded,
        )

    def _record_outcome(self, resolution: Resolution) -> None:
        self._metrics.incr("labels_total")
        if isinstance(resolution, Unresolved):
            self._metrics.incr("labels_placeholder")
            return
        self._metrics.incr(f"labels_{resolution.tier.value}")
        if isinstance(resolution, PoiResolution) and resolution.hedged:
            self._metrics.incr("labels_poi_hedged")

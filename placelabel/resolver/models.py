"""Domain types shared by the cache, providers, resolver and migration."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

PLACEHOLDER_NEARBY_AREA = "Nearby area"

_EARTH_RADIUS_METERS = 6_371_008.8


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_confidence(value: float) -> float:
    """Clamp ``value`` into [0, 1]; NaN collapses to zero."""
    if math.isnan(value):
        return 0.0
    return min(max(float(value), 0.0), 1.0)


@dataclass(frozen=True, slots=True)
class Coordinate:
    """A latitude/longitude pair in decimal degrees."""

    latitude: float
    longitude: float

    def distance_to(self, other: "Coordinate") -> float:
        """Great-circle distance in metres (haversine)."""
        lat1, lat2 = math.radians(self.latitude), math.radians(other.latitude)
        dlat = lat2 - lat1
        dlon = math.radians(other.longitude - self.longitude)
        a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
        return 2 * _EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


class Tier(str, Enum):
    """Specificity of a resolved label, most specific first."""

    POI = "poi"
    STREET = "street"
    AREA = "area"


class ResolutionState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    STALE = "stale"


class LocationLabel(BaseModel):
    """Cache entry payload. Any missing or invalid field rejects the entry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    tier: Tier
    confidence: float = Field(ge=0.0, le=1.0, strict=True)
    updated_at: datetime = Field(alias="updatedAt")

    @field_validator("name")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value

    def to_payload(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "tier": self.tier.value,
            "confidence": self.confidence,
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class PoiResolution:
    name: str
    confidence: float
    hedged: bool = False
    place_id: Optional[str] = None
    from_cache: bool = field(default=False, compare=False)

    tier: ClassVar[Tier] = Tier.POI
    resolved: ClassVar[bool] = True

    @property
    def display_text(self) -> str:
        return f"near {self.name}" if self.hedged else self.name


@dataclass(frozen=True)
class StreetResolution:
    name: str
    confidence: float
    from_cache: bool = field(default=False, compare=False)

    tier: ClassVar[Tier] = Tier.STREET
    resolved: ClassVar[bool] = True

    @property
    def display_text(self) -> str:
        return self.name


@dataclass(frozen=True)
class AreaResolution:
    name: str
    confidence: float
    from_cache: bool = field(default=False, compare=False)

    tier: ClassVar[Tier] = Tier.AREA
    resolved: ClassVar[bool] = True

    @property
    def display_text(self) -> str:
        from placelabel.privacy.sanitizer import with_area_suffix

        return with_area_suffix(self.name)


@dataclass(frozen=True)
class Unresolved:
    """All tiers failed; carries the fixed offline placeholder."""

    placeholder: str = PLACEHOLDER_NEARBY_AREA

    tier: ClassVar[Optional[Tier]] = None
    resolved: ClassVar[bool] = False
    confidence: ClassVar[float] = 0.0

    @property
    def display_text(self) -> str:
        return self.placeholder


Resolution = Union[PoiResolution, StreetResolution, AreaResolution, Unresolved]


def resolution_from_label(label: LocationLabel, *, hedge_threshold: float) -> Resolution:
    """Rebuild a tier variant from a cached label."""
    if label.tier is Tier.POI:
        return PoiResolution(
            name=label.name,
            confidence=label.confidence,
            hedged=label.confidence < hedge_threshold,
            from_cache=True,
        )
    if label.tier is Tier.STREET:
        return StreetResolution(name=label.name, confidence=label.confidence, from_cache=True)
    return AreaResolution(name=label.name, confidence=label.confidence, from_cache=True)


def label_from_resolution(resolution: Resolution, *, now: Optional[datetime] = None) -> Optional[LocationLabel]:
    """Serializable form of a successful resolution; ``None`` for placeholders."""
    if isinstance(resolution, Unresolved):
        return None
    return LocationLabel(
        name=resolution.name,
        tier=resolution.tier,
        confidence=clamp_confidence(resolution.confidence),
        updated_at=now or utcnow(),
    )


@dataclass
class Record:
    """A user report owning a coordinate and its resolved display fields."""

    record_id: str
    latitude: float
    longitude: float
    created_at: datetime = field(default_factory=utcnow)
    area_only: bool = False
    display_name: Optional[str] = None
    display_tier: Optional[Tier] = None
    confidence: Optional[float] = None
    resolved_at: Optional[datetime] = None
    resolution_version: Optional[int] = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    def state(self, rules_version: int) -> ResolutionState:
        if self.display_name is None or self.display_tier is None or self.resolved_at is None:
            return ResolutionState.UNRESOLVED
        if (self.resolution_version or 0) < rules_version:
            return ResolutionState.STALE
        return ResolutionState.RESOLVED

    def needs_resolution(self, rules_version: int) -> bool:
        return self.state(rules_version) is not ResolutionState.RESOLVED

    def apply_resolution(
        self,
        resolution: Resolution,
        *,
        rules_version: int,
        resolved_at: Optional[datetime] = None,
    ) -> bool:
        """Copy a successful resolution onto the record.

        Placeholders never overwrite the record so the owner keeps showing
        the generic text and the record stays eligible for a later retry.
        """
        if isinstance(resolution, Unresolved):
            return False
        self.display_name = resolution.name
        self.display_tier = resolution.tier
        self.confidence = clamp_confidence(resolution.confidence)
        self.resolved_at = resolved_at or utcnow()
        self.resolution_version = rules_version
        return True

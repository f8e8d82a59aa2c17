"""Validated configuration for the resolver, providers and migration."""
from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_SENSITIVE_TERMS: List[str] = [
    "hospital",
    "clinic",
    "court",
    "mosque",
    "church",
    "temple",
    "synagogue",
    "primary school",
    "gp",
    "surgery",
    "police",
    "shelter",
    "care home",
    "childcare",
]

DEFAULT_SENSITIVE_PLACE_TYPES: List[str] = [
    "hospital",
    "doctor",
    "dentist",
    "pharmacy",
    "physiotherapist",
    "school",
    "primary_school",
    "secondary_school",
    "university",
    "childcare",
    "church",
    "mosque",
    "synagogue",
    "hindu_temple",
    "place_of_worship",
    "police",
    "courthouse",
    "fire_station",
    "local_government_office",
    "homeless_shelter",
    "care_home",
    "funeral_home",
]


class ConfigurationError(RuntimeError):
    """Missing or invalid configuration; the only fatal error class."""


class ResolverConfig(BaseModel):
    """Tuning knobs for label resolution. Defaults are product-tunable."""

    rules_version: int = Field(default=2, ge=1)
    locale: str = Field(default="en_GB", min_length=1)
    confidence_hedge_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    poi_search_radius: float = Field(default=35.0, gt=0)
    # Screens every tier; empty unless an operator adds terms.
    denylist: List[str] = Field(default_factory=list)
    # Venue words checked against POI names only; street and area names keep them.
    sensitive_name_terms: List[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_TERMS))
    sensitive_place_types: List[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_PLACE_TYPES))
    quantization_factor: int = Field(default=4000, gt=0)
    snap_window_meters: float = Field(default=18.0, ge=0)
    dense_competition_meters: float = Field(default=12.0, gt=0)
    ambiguity_discount: float = Field(default=0.12, ge=0.0, le=1.0)
    min_confidence_for_hedged_poi: float = Field(default=0.65, ge=0.0, le=1.0)
    max_poi_candidates: int = Field(default=3, gt=0)
    area_confidence_cap: float = Field(default=0.6, ge=0.0, le=1.0)
    provider_timeout_seconds: float = Field(default=5.0, gt=0)
    use_places_enrichment: bool = True
    area_only_override: bool = False

    @field_validator("denylist", "sensitive_name_terms", "sensitive_place_types")
    @classmethod
    def _normalise_terms(cls, value: List[str]) -> List[str]:
        return [term.strip().lower() for term in value if term and term.strip()]


class ProviderSettings(BaseModel):
    user_agent: str = "placelabel/0.1"
    timeout_seconds: float = Field(default=5.0, gt=0)
    max_connections: int = Field(default=4, gt=0)
    max_attempts: int = Field(default=2, ge=1)
    rate_capacity: int = Field(default=4, gt=0)
    rate_refill_seconds: float = Field(default=0.3, gt=0)
    max_concurrent: int = Field(default=2, gt=0)
    places_url: str = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
    geocode_url: str = "https://maps.googleapis.com/maps/api/geocode/json"


class MigrationConfig(BaseModel):
    batch_size: int = Field(default=50, gt=0)
    max_batches_per_run: int = Field(default=4, gt=0)
    concurrency: int = Field(default=4, gt=0)
    pause_seconds: float = Field(default=0.05, ge=0)
    failure_backoff_seconds: float = Field(default=0.4, ge=0)


class AppPaths(BaseModel):
    cache_dir: Path = Path("data/label_cache")
    records_path: Path = Path("data/records.jsonl")
    checkpoint_dir: Path = Path("data/checkpoints")
    metrics_dir: Path = Path("data/metrics")


class Settings(BaseModel):
    app: AppPaths = Field(default_factory=AppPaths)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)


def build_settings(payload: Dict[str, object]) -> Settings:
    """Validate a raw settings mapping, raising ``ConfigurationError``."""
    try:
        return Settings(**payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc


def load_settings(path: Path) -> Settings:
    """Read the TOML configuration file; a missing file yields defaults."""
    if not path.exists():
        return Settings()
    with path.open("rb") as handle:
        try:
            payload = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"Unreadable settings file {path}: {exc}") from exc
    return build_settings(payload)


def require_api_key(value: Optional[str]) -> str:
    if not value or not value.strip():
        raise ConfigurationError("GOOGLE_MAPS_API_KEY is not set")
    return value.strip()

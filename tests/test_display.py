from datetime import datetime, timezone

import pytest

from placelabel.resolver.display import compact_label, friendly_label
from placelabel.resolver.models import Record, Tier
from placelabel.settings import ResolverConfig

STAMP = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _record(name=None, tier=None, confidence=None):
    return Record(
        record_id="r1",
        latitude=51.539,
        longitude=-0.1426,
        display_name=name,
        display_tier=tier,
        confidence=confidence,
        resolved_at=STAMP if name else None,
        resolution_version=2 if name else None,
    )


@pytest.mark.parametrize("confidence, expected", [(0.6, "near Pret A Manger"), (0.9, "Pret A Manger")])
def test_poi_hedging_follows_threshold(confidence, expected):
    config = ResolverConfig(confidence_hedge_threshold=0.8)
    assert friendly_label(_record("Pret A Manger", Tier.POI, confidence), config) == expected


def test_street_and_area_labels():
    config = ResolverConfig()
    assert friendly_label(_record("Camden High Street", Tier.STREET, 0.95), config) == "Camden High Street"
    assert friendly_label(_record("Camden Town", Tier.AREA, 0.6), config) == "Camden Town area"
    assert friendly_label(_record("Soho district", Tier.AREA, 0.6), config) == "Soho district"


def test_unresolved_and_synthetic_records_read_nearby_area():
    config = ResolverConfig()
    assert friendly_label(_record(), config) == "Nearby area"
    assert friendly_label(_record("Grid 12", Tier.AREA, 0.5), config) == "Nearby area"
    assert friendly_label(_record("Cell 4", Tier.STREET, 0.9), config) == "Nearby area"


def test_stored_name_is_screened_against_current_denylist():
    config = ResolverConfig(denylist=["pret"])
    assert friendly_label(_record("Pret A Manger", Tier.POI, 0.95), config) == "Nearby area"


def test_friendly_label_is_never_empty():
    config = ResolverConfig()
    for tier in Tier:
        assert friendly_label(_record("   ", tier, 0.9), config)


@pytest.mark.parametrize(
    "text, max_length, expected",
    [
        ("Corner Cafe", 18, "Corner Cafe"),
        ("Camden High Street, London", 18, "Camden High Street"),
        ("Kentish Town West area", 14, "Kentish area"),
        ("near Pret A Manger Euston Road", 18, "near Pret A Manger"),
        ("Supercalifragilistic", 10, "Supercalif"),
        ("", 18, "Nearby area"),
    ],
)
def test_compact_label(text, max_length, expected):
    assert compact_label(text, max_length) == expected


def test_compact_label_keeps_area_suffix_after_separator():
    assert compact_label("Camden Town, London area", 16) == "Camden Town area"

import re

from placelabel.cache.location_key import LocationKey, quantize
from placelabel.resolver.models import Coordinate

from conftest import ORIGIN, offset


def _key(coordinate, *, locale="en_GB", version=2):
    return LocationKey.build(coordinate, locale=locale, rules_version=version, quantization_factor=4000)


def test_same_coordinate_yields_identical_key():
    assert _key(ORIGIN).encoded == _key(Coordinate(ORIGIN.latitude, ORIGIN.longitude)).encoded


def test_nearby_reports_share_a_slot():
    assert _key(ORIGIN) == _key(offset(ORIGIN, north_m=2.0, east_m=2.0))


def test_distant_reports_get_different_slots():
    assert _key(ORIGIN) != _key(offset(ORIGIN, north_m=200.0))


def test_locale_and_rules_version_are_part_of_identity():
    base = _key(ORIGIN)
    assert base.encoded != _key(ORIGIN, locale="fr_FR").encoded
    assert base.encoded != _key(ORIGIN, version=3).encoded


def test_encoded_key_is_filename_safe_and_decodes():
    key = _key(ORIGIN)
    assert re.fullmatch(r"[A-Za-z0-9_-]+", key.encoded)
    assert LocationKey.decode(key.encoded) == key
    assert str(key) == key.encoded


def test_decode_rejects_foreign_names():
    assert LocationKey.decode("not-a-key!!") is None
    assert LocationKey.decode("") is None


def test_quantize_rounds_to_grid():
    assert quantize(51.5390, 4000) == 206156
    assert quantize(-0.1426, 4000) == -570

"""Deterministic cache keys for quantized coordinates."""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Optional

import orjson

from placelabel.resolver.models import Coordinate

# 1/4000 of a degree is roughly 25 m of latitude; nearby reports share a slot.
DEFAULT_QUANTIZATION_FACTOR = 4000


def quantize(value: float, factor: int = DEFAULT_QUANTIZATION_FACTOR) -> int:
    return int(round(value * factor))


@dataclass(frozen=True, slots=True)
class LocationKey:
    """Cache identity: quantized lat/lon, locale and rules version."""

    qlat: int
    qlon: int
    locale: str
    rules_version: int

    @classmethod
    def build(
        cls,
        coordinate: Coordinate,
        *,
        locale: str,
        rules_version: int,
        quantization_factor: int = DEFAULT_QUANTIZATION_FACTOR,
    ) -> "LocationKey":
        return cls(
            qlat=quantize(coordinate.latitude, quantization_factor),
            qlon=quantize(coordinate.longitude, quantization_factor),
            locale=locale,
            rules_version=int(rules_version),
        )

    @property
    def encoded(self) -> str:
        """URL- and filename-safe base64 of the canonical JSON payload."""
        payload = orjson.dumps(
            {"qlat": self.qlat, "qlon": self.qlon, "locale": self.locale, "v": self.rules_version},
            option=orjson.OPT_SORT_KEYS,
        )
        return base64.urlsafe_b64encode(payload).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, encoded: str) -> Optional["LocationKey"]:
        """Parse an encoded key; foreign or damaged names yield ``None``."""
        padded = encoded + "=" * (-len(encoded) % 4)
        try:
            payload = orjson.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            return cls(
                qlat=int(payload["qlat"]),
                qlon=int(payload["qlon"]),
                locale=str(payload["locale"]),
                rules_version=int(payload["v"]),
            )
        except (binascii.Error, UnicodeEncodeError, orjson.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    def __str__(self) -> str:
        return self.encoded

"""User-facing label text for records."""
from __future__ import annotations

import functools
import re
from typing import Optional, Tuple

from placelabel.privacy.sanitizer import (
    AREA_SUFFIX,
    PrivacySanitizer,
    normalise_whitespace,
)
from placelabel.resolver.models import PLACEHOLDER_NEARBY_AREA, Record, Tier
from placelabel.settings import ResolverConfig

_SEPARATORS = re.compile(r"\s*(?:,|\u00b7|\||\s[-\u2013\u2014]\s)\s*")
_AREA_TAIL = f" {AREA_SUFFIX}"


@functools.lru_cache(maxsize=8)
def _sanitizer_for(denylist: Tuple[str, ...]) -> PrivacySanitizer:
    return PrivacySanitizer(denylist)


def friendly_label(record: Record, config: ResolverConfig, *, sanitizer: Optional[PrivacySanitizer] = None) -> str:
    """Tier-appropriate text for ``record``; never empty, never coordinates.

    Stored names are screened again so a denylist change takes effect
    before the record is re-resolved.
    """
    if record.display_name is None or record.display_tier is None:
        return PLACEHOLDER_NEARBY_AREA
    sanitizer = sanitizer or _sanitizer_for(tuple(config.denylist))
    if record.display_tier is Tier.AREA:
        return sanitizer.area_display(record.display_name)
    screened = sanitizer.sanitize(record.display_name)
    if screened.rejected:
        return sanitizer.placeholder
    if record.display_tier is Tier.POI and (record.confidence or 0.0) < config.confidence_hedge_threshold:
        return f"near {screened.text}"
    return screened.text


def _truncate_words(text: str, budget: int) -> str:
    kept = ""
    for word in text.split(" "):
        candidate = f"{kept} {word}" if kept else word
        if len(candidate) > budget:
            break
        kept = candidate
    return kept or text[:budget].rstrip()


def compact_label(text: str, max_length: int = 18) -> str:
    """Shorten ``text`` for small surfaces.

    Drops everything after the first separator, then trims whole words.
    A trailing ``" area"`` survives so area labels stay recognisable.
    """
    label = normalise_whitespace(text) or PLACEHOLDER_NEARBY_AREA
    if len(label) <= max_length:
        return label

    base, suffix = label, ""
    if label.lower().endswith(_AREA_TAIL) and len(label) > len(_AREA_TAIL):
        base, suffix = label[: -len(_AREA_TAIL)], label[-len(_AREA_TAIL):]
    head = _SEPARATORS.split(base, maxsplit=1)[0].strip() or base

    budget = max_length - len(suffix)
    if budget <= 0:
        return _truncate_words(label, max(max_length, 1))
    return _truncate_words(head, budget) + suffix

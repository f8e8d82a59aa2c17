"""Privacy filtering for display names.

Everything here is pure: no I/O, no clock, no configuration lookups beyond
what the caller passes in. The same input always produces the same output.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Pattern, Tuple

from placelabel.resolver.models import PLACEHOLDER_NEARBY_AREA

# Grid-index style names leak internal cell identifiers.
SYNTHETIC_PATTERN = re.compile(r"^(Area|Cell|Grid|Zone)\s*\d+$", re.IGNORECASE)

AREA_SUFFIX = "area"
AREA_QUALIFIERS: Tuple[str, ...] = (
    "area",
    "district",
    "neighbourhood",
    "neighborhood",
    "quarter",
    "vicinity",
)

_WHITESPACE = re.compile(r"\s+")


def normalise_whitespace(name: str) -> str:
    return _WHITESPACE.sub(" ", name).strip()


def is_synthetic(name: str) -> bool:
    return SYNTHETIC_PATTERN.match(normalise_whitespace(name)) is not None


def is_placeholder(name: str) -> bool:
    trimmed = normalise_whitespace(name)
    return trimmed == PLACEHOLDER_NEARBY_AREA or is_synthetic(trimmed)


def has_area_qualifier(name: str) -> bool:
    words = normalise_whitespace(name).lower().split(" ")
    return len(words) > 1 and words[-1] in AREA_QUALIFIERS


def with_area_suffix(name: str) -> str:
    """Area display text: ``"Camden"`` -> ``"Camden area"``.

    Synthetic and empty names collapse to the placeholder; names already
    ending in an equivalent qualifier are returned as-is.
    """
    trimmed = normalise_whitespace(name)
    if not trimmed or is_placeholder(trimmed):
        return PLACEHOLDER_NEARBY_AREA
    if has_area_qualifier(trimmed):
        return trimmed
    return f"{trimmed} {AREA_SUFFIX}"


def compile_denylist(terms: Iterable[str]) -> Optional[Pattern[str]]:
    """Build one case-insensitive alternation matching whole tokens only.

    ``(?<!\\w)`` / ``(?!\\w)`` are used instead of ``\\b`` so terms that begin
    or end with punctuation still require a token boundary.
    """
    cleaned = sorted({normalise_whitespace(term).lower() for term in terms if term and term.strip()}, key=len, reverse=True)
    if not cleaned:
        return None
    alternation = "|".join(r"\s+".join(re.escape(word) for word in term.split(" ")) for term in cleaned)
    return re.compile(rf"(?<!\w)(?:{alternation})(?!\w)", re.IGNORECASE)


@dataclass(frozen=True)
class SanitizedName:
    text: str
    rejected: bool = False
    reason: Optional[str] = None
    matched_term: Optional[str] = None


class PrivacySanitizer:
    """Screens candidate names before they can reach a user."""

    def __init__(self, denylist: Iterable[str] = (), *, placeholder: str = PLACEHOLDER_NEARBY_AREA) -> None:
        self._placeholder = placeholder
        self._denylist = compile_denylist(denylist)

    @property
    def placeholder(self) -> str:
        return self._placeholder

    def denylisted_term(self, name: str) -> Optional[str]:
        if self._denylist is None:
            return None
        match = self._denylist.search(name)
        return match.group(0) if match else None

    def is_denylisted(self, name: str) -> bool:
        return self.denylisted_term(name) is not None

    def sanitize(self, name: Optional[str]) -> SanitizedName:
        trimmed = normalise_whitespace(name or "")
        if not trimmed:
            return SanitizedName(self._placeholder, rejected=True, reason="empty")
        if is_synthetic(trimmed):
            return SanitizedName(self._placeholder, rejected=True, reason="synthetic")
        term = self.denylisted_term(trimmed)
        if term is not None:
            return SanitizedName(self._placeholder, rejected=True, reason="denylist", matched_term=term)
        return SanitizedName(trimmed)

    def area_display(self, name: Optional[str]) -> str:
        """Sanitize then render as area text with a single qualifier."""
        result = self.sanitize(name)
        if result.rejected:
            return self._placeholder
        return with_area_suffix(result.text)

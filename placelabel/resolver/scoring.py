"""Confidence heuristics for point-of-interest candidates."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Sequence

from placelabel.providers.base import Candidate, sort_by_distance
from placelabel.resolver.models import clamp_confidence
from placelabel.settings import ResolverConfig

SPECIFIC_TYPES = frozenset({"restaurant", "cafe", "store", "bar", "bakery", "supermarket", "lodging", "book_store"})
GENERIC_TYPES = frozenset({"establishment", "point_of_interest"})


@dataclass(frozen=True)
class PoiScore:
    candidate: Candidate
    confidence: float
    snap: bool
    ambiguous: bool
    margin_meters: Optional[float]


def is_sensitive_place(
    candidate: Candidate,
    sensitive_types: Iterable[str],
    name_pattern: Optional[Pattern[str]] = None,
) -> bool:
    """True when the place type or the venue name marks a sensitive place."""
    sensitive = set(sensitive_types)
    if any(place_type in sensitive for place_type in candidate.types):
        return True
    return name_pattern is not None and name_pattern.search(candidate.name) is not None


def _type_adjustment(types: Sequence[str]) -> float:
    if any(place_type in SPECIFIC_TYPES for place_type in types):
        return 0.1
    if types and all(place_type in GENERIC_TYPES for place_type in types):
        return -0.1
    return 0.0


def score_candidate(candidate: Candidate, runner_up: Optional[Candidate], config: ResolverConfig) -> PoiScore:
    """Score one candidate against the next-nearest competitor.

    Confidence falls off quadratically with distance inside the search
    radius, then is discounted when the runner-up is too close to tell the
    two apart.
    """
    ratio = candidate.distance_meters / max(config.poi_search_radius, 1.0)
    confidence = 1.0 - (ratio * ratio * 0.4)
    confidence += _type_adjustment(candidate.types)

    margin: Optional[float] = None
    ambiguous = False
    if runner_up is not None:
        margin = abs(runner_up.distance_meters - candidate.distance_meters)
        if margin <= config.dense_competition_meters:
            ambiguous = True
            confidence -= config.ambiguity_discount * (1.0 - margin / config.dense_competition_meters)

    return PoiScore(
        candidate=candidate,
        confidence=clamp_confidence(confidence),
        snap=candidate.distance_meters <= config.snap_window_meters,
        ambiguous=ambiguous,
        margin_meters=margin,
    )


def rank_candidates(candidates: Sequence[Candidate], config: ResolverConfig) -> List[PoiScore]:
    """Score the nearest ``max_poi_candidates`` candidates, best first.

    Snapped candidates win, then confidence, then distance.
    """
    ordered = sort_by_distance(list(candidates))
    scores: List[PoiScore] = []
    for index, candidate in enumerate(ordered[: config.max_poi_candidates]):
        neighbours = ordered[:index] + ordered[index + 1 :]
        runner_up = min(neighbours, key=lambda other: abs(other.distance_meters - candidate.distance_meters), default=None)
        scores.append(score_candidate(candidate, runner_up, config))
    scores.sort(key=lambda score: (not score.snap, -score.confidence, score.candidate.distance_meters))
    return scores


def is_acceptable(score: PoiScore, config: ResolverConfig) -> bool:
    return score.snap or score.confidence >= config.min_confidence_for_hedged_poi

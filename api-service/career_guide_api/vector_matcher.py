"""Cosine-similarity ranking of catalog records against a trait vector."""

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from career_guide_api.models import BuildingProfile, Occupation
from career_guide_api.traits import to_array

STRONG_TRAIT = 0.5
MAX_REASONS = 3
MAX_CONCERNS = 2


@dataclass
class VectorMatch:
    occupation: Occupation
    match_percentage: int

    @property
    def score(self) -> float:
        return max(0.0, min(1.0, self.match_percentage / 100))


def cosine_similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine of two trait vectors; 0 when either has zero magnitude."""
    va, vb = to_array(a), to_array(b)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def rank(
    user_vector: Mapping[str, float], records: Sequence[Occupation], limit: int = 10
) -> list[VectorMatch]:
    """Top ``limit`` records by rounded match percentage; ties keep input order."""
    matches = [
        VectorMatch(occ, int(round(cosine_similarity(user_vector, occ.trait_vector) * 100)))
        for occ in records
    ]
    # sort() is stable, so equal percentages stay in catalog order
    matches.sort(key=lambda m: m.match_percentage, reverse=True)
    return matches[: max(limit, 0)]


def match_reasons(profile: BuildingProfile, occupation: Occupation) -> list[str]:
    reasons = []
    shared = [
        name
        for name, data in profile.traits.items()
        if data.score > STRONG_TRAIT and occupation.trait_vector.get(name, 0) > STRONG_TRAIT
    ]
    if shared:
        reasons.append(f"Your {', '.join(shared[:3])} profile fits this occupation well")

    haystack = [t.lower() for t in occupation.tags]
    if occupation.sector:
        haystack.append(occupation.sector.lower())
    for interest in profile.interests:
        if any(interest.domain in tag for tag in haystack):
            reasons.append(f"Matches your interest in {interest.domain}")
            break
    return reasons[:MAX_REASONS]


def match_concerns(profile: BuildingProfile, occupation: Occupation) -> list[str]:
    concerns = []
    environment = occupation.work_environment.lower()
    for constraint in profile.constraints:
        if constraint.impact != "blocking":
            continue
        if constraint.type == "geographic" and any(
            w in environment for w in ("travel", "voyage", "déplacement")
        ):
            concerns.append("This occupation may require travelling")
        if constraint.type == "schedule" and any(
            w in environment for w in ("variable hours", "shift", "horaires variables")
        ):
            concerns.append("Working hours could be restrictive")
    return concerns[:MAX_CONCERNS]

"""Reconcile free-text occupation suggestions against the canonical catalog.

Each suggestion is scored against every catalog record with a weighted sum of
keyword-cluster, edit-distance and token-overlap signals. The best record is
kept along with up to two runners-up.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import structlog
from rapidfuzz.distance import Levenshtein

from career_guide_api.models import ConfidenceTier, Occupation
from career_guide_api.signals import OccupationSuggestion

logger = structlog.get_logger()

TITLE_KEYWORD_STEP = 0.2
TITLE_KEYWORD_CAP = 0.5
TITLE_WEIGHT = 0.3
SKILLS_WEIGHT = 0.35
DESCRIPTION_WEIGHT = 0.2
DESCRIPTION_KEYWORD_WEIGHT = 0.1
DESCRIPTION_KEYWORD_STEP = 0.1
MISSING_DESCRIPTION_PENALTY = 0.05
SECTOR_WEIGHT = 0.1
HIGH_TIER = 0.75
MEDIUM_TIER = 0.5
MAX_ALTERNATIVES = 2

# Variants are regex fragments matched at word starts of the lower-cased text,
# across French and English. "care" must not match "career".
TITLE_CLUSTERS: dict[str, tuple[str, ...]] = {
    "soigneur": ("soigneur", "caretaker", "keeper"),
    "care": ("soign", r"care(?!er)"),
    "animal": ("animal", "animaux", "animales"),
    "vétérin": ("vétérin", "veterinary", "vet"),
    "élevage": ("élevage", "breeder", "breeding"),
    "refuge": ("refuge", "shelter"),
}

DESCRIPTION_CLUSTERS: dict[str, tuple[str, ...]] = {
    "animal": ("animal", "animaux", "chat", "chien", "bestiole", "créature", "beast"),
    "soins": ("soins", "soin", r"care(?!er)", "traitement", "nourrir", "feed", "health"),
    "extérieur": ("extérieur", "outdoor", "plein air", "nature", "terrain", "field"),
    "équipe": ("équipe", "team", "groupe", "collaboration", "ensemble"),
    "technique": ("technique", "technical", "technologi", "skill", "compéten"),
    "management": ("management", "manager", "directeur", "leader", "responsable", "chief"),
}

_TOKEN_SPLIT = re.compile(r"\W+")


@dataclass
class ScoredOccupation:
    occupation: Occupation
    score: float


@dataclass
class ReconciledMatch:
    """Best catalog record for one suggestion."""

    suggestion: OccupationSuggestion
    best: ScoredOccupation
    alternatives: list[ScoredOccupation] = field(default_factory=list)

    @property
    def tier(self) -> ConfidenceTier:
        return confidence_tier(self.best.score)


def confidence_tier(score: float) -> ConfidenceTier:
    if score >= HIGH_TIER:
        return "high"
    if score >= MEDIUM_TIER:
        return "medium"
    return "low"


# =============================================================================
# Scoring components
# =============================================================================


def _compile_clusters(clusters: dict[str, tuple[str, ...]]) -> list[re.Pattern]:
    return [
        re.compile(r"\b(?:" + "|".join(variants) + ")")
        for variants in clusters.values()
    ]


_TITLE_PATTERNS = _compile_clusters(TITLE_CLUSTERS)
_DESCRIPTION_PATTERNS = _compile_clusters(DESCRIPTION_CLUSTERS)


def _cluster_hits(a: str, b: str, patterns: list[re.Pattern]) -> int:
    return sum(1 for p in patterns if p.search(a) and p.search(b))


def title_keyword_bonus(suggested: str, canonical: str) -> float:
    """+0.2 per keyword cluster present in both titles, capped at 0.5."""
    hits = _cluster_hits(suggested.lower(), canonical.lower(), _TITLE_PATTERNS)
    return min(hits * TITLE_KEYWORD_STEP, TITLE_KEYWORD_CAP)


def description_keyword_bonus(a: str, b: str) -> float:
    """0.1 per description cluster shared by both texts, capped at 1."""
    hits = _cluster_hits(a.lower(), b.lower(), _DESCRIPTION_PATTERNS)
    return min(1.0, hits * DESCRIPTION_KEYWORD_STEP)


def title_similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity; two empty strings are identical."""
    a, b = a.lower(), b.lower()
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)


def token_set(text: str) -> set[str]:
    return {t for t in _TOKEN_SPLIT.split(text.lower()) if len(t) > 2}


def jaccard(a: str, b: str) -> float:
    """Token-set Jaccard similarity (tokens longer than two characters)."""
    left, right = token_set(a), token_set(b)
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def similarity_score(suggestion: OccupationSuggestion, occupation: Occupation) -> float:
    """Score how well a catalog record matches a suggestion, in [0, 1].

    Only the edit-distance and Jaccard parts are symmetric; the full score
    is not, since the description penalty and skills term are one-sided.
    """
    score = title_keyword_bonus(suggestion.title, occupation.title)
    score += title_similarity(suggestion.title, occupation.title) * TITLE_WEIGHT

    if suggestion.reasoning and occupation.skills:
        score += jaccard(suggestion.reasoning, " ".join(occupation.skills)) * SKILLS_WEIGHT

    if suggestion.description and occupation.description:
        score += jaccard(suggestion.description, occupation.description) * DESCRIPTION_WEIGHT
        score += (
            description_keyword_bonus(suggestion.description, occupation.description)
            * DESCRIPTION_KEYWORD_WEIGHT
        )
    elif suggestion.description or occupation.description:
        score -= MISSING_DESCRIPTION_PENALTY

    if suggestion.sector and occupation.sector:
        if suggestion.sector.strip().lower() == occupation.sector.strip().lower():
            score += SECTOR_WEIGHT

    return max(0.0, min(1.0, score))


# =============================================================================
# Reconciler
# =============================================================================


class RecommendationReconciler:
    """Match generative suggestions to canonical occupations."""

    def rank(
        self, suggestion: OccupationSuggestion, catalog: Iterable[Occupation]
    ) -> list[ScoredOccupation]:
        """Score every record; highest first, equal scores by lowest id."""
        scored = [ScoredOccupation(occ, similarity_score(suggestion, occ)) for occ in catalog]
        scored.sort(key=lambda s: (-s.score, s.occupation.id))
        return scored

    def reconcile(
        self, suggestions: Sequence[OccupationSuggestion], catalog: Sequence[Occupation]
    ) -> list[ReconciledMatch]:
        """Find the best record per suggestion, with up to two alternatives.

        Returns an empty list when there is nothing to match; the caller then
        falls back to vector ranking.
        """
        if not catalog:
            return []
        matches: list[ReconciledMatch] = []
        for suggestion in suggestions:
            ranked = self.rank(suggestion, catalog)
            match = ReconciledMatch(
                suggestion=suggestion,
                best=ranked[0],
                alternatives=ranked[1 : 1 + MAX_ALTERNATIVES],
            )
            logger.info(
                "Suggestion reconciled",
                suggested=suggestion.title,
                matched=match.best.occupation.title,
                score=round(match.best.score, 3),
                tier=match.tier,
            )
            matches.append(match)
        return matches

"""Merge per-turn evidence into the building profile.

All arithmetic keeps scores inside their declared bounds: trait scores and
confidences in [0, 1], interest levels, value importance and constraint
flexibility in [1, 5].
"""

import math
from typing import Any

import structlog

from career_guide_api.models import (
    BuildingProfile,
    Constraint,
    Interest,
    TraitScore,
    WorkValue,
    utcnow,
)
from career_guide_api.signals import (
    ExperienceSignal,
    Insights,
    MalformedSignalError,
    WorkEnvironmentSignal,
)
from career_guide_api.traits import DIMENSIONS, TRAIT_NAMES, clamp_unit, parse_trait

logger = structlog.get_logger()

VALID_IMPACTS = ("blocking", "limiting", "preferential")
STRONG_CONFIDENCE = 0.7
TRAIT_PRESENCE_THRESHOLD = 0.1
INTEREST_TRAIT_WEIGHT = 0.8

# Traits reinforced by each interest domain when building the matching vector
INTEREST_TRAIT_MAP: dict[str, list[str]] = {
    "horticulture": ["creativity", "design", "independent", "detail-oriented", "service"],
    "agriculture": ["independent", "detail-oriented", "problem-solving"],
    "technology": ["analytical", "problem-solving", "innovation"],
    "health": ["empathy", "service", "communication", "problem-solving"],
    "education": ["communication", "teaching", "empathy", "organizational"],
    "art": ["creativity", "design", "innovation"],
    "business": ["leadership", "communication", "analytical", "organizational"],
    "sports": ["teamwork", "leadership", "independent"],
    "science": ["analytical", "problem-solving", "innovation"],
    "construction": ["problem-solving", "detail-oriented", "independent"],
    "culinary": ["creativity", "detail-oriented", "service"],
    "mechanics": ["problem-solving", "detail-oriented", "analytical"],
    "beauty": ["creativity", "service", "communication"],
    "hospitality": ["service", "communication", "organizational"],
    "social": ["empathy", "communication", "service"],
    "law": ["analytical", "communication", "detail-oriented"],
    "communication": ["communication", "creativity", "collaborative"],
    "security": ["detail-oriented", "problem-solving", "independent"],
    "animals": ["empathy", "service", "independent", "detail-oriented"],
}


def _bounded(value: Any, low: float, high: float, default: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(value):
        return default
    return max(low, min(high, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ProfileAggregator:
    """Owns the arithmetic that mutates a ``BuildingProfile``.

    The aggregator mutates the profile it is given in place; callers hand it
    the conversation copy they are about to persist.
    """

    def __init__(self, profile: BuildingProfile | None = None):
        self.profile = profile if profile is not None else BuildingProfile()

    # -------------------------------------------------------------------------
    # Traits
    # -------------------------------------------------------------------------

    def merge_trait(
        self, trait: str, new_score: float, new_confidence: float, source_id: str
    ) -> TraitScore:
        """Fold one observation into the trait's confidence-weighted average.

        Raises:
            UnknownTraitError: If ``trait`` is not a trait dimension.
        """
        name = parse_trait(trait).value
        new_score = clamp_unit(new_score)
        new_confidence = clamp_unit(new_confidence)

        current = self.profile.traits.get(name) or TraitScore()
        total_weight = current.confidence + new_confidence
        if total_weight > 0:
            score = (current.score * current.confidence + new_score * new_confidence) / total_weight
            confidence = total_weight / (len(current.evidence_sources) + 1)
        else:
            score = current.score
            confidence = 0.0

        merged = TraitScore(
            score=clamp_unit(score),
            confidence=clamp_unit(confidence),
            evidence_sources=[*current.evidence_sources, source_id],
            last_updated=utcnow(),
        )
        self.profile.traits[name] = merged
        return merged

    def top_traits(self, n: int = 5) -> list[dict[str, float | str]]:
        """Traits above the presence threshold, strongest evidence first."""
        present = [
            (name, data)
            for name, data in self.profile.traits.items()
            if data.score > TRAIT_PRESENCE_THRESHOLD
        ]
        present.sort(key=lambda item: item[1].score * item[1].confidence, reverse=True)
        return [
            {"trait": name, "score": data.score, "confidence": data.confidence}
            for name, data in present[: max(n, 0)]
        ]

    # -------------------------------------------------------------------------
    # Interests, values, constraints
    # -------------------------------------------------------------------------

    def find_interest(self, domain: str) -> Interest | None:
        key = domain.strip().lower()
        for interest in self.profile.interests:
            if interest.domain == key:
                return interest
        return None

    def merge_interest(self, domain: str, confidence: float, evidence: str = "") -> Interest:
        """Raise an existing interest or insert a new one.

        Raises:
            MalformedSignalError: If the domain is empty.
        """
        if not isinstance(domain, str) or not domain.strip():
            raise MalformedSignalError("Interest domain is empty")
        confidence = clamp_unit(confidence)
        existing = self.find_interest(domain)
        if existing is not None:
            step = 1.5 if confidence > STRONG_CONFIDENCE else 1.0
            existing.level = min(5.0, existing.level + step)
            return existing

        interest = Interest(
            domain=domain.strip().lower(),
            level=float(min(5, max(2, _round_half_up(confidence * 5)))),
            context=evidence,
        )
        self.profile.interests.append(interest)
        return interest

    def merge_value(self, value: str, importance: float = 3, context: str = "") -> bool:
        """Insert a value unless already present. Returns True when inserted."""
        if not isinstance(value, str) or not value.strip():
            raise MalformedSignalError("Value name is empty")
        key = value.strip().lower()
        if any(v.value == key for v in self.profile.values):
            return False
        self.profile.values.append(
            WorkValue(value=key, importance=_bounded(importance, 1, 5, 3), context=context)
        )
        return True

    def merge_constraint(
        self,
        type: str,
        description: str = "",
        flexibility: float = 3,
        impact: str = "preferential",
    ) -> bool:
        """Insert a constraint unless one of the same type exists."""
        if not isinstance(type, str) or not type.strip():
            raise MalformedSignalError("Constraint type is empty")
        if impact not in VALID_IMPACTS:
            raise MalformedSignalError(f"Invalid constraint impact: {impact!r}")
        key = type.strip().lower()
        if any(c.type == key for c in self.profile.constraints):
            return False
        self.profile.constraints.append(
            Constraint(
                type=key,
                description=description,
                flexibility=_bounded(flexibility, 1, 5, 3),
                impact=impact,
            )
        )
        return True

    def strong_interest_count(self, min_level: float) -> int:
        return sum(1 for i in self.profile.interests if i.level >= min_level)

    # -------------------------------------------------------------------------
    # Experience, environment, personality
    # -------------------------------------------------------------------------

    def merge_experience(self, signal: ExperienceSignal) -> None:
        experience = self.profile.experience
        if signal.level:
            experience.level = signal.level
        for domain in signal.domains:
            if domain and domain not in experience.domains:
                experience.domains.append(domain)

    def merge_work_environment(self, signal: WorkEnvironmentSignal) -> None:
        """Set the preferences the signal carries; later mentions override."""
        env = self.profile.work_environment
        for field, value in signal.model_dump(exclude_none=True).items():
            setattr(env, field, value)

    def add_motivators(self, topics: list[str]) -> None:
        motivators = self.profile.personality.motivators
        for topic in topics:
            if topic and topic not in motivators:
                motivators.append(topic)

    def apply_insights(self, insights: Insights, source_id: str) -> int:
        """Merge every insight list, dropping malformed items one by one.

        Returns:
            Number of insights applied.
        """
        applied = 0
        for t in insights.traits:
            try:
                self.merge_trait(t.trait, t.score, t.confidence, source_id)
                applied += 1
            except MalformedSignalError as e:
                logger.warning("Dropped trait insight", trait=t.trait, error=str(e))
        for i in insights.interests:
            try:
                self.merge_interest(i.domain, i.confidence, i.context)
                applied += 1
            except MalformedSignalError as e:
                logger.warning("Dropped interest insight", domain=i.domain, error=str(e))
        for v in insights.values:
            try:
                self.merge_value(v.value, v.importance, v.context)
                applied += 1
            except MalformedSignalError as e:
                logger.warning("Dropped value insight", value=v.value, error=str(e))
        for c in insights.constraints:
            try:
                self.merge_constraint(c.type, c.description, c.flexibility, c.impact)
                applied += 1
            except MalformedSignalError as e:
                logger.warning("Dropped constraint insight", type=c.type, error=str(e))
        return applied

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    def completeness(self) -> float:
        """Weighted share of the profile that has been filled in, in [0, 1]."""
        profile = self.profile
        traits_present = sum(
            1 for data in profile.traits.values() if data.score > TRAIT_PRESENCE_THRESHOLD
        )
        score = (
            min(traits_present / DIMENSIONS, 1.0) * 0.40
            + min(len(profile.interests) / 3, 1.0) * 0.25
            + min(len(profile.values) / 3, 1.0) * 0.20
            + (0.15 if profile.experience.level else 0.0)
        )
        return max(0.0, min(1.0, score))

    def trait_vector(self) -> dict[str, float]:
        """User vector for matching: evidence-weighted traits plus interest boosts."""
        vector = {name: 0.0 for name in TRAIT_NAMES}
        for name, data in self.profile.traits.items():
            if name in vector:
                vector[name] = clamp_unit(data.score * data.confidence)
        for interest in self.profile.interests:
            for trait in INTEREST_TRAIT_MAP.get(interest.domain, ()):
                bonus = interest.level / 5 * INTEREST_TRAIT_WEIGHT
                vector[trait] = min(1.0, vector[trait] + bonus)
        return vector

    def summary(self) -> dict[str, Any]:
        """Compact profile description for generative prompts."""
        profile = self.profile
        return {
            "top_traits": self.top_traits(5),
            "interests": [{"domain": i.domain, "level": i.level} for i in profile.interests],
            "values": [v.value for v in profile.values[:5]],
            "constraints": [
                {"type": c.type, "impact": c.impact, "description": c.description}
                for c in profile.constraints
            ],
            "experience": profile.experience.model_dump(exclude_none=True),
            "work_environment": profile.work_environment.model_dump(exclude_none=True),
            "completeness": round(self.completeness(), 2),
        }

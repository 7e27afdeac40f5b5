"""Structured signals produced by the analyzers and the generative collaborator.

Collaborator payloads are untrusted: lists may arrive as JSON strings, items
may be half-filled or out of range. Everything is parsed item by item so one
bad entry is dropped without losing the rest of the turn.
"""

import json
from typing import Any, Literal, TypeVar

import structlog
from pydantic import BaseModel, Field, StrictBool, ValidationError

logger = structlog.get_logger()


class MalformedSignalError(ValueError):
    """A single signal in a collaborator payload is unusable."""

    pass


MILESTONE_ORDER: tuple[str, ...] = (
    "passions_identified",
    "role_determined",
    "domain_identified",
    "format_determined",
    "specific_job_identified",
)

# =============================================================================
# Closed vocabularies
# =============================================================================

ConstraintImpact = Literal["blocking", "limiting", "preferential"]
ExperienceLevel = Literal["student", "beginner", "intermediate", "experienced", "expert"]
TeamSize = Literal["solo", "small_team", "large_team", "variable"]
LocationMode = Literal["office", "remote", "hybrid", "travel", "outdoor"]
Pace = Literal["steady", "dynamic", "deadline_driven", "seasonal"]
Structure = Literal["structured", "flexible", "autonomous", "guided"]
CurrentSituation = Literal["employed", "student", "unemployed", "self-employed", "other"]
JobFeeling = Literal["love", "like", "neutral", "dislike", "hate", "burnout"]
Education = Literal[
    "middle_school", "high_school", "bac", "bac_plus_2", "bac_plus_3", "bac_plus_5", "phd", "other"
]
EmotionalTone = Literal["positive", "neutral", "negative", "excited", "uncertain"]


# =============================================================================
# Insight items
# =============================================================================


class TraitInsight(BaseModel):
    """One piece of evidence about a trait dimension."""

    trait: str = Field(..., min_length=1, description="Trait dimension name")
    score: float = Field(..., description="Observed score, clamped to [0, 1] on merge")
    confidence: float = Field(default=0.5, description="Confidence, clamped to [0, 1] on merge")
    evidence: str = Field(default="", description="User text supporting the insight")


class InterestInsight(BaseModel):
    """An interest domain mentioned by the user."""

    domain: str = Field(..., min_length=1)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    context: str = Field(default="")


class ValueInsight(BaseModel):
    """A work value the user cares about."""

    value: str = Field(..., min_length=1)
    importance: float = Field(default=3, description="Importance, clamped to [1, 5] on merge")
    context: str = Field(default="")


class ConstraintInsight(BaseModel):
    """A constraint limiting which occupations fit."""

    type: str = Field(..., min_length=1)
    description: str = Field(default="")
    flexibility: float = Field(default=3, description="Flexibility, clamped to [1, 5] on merge")
    impact: ConstraintImpact = Field(default="preferential")


class ExperienceSignal(BaseModel):
    """Experience level and domains mentioned by the user."""

    level: ExperienceLevel | None = None
    domains: list[str] = Field(default_factory=list)


class WorkEnvironmentSignal(BaseModel):
    """Categorical work-environment preferences."""

    team_size: TeamSize | None = None
    location: LocationMode | None = None
    pace: Pace | None = None
    structure: Structure | None = None


class ProfileData(BaseModel):
    """Factual user data forwarded to the user-profile sink."""

    age: int | None = Field(default=None, ge=10, le=100)
    location: str | None = None
    current_situation: CurrentSituation | None = None
    current_job: str | None = None
    job_feeling: JobFeeling | None = None
    education: Education | None = None


class MilestoneDetection(BaseModel):
    """Per-milestone detection payload for one turn.

    ``achieved`` must be a real boolean; a missing value means the milestone
    was not evaluated this turn and the detection is ignored.
    """

    achieved: StrictBool
    confidence: float = Field(default=0, ge=0, le=100)
    needs_confirmation: StrictBool = False
    value: str | None = None
    job_title: str | None = None
    job_description: str | None = None
    conclusion_message: str | None = None


class Insights(BaseModel):
    """Insight lists attached to a turn."""

    traits: list[TraitInsight] = Field(default_factory=list)
    interests: list[InterestInsight] = Field(default_factory=list)
    values: list[ValueInsight] = Field(default_factory=list)
    constraints: list[ConstraintInsight] = Field(default_factory=list)


# =============================================================================
# Collaborator results
# =============================================================================


class AnalysisResult(BaseModel):
    """Structured signals extracted from one user message."""

    insights: Insights = Field(default_factory=Insights)
    emotional_tone: EmotionalTone = "neutral"
    engagement_level: int = Field(default=3, ge=1, le=5)
    key_topics: list[str] = Field(default_factory=list)
    source: Literal["generative", "rule_based"] = "rule_based"


class GenerativeTurn(BaseModel):
    """Assistant turn produced by the generative collaborator."""

    message: str = Field(..., min_length=1)
    insights: Insights = Field(default_factory=Insights)
    milestones: dict[str, MilestoneDetection] = Field(default_factory=dict)
    experience: ExperienceSignal | None = None
    work_environment: WorkEnvironmentSignal | None = None
    profile_data: ProfileData | None = None
    should_transition: bool = False
    tokens_used: int = 0


class OccupationSuggestion(BaseModel):
    """Free-text occupation suggestion from the generative collaborator."""

    title: str = Field(..., min_length=1)
    reasoning: str = Field(default="")
    sector: str | None = None
    description: str | None = None


# =============================================================================
# Sanitization
# =============================================================================

M = TypeVar("M", bound=BaseModel)


def coerce_list(raw: Any) -> list:
    """Return ``raw`` as a list, parsing JSON strings; anything else is empty."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Unparseable signal list", raw=raw[:100])
            return []
    if not isinstance(raw, list):
        return []
    return raw


def parse_items(raw: Any, model: type[M], kind: str) -> list[M]:
    """Validate each list item independently, dropping malformed ones."""
    items: list[M] = []
    for entry in coerce_list(raw):
        try:
            items.append(model.model_validate(entry))
        except ValidationError as e:
            logger.warning("Dropped malformed signal", kind=kind, error=str(e.errors()[0]["msg"]))
    return items


def parse_insights(raw: Any) -> Insights:
    """Build an ``Insights`` from a loosely shaped mapping."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raw = {}
    if not isinstance(raw, dict):
        return Insights()
    return Insights(
        traits=parse_items(raw.get("traits"), TraitInsight, "trait"),
        interests=parse_items(raw.get("interests"), InterestInsight, "interest"),
        values=parse_items(raw.get("values"), ValueInsight, "value"),
        constraints=parse_items(raw.get("constraints"), ConstraintInsight, "constraint"),
    )


def parse_milestone_detection(name: str, raw: Any) -> MilestoneDetection | None:
    """Parse one milestone detection.

    Returns None when the payload carries no ``achieved`` value.

    Raises:
        MalformedSignalError: If the payload is present but invalid.
    """
    if not isinstance(raw, dict):
        raise MalformedSignalError(f"Milestone {name} payload is not an object")
    normalized = {_snake(k): v for k, v in raw.items()}
    if normalized.get("achieved") is None:
        return None
    try:
        return MilestoneDetection.model_validate(normalized)
    except ValidationError as e:
        raise MalformedSignalError(f"Milestone {name}: {e.errors()[0]['msg']}") from e


def parse_milestones(raw: Any) -> dict[str, MilestoneDetection]:
    """Parse the milestone mapping of a collaborator payload.

    Unknown milestone names and malformed detections are dropped.
    """
    if not isinstance(raw, dict):
        return {}
    detections: dict[str, MilestoneDetection] = {}
    for name, payload in raw.items():
        if name not in MILESTONE_ORDER:
            logger.warning("Unknown milestone in payload", milestone=name)
            continue
        try:
            detection = parse_milestone_detection(name, payload)
        except MalformedSignalError as e:
            logger.warning("Dropped malformed milestone", milestone=name, error=str(e))
            continue
        if detection is not None:
            detections[name] = detection
    return detections


def parse_optional(raw: Any, model: type[M], kind: str) -> M | None:
    """Validate an optional sub-object, returning None when unusable."""
    if not isinstance(raw, dict):
        return None
    try:
        return model.model_validate({_snake(k): v for k, v in raw.items()})
    except ValidationError as e:
        logger.warning("Dropped malformed signal", kind=kind, error=str(e.errors()[0]["msg"]))
        return None


def parse_generative_turn(payload: dict[str, Any]) -> GenerativeTurn:
    """Build a ``GenerativeTurn`` from a decoded collaborator payload.

    Raises:
        MalformedSignalError: If the payload has no usable assistant message.
    """
    message = payload.get("message") or payload.get("response")
    if not isinstance(message, str) or not message.strip():
        raise MalformedSignalError("Generative payload has no assistant message")
    return GenerativeTurn(
        message=message.strip(),
        insights=parse_insights(payload.get("insights")),
        milestones=parse_milestones(payload.get("milestones")),
        experience=parse_optional(payload.get("experience"), ExperienceSignal, "experience"),
        work_environment=parse_optional(
            payload.get("workEnvironment", payload.get("work_environment")),
            WorkEnvironmentSignal,
            "work_environment",
        ),
        profile_data=parse_optional(
            payload.get("profileData", payload.get("profile_data")), ProfileData, "profile_data"
        ),
        should_transition=payload.get("shouldTransition", payload.get("should_transition")) is True,
    )


def _snake(key: str) -> str:
    """camelCase -> snake_case for collaborator keys."""
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)

"""Pydantic models for the conversation aggregate and the HTTP API."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from career_guide_api.signals import (
    MILESTONE_ORDER,
    ConstraintImpact,
    ExperienceLevel,
    LocationMode,
    Pace,
    Structure,
    TeamSize,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Role = Literal["user", "assistant", "system"]
ConversationStatus = Literal["active", "paused", "completed", "abandoned"]
Phase = Literal["intro", "discovery", "exploration", "refinement", "conclusion"]
Reaction = Literal["interested", "neutral", "not_interested", "surprised", "confused"]
ConfidenceTier = Literal["high", "medium", "low"]
RecommendationMethod = Literal["reconciled", "vector"]

# =============================================================================
# Building profile
# =============================================================================


class TraitScore(BaseModel):
    """Running estimate for one trait dimension."""

    score: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence_sources: list[str] = Field(default_factory=list, description="Turn ids, oldest first")
    last_updated: datetime = Field(default_factory=utcnow)


class Interest(BaseModel):
    domain: str
    level: float = Field(..., ge=1.0, le=5.0)
    context: str = ""
    discovered_at: datetime = Field(default_factory=utcnow)


class WorkValue(BaseModel):
    value: str
    importance: float = Field(..., ge=1.0, le=5.0)
    context: str = ""


class Constraint(BaseModel):
    type: str
    description: str = ""
    flexibility: float = Field(default=3.0, ge=1.0, le=5.0)
    impact: ConstraintImpact = "preferential"


class Experience(BaseModel):
    level: ExperienceLevel | None = None
    domains: list[str] = Field(default_factory=list)


class WorkEnvironment(BaseModel):
    team_size: TeamSize | None = None
    location: LocationMode | None = None
    pace: Pace | None = None
    structure: Structure | None = None


class PersonalityInsights(BaseModel):
    motivators: list[str] = Field(default_factory=list)
    communication_style: str | None = None


class BuildingProfile(BaseModel):
    """Profile accumulated over the conversation."""

    traits: dict[str, TraitScore] = Field(default_factory=dict)
    interests: list[Interest] = Field(default_factory=list)
    values: list[WorkValue] = Field(default_factory=list)
    constraints: list[Constraint] = Field(default_factory=list)
    experience: Experience = Field(default_factory=Experience)
    work_environment: WorkEnvironment = Field(default_factory=WorkEnvironment)
    personality: PersonalityInsights = Field(default_factory=PersonalityInsights)


# =============================================================================
# Milestones
# =============================================================================


class MilestoneState(str, Enum):
    UNREACHED = "unreached"
    DETECTED = "detected"
    NEEDS_CONFIRMATION = "needs_confirmation"
    CONFIRMED = "confirmed"


class Milestone(BaseModel):
    """One ordered discovery checkpoint."""

    name: str
    state: MilestoneState = MilestoneState.UNREACHED
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    value: str | None = None
    job_title: str | None = None
    job_description: str | None = None
    conclusion_message: str | None = None
    achieved_at: datetime | None = None

    @property
    def achieved(self) -> bool:
        return self.state in (MilestoneState.NEEDS_CONFIRMATION, MilestoneState.CONFIRMED)

    @property
    def confirmed(self) -> bool:
        return self.state is MilestoneState.CONFIRMED

    @property
    def needs_confirmation(self) -> bool:
        return self.state is MilestoneState.NEEDS_CONFIRMATION


def default_milestones() -> list[Milestone]:
    return [Milestone(name=name) for name in MILESTONE_ORDER]


# =============================================================================
# Catalog and recommendations
# =============================================================================


class Occupation(BaseModel):
    """Canonical occupation record (read-only catalog entry)."""

    id: str
    title: str
    description: str = ""
    skills: list[str] = Field(default_factory=list)
    sector: str | None = None
    trait_vector: dict[str, float] = Field(default_factory=dict)
    source: str = "manual"
    tags: list[str] = Field(default_factory=list)
    work_environment: str = ""


class SourceSuggestion(BaseModel):
    """The generative suggestion a recommendation was reconciled from."""

    title: str
    reasoning: str = ""


class Recommendation(BaseModel):
    """A recommended occupation attached to a conversation."""

    occupation_id: str
    title: str
    match_score: float = Field(..., ge=0.0, le=1.0)
    confidence_tier: ConfidenceTier
    method: RecommendationMethod
    source_suggestion: SourceSuggestion | None = None
    alternatives: list[str] = Field(default_factory=list, description="Runner-up occupation ids")
    reasons: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    user_reaction: Reaction | None = None
    presented_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Conversation aggregate
# =============================================================================


class Message(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    source: Literal["generative", "rule_based", "fallback"] | None = None


class QualityMetrics(BaseModel):
    """Running averages describing conversation quality."""

    engagement_score: float = 0.0
    completeness_score: float = 0.0
    confidence_score: float = 0.0
    flow_score: float = 0.0
    user_satisfaction: int | None = Field(default=None, ge=1, le=5)
    samples: int = 0


class SessionState(BaseModel):
    """Per-conversation degradation flags; sticky once set."""

    generative_enabled: bool = True
    analyzer_degraded: bool = False
    consecutive_generative_failures: int = 0
    tokens_used: int = 0


class Conversation(BaseModel):
    """Whole conversation aggregate, persisted as one unit."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    status: ConversationStatus = "active"
    phase: Phase = "intro"
    questions_asked: int = 0
    conclusion_entries: int = 0
    messages: list[Message] = Field(default_factory=list)
    profile: BuildingProfile = Field(default_factory=BuildingProfile)
    milestones: list[Milestone] = Field(default_factory=default_milestones)
    recommendations: list[Recommendation] = Field(default_factory=list)
    quality: QualityMetrics = Field(default_factory=QualityMetrics)
    session: SessionState = Field(default_factory=SessionState)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    def add_message(self, role: Role, content: str, source: str | None = None) -> Message:
        """Append a message and touch the activity timestamp."""
        message = Message(role=role, content=content, source=source)
        self.messages.append(message)
        self.last_active_at = utcnow()
        return message

    def get_history_for_llm(self, max_messages: int = 15) -> list[dict[str, str]]:
        """Get the most recent turns formatted for the LLM API."""
        recent = [m for m in self.messages if m.role != "system"][-max_messages:]
        return [{"role": m.role, "content": m.content} for m in recent]

    def recent_assistant_messages(self, limit: int) -> list[str]:
        return [m.content for m in self.messages if m.role == "assistant"][-limit:]

    def milestone(self, name: str) -> Milestone:
        for m in self.milestones:
            if m.name == name:
                return m
        raise KeyError(name)

    @property
    def is_open(self) -> bool:
        return self.status in ("active", "paused")


# =============================================================================
# API models
# =============================================================================


class StartConversationRequest(BaseModel):
    """Request body to start a conversation."""

    user_id: str = Field(..., min_length=1, max_length=128, description="User identifier")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Client metadata")


class ResetRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)


class SendMessageRequest(BaseModel):
    """Request body for the message endpoint."""

    content: str = Field(..., min_length=1, max_length=2000, description="User message")


class CompleteRequest(BaseModel):
    satisfaction: int | None = Field(default=None, ge=1, le=5, description="User rating")


class ReactionRequest(BaseModel):
    reaction: Reaction


class MilestoneView(BaseModel):
    name: str
    state: MilestoneState
    achieved: bool
    confirmed: bool
    confidence: float
    value: str | None = None
    job_title: str | None = None


class TurnResponse(BaseModel):
    """Result of one processed user turn."""

    conversation_id: str
    message: str = Field(..., description="Assistant response")
    phase: Phase
    status: ConversationStatus
    completeness: float = Field(..., ge=0.0, le=1.0)
    milestones: list[MilestoneView]
    recommendations: list[Recommendation] = Field(default_factory=list)


class ConversationSummary(BaseModel):
    id: str
    user_id: str
    status: ConversationStatus
    phase: Phase
    message_count: int
    created_at: datetime
    last_active_at: datetime


class ProfileView(BaseModel):
    """Read model of the building profile."""

    conversation_id: str
    completeness: float
    top_traits: list[dict[str, Any]]
    interests: list[Interest]
    values: list[WorkValue]
    constraints: list[Constraint]
    work_environment: WorkEnvironment
    milestones: list[MilestoneView]


class StatusStats(BaseModel):
    count: int
    avg_duration_minutes: float | None = None
    avg_satisfaction: float | None = None


class StatsResponse(BaseModel):
    total: int
    by_status: dict[str, StatusStats]


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Service status")
    llm_configured: bool = Field(..., description="Whether the generative path is available")
    catalog_size: int = Field(..., description="Number of occupations loaded")
    active_conversations: int = Field(..., description="Number of stored conversations")
    version: str = Field(..., description="API version")


def milestone_view(m: Milestone) -> MilestoneView:
    return MilestoneView(
        name=m.name,
        state=m.state,
        achieved=m.achieved,
        confirmed=m.confirmed,
        confidence=m.confidence,
        value=m.value,
        job_title=m.job_title,
    )

"""Conversation orchestration: one user turn in, one assistant turn out.

A turn runs against a private copy of the conversation and is persisted with
a single save at the end, so a failure anywhere leaves the stored aggregate
untouched. Turns of one conversation are serialised by a per-id lock.
"""

import asyncio
import weakref
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from career_guide_api.analyzer import AnalysisContext, Analyzer, KeywordAnalyzer
from career_guide_api.catalog import CatalogStore, get_catalog
from career_guide_api.config import Settings, get_settings
from career_guide_api.conversation_store import (
    ConversationNotFoundError,
    ConversationStore,
    get_conversation_store,
)
from career_guide_api.milestones import MilestoneTracker
from career_guide_api.models import (
    Conversation,
    Occupation,
    ProfileView,
    Reaction,
    Recommendation,
    SourceSuggestion,
    milestone_view,
    utcnow,
)
from career_guide_api.observability import (
    milestones_confirmed_total,
    record_fallback,
    record_recommendation_pass,
    record_turn,
)
from career_guide_api.openrouter_client import OpenRouterClient, get_openrouter_client
from career_guide_api.profile_aggregator import ProfileAggregator
from career_guide_api.question_generator import QuestionContext, QuestionGenerator
from career_guide_api.reconciler import RecommendationReconciler, confidence_tier
from career_guide_api.signals import (
    AnalysisResult,
    GenerativeTurn,
    OccupationSuggestion,
)
from career_guide_api.user_profile import UserProfileSink, get_user_profile_sink
from career_guide_api.vector_matcher import match_concerns, match_reasons, rank

logger = structlog.get_logger()

APOLOGY_MESSAGE = (
    "Sorry, I had a little trouble preparing my next question. "
    "Could you tell me a bit more about what you enjoy doing?"
)

FINAL_MILESTONE = "specific_job_identified"
VECTOR_CANDIDATES = 10
MAX_RECOMMENDATIONS = 3


class ConversationNotActiveError(Exception):
    """Raised when an operation needs a conversation in another status."""

    def __init__(self, conversation_id: str, status: str):
        super().__init__(f"Conversation {conversation_id} is {status}")
        self.conversation_id = conversation_id
        self.status = status


class TurnFailedError(Exception):
    """Raised when a turn could not be completed; nothing was persisted."""

    pass


class RecommendationNotFoundError(LookupError):
    """Raised when reacting to an occupation that is not recommended."""

    pass


@dataclass
class AssistantTurn:
    text: str
    source: str
    generative: GenerativeTurn | None = None


class ConversationOrchestrator:
    """Drives conversations through analysis, profiling, milestones and matching."""

    def __init__(
        self,
        store: ConversationStore,
        catalog: CatalogStore,
        user_profiles: UserProfileSink,
        llm: OpenRouterClient | None = None,
        settings: Settings | None = None,
        analyzer: Analyzer | None = None,
        fallback_analyzer: Analyzer | None = None,
        questions: QuestionGenerator | None = None,
        reconciler: RecommendationReconciler | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.catalog = catalog
        self.user_profiles = user_profiles
        self.llm = llm
        self.analyzer = analyzer or KeywordAnalyzer(use_context=True)
        self.fallback_analyzer = fallback_analyzer or KeywordAnalyzer(use_context=False)
        self.questions = questions or QuestionGenerator(
            lookback=self.settings.question_lookback,
            threshold=self.settings.duplicate_question_threshold,
        )
        self.reconciler = reconciler or RecommendationReconciler()
        # Locks live only while some task holds or waits on them
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    @property
    def generative_available(self) -> bool:
        return self.llm is not None and self.settings.llm_enabled

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_conversation(
        self, user_id: str, metadata: dict[str, Any] | None = None
    ) -> Conversation:
        """Open a new conversation, abandoning the user's active one."""
        abandoned = await self._abandon_active(user_id)
        conversation = Conversation(user_id=user_id, metadata=metadata or {})
        conversation.session.generative_enabled = self.generative_available
        conversation.add_message("assistant", self.questions.welcome(), source="rule_based")
        conversation.questions_asked = 1
        self.store.save(conversation)
        logger.info(
            "Conversation started",
            conversation_id=conversation.id,
            user_id=user_id,
            abandoned=abandoned,
            generative=conversation.session.generative_enabled,
        )
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        return self.store.load(conversation_id)

    def list_user_conversations(self, user_id: str, limit: int = 10) -> list[Conversation]:
        return self.store.list_for_user(user_id, limit)

    async def pause(self, conversation_id: str) -> Conversation:
        return await self._set_status(conversation_id, "paused", allowed=("active",))

    async def resume(self, conversation_id: str) -> Conversation:
        return await self._set_status(conversation_id, "active", allowed=("paused",))

    async def abandon(self, conversation_id: str) -> Conversation:
        return await self._set_status(conversation_id, "abandoned", allowed=("active", "paused"))

    async def complete_conversation(
        self, conversation_id: str, satisfaction: int | None = None
    ) -> Conversation:
        """Close a conversation, making sure it ends with recommendations."""
        async with self._lock(conversation_id):
            conversation = self.store.load(conversation_id)
            if not conversation.is_open:
                raise ConversationNotActiveError(conversation_id, conversation.status)

            conversation.status = "completed"
            conversation.completed_at = utcnow()
            conversation.quality.user_satisfaction = satisfaction
            aggregator = ProfileAggregator(conversation.profile)
            if not conversation.recommendations:
                await self._compute_recommendations(conversation, aggregator)
            self.store.save(conversation)

        await self._notify(
            "final_profile",
            lambda: self.user_profiles.save_final_profile(
                conversation.user_id, self._final_profile(conversation, aggregator)
            ),
        )
        self._log_session_metrics(conversation)
        return conversation

    async def reset_user(self, user_id: str) -> tuple[int, Conversation]:
        """Abandon every active conversation of the user and start afresh."""
        abandoned = await self._abandon_active(user_id)
        conversation = await self.start_conversation(user_id)
        logger.info("User conversations reset", user_id=user_id, abandoned=abandoned)
        return abandoned, conversation

    def conversation_stats(self) -> dict[str, Any]:
        return {"total": self.store.count(), "by_status": self.store.stats()}

    async def react_to_recommendation(
        self, conversation_id: str, occupation_id: str, reaction: Reaction
    ) -> Recommendation:
        async with self._lock(conversation_id):
            conversation = self.store.load(conversation_id)
            for recommendation in conversation.recommendations:
                if recommendation.occupation_id == occupation_id:
                    recommendation.user_reaction = reaction
                    self.store.save(conversation)
                    logger.info(
                        "Recommendation reaction",
                        conversation_id=conversation_id,
                        occupation_id=occupation_id,
                        reaction=reaction,
                    )
                    return recommendation
        raise RecommendationNotFoundError(occupation_id)

    def profile_view(self, conversation_id: str) -> ProfileView:
        conversation = self.store.load(conversation_id)
        aggregator = ProfileAggregator(conversation.profile)
        return ProfileView(
            conversation_id=conversation.id,
            completeness=aggregator.completeness(),
            top_traits=aggregator.top_traits(5),
            interests=conversation.profile.interests,
            values=conversation.profile.values,
            constraints=conversation.profile.constraints,
            work_environment=conversation.profile.work_environment,
            milestones=[milestone_view(m) for m in conversation.milestones],
        )

    async def update_many(
        self,
        predicate: Callable[[Conversation], bool],
        mutate: Callable[[Conversation], None],
    ) -> int:
        """Apply ``mutate`` to every stored conversation matching ``predicate``.

        Each conversation is updated under its own lock, with the predicate
        checked again once the lock is held.

        Returns:
            Number of conversations updated.
        """
        updated = 0
        for conversation_id in self.store.find_ids(predicate):
            async with self._lock(conversation_id):
                try:
                    conversation = self.store.load(conversation_id)
                except ConversationNotFoundError:
                    continue
                if not predicate(conversation):
                    continue
                mutate(conversation)
                self.store.save(conversation)
                updated += 1
        return updated

    async def _abandon_active(self, user_id: str) -> int:
        def abandon(c: Conversation) -> None:
            c.status = "abandoned"

        return await self.update_many(
            lambda c: c.user_id == user_id and c.status == "active", abandon
        )

    async def _set_status(
        self, conversation_id: str, status: str, allowed: tuple[str, ...]
    ) -> Conversation:
        async with self._lock(conversation_id):
            conversation = self.store.load(conversation_id)
            if conversation.status not in allowed:
                raise ConversationNotActiveError(conversation_id, conversation.status)
            conversation.status = status
            conversation.last_active_at = utcnow()
            self.store.save(conversation)
        logger.info("Conversation status changed", conversation_id=conversation_id, status=status)
        return conversation

    # =========================================================================
    # Turn processing
    # =========================================================================

    async def process_turn(self, conversation_id: str, text: str) -> Conversation:
        """Process one user message and persist the resulting conversation.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
            ConversationNotActiveError: If the conversation is not active.
            TurnFailedError: If the turn could not be completed or persisted.
        """
        async with self._lock(conversation_id):
            conversation = self.store.load(conversation_id)
            if conversation.status != "active":
                record_turn("rejected")
                raise ConversationNotActiveError(conversation_id, conversation.status)

            notifications: list[tuple[str, Callable[[], Awaitable[None]]]] = []
            try:
                await self._run_turn(conversation, text, notifications)
                self.store.save(conversation)
            except Exception as e:
                record_turn("failed")
                logger.exception("Turn failed", conversation_id=conversation_id)
                raise TurnFailedError("The message could not be processed") from e

        record_turn("ok")
        for name, send in notifications:
            await self._notify(name, send)
        self._log_session_metrics(conversation)
        return conversation

    async def _run_turn(
        self,
        conversation: Conversation,
        text: str,
        notifications: list[tuple[str, Callable[[], Awaitable[None]]]],
    ) -> None:
        settings = self.settings
        analysis = await self._analyze(conversation, text)

        user_message = conversation.add_message("user", text.strip(), source=analysis.source)
        aggregator = ProfileAggregator(conversation.profile)
        aggregator.apply_insights(analysis.insights, user_message.id)
        aggregator.add_motivators(analysis.key_topics)
        self._update_quality(conversation, aggregator, analysis)

        message_count = len(conversation.messages)
        strong_interests = aggregator.strong_interest_count(settings.strong_interest_level)
        wants_recommendations = (
            message_count >= settings.recommendation_min_messages
            or conversation.phase == "conclusion"
            or strong_interests >= settings.strong_interest_count
        )
        if wants_recommendations and message_count % settings.recommendation_cadence == 0:
            await self._compute_recommendations(conversation, aggregator)

        tracker = MilestoneTracker(conversation.milestones)
        assistant = await self._assistant_turn(conversation, aggregator, tracker, analysis)
        turn = assistant.generative

        if turn is not None:
            aggregator.apply_insights(turn.insights, user_message.id)
            if turn.experience:
                aggregator.merge_experience(turn.experience)
            if turn.work_environment:
                aggregator.merge_work_environment(turn.work_environment)
            if turn.profile_data:
                data, user_id = turn.profile_data, conversation.user_id
                notifications.append(
                    ("profile_data", lambda: self.user_profiles.update_profile_data(user_id, data))
                )

        final = tracker.get(FINAL_MILESTONE)
        final_was_confirmed = final.confirmed

        resolved, verdict = tracker.apply_user_reply(text)
        newly_confirmed = [resolved] if resolved is not None and resolved.confirmed else []
        if turn is not None:
            newly_confirmed += tracker.apply_detections(turn.milestones)
        for milestone in newly_confirmed:
            milestones_confirmed_total.labels(milestone=milestone.name).inc()

        if final.confirmed and not final_was_confirmed and final.job_title:
            title, description, user_id = final.job_title, final.job_description, conversation.user_id
            notifications.append(
                (
                    "target_occupation",
                    lambda: self.user_profiles.set_target_occupation(user_id, title, description),
                )
            )

        conversation.add_message("assistant", assistant.text, source=assistant.source)
        conversation.questions_asked += 1
        if turn is not None:
            conversation.session.tokens_used += turn.tokens_used

        self._advance_phase(conversation, turn, strong_interests)
        if conversation.status == "completed":
            notifications.append(
                (
                    "final_profile",
                    lambda: self.user_profiles.save_final_profile(
                        conversation.user_id, self._final_profile(conversation, aggregator)
                    ),
                )
            )
        conversation.last_active_at = utcnow()

    async def _analyze(self, conversation: Conversation, text: str) -> AnalysisResult:
        """Primary analyzer, or the basic one once the primary has failed."""
        session = conversation.session
        if not session.analyzer_degraded:
            context = AnalysisContext(
                phase=conversation.phase,
                known_traits=set(conversation.profile.traits),
                questions_asked=conversation.questions_asked,
            )
            try:
                return await asyncio.wait_for(
                    self.analyzer.analyze(text, context),
                    timeout=self.settings.analyzer_timeout_seconds,
                )
            except Exception as e:
                session.analyzer_degraded = True
                record_fallback("analyzer", conversation.id, type(e).__name__)

        try:
            return await self.fallback_analyzer.analyze(text, AnalysisContext())
        except Exception:
            logger.exception("Basic analyzer failed, continuing without signals", conversation_id=conversation.id)
            return AnalysisResult()

    async def _assistant_turn(
        self,
        conversation: Conversation,
        aggregator: ProfileAggregator,
        tracker: MilestoneTracker,
        analysis: AnalysisResult,
    ) -> AssistantTurn:
        session = conversation.session
        if session.generative_enabled and self.llm is not None:
            try:
                turn = await asyncio.wait_for(
                    self.llm.generate_turn(
                        self.settings.system_prompt,
                        conversation.get_history_for_llm(self.settings.max_history_messages),
                        aggregator.summary(),
                        tracker.summary_lines(),
                        conversation.phase,
                    ),
                    timeout=self.settings.llm_timeout_seconds,
                )
                session.consecutive_generative_failures = 0
                return AssistantTurn(turn.message, "generative", turn)
            except Exception as e:
                session.consecutive_generative_failures += 1
                logger.warning(
                    "Generative turn failed",
                    conversation_id=conversation.id,
                    error=type(e).__name__,
                    consecutive=session.consecutive_generative_failures,
                )
                if session.consecutive_generative_failures >= self.settings.llm_failure_threshold:
                    session.generative_enabled = False
                    record_fallback("generative", conversation.id, type(e).__name__)

        try:
            question = self.questions.generate(
                QuestionContext(
                    phase=conversation.phase,
                    questions_asked=conversation.questions_asked,
                    profile=conversation.profile,
                    recent_questions=conversation.recent_assistant_messages(
                        self.settings.question_lookback
                    ),
                    last_analysis=analysis,
                    recommendation_titles=[r.title for r in conversation.recommendations],
                )
            )
            return AssistantTurn(question.text, "rule_based")
        except Exception:
            logger.exception("Rule-based question failed", conversation_id=conversation.id)
            return AssistantTurn(APOLOGY_MESSAGE, "fallback")

    def _advance_phase(
        self, conversation: Conversation, turn: GenerativeTurn | None, strong_interests: int
    ) -> None:
        settings = self.settings
        asked = conversation.questions_asked
        requested = turn is not None and turn.should_transition
        if (
            requested
            or asked >= settings.conclusion_question_count
            or (
                strong_interests >= settings.strong_interest_count
                and asked >= settings.early_conclusion_question_count
            )
        ):
            conversation.conclusion_entries += 1
            if conversation.phase != "conclusion":
                conversation.phase = "conclusion"
                conversation.questions_asked = 0
                logger.info("Entered conclusion", conversation_id=conversation.id)
            else:
                conversation.status = "completed"
                conversation.completed_at = utcnow()
                logger.info("Conversation completed", conversation_id=conversation.id)
            return

        if conversation.phase != "conclusion":
            if asked < 2:
                conversation.phase = "intro"
            elif asked < 5:
                conversation.phase = "discovery"
            elif asked < 8:
                conversation.phase = "exploration"
            else:
                conversation.phase = "refinement"

    def _update_quality(
        self, conversation: Conversation, aggregator: ProfileAggregator, analysis: AnalysisResult
    ) -> None:
        quality = conversation.quality
        quality.samples += 1
        n = quality.samples
        quality.engagement_score += (analysis.engagement_level / 5 - quality.engagement_score) / n
        traits = analysis.insights.traits
        if traits:
            turn_confidence = sum(min(max(t.confidence, 0.0), 1.0) for t in traits) / len(traits)
            quality.confidence_score += (turn_confidence - quality.confidence_score) / n
        quality.completeness_score = aggregator.completeness()
        quality.flow_score = min(1.0, len(conversation.messages) / 20)

    # =========================================================================
    # Recommendations
    # =========================================================================

    async def _compute_recommendations(
        self, conversation: Conversation, aggregator: ProfileAggregator
    ) -> None:
        settings = self.settings
        records = self.catalog.fetch(settings.catalog_sources)
        if not records:
            logger.warning("No occupations in catalog", conversation_id=conversation.id)
            return

        recommendations: list[Recommendation] = []
        session = conversation.session
        if (
            session.generative_enabled
            and self.llm is not None
            and len(conversation.profile.interests) > 2
        ):
            try:
                sample = self.catalog.sample_for_profile(
                    conversation.profile, settings.catalog_sample_size, settings.catalog_sources
                )
                suggestions = await asyncio.wait_for(
                    self.llm.recommend_occupations(aggregator.summary(), sample),
                    timeout=settings.llm_timeout_seconds,
                )
                recommendations = self._reconciled(suggestions, records)
            except Exception as e:
                session.generative_enabled = False
                record_fallback("generative", conversation.id, type(e).__name__)
            if recommendations:
                record_recommendation_pass("reconciled", len(recommendations))
            else:
                record_fallback("matching", conversation.id, "no reconciled matches")

        if not recommendations:
            recommendations = self._vector_recommendations(conversation, aggregator, records)
            record_recommendation_pass("vector", len(recommendations))

        conversation.recommendations = recommendations[:MAX_RECOMMENDATIONS]

    def _reconciled(
        self, suggestions: list[OccupationSuggestion], records: list[Occupation]
    ) -> list[Recommendation]:
        recommendations: list[Recommendation] = []
        seen: set[str] = set()
        for match in self.reconciler.reconcile(suggestions, records):
            occupation = match.best.occupation
            if occupation.id in seen:
                continue
            seen.add(occupation.id)
            recommendations.append(
                Recommendation(
                    occupation_id=occupation.id,
                    title=occupation.title,
                    match_score=match.best.score,
                    confidence_tier=match.tier,
                    method="reconciled",
                    source_suggestion=SourceSuggestion(
                        title=match.suggestion.title, reasoning=match.suggestion.reasoning
                    ),
                    alternatives=[alt.occupation.id for alt in match.alternatives],
                    reasons=[match.suggestion.reasoning] if match.suggestion.reasoning else [],
                )
            )
        return recommendations

    def _vector_recommendations(
        self, conversation: Conversation, aggregator: ProfileAggregator, records: list[Occupation]
    ) -> list[Recommendation]:
        matches = rank(aggregator.trait_vector(), records, min(VECTOR_CANDIDATES, len(records)))
        recommendations = []
        for match in matches[:MAX_RECOMMENDATIONS]:
            recommendations.append(
                Recommendation(
                    occupation_id=match.occupation.id,
                    title=match.occupation.title,
                    match_score=match.score,
                    confidence_tier=confidence_tier(match.score),
                    method="vector",
                    reasons=match_reasons(conversation.profile, match.occupation),
                    concerns=match_concerns(conversation.profile, match.occupation),
                )
            )
        return recommendations

    # =========================================================================
    # Outbound notifications and logging
    # =========================================================================

    async def _notify(self, name: str, send: Callable[[], Awaitable[None]]) -> None:
        """Deliver a user-profile write; failures are logged, never raised."""
        try:
            await send()
        except Exception as e:
            logger.warning("User profile update failed", update=name, error=str(e))

    def _final_profile(
        self, conversation: Conversation, aggregator: ProfileAggregator
    ) -> dict[str, Any]:
        return {
            "conversation_id": conversation.id,
            "trait_vector": aggregator.trait_vector(),
            "interests": [i.domain for i in conversation.profile.interests],
            "values": [v.value for v in conversation.profile.values],
            "recommendations": [r.occupation_id for r in conversation.recommendations],
            "completeness": aggregator.completeness(),
        }

    def _log_session_metrics(self, conversation: Conversation) -> None:
        tracker = MilestoneTracker(conversation.milestones)
        final = tracker.get(FINAL_MILESTONE)
        logger.info(
            "Session metrics",
            conversation_id=conversation.id,
            status=conversation.status,
            phase=conversation.phase,
            duration_seconds=int((utcnow() - conversation.created_at).total_seconds()),
            messages=len(conversation.messages),
            user_messages=sum(1 for m in conversation.messages if m.role == "user"),
            assistant_messages=sum(1 for m in conversation.messages if m.role == "assistant"),
            milestones_achieved=tracker.achieved_count,
            milestones_confirmed=tracker.confirmed_count,
            tokens_used=conversation.session.tokens_used,
            final_job=final.job_title if final.achieved else None,
        )


# Global orchestrator instance
_orchestrator: ConversationOrchestrator | None = None


async def get_orchestrator() -> ConversationOrchestrator:
    """Get or create the global orchestrator wired to the global stores."""
    global _orchestrator
    if _orchestrator is None:
        settings = get_settings()
        llm = await get_openrouter_client() if settings.llm_enabled else None
        _orchestrator = ConversationOrchestrator(
            get_conversation_store(),
            get_catalog(),
            get_user_profile_sink(),
            llm=llm,
            settings=settings,
        )
    return _orchestrator


def reset_orchestrator() -> None:
    """Reset the global orchestrator (for testing)."""
    global _orchestrator
    _orchestrator = None

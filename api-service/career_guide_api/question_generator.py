"""Rule-based question generation, used when the generative path is unavailable.

A strategy per phase picks the next question from what the profile already
covers. Candidates that overlap too much with a recently asked question are
skipped.
"""

import random
from dataclasses import dataclass, field

import structlog

from career_guide_api.models import BuildingProfile
from career_guide_api.signals import AnalysisResult

logger = structlog.get_logger()

DEFAULT_LOOKBACK = 3
DEFAULT_THRESHOLD = 0.6

WELCOME_QUESTIONS = [
    "Hi! I'm here to help you explore occupations that could really suit you. To start with "
    "something simple: what do the things you enjoy doing have in common? Working with people, "
    "animals, your hands, creating, solving problems... What about you?",
    "Welcome! Finding the right occupation can feel hard, so let's start from what you already "
    "know: is there a field or kind of environment that attracts you? Nature, animals, computers, "
    "people, making things, or something you already do and enjoy?",
    "Hi! It's not easy to know what you want to do, so let's go the other way round: is there a "
    "kind of work you are sure you would NOT want? Sitting all day, working alone, rigid hours... "
    "What would you really like to avoid?",
]

ICE_BREAKERS = [
    "If you could spend one day in any occupation, which one would you pick, and why?",
    "When you were a child, what did you want to do for a living? What has changed since?",
]

DISCOVERY_QUESTIONS: dict[str, list[str]] = {
    "interests": [
        "What really catches your attention? Tell me about your interests, even the ones that "
        "seem far from work.",
        "In your free time, what do you enjoy doing so much that you lose track of time?",
    ],
    "values": [
        "What truly matters to you in life? Which values would you never compromise on?",
        "If you could change one thing in the world, what would it be?",
    ],
    "skills": [
        "What do friends or family usually ask you to help with? What comes naturally to you?",
        "Tell me about something you achieved and were really proud of. What made it special?",
    ],
    "work_style": [
        "Do you prefer working alone or in a team? Where do you do your best work?",
        "Describe your ideal working day, from morning to evening.",
    ],
}

EXPLORATION_QUESTIONS = [
    "If money were not an issue, how would you spend your days? What would give them meaning?",
    "Tell me about a period of your life when you felt really fulfilled. What made it special?",
    "What frustrates you most in what you currently do? What would you like to change?",
]

CONSTRAINT_QUESTIONS = [
    "Are there important constraints in your life I should take into account, such as location, "
    "family or money?",
    "What would be a deal-breaker for you in a future job?",
]

REFINEMENT_QUESTIONS = [
    "What worries you most when you think about your professional future?",
    "If you had to choose between a creative but less stable job and a stable but less creative "
    "one, which would you pick?",
]

CONCLUSION_QUESTIONS = [
    "We've covered a lot together. Is there anything important about you that we haven't "
    "talked about yet?",
    "Looking at everything we discussed, which direction feels most exciting to you right now?",
    "What would be a small first step you could take this month towards that direction?",
]

GENERIC_FOLLOW_UPS = [
    "Can you tell me about a moment, at work or elsewhere, when you felt completely in your element?",
    "Which people around you have a job you find appealing? What draws you to it?",
    "What kind of problem would you happily spend a whole afternoon solving?",
    "When you imagine yourself in five years, what does a good week look like?",
    "Which school subjects or trainings did you enjoy most, and which did you avoid?",
]

# Drawn from once every candidate of a strategy was asked recently
FALLBACK_POOL = [
    *GENERIC_FOLLOW_UPS,
    *ICE_BREAKERS,
    *(q for questions in DISCOVERY_QUESTIONS.values() for q in questions),
    *EXPLORATION_QUESTIONS,
    *CONSTRAINT_QUESTIONS,
    *REFINEMENT_QUESTIONS,
    *CONCLUSION_QUESTIONS,
]


class NoFreshQuestionError(ValueError):
    """Raised when every known question was asked within the lookback window."""

    pass


def word_overlap(a: str, b: str) -> float:
    """Jaccard ratio of the whitespace-separated words of two questions."""
    left, right = set(a.lower().split()), set(b.lower().split())
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def is_near_duplicate(
    candidate: str, recent: list[str], threshold: float = DEFAULT_THRESHOLD
) -> bool:
    return any(word_overlap(candidate, q) > threshold for q in recent)


@dataclass
class QuestionContext:
    """What a strategy needs to pick the next question."""

    phase: str
    questions_asked: int
    profile: BuildingProfile
    recent_questions: list[str] = field(default_factory=list)
    last_analysis: AnalysisResult | None = None
    recommendation_titles: list[str] = field(default_factory=list)


@dataclass
class GeneratedQuestion:
    text: str
    strategy: str
    category: str | None = None


class QuestionGenerator:
    """Phase-keyed question selection with near-duplicate avoidance."""

    def __init__(
        self,
        rng: random.Random | None = None,
        lookback: int = DEFAULT_LOOKBACK,
        threshold: float = DEFAULT_THRESHOLD,
    ):
        self.rng = rng or random.Random()
        self.lookback = lookback
        self.threshold = threshold
        self._strategies = {
            "intro": self._intro,
            "discovery": self._discovery,
            "exploration": self._exploration,
            "refinement": self._refinement,
            "conclusion": self._conclusion,
        }

    def welcome(self) -> str:
        return self.rng.choice(WELCOME_QUESTIONS)

    def generate(self, ctx: QuestionContext) -> GeneratedQuestion:
        """Pick the next question for the conversation's phase.

        Raises:
            ValueError: If the phase has no strategy.
            NoFreshQuestionError: If every known question was asked recently.
        """
        strategy = self._strategies.get(ctx.phase)
        if strategy is None:
            raise ValueError(f"No question strategy for phase: {ctx.phase}")
        question = strategy(ctx)
        logger.debug("Rule-based question selected", phase=ctx.phase, strategy=question.strategy)
        return question

    # -------------------------------------------------------------------------
    # Selection helpers
    # -------------------------------------------------------------------------

    def _recent(self, ctx: QuestionContext) -> list[str]:
        return ctx.recent_questions[-self.lookback :]

    def _pick(self, ctx: QuestionContext, candidates: list[str]) -> str:
        """Random candidate that is not a near-duplicate of a recent question.

        Falls through to ``FALLBACK_POOL`` once every candidate was asked.

        Raises:
            NoFreshQuestionError: If nothing fresh is left in either pool.
        """
        recent = self._recent(ctx)
        for pool in (candidates, FALLBACK_POOL):
            fresh = [c for c in pool if not is_near_duplicate(c, recent, self.threshold)]
            if fresh:
                return self.rng.choice(fresh)
        raise NoFreshQuestionError(f"No fresh question left for phase: {ctx.phase}")

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    def _intro(self, ctx: QuestionContext) -> GeneratedQuestion:
        if ctx.questions_asked == 0:
            return GeneratedQuestion(self._pick(ctx, WELCOME_QUESTIONS), "welcome")
        return GeneratedQuestion(self._pick(ctx, ICE_BREAKERS), "ice_breaker")

    def _discovery(self, ctx: QuestionContext) -> GeneratedQuestion:
        profile = ctx.profile
        coverage = {
            "interests": len(profile.interests),
            "values": len(profile.values),
            "skills": len(profile.experience.domains) + (1 if profile.experience.level else 0),
            "work_style": len(profile.work_environment.model_dump(exclude_none=True)),
        }
        unexplored = [c for c, n in coverage.items() if n == 0]
        if unexplored:
            category, strategy = unexplored[0], "explore"
        else:
            category = min(coverage, key=coverage.get)
            strategy = "deepen"
        return GeneratedQuestion(self._pick(ctx, DISCOVERY_QUESTIONS[category]), strategy, category)

    def _exploration(self, ctx: QuestionContext) -> GeneratedQuestion:
        analysis = ctx.last_analysis
        if analysis is not None:
            follow_up = None
            if analysis.insights.interests:
                domain = analysis.insights.interests[0].domain
                follow_up = (
                    f"You mentioned {domain}, that's interesting! What excites you most in that "
                    "field? Have you had a chance to get involved in it?"
                )
            elif analysis.insights.traits:
                trait = analysis.insights.traits[0].trait
                follow_up = (
                    f"I sense a {trait} side in you. Can you give me a concrete example where it "
                    "helped you?"
                )
            if follow_up and not is_near_duplicate(follow_up, self._recent(ctx), self.threshold):
                return GeneratedQuestion(follow_up, "follow_up")

        if not ctx.profile.constraints and self.rng.random() > 0.7:
            return GeneratedQuestion(self._pick(ctx, CONSTRAINT_QUESTIONS), "constraints", "constraints")
        return GeneratedQuestion(self._pick(ctx, EXPLORATION_QUESTIONS), "explore")

    def _refinement(self, ctx: QuestionContext) -> GeneratedQuestion:
        if ctx.recommendation_titles:
            titles = ", ".join(ctx.recommendation_titles[:3])
            text = (
                f"Based on our conversation, you might enjoy working as {titles}. What do you "
                "think? Does any of these resonate with you?"
            )
            if not is_near_duplicate(text, self._recent(ctx), self.threshold):
                return GeneratedQuestion(text, "job_validation")

        strong = [
            name
            for name, data in sorted(
                ctx.profile.traits.items(), key=lambda item: item[1].score, reverse=True
            )
            if data.score > 0.6
        ]
        if strong:
            text = (
                f"I have the feeling that being {strong[0]} matters to you. Am I wrong? How does "
                "it show in your life?"
            )
            if not is_near_duplicate(text, self._recent(ctx), self.threshold):
                return GeneratedQuestion(text, "trait_clarification")

        return GeneratedQuestion(self._pick(ctx, REFINEMENT_QUESTIONS), "refine")

    def _conclusion(self, ctx: QuestionContext) -> GeneratedQuestion:
        return GeneratedQuestion(self._pick(ctx, CONCLUSION_QUESTIONS), "conclude")

"""Milestone state machine with sequential confirmation gating.

Five ordered checkpoints track how far discovery has progressed. Every state
change goes through ``TRANSITIONS``; a (state, event) pair missing from the
table is a no-op, which is what keeps confirmed milestones immutable.
"""

import re
from enum import Enum
from typing import Sequence

import structlog

from career_guide_api.models import Milestone, MilestoneState, utcnow
from career_guide_api.signals import MILESTONE_ORDER, MilestoneDetection

logger = structlog.get_logger()

REJECTION_PENALTY = 20.0
# Milestones from this index on only need this index confirmed, not their predecessor
RELAXED_FROM = 3
RELAXED_GATE = 2


class Event(str, Enum):
    REQUEST_CONFIRMATION = "request_confirmation"
    AUTO_CONFIRM = "auto_confirm"
    WITHDRAW = "withdraw"
    AFFIRM = "affirm"
    REJECT = "reject"


class Verdict(str, Enum):
    AFFIRM = "affirm"
    REJECT = "reject"
    UNKNOWN = "unknown"


S = MilestoneState

TRANSITIONS: dict[tuple[MilestoneState, Event], MilestoneState] = {
    (S.UNREACHED, Event.REQUEST_CONFIRMATION): S.NEEDS_CONFIRMATION,
    (S.DETECTED, Event.REQUEST_CONFIRMATION): S.NEEDS_CONFIRMATION,
    (S.NEEDS_CONFIRMATION, Event.REQUEST_CONFIRMATION): S.NEEDS_CONFIRMATION,
    (S.UNREACHED, Event.AUTO_CONFIRM): S.CONFIRMED,
    (S.DETECTED, Event.AUTO_CONFIRM): S.CONFIRMED,
    (S.NEEDS_CONFIRMATION, Event.AUTO_CONFIRM): S.CONFIRMED,
    (S.UNREACHED, Event.WITHDRAW): S.UNREACHED,
    (S.DETECTED, Event.WITHDRAW): S.DETECTED,
    (S.NEEDS_CONFIRMATION, Event.WITHDRAW): S.DETECTED,
    (S.NEEDS_CONFIRMATION, Event.AFFIRM): S.CONFIRMED,
    (S.NEEDS_CONFIRMATION, Event.REJECT): S.DETECTED,
}

# =============================================================================
# Confirmation classification
# =============================================================================

ConfirmationPatterns = Sequence[tuple[re.Pattern, Verdict]]


def _patterns(verdict: Verdict, *sources: str) -> list[tuple[re.Pattern, Verdict]]:
    return [(re.compile(src, re.IGNORECASE), verdict) for src in sources]


ENGLISH_PATTERNS: ConfirmationPatterns = [
    *_patterns(
        Verdict.AFFIRM,
        r"^yes\b",
        r"^yeah\b",
        r"^yep\b",
        r"^sure\b",
        r"^exactly\b",
        r"that'?s (it|right|correct)",
        r"absolutely",
        r"of course",
        r"definitely",
        r"sounds (good|right)",
        r"\bok(ay)?\b",
        r"👍",
        r"✓",
    ),
    *_patterns(
        Verdict.REJECT,
        r"^no\b",
        r"^nope\b",
        r"^not really",
        r"^not exactly",
        r"i('d| would) rather",
        r"i prefer",
        r"not at all",
        r"\bactually\b",
    ),
]

FRENCH_PATTERNS: ConfirmationPatterns = [
    *_patterns(
        Verdict.AFFIRM,
        r"^oui",
        r"^ouais",
        r"^exact",
        r"c'est ça",
        r"tout à fait",
        r"absolument",
        r"bien sûr",
        r"évidemment",
        r"parfait",
        r"correct",
        r"d'accord",
        r"\bok\b",
        r"👍",
        r"✓",
    ),
    *_patterns(
        Verdict.REJECT,
        r"^non\b",
        r"^pas vraiment",
        r"^pas exactement",
        r"je préfère",
        r"plutôt",
        r"en fait",
        r"pas tellement",
        r"pas du tout",
        r"ça serait plus",
    ),
]


def _affirm_first(*pattern_sets: ConfirmationPatterns) -> list[tuple[re.Pattern, Verdict]]:
    combined = [p for patterns in pattern_sets for p in patterns]
    return [p for p in combined if p[1] is Verdict.AFFIRM] + [
        p for p in combined if p[1] is Verdict.REJECT
    ]


DEFAULT_PATTERNS = _affirm_first(ENGLISH_PATTERNS, FRENCH_PATTERNS)


def classify_confirmation(
    text: str, patterns: ConfirmationPatterns = DEFAULT_PATTERNS
) -> Verdict:
    """Classify a user reply as affirming, rejecting or neither.

    Patterns are tried in order and the first match wins.
    """
    normalized = text.strip().lower()
    for pattern, verdict in patterns:
        if pattern.search(normalized):
            return verdict
    return Verdict.UNKNOWN


# =============================================================================
# State machine
# =============================================================================


def last_confirmed_index(milestones: Sequence[Milestone]) -> int:
    index = -1
    for i, milestone in enumerate(milestones):
        if milestone.confirmed:
            index = i
    return index


def is_unlocked(index: int, last_confirmed: int) -> bool:
    """Whether a milestone at ``index`` may progress given the confirmed frontier."""
    if index < RELAXED_FROM:
        return index <= last_confirmed + 1
    return last_confirmed >= RELAXED_GATE


def apply_event(milestone: Milestone, event: Event) -> bool:
    """Apply ``event`` through the transition table. Returns True on a state change."""
    target = TRANSITIONS.get((milestone.state, event))
    if target is None:
        return False
    changed = target is not milestone.state
    if changed and target in (S.NEEDS_CONFIRMATION, S.CONFIRMED) and milestone.achieved_at is None:
        milestone.achieved_at = utcnow()
    milestone.state = target
    return changed


class MilestoneTracker:
    """Applies detections and user confirmations to a conversation's milestones."""

    def __init__(self, milestones: list[Milestone]):
        if [m.name for m in milestones] != list(MILESTONE_ORDER):
            raise ValueError("Milestones must cover the fixed order exactly")
        self.milestones = milestones

    def get(self, name: str) -> Milestone:
        return self.milestones[MILESTONE_ORDER.index(name)]

    def pending(self) -> list[Milestone]:
        return [m for m in self.milestones if m.needs_confirmation]

    def apply_detections(self, detections: dict[str, MilestoneDetection]) -> list[Milestone]:
        """Upsert detected milestones in order, honouring the gating rules.

        Returns:
            Milestones that became confirmed during this pass.
        """
        frontier = last_confirmed_index(self.milestones)
        newly_confirmed: list[Milestone] = []

        for index, name in enumerate(MILESTONE_ORDER):
            detection = detections.get(name)
            if detection is None:
                continue
            if not is_unlocked(index, frontier):
                logger.info(
                    "Milestone detection ignored, gate not open",
                    milestone=name,
                    last_confirmed=frontier,
                )
                continue

            milestone = self.milestones[index]
            if milestone.confirmed:
                continue

            if detection.achieved:
                event = Event.REQUEST_CONFIRMATION if detection.needs_confirmation else Event.AUTO_CONFIRM
            else:
                event = Event.WITHDRAW
            was_confirmed = milestone.confirmed
            apply_event(milestone, event)

            milestone.confidence = detection.confidence
            for field in ("value", "job_title", "job_description", "conclusion_message"):
                payload = getattr(detection, field)
                if payload:
                    setattr(milestone, field, payload)

            if milestone.confirmed and not was_confirmed:
                newly_confirmed.append(milestone)
            logger.info(
                "Milestone updated",
                milestone=name,
                state=milestone.state.value,
                confidence=milestone.confidence,
            )
        return newly_confirmed

    def apply_user_reply(
        self, text: str, patterns: ConfirmationPatterns = DEFAULT_PATTERNS
    ) -> tuple[Milestone | None, Verdict]:
        """Resolve the single pending milestone from the user's reply.

        Nothing happens unless exactly one milestone awaits confirmation.
        """
        pending = self.pending()
        if len(pending) != 1:
            return None, Verdict.UNKNOWN
        milestone = pending[0]
        verdict = classify_confirmation(text, patterns)

        if verdict is Verdict.AFFIRM:
            apply_event(milestone, Event.AFFIRM)
            logger.info("Milestone confirmed by user", milestone=milestone.name)
        elif verdict is Verdict.REJECT:
            apply_event(milestone, Event.REJECT)
            milestone.confidence = max(0.0, milestone.confidence - REJECTION_PENALTY)
            logger.info(
                "Milestone rejected by user",
                milestone=milestone.name,
                confidence=milestone.confidence,
            )
        return milestone, verdict

    def next_focus(self) -> Milestone | None:
        for milestone in self.milestones:
            if not milestone.confirmed:
                return milestone
        return None

    def summary_lines(self) -> list[str]:
        """One status line per milestone plus the one to work on next."""
        lines = []
        for i, m in enumerate(self.milestones, start=1):
            detail = m.job_title or m.value
            line = f"{i}. {m.name}: {m.state.value} ({m.confidence:.0f}%)"
            if detail:
                line += f" - {detail}"
            lines.append(line)
        focus = self.next_focus()
        lines.append(f"Next focus: {focus.name}" if focus else "All milestones confirmed")
        return lines

    @property
    def achieved_count(self) -> int:
        return sum(1 for m in self.milestones if m.achieved)

    @property
    def confirmed_count(self) -> int:
        return sum(1 for m in self.milestones if m.confirmed)

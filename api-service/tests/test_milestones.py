"""Tests for the milestone state machine."""

import random
import re

import pytest

from career_guide_api.milestones import (
    TRANSITIONS,
    Event,
    MilestoneTracker,
    Verdict,
    apply_event,
    classify_confirmation,
    is_unlocked,
    last_confirmed_index,
)
from career_guide_api.models import Milestone, MilestoneState, default_milestones
from career_guide_api.signals import MILESTONE_ORDER, MilestoneDetection

S = MilestoneState


def detection(**kwargs) -> MilestoneDetection:
    kwargs.setdefault("achieved", True)
    kwargs.setdefault("confidence", 80)
    return MilestoneDetection(**kwargs)


@pytest.fixture
def tracker() -> MilestoneTracker:
    return MilestoneTracker(default_milestones())


def confirm_up_to(tracker: MilestoneTracker, index: int) -> None:
    for milestone in tracker.milestones[: index + 1]:
        milestone.state = S.CONFIRMED


class TestClassifyConfirmation:
    """Tests for reply classification."""

    @pytest.mark.parametrize(
        "text", ["Yes", "yeah that's it", "Exactly!", "oui, c'est ça", "Tout à fait", "👍"]
    )
    def test_affirmations(self, text: str) -> None:
        assert classify_confirmation(text) is Verdict.AFFIRM

    @pytest.mark.parametrize(
        "text", ["No", "not really", "I'd rather work outside", "non", "Je préfère les chats"]
    )
    def test_rejections(self, text: str) -> None:
        assert classify_confirmation(text) is Verdict.REJECT

    def test_affirm_checked_first(self) -> None:
        assert classify_confirmation("yes, but actually I prefer dogs") is Verdict.AFFIRM

    def test_unknown(self) -> None:
        assert classify_confirmation("I like painting") is Verdict.UNKNOWN

    def test_custom_patterns(self) -> None:
        patterns = [(re.compile(r"^ja\b"), Verdict.AFFIRM), (re.compile(r"^nein\b"), Verdict.REJECT)]
        assert classify_confirmation("ja", patterns) is Verdict.AFFIRM
        assert classify_confirmation("yes", patterns) is Verdict.UNKNOWN


class TestTransitions:
    """Tests for the transition table."""

    def test_confirmed_has_no_outgoing_transitions(self) -> None:
        assert not [key for key in TRANSITIONS if key[0] is S.CONFIRMED]

    @pytest.mark.parametrize("event", list(Event))
    def test_confirmed_is_immutable(self, event: Event) -> None:
        milestone = Milestone(name="passions_identified", state=S.CONFIRMED)
        assert apply_event(milestone, event) is False
        assert milestone.state is S.CONFIRMED

    def test_achieved_at_set_once(self) -> None:
        milestone = Milestone(name="passions_identified")
        apply_event(milestone, Event.REQUEST_CONFIRMATION)
        first = milestone.achieved_at
        assert first is not None
        apply_event(milestone, Event.AFFIRM)
        assert milestone.achieved_at == first
        assert milestone.state is S.CONFIRMED


class TestGating:
    """Tests for sequential unlock rules."""

    def test_first_milestone_always_open(self) -> None:
        assert is_unlocked(0, -1)

    def test_strict_gate_for_early_milestones(self) -> None:
        assert not is_unlocked(1, -1)
        assert is_unlocked(1, 0)
        assert not is_unlocked(2, 0)
        assert is_unlocked(2, 1)

    def test_relaxed_gate_for_last_two(self) -> None:
        assert not is_unlocked(3, 1)
        assert is_unlocked(3, 2)
        assert is_unlocked(4, 2)

    def test_last_confirmed_index(self, tracker: MilestoneTracker) -> None:
        assert last_confirmed_index(tracker.milestones) == -1
        confirm_up_to(tracker, 1)
        assert last_confirmed_index(tracker.milestones) == 1


class TestApplyDetections:
    """Tests for upserting detections."""

    def test_auto_confirm_by_default(self, tracker: MilestoneTracker) -> None:
        confirmed = tracker.apply_detections({"passions_identified": detection(value="animals")})
        milestone = tracker.get("passions_identified")
        assert milestone.state is S.CONFIRMED
        assert milestone.value == "animals"
        assert confirmed == [milestone]

    def test_needs_confirmation(self, tracker: MilestoneTracker) -> None:
        tracker.apply_detections({"passions_identified": detection(needs_confirmation=True)})
        assert tracker.get("passions_identified").state is S.NEEDS_CONFIRMATION
        assert tracker.pending() == [tracker.get("passions_identified")]

    def test_out_of_order_detection_ignored(self, tracker: MilestoneTracker) -> None:
        """A later milestone is ignored while its predecessor is unconfirmed."""
        tracker.get("passions_identified").state = S.DETECTED
        tracker.apply_detections(
            {"role_determined": detection(needs_confirmation=True, value="hands-on")}
        )
        role = tracker.get("role_determined")
        assert role.state is S.UNREACHED
        assert role.confidence == 0
        assert role.value is None

    def test_frontier_fixed_for_the_pass(self, tracker: MilestoneTracker) -> None:
        """Confirming milestone 1 does not unlock milestone 2 in the same pass."""
        tracker.apply_detections(
            {"passions_identified": detection(), "role_determined": detection()}
        )
        assert tracker.get("passions_identified").confirmed
        assert tracker.get("role_determined").state is S.UNREACHED

    def test_specific_job_with_relaxed_gate(self, tracker: MilestoneTracker) -> None:
        confirm_up_to(tracker, 2)
        tracker.apply_detections(
            {
                "specific_job_identified": detection(
                    needs_confirmation=True, job_title="Soigneur animalier", confidence=90
                )
            }
        )
        job = tracker.get("specific_job_identified")
        assert job.state is S.NEEDS_CONFIRMATION
        assert job.job_title == "Soigneur animalier"
        assert tracker.get("format_determined").state is S.UNREACHED

    def test_confirmed_milestone_untouched(self, tracker: MilestoneTracker) -> None:
        tracker.apply_detections({"passions_identified": detection(value="art", confidence=70)})
        tracker.apply_detections(
            {"passions_identified": detection(achieved=False, value="music", confidence=10)}
        )
        milestone = tracker.get("passions_identified")
        assert milestone.confirmed
        assert milestone.value == "art"
        assert milestone.confidence == 70

    def test_not_achieved_withdraws_pending(self, tracker: MilestoneTracker) -> None:
        tracker.apply_detections({"passions_identified": detection(needs_confirmation=True)})
        tracker.apply_detections(
            {"passions_identified": detection(achieved=False, confidence=30)}
        )
        milestone = tracker.get("passions_identified")
        assert milestone.state is S.DETECTED
        assert milestone.confidence == 30

    def test_not_achieved_on_unreached_only_updates_confidence(
        self, tracker: MilestoneTracker
    ) -> None:
        tracker.apply_detections(
            {"passions_identified": detection(achieved=False, confidence=40)}
        )
        milestone = tracker.get("passions_identified")
        assert milestone.state is S.UNREACHED
        assert milestone.confidence == 40

    def test_rejects_wrong_milestone_list(self) -> None:
        with pytest.raises(ValueError):
            MilestoneTracker(default_milestones()[:3])


class TestApplyUserReply:
    """Tests for confirmation replies."""

    def test_affirm_confirms_pending(self, tracker: MilestoneTracker) -> None:
        tracker.apply_detections({"passions_identified": detection(needs_confirmation=True)})
        milestone, verdict = tracker.apply_user_reply("Oui, exactement")
        assert verdict is Verdict.AFFIRM
        assert milestone is tracker.get("passions_identified")
        assert milestone.confirmed

    def test_reject_lowers_confidence(self, tracker: MilestoneTracker) -> None:
        tracker.apply_detections(
            {"passions_identified": detection(needs_confirmation=True, confidence=15)}
        )
        milestone, verdict = tracker.apply_user_reply("No, not really")
        assert verdict is Verdict.REJECT
        assert milestone is not None
        assert milestone.state is S.DETECTED
        assert milestone.confidence == 0

    def test_reject_penalty(self, tracker: MilestoneTracker) -> None:
        tracker.apply_detections(
            {"passions_identified": detection(needs_confirmation=True, confidence=80)}
        )
        milestone, _ = tracker.apply_user_reply("nope")
        assert milestone is not None
        assert milestone.confidence == 60

    def test_unclear_reply_leaves_pending(self, tracker: MilestoneTracker) -> None:
        tracker.apply_detections({"passions_identified": detection(needs_confirmation=True)})
        _, verdict = tracker.apply_user_reply("hmm, let me think")
        assert verdict is Verdict.UNKNOWN
        assert tracker.get("passions_identified").needs_confirmation

    def test_no_pending_is_noop(self, tracker: MilestoneTracker) -> None:
        milestone, verdict = tracker.apply_user_reply("yes")
        assert milestone is None
        assert verdict is Verdict.UNKNOWN

    def test_ambiguous_when_several_pending(self, tracker: MilestoneTracker) -> None:
        tracker.get("passions_identified").state = S.NEEDS_CONFIRMATION
        tracker.get("role_determined").state = S.NEEDS_CONFIRMATION
        milestone, _ = tracker.apply_user_reply("yes")
        assert milestone is None
        assert len(tracker.pending()) == 2


class TestSummary:
    def test_summary_lines(self, tracker: MilestoneTracker) -> None:
        tracker.apply_detections({"passions_identified": detection(value="animals")})
        lines = tracker.summary_lines()
        assert len(lines) == 6
        assert lines[0].startswith("1. passions_identified: confirmed")
        assert "animals" in lines[0]
        assert lines[-1] == "Next focus: role_determined"
        assert tracker.achieved_count == 1
        assert tracker.confirmed_count == 1


class TestOrderingUnderRandomSequences:
    """Random detections and replies never break the confirmation order."""

    REPLIES = ["yes", "no", "oui", "not really", "I like painting", "exactly", "je préfère"]

    @staticmethod
    def random_detections(rng: random.Random) -> dict[str, MilestoneDetection]:
        detections = {}
        for name in MILESTONE_ORDER:
            if rng.random() < 0.4:
                detections[name] = MilestoneDetection(
                    achieved=rng.random() < 0.8,
                    needs_confirmation=rng.random() < 0.6,
                    confidence=rng.uniform(0, 100),
                )
        return detections

    @staticmethod
    def assert_ordered(milestones: list[Milestone]) -> None:
        progressed = (S.NEEDS_CONFIRMATION, S.CONFIRMED)
        for index, milestone in enumerate(milestones):
            if milestone.state not in progressed:
                continue
            if 0 < index <= 2:
                assert milestones[index - 1].confirmed, f"{milestone.name} ahead of its predecessor"
            elif index > 2:
                assert milestones[2].confirmed, f"{milestone.name} ahead of domain_identified"

    def test_random_sequences(self) -> None:
        rng = random.Random(1234)
        for _ in range(300):
            tracker = MilestoneTracker(default_milestones())
            confirmed: set[str] = set()
            for _ in range(rng.randint(1, 15)):
                if rng.random() < 0.5:
                    tracker.apply_detections(self.random_detections(rng))
                else:
                    tracker.apply_user_reply(rng.choice(self.REPLIES))

                self.assert_ordered(tracker.milestones)
                now_confirmed = {m.name for m in tracker.milestones if m.confirmed}
                assert confirmed <= now_confirmed
                confirmed = now_confirmed

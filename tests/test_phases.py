"""Tests for the phase state machine."""

import pytest

from conftest import START, make_session
from deep_loop.exceptions import TransitionError
from deep_loop.models import EscalationRecord, Phase, Priority, WorkItem
from deep_loop.phases import FORCED_TRANSITIONS, PhaseStateMachine


@pytest.fixture
def machine() -> PhaseStateMachine:
    return PhaseStateMachine()


class TestTransitions:
    """Tests for legal transitions."""

    def test_initial_phase(self, machine) -> None:
        assert machine.initial_phase() is Phase.CHALLENGE
        assert machine.initial_phase(skip_challenge=True) is Phase.PLAN
        assert PhaseStateMachine(skip_challenge=True).initial_phase() is Phase.PLAN

    @pytest.mark.parametrize("phase,expected", [
        (Phase.CHALLENGE, Phase.PLAN),
        (Phase.PLAN, Phase.BUILD),
        (Phase.BUILD, Phase.REVIEW),
        (Phase.FIX, Phase.REVIEW),
        (Phase.SHIP, Phase.COMPLETE),
    ])
    def test_next_phase(self, machine, phase, expected) -> None:
        assert machine.next_phase(phase) is expected

    def test_review_branches_on_issues(self, machine) -> None:
        assert machine.next_phase(Phase.REVIEW, open_issues=True) is Phase.FIX
        assert machine.next_phase(Phase.REVIEW, open_issues=False) is Phase.SHIP

    def test_complete_is_terminal(self, machine) -> None:
        with pytest.raises(TransitionError):
            machine.next_phase(Phase.COMPLETE)

    def test_sentinels(self, machine) -> None:
        assert machine.sentinel_for(Phase.PLAN) == "PLAN_COMPLETE"
        assert machine.sentinel_for(Phase.FIX) == "FIX_COMPLETE"
        assert machine.sentinel_for(Phase.SHIP) == "COMPLETE"
        assert machine.sentinel_for(Phase.COMPLETE) is None

    def test_advance_never_lowers_progress(self, machine) -> None:
        for phase in Phase:
            if phase is Phase.COMPLETE:
                continue
            for open_issues in (False, True):
                target = machine.next_phase(phase, open_issues)
                assert machine.progress_rank(target) >= machine.progress_rank(phase)

    def test_forced_transitions_are_the_only_backward_moves(self) -> None:
        assert FORCED_TRANSITIONS == {(Phase.REVIEW, Phase.FIX), (Phase.COMPLETE, Phase.REVIEW)}


class TestAdvance:
    def test_records_transition(self, machine) -> None:
        session = make_session(Phase.PLAN)
        later = START.replace(hour=10)

        target = machine.advance(session, now=later, offset=512)

        assert target is Phase.BUILD
        assert session.phase is Phase.BUILD
        assert session.phase_started_at == later
        assert session.transcript_offset == 512
        assert session.history[-1]["event"] == "advanced"
        assert session.history[-1]["from_phase"] == "PLAN"

    def test_ship_sets_complete(self, machine) -> None:
        session = make_session(Phase.SHIP)
        machine.advance(session, now=START)
        assert session.phase is Phase.COMPLETE
        assert session.complete

    def test_force_back_from_complete(self, machine) -> None:
        session = make_session(Phase.COMPLETE, complete=True, transcript_offset=40)

        machine.force_back(session, Phase.REVIEW, "missing tests", now=START)

        assert session.phase is Phase.REVIEW
        assert not session.complete
        assert session.transcript_offset == 40
        assert session.history[-1]["reason"] == "missing tests"

    def test_force_back_rejects_other_moves(self, machine) -> None:
        session = make_session(Phase.BUILD)
        with pytest.raises(TransitionError):
            machine.force_back(session, Phase.PLAN, "nope", now=START)
        assert session.phase is Phase.BUILD


class TestInstruction:
    """Tests for instruction payloads."""

    def test_status_line(self, machine) -> None:
        line = machine.status_line(make_session(Phase.BUILD, iteration=3, ceiling=10))
        assert line == (
            "[deep-loop] phase BUILD | iteration 3/10 | "
            "emit <promise>BUILD_COMPLETE</promise> to advance"
        )

    def test_names_sentinel(self, machine) -> None:
        text = machine.instruction(make_session(Phase.PLAN, iteration=1))
        assert "### PLAN Phase" in text
        assert "Add CSV export" in text
        assert text.endswith(
            "When this phase is done, output `<promise>PLAN_COMPLETE</promise>` on its own line."
        )

    def test_fix_lists_issues(self, machine) -> None:
        text = machine.instruction(
            make_session(Phase.FIX),
            {"issues": [{"description": "typo in README"}, "flaky test"]},
        )
        assert "- typo in README" in text
        assert "- flaky test" in text

    def test_verification_summary_included(self, machine) -> None:
        text = machine.instruction(
            make_session(Phase.REVIEW), {"verification": "## BLOCKED - Verification Failed"}
        )
        assert text.index("BLOCKED") < text.index("### REVIEW Phase")

    def test_build_backlog_preview(self, machine) -> None:
        backlog = [
            WorkItem(item_id=f"item-{i}", title=f"Task {i}", priority=Priority.HIGH)
            for i in range(7)
        ]
        text = machine.instruction(make_session(Phase.BUILD), {"backlog": backlog})
        assert "- [high] item-0: Task 0" in text
        assert "item-5" not in text
        assert "... and 2 more" in text

    def test_build_retry_and_escalation(self, machine) -> None:
        retry = WorkItem(item_id="item-1", title="x", attempts=2, last_error="ImportError: foo")
        escalation = EscalationRecord("item-2", 3, ["e1", "e2"], START)

        text = machine.instruction(
            make_session(Phase.BUILD), {"retry": retry, "escalations": [escalation]}
        )

        assert "ImportError: foo" in text
        assert "different approach" in text
        assert "deep-loop escalations clear item-2" in text

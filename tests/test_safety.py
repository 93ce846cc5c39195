"""Tests for operator markers, staleness and the iteration ceiling."""

from datetime import timedelta
from pathlib import Path

import pytest

from conftest import START, make_session, write_json
from deep_loop.config import LoopConfig
from deep_loop.models import EscalationRecord
from deep_loop.safety import OperatorAction, SafetyValveController


@pytest.fixture
def safety(paths, clock) -> SafetyValveController:
    return SafetyValveController(paths, LoopConfig(), clock=clock)


class TestOperatorMarkers:
    """Tests for marker consumption."""

    def test_none_present(self, safety) -> None:
        assert safety.check_operator_markers() is None

    def test_force_exit_consumed(self, safety, paths) -> None:
        paths.force_exit.touch()

        marker = safety.check_operator_markers()

        assert marker.action is OperatorAction.ABORT
        assert not paths.force_exit.exists()
        assert safety.check_operator_markers() is None

    def test_force_complete_reason(self, safety, paths) -> None:
        paths.force_complete.write_text("accepted by reviewer\n")
        marker = safety.check_operator_markers()
        assert marker.action is OperatorAction.FORCE_COMPLETE
        assert marker.reason == "accepted by reviewer"
        assert not paths.force_complete.exists()

    def test_force_complete_default_reason(self, safety, paths) -> None:
        paths.force_complete.touch()
        assert safety.check_operator_markers().reason == "No reason given"

    def test_handoff(self, safety, paths) -> None:
        paths.handoff.touch()
        marker = safety.check_operator_markers()
        assert marker.action is OperatorAction.HANDOFF
        assert marker.reason is None

    def test_marker_consumed_by_concurrent_invocation(self, safety, paths, monkeypatch) -> None:
        paths.force_complete.write_text("done")
        original = Path.read_text

        def read_after_other_invocation(path, *args, **kwargs):
            path.unlink(missing_ok=True)
            return original(path, *args, **kwargs)

        monkeypatch.setattr(Path, "read_text", read_after_other_invocation)

        assert safety.check_operator_markers() is None

    def test_marker_removed_after_read(self, safety, paths, monkeypatch) -> None:
        paths.force_exit.touch()
        original = Path.read_text

        def read_then_lose_race(path, *args, **kwargs):
            text = original(path, *args, **kwargs)
            path.unlink()
            return text

        monkeypatch.setattr(Path, "read_text", read_then_lose_race)

        assert safety.check_operator_markers().action is OperatorAction.ABORT

    def test_abort_takes_priority(self, safety, paths) -> None:
        paths.force_complete.write_text("done")
        paths.force_exit.touch()

        assert safety.check_operator_markers().action is OperatorAction.ABORT
        assert safety.check_operator_markers().action is OperatorAction.FORCE_COMPLETE


class TestCheck:
    """Tests for stale and ceiling guards."""

    def test_fresh_session_proceeds(self, safety) -> None:
        verdict = safety.check(make_session(iteration=3))
        assert not verdict.halt

    def test_stale_session_halts(self, safety, clock) -> None:
        session = make_session(iteration=3)
        clock.advance(hours=9)

        verdict = safety.check(session)

        assert verdict.halt
        assert verdict.guard == "stale"
        assert "SESSION STALE" in verdict.message
        assert session.iteration == 3

    def test_exactly_at_stale_limit_proceeds(self, safety) -> None:
        session = make_session()
        assert not safety.check(session, START + timedelta(hours=8)).halt

    def test_ceiling_halts(self, safety) -> None:
        verdict = safety.check(make_session(iteration=10, ceiling=10))
        assert verdict.halt
        assert verdict.guard == "ceiling"
        assert "ITERATION LIMIT REACHED (10/10)" in verdict.message
        assert "raise-ceiling 20" in verdict.message
        assert "FORCE_COMPLETE" in verdict.message
        assert "FORCE_EXIT" in verdict.message

    def test_stale_checked_before_ceiling(self, safety, clock) -> None:
        session = make_session(iteration=10, ceiling=10)
        clock.advance(hours=9)
        assert safety.check(session).guard == "stale"


class TestPendingEscalations:
    def test_sorted_and_tolerant(self, safety, paths) -> None:
        later = EscalationRecord("b", 3, ["x"], START + timedelta(minutes=1))
        earlier = EscalationRecord("a", 3, ["y"], START)
        write_json(paths.escalations, {
            "b": later.to_dict(),
            "a": earlier.to_dict(),
            "broken": {"item_id": "broken"},
        })

        records = safety.pending_escalations()

        assert [r.item_id for r in records] == ["a", "b"]

    def test_corrupt_file(self, safety, paths) -> None:
        paths.escalations.write_text("{")
        assert safety.pending_escalations() == []

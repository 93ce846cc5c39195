"""Tests for the State Store and per-session files."""

import json
from datetime import timedelta

import pytest

from conftest import START, issue, make_session, write_json
from deep_loop.exceptions import InvalidPhaseError, SessionExistsError, StateError
from deep_loop.locking import read_json_file
from deep_loop.models import ComplexityTier, Phase
from deep_loop.state_store import FileStateStore, InMemoryStateStore


class TestFileStateStore:
    """Tests for FileStateStore."""

    def test_read_missing_returns_none(self, store: FileStateStore) -> None:
        assert store.read() is None

    def test_write_then_read(self, store: FileStateStore, clock) -> None:
        session = make_session(Phase.BUILD, iteration=2)
        clock.advance(minutes=5)

        store.write(session)
        restored = store.read()

        assert restored.phase is Phase.BUILD
        assert restored.iteration == 2
        assert restored.last_activity == START + timedelta(minutes=5)

    def test_corrupt_file_raises(self, store: FileStateStore) -> None:
        store.path.write_text("{oops")
        with pytest.raises(StateError):
            store.read()

    def test_non_object_raises(self, store: FileStateStore) -> None:
        store.path.write_text("[]")
        with pytest.raises(StateError, match="not a JSON object"):
            store.read()

    def test_missing_field_raises(self, store: FileStateStore) -> None:
        store.path.write_text(json.dumps({"phase": "PLAN"}))
        with pytest.raises(StateError, match="Invalid session record"):
            store.read()

    def test_unknown_phase_raises(self, store: FileStateStore) -> None:
        data = make_session().to_dict()
        data["phase"] = "DEPLOY"
        store.path.write_text(json.dumps(data))
        with pytest.raises(InvalidPhaseError):
            store.read()

    def test_clear(self, store: FileStateStore) -> None:
        store.write(make_session())
        store.clear()
        assert store.read() is None
        store.clear()


class TestInMemoryStateStore:
    def test_copies_on_read(self, clock) -> None:
        store = InMemoryStateStore(make_session(), clock=clock)
        first = store.read()
        first.iteration = 7
        assert store.read().iteration == 0

    def test_counts_writes(self, clock) -> None:
        store = InMemoryStateStore(clock=clock)
        store.write(make_session())
        store.write(make_session())
        assert store.writes == 2


class TestCreateSession:
    """Tests for SessionFiles.create_session."""

    def test_creates_session_and_task(self, session_files, store, paths) -> None:
        session = session_files.create_session(
            "s-1", "Add CSV export\n", tier=ComplexityTier.COMPLEX, ceiling=20,
        )

        assert session.phase is Phase.PLAN
        assert session.ceiling == 20
        assert paths.task.read_text() == "Add CSV export\n"
        assert store.read().session_id == "s-1"
        assert store.read().history[0]["event"] == "started"

    def test_rejects_active_session(self, session_files) -> None:
        session_files.create_session("s-1", "first")
        with pytest.raises(SessionExistsError) as exc_info:
            session_files.create_session("s-2", "second")
        assert exc_info.value.session_id == "s-1"

    def test_replace_archives_previous(self, session_files, store, paths) -> None:
        session_files.create_session("s-1", "first")
        session_files.create_session("s-2", "second", replace=True)

        assert store.read().session_id == "s-2"
        archived = list(paths.archive_dir.iterdir())
        assert len(archived) == 1
        assert archived[0].name.startswith("s-1-")
        assert (archived[0] / "task.md").read_text() == "first\n"

    def test_completed_session_may_be_replaced(self, session_files, store) -> None:
        store.write(make_session(Phase.COMPLETE, complete=True))
        session = session_files.create_session("s-2", "next")
        assert session.session_id == "s-2"

    def test_clears_stale_issues(self, session_files, paths) -> None:
        write_json(paths.issues, [issue("left over")])
        session_files.create_session("s-1", "task")
        assert not paths.issues.exists()


class TestIssues:
    """Tests for issue list handling."""

    def test_missing_file_has_no_issues(self, session_files) -> None:
        assert session_files.open_issues() == []

    def test_accepts_bare_list(self, session_files, paths) -> None:
        write_json(paths.issues, ["flaky test", issue("typo")])
        assert len(session_files.open_issues()) == 2

    def test_accepts_wrapped_list(self, session_files, paths) -> None:
        write_json(paths.issues, {"issues": [issue("typo")]})
        assert session_files.open_issues() == [issue("typo")]

    def test_resolved_issues_are_not_open(self, session_files, paths) -> None:
        write_json(paths.issues, [
            issue("a", "resolved"), issue("b", "Fixed"), issue("c", "open"), issue("d"),
        ])
        assert [i["description"] for i in session_files.open_issues()] == ["c", "d"]

    def test_corrupt_file_is_one_issue(self, session_files, paths) -> None:
        paths.issues.write_text("{nope")
        issues = session_files.open_issues()
        assert len(issues) == 1
        assert "unreadable" in issues[0]

    def test_clear_issues(self, session_files, paths) -> None:
        write_json(paths.issues, [issue("a")])
        session_files.clear_issues()
        assert read_json_file(paths.issues) == []


class TestArchive:
    def test_moves_session_files_and_keeps_audit(self, session_files, store, paths, clock) -> None:
        session = session_files.create_session("s/1", "task")
        paths.plan.write_text("- [ ] step\n")
        paths.audit.write_text('{"event": "force_complete"}\n')

        dest = session_files.archive(session)

        assert dest.name == "s_1-20240301090000"
        assert (dest / "plan.md").exists()
        assert read_json_file(dest / "state.json")["archived_at"].startswith("2024-03-01")
        assert not paths.plan.exists()
        assert not paths.state.exists()
        assert paths.audit.exists()
        assert store.read() is None

"""Pytest fixtures for deep_loop tests."""

import sys
from pathlib import Path

# Add src directory to path to allow imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from deep_loop.config import LoopConfig, LoopPaths
from deep_loop.events import EventLog
from deep_loop.locking import DistributedLockManager
from deep_loop.models import ComplexityTier, Phase, Session
from deep_loop.queue import TaskQueue
from deep_loop.state_store import FileStateStore, SessionFiles

START = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Mutable clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class TranscriptWriter:
    """Appends host-style JSONL entries to a transcript file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.touch()

    def _append(self, entry: Dict[str, Any]) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry) + "\n")

    def assistant(self, text: str, sidechain: bool = False) -> None:
        entry: Dict[str, Any] = {
            "type": "assistant",
            "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        }
        if sidechain:
            entry["isSidechain"] = True
        self._append(entry)

    def user(self, text: str) -> None:
        self._append({"type": "user", "message": {"role": "user", "content": text}})

    def tool_use(self, command: str) -> None:
        self._append({
            "type": "assistant",
            "message": {
                "role": "assistant",
                "content": [{"type": "tool_use", "name": "Bash", "input": {"command": command}}],
            },
        })

    def raw(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def promise(self, sentinel: str) -> None:
        self.assistant(f"Done.\n\n<promise>{sentinel}</promise>")


@pytest.fixture
def clock() -> FakeClock:
    """A clock fixed at 2024-03-01 09:00 UTC."""
    return FakeClock()


@pytest.fixture
def paths(tmp_path: Path) -> LoopPaths:
    """State directory layout under a temporary directory."""
    state_dir = tmp_path / ".deep"
    state_dir.mkdir()
    return LoopPaths(state_dir)


@pytest.fixture
def config() -> LoopConfig:
    return LoopConfig()


@pytest.fixture
def lock_manager(paths: LoopPaths) -> DistributedLockManager:
    return DistributedLockManager(paths.state_dir, default_timeout=5, sleep=lambda _: None)


@pytest.fixture
def events(paths: LoopPaths, clock: FakeClock) -> EventLog:
    return EventLog(paths.logs_dir, clock=clock)


@pytest.fixture
def queue(lock_manager: DistributedLockManager, paths: LoopPaths, config: LoopConfig,
          clock: FakeClock, events: EventLog) -> TaskQueue:
    return TaskQueue(lock_manager, paths, config, clock=clock, events=events)


@pytest.fixture
def store(paths: LoopPaths, clock: FakeClock) -> FileStateStore:
    return FileStateStore(paths.state, clock=clock)


@pytest.fixture
def session_files(paths: LoopPaths, store: FileStateStore, clock: FakeClock) -> SessionFiles:
    return SessionFiles(paths, store, clock=clock)


@pytest.fixture
def transcript(tmp_path: Path) -> TranscriptWriter:
    return TranscriptWriter(tmp_path / "transcript.jsonl")


def make_session(phase: Phase = Phase.PLAN, iteration: int = 0, ceiling: int = 10,
                 now: datetime = START, **kwargs: Any) -> Session:
    """Build a Session with sensible defaults for tests."""
    return Session(
        session_id=kwargs.pop("session_id", "s-1"),
        phase=phase,
        started_at=now,
        last_activity=now,
        iteration=iteration,
        ceiling=ceiling,
        tier=kwargs.pop("tier", ComplexityTier.STANDARD),
        task=kwargs.pop("task", "Add CSV export"),
        phase_started_at=now,
        **kwargs,
    )


def passing_test_results() -> Dict[str, Any]:
    return {
        "results": {
            category: {"ran": True, "passed": True}
            for category in ("tests", "types", "lint", "build")
        },
        "allPassed": True,
        "blockers": [],
    }


def write_json(path: Path, data: Any) -> None:
    path.write_text(json.dumps(data), encoding="utf-8")


def issue(description: str, status: Optional[str] = None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"description": description}
    if status:
        entry["status"] = status
    return entry


def ids(items: List[Any]) -> List[str]:
    return [item.item_id for item in items]

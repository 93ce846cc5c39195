"""Session persistence for the phase loop.

This module provides the State Store abstraction the orchestrator reads at
the start of every invocation and writes before returning, plus helpers for
the other per-session files (task description, plan, outstanding issues).

Example usage:
    from pathlib import Path
    from deep_loop.config import LoopPaths
    from deep_loop.state_store import FileStateStore, SessionFiles

    paths = LoopPaths(Path(".deep"))
    store = FileStateStore(paths.state)
    files = SessionFiles(paths, store)

    session = files.create_session("abc123", task="Add CSV export")
    session = store.read()
"""

import logging
import re
import shutil
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import LoopPaths
from .exceptions import SessionExistsError, StateError
from .locking import read_json_file, write_json_atomic
from .models import ComplexityTier, Phase, Session, format_timestamp, utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "StateStore",
    "FileStateStore",
    "InMemoryStateStore",
    "SessionFiles",
]

RESOLVED_ISSUE_STATUSES = {"resolved", "closed", "fixed", "wontfix"}


class StateStore(ABC):
    """Whole-record storage for the single active Session.

    Absent state means "no active session" and is not an error.
    """

    @abstractmethod
    def read(self) -> Optional[Session]:
        """Return the stored Session, or None when there is none."""

    @abstractmethod
    def write(self, session: Session) -> None:
        """Replace the stored Session, stamping its last activity."""

    @abstractmethod
    def clear(self) -> None:
        """Remove the stored Session."""


class FileStateStore(StateStore):
    """State Store backed by a JSON file replaced atomically on every write.

    Attributes:
        path: Location of the session record.
    """

    def __init__(self, path: Path, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = Path(path)
        self._clock = clock

    def read(self) -> Optional[Session]:
        """Load the Session from disk.

        Returns:
            The Session, or None if the file does not exist.

        Raises:
            StateError: If the file is unreadable, corrupt, or incomplete.
            InvalidPhaseError: If the persisted phase is not a declared phase.
        """
        data = read_json_file(self.path)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise StateError(
                f"Session record in {self.path} is not a JSON object",
                path=str(self.path),
            )
        try:
            return Session.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(
                f"Invalid session record in {self.path}: {e}",
                path=str(self.path),
                original_error=e,
            ) from e

    def write(self, session: Session) -> None:
        session.last_activity = self._clock()
        write_json_atomic(self.path, session.to_dict())
        logger.debug(
            f"Saved session {session.session_id} "
            f"(phase={session.phase.value}, iteration={session.iteration})"
        )

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class InMemoryStateStore(StateStore):
    """State Store kept in memory, for tests and embedding.

    The record is held in serialized form so callers never share a mutable
    Session with the store.
    """

    def __init__(
        self,
        session: Optional[Session] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._clock = clock
        self._data: Optional[Dict[str, Any]] = session.to_dict() if session else None
        self.writes = 0

    def read(self) -> Optional[Session]:
        if self._data is None:
            return None
        return Session.from_dict(self._data)

    def write(self, session: Session) -> None:
        session.last_activity = self._clock()
        self._data = session.to_dict()
        self.writes += 1

    def clear(self) -> None:
        self._data = None


class SessionFiles:
    """Per-session files that live next to the Session record.

    Attributes:
        paths: Layout of the state directory.
        store: State Store holding the Session.
    """

    def __init__(
        self,
        paths: LoopPaths,
        store: StateStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.paths = paths
        self.store = store
        self._clock = clock

    def create_session(
        self,
        session_id: str,
        task: str,
        tier: ComplexityTier = ComplexityTier.STANDARD,
        ceiling: int = 10,
        skip_challenge: bool = False,
        initial_phase: Phase = Phase.PLAN,
        transcript_offset: int = 0,
        replace: bool = False,
    ) -> Session:
        """Create and persist a new Session.

        The task description is written to ``task.md`` once, here, and never
        rewritten while the session is active.

        Args:
            session_id: Host-supplied session identifier.
            task: Free-text task description.
            tier: Declared complexity tier.
            ceiling: Iteration ceiling for the session.
            skip_challenge: Whether the CHALLENGE phase is skipped.
            initial_phase: Phase to start in.
            transcript_offset: Current transcript size in bytes.
            replace: Archive and replace an existing active session.

        Returns:
            The persisted Session.

        Raises:
            SessionExistsError: If an active session exists and ``replace`` is False.
        """
        existing = self.store.read()
        if existing is not None and not existing.complete:
            if not replace:
                raise SessionExistsError(
                    f"Session {existing.session_id} is still active "
                    f"(phase {existing.phase.value}). Use --replace to start over.",
                    session_id=existing.session_id,
                )
            logger.warning(f"Replacing active session {existing.session_id}")
            self.archive(existing)

        now = self._clock()
        self.paths.state_dir.mkdir(parents=True, exist_ok=True)
        self.paths.task.write_text(task.rstrip() + "\n", encoding="utf-8")
        if self.paths.issues.exists():
            self.paths.issues.unlink()

        session = Session(
            session_id=session_id,
            phase=initial_phase,
            started_at=now,
            last_activity=now,
            ceiling=ceiling,
            tier=tier,
            task=task,
            skip_challenge=skip_challenge,
            phase_started_at=now,
            transcript_offset=transcript_offset,
        )
        session.record("started", now, tier=tier.value, ceiling=ceiling)
        self.store.write(session)
        logger.info(
            f"Created session {session_id} (tier={tier.value}, ceiling={ceiling}, "
            f"phase={initial_phase.value})"
        )
        return session

    def read_task(self) -> Optional[str]:
        if not self.paths.task.exists():
            return None
        return self.paths.task.read_text(encoding="utf-8")

    def read_plan(self) -> Optional[str]:
        """Return the worker-written plan, used for progress reporting only."""
        if not self.paths.plan.exists():
            return None
        return self.paths.plan.read_text(encoding="utf-8")

    def read_issues(self) -> List[Any]:
        """Return every entry of the outstanding-issues list.

        Accepts either a bare JSON list or ``{"issues": [...]}``. A corrupt
        file is reported as a single outstanding issue so that it is handled
        by FIX instead of being silently ignored.
        """
        try:
            data = read_json_file(self.paths.issues, default=[])
        except StateError as e:
            logger.warning(f"Unreadable issues list: {e.message}")
            return [f"issues.json is unreadable: {e.message}"]

        if isinstance(data, dict):
            data = data.get("issues", [])
        if not isinstance(data, list):
            logger.warning(f"Ignoring issues list of type {type(data).__name__}")
            return []
        return data

    def open_issues(self) -> List[Any]:
        """Return the issues not marked resolved."""
        open_items = []
        for issue in self.read_issues():
            if isinstance(issue, dict):
                status = str(issue.get("status", "open")).lower()
                if status in RESOLVED_ISSUE_STATUSES:
                    continue
            open_items.append(issue)
        return open_items

    def clear_issues(self) -> None:
        """Empty the outstanding-issues list after a FIX phase completes."""
        if self.paths.issues.exists():
            write_json_atomic(self.paths.issues, [])
            logger.info("Cleared outstanding issues")

    def archive(self, session: Session) -> Path:
        """Move the session's files into ``archive/<session>-<stamp>/``.

        The Session record is written into the archive and removed from the
        store. ``audit.jsonl`` stays in the state directory so force-complete
        justifications outlive the session.

        Returns:
            The archive directory.
        """
        now = self._clock()
        safe_id = re.sub(r"[^A-Za-z0-9._-]", "_", session.session_id) or "session"
        dest = self.paths.archive_dir / f"{safe_id}-{now.strftime('%Y%m%d%H%M%S')}"
        dest.mkdir(parents=True, exist_ok=True)

        for path in self.paths.session_files():
            if path == self.paths.state or not path.exists():
                continue
            shutil.move(str(path), str(dest / path.name))

        record = session.to_dict()
        record["archived_at"] = format_timestamp(now)
        write_json_atomic(dest / self.paths.state.name, record)
        self.store.clear()

        logger.info(f"Archived session {session.session_id} to {dest}")
        return dest

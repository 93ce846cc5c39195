"""Data models for the phase-loop orchestrator.

This module provides the persisted records the orchestrator works with:
sessions, work items and their claims, conflict and escalation records, and
ledger entries. Every model round-trips through ``to_dict``/``from_dict`` so
that all state can be reconstructed from files alone.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import InvalidPhaseError, StateError


__all__ = [
    "Phase",
    "ComplexityTier",
    "Priority",
    "ItemStatus",
    "Session",
    "WorkItem",
    "Claim",
    "ConflictRecord",
    "EscalationRecord",
    "LedgerEntry",
    "utc_now",
    "parse_timestamp",
    "format_timestamp",
]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``.

    Naive timestamps are assumed to be UTC.

    Args:
        value: ISO-8601 string.

    Returns:
        Timezone-aware datetime.

    Raises:
        ValueError: If the string is not a valid timestamp.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class Phase(Enum):
    """Ordered phases of a session.

    ``CHALLENGE`` is optional; ``REVIEW`` and ``FIX`` may cycle; ``COMPLETE``
    is terminal.
    """

    CHALLENGE = "CHALLENGE"
    PLAN = "PLAN"
    BUILD = "BUILD"
    REVIEW = "REVIEW"
    FIX = "FIX"
    SHIP = "SHIP"
    COMPLETE = "COMPLETE"

    @property
    def index(self) -> int:
        """Position of the phase in declaration order."""
        return list(Phase).index(self)

    @classmethod
    def parse(cls, value: Any) -> "Phase":
        """Convert a persisted value to a Phase.

        Args:
            value: Phase name, case-insensitive.

        Returns:
            The matching Phase.

        Raises:
            InvalidPhaseError: If the value is not a declared phase.
        """
        if isinstance(value, Phase):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise InvalidPhaseError(
            f"Unknown phase {value!r}; expected one of "
            f"{', '.join(p.value for p in cls)}",
            value=str(value),
        )


class ComplexityTier(Enum):
    """Declared task complexity, which selects the iteration ceiling."""

    TRIVIAL = "trivial"
    STANDARD = "standard"
    COMPLEX = "complex"


class Priority(Enum):
    """Work item priority class."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: lower ranks are claimed first."""
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class ItemStatus(Enum):
    """Lifecycle status of a work item in the backlog."""

    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT_BLOCKED = "conflict-blocked"
    PUSH_FAILED = "push-failed"


@dataclass
class Session:
    """One long-running task run.

    Attributes:
        session_id: Unique identifier supplied by the host.
        phase: Current phase.
        iteration: Number of orchestrator invocations that blocked so far.
        ceiling: Iteration ceiling, fixed at creation from the tier.
        tier: Declared complexity tier.
        started_at: Session creation time.
        last_activity: Time of the most recent write.
        task: Free-text task description.
        complete: Whether the worker (or operator) declared completion.
        skip_challenge: Whether the optional CHALLENGE phase was skipped.
        phase_started_at: When the current phase was entered.
        transcript_offset: Transcript size in bytes when the phase was entered.
        force_completed: Whether completion came from the operator sentinel.
        force_complete_reason: Operator-supplied justification.
        publish_script: Path of a generated publish-pipeline script.
        history: Bounded list of transition records.

    Raises:
        StateError: If the completion invariant or counters are violated.
    """

    session_id: str
    phase: Phase
    started_at: datetime
    last_activity: datetime
    iteration: int = 0
    ceiling: int = 10
    tier: ComplexityTier = ComplexityTier.STANDARD
    task: str = ""
    complete: bool = False
    skip_challenge: bool = False
    phase_started_at: Optional[datetime] = None
    transcript_offset: int = 0
    force_completed: bool = False
    force_complete_reason: Optional[str] = None
    publish_script: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    MAX_HISTORY = 50

    def __post_init__(self) -> None:
        """Validate session invariants after initialization."""
        if self.complete and self.phase is not Phase.COMPLETE:
            raise StateError(
                f"Session {self.session_id} is complete but in phase {self.phase.value}"
            )
        if self.iteration < 0:
            raise StateError(f"Iteration cannot be negative, got {self.iteration}")
        if self.ceiling < 1:
            raise StateError(f"Ceiling must be at least 1, got {self.ceiling}")

    @property
    def at_ceiling(self) -> bool:
        """True once the iteration counter has reached the ceiling."""
        return self.iteration >= self.ceiling

    def record(self, event: str, now: datetime, **details: Any) -> None:
        """Append a history entry, keeping the most recent ``MAX_HISTORY``."""
        entry: Dict[str, Any] = {
            "event": event,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "at": format_timestamp(now),
        }
        entry.update(details)
        self.history.append(entry)
        if len(self.history) > self.MAX_HISTORY:
            self.history = self.history[-self.MAX_HISTORY:]

    def to_dict(self) -> Dict[str, Any]:
        """Convert Session to dictionary representation.

        Returns:
            Dictionary suitable for JSON serialization.
        """
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "ceiling": self.ceiling,
            "tier": self.tier.value,
            "started_at": format_timestamp(self.started_at),
            "last_activity": format_timestamp(self.last_activity),
            "task": self.task,
            "complete": self.complete,
            "skip_challenge": self.skip_challenge,
            "phase_started_at": format_timestamp(self.phase_started_at)
            if self.phase_started_at
            else None,
            "transcript_offset": self.transcript_offset,
            "force_completed": self.force_completed,
            "force_complete_reason": self.force_complete_reason,
            "publish_script": self.publish_script,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        """Create Session from dictionary representation.

        A record that declares ``complete`` while sitting in an earlier phase
        is read as a completion claim and normalized to ``COMPLETE``; the
        Verification Gate decides whether the claim holds.

        Args:
            data: Dictionary containing session data.

        Returns:
            Session instance.

        Raises:
            InvalidPhaseError: If the phase value is unknown.
            KeyError: If required fields are missing.
            ValueError: If timestamps or enums are malformed.
        """
        phase = Phase.parse(data["phase"])
        complete = bool(data.get("complete", False))
        if complete:
            phase = Phase.COMPLETE
        started_at = parse_timestamp(data["started_at"])
        phase_started = data.get("phase_started_at")
        return cls(
            session_id=str(data["session_id"]),
            phase=phase,
            iteration=int(data.get("iteration", 0)),
            ceiling=int(data.get("ceiling", 10)),
            tier=ComplexityTier(data.get("tier", ComplexityTier.STANDARD.value)),
            started_at=started_at,
            last_activity=parse_timestamp(data["last_activity"])
            if data.get("last_activity")
            else started_at,
            task=data.get("task", ""),
            complete=complete,
            skip_challenge=bool(data.get("skip_challenge", False)),
            phase_started_at=parse_timestamp(phase_started) if phase_started else None,
            transcript_offset=int(data.get("transcript_offset", 0)),
            force_completed=bool(data.get("force_completed", False)),
            force_complete_reason=data.get("force_complete_reason"),
            publish_script=data.get("publish_script"),
            history=list(data.get("history", [])),
        )


@dataclass(frozen=True)
class Claim:
    """A time-bounded lease on one work item.

    Attributes:
        holder: Worker identity.
        acquired_at: When the lease was taken.
        expires_at: When the lease lapses.
    """

    holder: str
    acquired_at: datetime
    expires_at: datetime

    @classmethod
    def acquire(cls, holder: str, now: datetime, lease: timedelta) -> "Claim":
        """Create a new claim starting at ``now``."""
        return cls(holder=holder, acquired_at=now, expires_at=now + lease)

    def is_expired(self, now: datetime) -> bool:
        """A claim is void strictly after its expiry, never earlier."""
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holder": self.holder,
            "acquired_at": format_timestamp(self.acquired_at),
            "expires_at": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Claim":
        return cls(
            holder=data["holder"],
            acquired_at=parse_timestamp(data["acquired_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
        )


@dataclass
class WorkItem:
    """One atomic, independently claimable unit of work.

    Attributes:
        item_id: Unique identifier within the backlog.
        title: Human title.
        acceptance: Acceptance description.
        priority: Priority class.
        attempts: Failed attempts so far.
        status: Current status.
        last_error: Error from the most recent failed attempt.
        claim: Active claim, if any.
    """

    item_id: str
    title: str
    acceptance: str = ""
    priority: Priority = Priority.MEDIUM
    attempts: int = 0
    status: ItemStatus = ItemStatus.UNCLAIMED
    last_error: Optional[str] = None
    claim: Optional[Claim] = None

    def __post_init__(self) -> None:
        """Validate work item parameters after initialization."""
        if not self.item_id or not str(self.item_id).strip():
            raise ValueError("Work item id cannot be empty")
        self.item_id = str(self.item_id).strip()
        if self.attempts < 0:
            raise ValueError(f"Attempts cannot be negative, got {self.attempts}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert WorkItem to dictionary representation (claim excluded)."""
        return {
            "id": self.item_id,
            "title": self.title,
            "acceptance": self.acceptance,
            "priority": self.priority.value,
            "attempts": self.attempts,
            "status": self.status.value,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], claim: Optional[Dict[str, Any]] = None
    ) -> "WorkItem":
        """Create WorkItem from its backlog entry and optional claim entry."""
        return cls(
            item_id=data["id"],
            title=data.get("title", data["id"]),
            acceptance=data.get("acceptance", ""),
            priority=Priority(str(data.get("priority", "medium")).lower()),
            attempts=int(data.get("attempts", 0)),
            status=ItemStatus(data.get("status", ItemStatus.UNCLAIMED.value)),
            last_error=data.get("last_error"),
            claim=Claim.from_dict(claim) if claim else None,
        )


@dataclass
class ConflictRecord:
    """Quarantine record for work that could not be rebased cleanly.

    Attributes:
        item_id: Work item whose publish hit the conflict.
        worker_id: Worker that owned the claim.
        blocked_at: When the conflict was recorded.
        paths: Conflicting resource paths.
        local_rev: Local revision at the moment of conflict.
        remote_rev: Remote revision the rebase was attempted onto.
        recovery_branch: Branch preserving the unpushed commits.
        unpushed_commits: Commits in ``remote_rev..local_rev``.
    """

    item_id: str
    worker_id: str
    blocked_at: datetime
    paths: List[str]
    local_rev: str
    remote_rev: str
    recovery_branch: str
    unpushed_commits: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "worker_id": self.worker_id,
            "blocked_at": format_timestamp(self.blocked_at),
            "paths": list(self.paths),
            "local_rev": self.local_rev,
            "remote_rev": self.remote_rev,
            "recovery_branch": self.recovery_branch,
            "unpushed_commits": list(self.unpushed_commits),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictRecord":
        return cls(
            item_id=data["item_id"],
            worker_id=data.get("worker_id", ""),
            blocked_at=parse_timestamp(data["blocked_at"]),
            paths=list(data.get("paths", [])),
            local_rev=data["local_rev"],
            remote_rev=data.get("remote_rev", ""),
            recovery_branch=data["recovery_branch"],
            unpushed_commits=list(data.get("unpushed_commits", [])),
        )


@dataclass
class EscalationRecord:
    """Halt record requiring an operator to clear a repeatedly failing item."""

    item_id: str
    failures: int
    errors: List[str]
    created_at: datetime
    message: str = "Work item has failed repeatedly. Operator intervention required."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "failures": self.failures,
            "errors": list(self.errors),
            "created_at": format_timestamp(self.created_at),
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscalationRecord":
        return cls(
            item_id=data["item_id"],
            failures=int(data.get("failures", 0)),
            errors=list(data.get("errors", [])),
            created_at=parse_timestamp(data["created_at"]),
            message=data.get("message", cls.message),
        )


@dataclass
class LedgerEntry:
    """Final outcome of a work item that left the backlog."""

    item_id: str
    title: str
    outcome: str
    worker_id: str
    recorded_at: datetime
    attempts: int = 0
    commit_ref: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.item_id,
            "title": self.title,
            "outcome": self.outcome,
            "worker_id": self.worker_id,
            "recorded_at": format_timestamp(self.recorded_at),
            "attempts": self.attempts,
            "commit_ref": self.commit_ref,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            item_id=data["id"],
            title=data.get("title", data["id"]),
            outcome=data["outcome"],
            worker_id=data.get("worker_id", ""),
            recorded_at=parse_timestamp(data["recorded_at"]),
            attempts=int(data.get("attempts", 0)),
            commit_ref=data.get("commit_ref"),
            errors=list(data.get("errors", [])),
        )

"""Safety valves that halt the loop regardless of phase.

Guards, checked in this order on every invocation:

1. Operator markers on disk (abort, force-complete, handoff). Consumed when seen.
2. Staleness: no session activity for longer than ``stale_hours``.
3. Iteration ceiling: ``iteration >= ceiling``.

Any guard that fires means "allow exit", never "block".
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .config import LoopConfig, LoopPaths
from .exceptions import StateError
from .locking import read_json_file
from .models import EscalationRecord, Session, utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "OperatorAction",
    "OperatorMarker",
    "SafetyValveController",
    "SafetyVerdict",
]


class OperatorAction(Enum):
    ABORT = "abort"
    FORCE_COMPLETE = "force_complete"
    HANDOFF = "handoff"


@dataclass(frozen=True)
class OperatorMarker:
    """An operator instruction picked up from a sentinel file."""

    action: OperatorAction
    reason: Optional[str] = None


@dataclass(frozen=True)
class SafetyVerdict:
    """Outcome of the staleness and ceiling guards.

    Attributes:
        halt: True when the loop must allow exit.
        guard: Name of the guard that fired ("stale" or "ceiling").
        message: Operator-facing explanation.
    """

    halt: bool
    guard: Optional[str] = None
    message: str = ""

    @classmethod
    def proceed(cls) -> "SafetyVerdict":
        return cls(halt=False)


class SafetyValveController:
    """Phase-independent backstops for the loop."""

    def __init__(
        self,
        paths: LoopPaths,
        config: LoopConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.paths = paths
        self.config = config
        self._clock = clock

    def check_operator_markers(self) -> Optional[OperatorMarker]:
        """Consume the first operator marker present, in priority order.

        Returns:
            The marker found, or None.
        """
        if self._consume(self.paths.force_exit) is not None:
            logger.warning("Operator abort marker found; halting loop")
            return OperatorMarker(OperatorAction.ABORT)

        reason = self._consume(self.paths.force_complete)
        if reason is not None:
            reason = reason or "No reason given"
            logger.warning(f"Operator force-complete marker found: {reason}")
            return OperatorMarker(OperatorAction.FORCE_COMPLETE, reason=reason)

        note = self._consume(self.paths.handoff)
        if note is not None:
            logger.info("External handoff marker found; releasing worker")
            return OperatorMarker(OperatorAction.HANDOFF, reason=note or None)

        return None

    @staticmethod
    def _consume(marker: Path) -> Optional[str]:
        """Read and remove a marker file; None if it is absent.

        A concurrent invocation may consume the same marker first.
        """
        try:
            text = marker.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        marker.unlink(missing_ok=True)
        return text

    def is_stale(self, session: Session, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return now - session.last_activity > self.config.stale_after

    def check(self, session: Session, now: Optional[datetime] = None) -> SafetyVerdict:
        """Evaluate staleness, then the iteration ceiling.

        Neither guard modifies the Session; a stale session is left exactly
        as found for inspection.
        """
        now = now or self._clock()

        if self.is_stale(session, now):
            idle_hours = (now - session.last_activity).total_seconds() / 3600
            message = (
                f"## SESSION STALE\n\n"
                f"Session {session.session_id} has had no activity for "
                f"{idle_hours:.1f}h (limit {self.config.stale_hours:g}h). "
                f"Allowing exit; state is left untouched in "
                f"{self.paths.state_dir} for inspection.\n\n"
                f"Resume with `deep-loop start --replace` or remove the session."
            )
            logger.warning(
                f"Session {session.session_id} stale after {idle_hours:.1f}h; halting"
            )
            return SafetyVerdict(halt=True, guard="stale", message=message)

        if session.at_ceiling:
            logger.warning(
                f"Session {session.session_id} reached iteration ceiling "
                f"{session.iteration}/{session.ceiling}; halting"
            )
            return SafetyVerdict(
                halt=True, guard="ceiling", message=self.ceiling_message(session)
            )

        return SafetyVerdict.proceed()

    def ceiling_message(self, session: Session) -> str:
        state_dir = self.paths.state_dir
        return (
            f"## ITERATION LIMIT REACHED ({session.iteration}/{session.ceiling})\n\n"
            f"Phase {session.phase.value} did not complete within the iteration "
            f"ceiling. The loop has stopped.\n\n"
            f"### Options:\n\n"
            f"1. **Raise the ceiling** (more iterations needed):\n"
            f"   `deep-loop raise-ceiling {session.ceiling * 2}`\n\n"
            f"2. **Force complete** (accept the work as done):\n"
            f"   `echo \"Reached iteration limit, work is acceptable\" > "
            f"{state_dir / 'FORCE_COMPLETE'}`\n\n"
            f"3. **Abandon** the session:\n"
            f"   `touch {state_dir / 'FORCE_EXIT'}`\n"
        )

    def pending_escalations(self) -> List[EscalationRecord]:
        """Escalation Records awaiting an operator, oldest first."""
        try:
            data = read_json_file(self.paths.escalations, default={})
        except StateError as e:
            logger.error(f"Cannot read escalations: {e.message}")
            return []
        if not isinstance(data, dict):
            return []
        records = []
        for item_id, record in data.items():
            try:
                records.append(EscalationRecord.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed escalation for {item_id}: {e}")
        return sorted(records, key=lambda r: r.created_at)

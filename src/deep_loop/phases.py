"""Phase state machine for a session.

Phases run ``CHALLENGE -> PLAN -> BUILD -> REVIEW <-> FIX -> SHIP -> COMPLETE``.
Each phase names the sentinel that must appear in the transcript to leave it,
the instruction re-emitted while the worker is still inside it, and the phase
that follows on success. The machine only moves forward when a sentinel is
confirmed; the only backward moves are the forced ones (REVIEW -> FIX and
COMPLETE -> REVIEW) triggered by failed evidence.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .exceptions import TransitionError
from .models import Phase, Session, WorkItem, utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "PhaseDefinition",
    "PhaseStateMachine",
    "FORCED_TRANSITIONS",
]

BACKLOG_PREVIEW = 5

FORCED_TRANSITIONS = {
    (Phase.REVIEW, Phase.FIX),
    (Phase.COMPLETE, Phase.REVIEW),
}


@dataclass(frozen=True)
class PhaseDefinition:
    """Static description of one phase.

    Attributes:
        phase: The phase described.
        sentinel: Marker that must appear to leave the phase (None for COMPLETE).
        next_phase: Phase entered on success (None for COMPLETE; REVIEW branches).
        instruction: Body of the instruction re-emitted while in the phase.
    """

    phase: Phase
    sentinel: Optional[str]
    next_phase: Optional[Phase]
    instruction: str


PHASE_DEFINITIONS: Dict[Phase, PhaseDefinition] = {
    Phase.CHALLENGE: PhaseDefinition(
        Phase.CHALLENGE,
        "CHALLENGE_COMPLETE",
        Phase.PLAN,
        "### CHALLENGE Phase\n\n"
        "Question the task before planning it:\n"
        "1. Restate the problem in your own words\n"
        "2. List assumptions and open questions\n"
        "3. Propose the simplest approach that could work\n",
    ),
    Phase.PLAN: PhaseDefinition(
        Phase.PLAN,
        "PLAN_COMPLETE",
        Phase.BUILD,
        "### PLAN Phase\n\n"
        "Create `plan.md` in the state directory with:\n"
        "1. Problem statement\n"
        "2. Acceptance criteria (testable)\n"
        "3. Task breakdown (atomic)\n"
        "4. Risks\n",
    ),
    Phase.BUILD: PhaseDefinition(
        Phase.BUILD,
        "BUILD_COMPLETE",
        Phase.REVIEW,
        "### BUILD Phase\n\n"
        "Execute the tasks from plan.md:\n"
        "1. Work through tasks in order\n"
        "2. Run validation after each (tests, types, lint, build)\n"
        "3. Commit atomically per task\n"
        "4. Log failures to issues.json\n",
    ),
    Phase.REVIEW: PhaseDefinition(
        Phase.REVIEW,
        "REVIEW_COMPLETE",
        None,
        "### REVIEW Phase\n\n"
        "Review the result against the acceptance criteria:\n"
        "1. Run tests, type checks, lint and build; record them in test-results.json\n"
        "2. Record every outstanding problem in issues.json\n"
        "3. Leave issues.json empty only if the work is clean\n",
    ),
    Phase.FIX: PhaseDefinition(
        Phase.FIX,
        "FIX_COMPLETE",
        Phase.REVIEW,
        "### FIX Phase\n\n"
        "Address every issue in issues.json:\n"
        "1. Fix each issue\n"
        "2. Commit atomically\n"
        "3. Re-run validation\n",
    ),
    Phase.SHIP: PhaseDefinition(
        Phase.SHIP,
        "COMPLETE",
        Phase.COMPLETE,
        "### SHIP Phase\n\n"
        "Publish the result:\n"
        "1. Push, open a PR and wait for CI (record in git-results.json)\n"
        "2. Confirm test-results.json shows every category passing\n",
    ),
    Phase.COMPLETE: PhaseDefinition(Phase.COMPLETE, None, None, ""),
}


class PhaseStateMachine:
    """Legal transitions and instruction payloads for the phase loop."""

    def __init__(self, skip_challenge: bool = False) -> None:
        self.skip_challenge = skip_challenge
        self.definitions = PHASE_DEFINITIONS

    def initial_phase(self, skip_challenge: Optional[bool] = None) -> Phase:
        skip = self.skip_challenge if skip_challenge is None else skip_challenge
        return Phase.PLAN if skip else Phase.CHALLENGE

    def definition(self, phase: Phase) -> PhaseDefinition:
        return self.definitions[phase]

    def sentinel_for(self, phase: Phase) -> Optional[str]:
        return self.definitions[phase].sentinel

    @staticmethod
    def progress_rank(phase: Phase) -> int:
        """Rank used to check forward progress; REVIEW and FIX share a stage."""
        if phase is Phase.FIX:
            return Phase.REVIEW.index
        return phase.index

    def next_phase(self, phase: Phase, open_issues: bool = False) -> Phase:
        """Phase entered when ``phase`` completes.

        Args:
            phase: Current phase.
            open_issues: Whether issues.json lists outstanding issues (REVIEW only).

        Raises:
            TransitionError: If ``phase`` is terminal.
        """
        if phase is Phase.REVIEW:
            return Phase.FIX if open_issues else Phase.SHIP
        target = self.definitions[phase].next_phase
        if target is None:
            raise TransitionError(
                f"{phase.value} is terminal and has no successor",
                from_phase=phase.value,
            )
        return target

    def advance(
        self,
        session: Session,
        open_issues: bool = False,
        now: Optional[datetime] = None,
        offset: int = 0,
    ) -> Phase:
        """Move the session to the next phase after a confirmed sentinel.

        Args:
            session: Session to mutate (not persisted here).
            open_issues: Outstanding issues, consulted when leaving REVIEW.
            now: Transition time.
            offset: Transcript size at the moment of transition.

        Returns:
            The phase entered.
        """
        now = now or utc_now()
        previous = session.phase
        target = self.next_phase(previous, open_issues)
        self._enter(session, target, now, offset)
        if target is Phase.COMPLETE:
            session.complete = True
        session.record("advanced", now, from_phase=previous.value)
        logger.info(f"Session {session.session_id}: {previous.value} -> {target.value}")
        return target

    def force_back(
        self,
        session: Session,
        target: Phase,
        reason: str,
        now: Optional[datetime] = None,
        offset: Optional[int] = None,
    ) -> Phase:
        """Apply an evidence-driven backward transition.

        Raises:
            TransitionError: If the move is not one of the forced transitions.
        """
        now = now or utc_now()
        previous = session.phase
        if (previous, target) not in FORCED_TRANSITIONS:
            raise TransitionError(
                f"Cannot force {previous.value} back to {target.value}",
                from_phase=previous.value,
                to_phase=target.value,
            )
        session.complete = False
        self._enter(
            session, target, now,
            session.transcript_offset if offset is None else offset,
        )
        session.record("forced_back", now, from_phase=previous.value, reason=reason)
        logger.warning(
            f"Session {session.session_id} forced back {previous.value} -> "
            f"{target.value}: {reason}"
        )
        return target

    @staticmethod
    def _enter(session: Session, target: Phase, now: datetime, offset: int) -> None:
        session.phase = target
        session.phase_started_at = now
        session.transcript_offset = offset

    def status_line(self, session: Session) -> str:
        """One-line status: phase, iteration/ceiling and the sentinel to emit."""
        sentinel = self.sentinel_for(session.phase)
        line = (
            f"[deep-loop] phase {session.phase.value} | "
            f"iteration {session.iteration}/{session.ceiling}"
        )
        if sentinel:
            line += f" | emit <promise>{sentinel}</promise> to advance"
        return line

    def instruction(self, session: Session, context: Optional[Dict[str, Any]] = None) -> str:
        """Build the instruction re-injected while the session stays in its phase.

        Recognised context keys: ``issues``, ``backlog`` (pending WorkItems),
        ``retry`` (WorkItem with ``last_error``), ``escalations``,
        ``verification`` (text from a failed Verification Gate).
        """
        context = context or {}
        definition = self.definitions[session.phase]
        parts: List[str] = [
            f"## Deep Loop - Iteration {session.iteration}/{session.ceiling}\n"
            f"**Phase:** {session.phase.value}\n"
            f"**Task:** {session.task.strip() or 'See task.md'}\n"
        ]

        verification = context.get("verification")
        if verification:
            parts.append(verification)

        if definition.instruction:
            parts.append(definition.instruction)

        if session.phase is Phase.BUILD:
            parts.extend(self._build_context(context))

        issues = context.get("issues") or []
        if session.phase in (Phase.FIX, Phase.REVIEW) and issues:
            lines = [f"- {self._describe_issue(issue)}" for issue in issues]
            parts.append("### Outstanding Issues\n\n" + "\n".join(lines) + "\n")

        if definition.sentinel:
            parts.append(
                f"When this phase is done, output `<promise>{definition.sentinel}</promise>` "
                f"on its own line."
            )
        return "\n".join(parts)

    def _build_context(self, context: Dict[str, Any]) -> List[str]:
        parts = []
        backlog: List[WorkItem] = context.get("backlog") or []
        if backlog:
            lines = [
                f"- [{item.priority.value}] {item.item_id}: {item.title}"
                for item in backlog[:BACKLOG_PREVIEW]
            ]
            more = len(backlog) - BACKLOG_PREVIEW
            if more > 0:
                lines.append(f"- ... and {more} more")
            parts.append("### Pending Backlog\n\n" + "\n".join(lines) + "\n")

        retry: Optional[WorkItem] = context.get("retry")
        if retry is not None and retry.last_error:
            parts.append(
                f"### Retry Context\n\n"
                f"Item `{retry.item_id}` failed {retry.attempts} time(s). "
                f"Last error:\n\n    {retry.last_error}\n\n"
                f"Take a different approach this time.\n"
            )

        for record in context.get("escalations") or []:
            errors = "\n".join(f"- {error}" for error in record.errors[-3:])
            parts.append(
                f"### Escalation Pending\n\n"
                f"Item `{record.item_id}` has failed {record.failures} consecutive "
                f"times and will not be retried automatically.\n\n{errors}\n\n"
                f"Clear it with `deep-loop escalations clear {record.item_id}`.\n"
            )
        return parts

    @staticmethod
    def _describe_issue(issue: Any) -> str:
        if isinstance(issue, dict):
            for key in ("description", "title", "message", "summary"):
                if issue.get(key):
                    return str(issue[key])
        return str(issue)

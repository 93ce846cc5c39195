"""The per-invocation decision: allow the worker to stop, or block and re-prompt.

The host calls ``Orchestrator.evaluate`` every time the worker tries to exit.
Each call is short-lived and single-threaded; everything it decides is
persisted before it returns because the next call may come from a different
process.

Decision order:

1. Operator markers (abort, force-complete, handoff): allow.
2. No active session: allow.
3. Session in COMPLETE: Verification Gate. Failure forces REVIEW and blocks.
4. Staleness, then iteration ceiling: allow with an explanation.
5. Current phase's sentinel in the transcript: advance.
6. Otherwise: increment the iteration, persist, block with the instruction.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import LoopConfig, LoopPaths, load_config
from .events import EventLog, EventType
from .exceptions import DeepLoopError, StateError
from .gate import VerificationGate
from .locking import DistributedLockManager
from .models import Phase, Session, format_timestamp, utc_now
from .phases import PhaseStateMachine
from .queue import RetryMode, TaskQueue
from .safety import OperatorAction, OperatorMarker, SafetyValveController
from .signals import CompletionSignalDetector, transcript_size
from .state_store import FileStateStore, SessionFiles, StateStore

logger = logging.getLogger(__name__)

__all__ = [
    "HookAction",
    "HookDecision",
    "HookInput",
    "Orchestrator",
]


class HookAction(Enum):
    ALLOW = "allow"
    BLOCK = "block"


@dataclass(frozen=True)
class HookInput:
    """What the host passes on each exit attempt."""

    session_id: Optional[str]
    transcript_path: Optional[str]

    @classmethod
    def from_json(cls, text: str) -> "HookInput":
        """Parse the host payload; unknown fields are ignored.

        Raises:
            ValueError: If the payload is not a JSON object.
        """
        data = json.loads(text) if text.strip() else {}
        if not isinstance(data, dict):
            raise ValueError("Hook input must be a JSON object")
        return cls(
            session_id=data.get("session_id"),
            transcript_path=data.get("transcript_path"),
        )


@dataclass(frozen=True)
class HookDecision:
    """Response to the host.

    Attributes:
        action: ALLOW lets the worker exit, BLOCK re-injects ``instruction``.
        instruction: Instruction payload (block) or explanation (allow).
        status_line: One-line progress summary.
        reason: Machine-readable reason for the decision.
    """

    action: HookAction
    instruction: str = ""
    status_line: str = ""
    reason: str = ""

    @property
    def exit_code(self) -> int:
        return 2 if self.action is HookAction.BLOCK else 0

    @property
    def blocked(self) -> bool:
        return self.action is HookAction.BLOCK

    @classmethod
    def allow(cls, reason: str, message: str = "", status_line: str = "") -> "HookDecision":
        return cls(HookAction.ALLOW, message, status_line, reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "instruction": self.instruction,
            "status_line": self.status_line,
            "reason": self.reason,
        }


class Orchestrator:
    """Wires the State Store, detector, safety valves, phase machine and gate."""

    def __init__(
        self,
        store: StateStore,
        files: SessionFiles,
        detector: CompletionSignalDetector,
        safety: SafetyValveController,
        machine: PhaseStateMachine,
        gate: VerificationGate,
        queue: Optional[TaskQueue] = None,
        events: Optional[EventLog] = None,
        config: Optional[LoopConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.files = files
        self.detector = detector
        self.safety = safety
        self.machine = machine
        self.gate = gate
        self.queue = queue
        self.events = events
        self.config = config or LoopConfig()
        self._clock = clock

    @classmethod
    def from_state_dir(
        cls,
        state_dir: Path,
        config: Optional[LoopConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "Orchestrator":
        """Build a file-backed orchestrator for a state directory.

        Raises:
            ConfigError: If ``config.yaml`` is invalid.
        """
        paths = LoopPaths(Path(state_dir))
        config = config or load_config(paths.config)
        store = FileStateStore(paths.state, clock=clock)
        events = EventLog(paths.logs_dir, clock=clock)
        machine = PhaseStateMachine()
        lock_manager = DistributedLockManager(paths.state_dir, default_timeout=config.lock_timeout)
        return cls(
            store=store,
            files=SessionFiles(paths, store, clock=clock),
            detector=CompletionSignalDetector(config.tail_bytes, config.max_entries),
            safety=SafetyValveController(paths, config, clock=clock),
            machine=machine,
            gate=VerificationGate(paths, machine, clock=clock),
            queue=TaskQueue(lock_manager, paths, config, clock=clock, events=events),
            events=events,
            config=config,
            clock=clock,
        )

    def _emit(self, event_type: EventType, session: Optional[Session] = None,
              payload: Optional[Dict[str, Any]] = None) -> None:
        if self.events is None:
            return
        context: Dict[str, Any] = {}
        if session is not None:
            context = {
                "session_id": session.session_id,
                "phase": session.phase.value,
                "iteration": session.iteration,
            }
        self.events.emit(event_type, payload, **context)

    def evaluate(self, hook: HookInput) -> HookDecision:
        """Decide whether the worker may stop.

        Raises:
            StateError: If the session record is corrupt or unwritable.
            LockTimeoutError: If shared state stays locked.
        """
        now = self._clock()

        marker = self.safety.check_operator_markers()
        if marker is not None:
            return self._operator(marker, now)

        session = self.store.read()
        if session is None:
            logger.debug("No active session; allowing exit")
            return HookDecision.allow("no_session")

        if hook.session_id and hook.session_id != session.session_id:
            logger.info(
                f"Hook session {hook.session_id} differs from stored session "
                f"{session.session_id}; continuing stored session"
            )

        self._emit(EventType.INVOCATION, session)

        if session.phase is Phase.COMPLETE:
            return self._verify_completion(session, now)

        verdict = self.safety.check(session, now)
        if verdict.halt:
            self._emit(EventType.HALTED, session, {"guard": verdict.guard})
            return HookDecision.allow(
                verdict.guard or "halted", verdict.message, self.machine.status_line(session)
            )

        sentinel = self.machine.sentinel_for(session.phase)
        if sentinel and self.detector.has_signal(
            hook.transcript_path, sentinel, since_offset=session.transcript_offset
        ):
            previous = session.phase
            open_issues = self.files.open_issues() if previous is Phase.REVIEW else []
            self.machine.advance(
                session, bool(open_issues), now, transcript_size(hook.transcript_path)
            )
            if previous is Phase.FIX:
                self.files.clear_issues()
            self._emit(EventType.PHASE_ADVANCED, session, {"from_phase": previous.value})

            if session.phase is Phase.COMPLETE:
                self.store.write(session)
                return self._verify_completion(session, now)

        return self._block(session)

    def _verify_completion(self, session: Session, now: datetime) -> HookDecision:
        result = self.gate.enforce(session, self.store)
        if result.passed:
            payload = {"skipped_publish_check": result.skip_reason} if result.skipped else None
            self._finish(session, "verified", payload)
            return HookDecision.allow(
                "complete",
                f"## Deep Loop - Complete\n\nSession {session.session_id} verified complete.",
            )

        self._emit(EventType.FORCED_BACK, session, {
            "missing": result.missing,
            "failed": result.failed,
        })
        verdict = self.safety.check(session, now)
        if verdict.halt:
            self._emit(EventType.HALTED, session, {"guard": verdict.guard})
            return HookDecision.allow(
                verdict.guard or "halted",
                result.summary() + "\n" + verdict.message,
                self.machine.status_line(session),
            )
        return self._block(session, {"verification": result.summary()})

    def _block(self, session: Session, extra: Optional[Dict[str, Any]] = None) -> HookDecision:
        session.iteration += 1
        self.store.write(session)

        context = self._context(session)
        context.update(extra or {})
        instruction = self.machine.instruction(session, context)
        status_line = self.machine.status_line(session)
        self._emit(EventType.BLOCKED, session, {
            "sentinel": self.machine.sentinel_for(session.phase),
        })
        return HookDecision(HookAction.BLOCK, instruction, status_line, "continue")

    def _context(self, session: Session) -> Dict[str, Any]:
        context: Dict[str, Any] = {"escalations": self.safety.pending_escalations()}
        if session.phase in (Phase.REVIEW, Phase.FIX):
            context["issues"] = self.files.open_issues()

        if session.phase is Phase.BUILD and self.queue is not None:
            try:
                pending = self.queue.pending_items()
                context["backlog"] = pending
                for item in pending:
                    if item.last_error and self.queue.retry_mode(item) is RetryMode.FRESH_WITH_CONTEXT:
                        context["retry"] = item
                        break
            except DeepLoopError as e:
                logger.warning(f"Backlog unavailable for instruction context: {e.message}")
        return context

    def _operator(self, marker: OperatorMarker, now: datetime) -> HookDecision:
        session = self.store.read()

        if marker.action is OperatorAction.ABORT:
            self._emit(EventType.ABORTED, session)
            if session is not None:
                session.record("aborted", now)
                self.store.write(session)
                self.files.archive(session)
            return HookDecision.allow("aborted", "## Deep Loop - Force exit")

        if marker.action is OperatorAction.FORCE_COMPLETE:
            self._audit(session, marker.reason or "", now)
            if session is not None:
                previous = session.phase
                session.phase = Phase.COMPLETE
                session.complete = True
                session.force_completed = True
                session.force_complete_reason = marker.reason
                session.record("force_completed", now, from_phase=previous.value,
                               reason=marker.reason)
                self.store.write(session)
            self._emit(EventType.FORCE_COMPLETED, session, {"reason": marker.reason})
            if session is not None:
                self._finish(session, "forced")
            return HookDecision.allow(
                "force_complete", f"## Force complete: {marker.reason}"
            )

        self._emit(EventType.HANDOFF, session, {"note": marker.reason} if marker.reason else None)
        if session is not None:
            session.record("handoff", now)
            self.store.write(session)
        return HookDecision.allow("handoff", "## Deep Loop - External handoff")

    def _finish(self, session: Session, how: str,
                payload: Optional[Dict[str, Any]] = None) -> None:
        logger.info(f"Session {session.session_id} complete ({how})")
        if not self.config.cleanup_on_complete:
            return
        archive = self.files.archive(session)
        details = {"archive": str(archive), "completion": how}
        details.update(payload or {})
        self._emit(EventType.SESSION_ARCHIVED, session, details)

    def _audit(self, session: Optional[Session], reason: str, now: datetime) -> None:
        """Append the operator's justification to ``audit.jsonl``."""
        entry = {
            "event": "force_complete",
            "at": format_timestamp(now),
            "session_id": session.session_id if session else None,
            "phase": session.phase.value if session else None,
            "iteration": session.iteration if session else None,
            "reason": reason,
        }
        audit_path = self.files.paths.audit
        try:
            audit_path.parent.mkdir(parents=True, exist_ok=True)
            with open(audit_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            raise StateError(
                f"Cannot record force-complete audit entry: {e}",
                path=str(audit_path),
                original_error=e,
            ) from e

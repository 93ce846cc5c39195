"""Structured event log for loop decisions.

Every block, halt, transition and queue outcome is appended as one JSON
object per line to ``logs/events.jsonl`` and mirrored as a human-readable
log line, so a session can be audited from files alone.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from .models import format_timestamp, utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "EventLog",
    "EventType",
    "LoopEvent",
]


class EventType(Enum):
    """Types of loop events."""
    INVOCATION = "invocation"
    PHASE_ADVANCED = "phase_advanced"
    FORCED_BACK = "forced_back"
    HALTED = "halted"
    BLOCKED = "blocked"
    FORCE_COMPLETED = "force_completed"
    ABORTED = "aborted"
    HANDOFF = "handoff"
    ITEM_CLAIMED = "item_claimed"
    ITEM_RELEASED = "item_released"
    ITEM_SKIPPED = "item_skipped"
    CLAIM_STOLEN = "claim_stolen"
    CONFLICT_RECORDED = "conflict_recorded"
    CONFLICT_RESOLVED = "conflict_resolved"
    ESCALATED = "escalated"
    SESSION_ARCHIVED = "session_archived"


WARNING_EVENTS = {
    EventType.HALTED,
    EventType.FORCED_BACK,
    EventType.ITEM_SKIPPED,
    EventType.CONFLICT_RECORDED,
    EventType.ESCALATED,
    EventType.ABORTED,
}


@dataclass
class LoopEvent:
    """Structured loop event for JSON logging."""
    event_type: EventType
    timestamp: str  # ISO format
    payload: Dict[str, Any] = field(default_factory=dict)

    # Optional context
    session_id: Optional[str] = None
    phase: Optional[str] = None
    iteration: Optional[int] = None
    item_id: Optional[str] = None
    worker_id: Optional[str] = None

    def to_json(self) -> str:
        """Convert to JSON string for logging."""
        data: Dict[str, Any] = {
            "event": self.event_type.value,
            "timestamp": self.timestamp,
            **self.payload
        }
        for key in ("session_id", "phase", "iteration", "item_id", "worker_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return json.dumps(data, default=str)

    def format_text(self) -> str:
        """Format event as human-readable text."""
        base = f"[{self.event_type.value}]"
        if self.session_id:
            base += f" session={self.session_id}"
        if self.phase:
            base += f" phase={self.phase}"
        if self.iteration is not None:
            base += f" iteration={self.iteration}"
        if self.item_id:
            base += f" item={self.item_id}"
        if self.worker_id:
            base += f" worker={self.worker_id}"

        payload_items = [f"{key}={value}" for key, value in self.payload.items()]
        if payload_items:
            base += f" {' '.join(payload_items)}"
        return base


class EventLog:
    """
    JSON-lines event log with a human-readable mirror.

    Write failures are logged and never propagate: losing an audit line must
    not abort an orchestrator invocation.
    """

    def __init__(self, log_dir: Path, clock: Callable[[], datetime] = utc_now):
        """
        Initialize event log.

        Args:
            log_dir: Directory for log files
            clock: Time source for event timestamps
        """
        self.log_dir = Path(log_dir)
        self.events_file = self.log_dir / "events.jsonl"
        self._clock = clock

    def emit(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None,
             **context: Any) -> LoopEvent:
        """Build, record and return an event.

        Args:
            event_type: Kind of event
            payload: Extra fields written into the JSON line
            **context: session_id, phase, iteration, item_id, worker_id
        """
        event = LoopEvent(
            event_type=event_type,
            timestamp=format_timestamp(self._clock()),
            payload=payload or {},
            **context
        )
        self.log_event(event)
        return event

    def log_event(self, event: LoopEvent) -> None:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.events_file, 'a', encoding='utf-8') as f:
                f.write(event.to_json() + '\n')
        except OSError as e:
            logger.error(f"Failed to write event log: {e}")

        message = event.format_text()
        if event.event_type in WARNING_EVENTS:
            logger.warning(message)
        else:
            logger.info(message)

    def read_events(self) -> Iterator[Dict[str, Any]]:
        """Yield recorded events in order, skipping malformed lines."""
        if not self.events_file.exists():
            return
        with open(self.events_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except ValueError:
                    logger.debug("Skipping malformed event line")

"""Shared backlog with lease-based claims for cooperating workers.

Several orchestrator instances share one backlog. Every mutation runs under
the single ``queue`` lock of the ``DistributedLockManager``, so a claim is a
true mutual-exclusion operation: two workers can never both win the same
item. The backlog, ledger, failure history and escalation table are all
written while that lock is held.

Files (in the state directory):
    backlog.json      {"items": [...], "claims": {item_id: claim}}
    ledger.json       {"entries": [...]} completed / skipped items
    failures.json     {item_id: {"count": n, "errors": [...]}}
    escalations.json  {item_id: escalation record}
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import LoopConfig, LoopPaths
from .events import EventLog, EventType
from .exceptions import (
    ClaimOwnershipError,
    DuplicateItemError,
    ItemNotFoundError,
    QueueError,
)
from .locking import DistributedLockManager, read_json_file, write_json_atomic
from .models import (
    Claim,
    EscalationRecord,
    ItemStatus,
    LedgerEntry,
    WorkItem,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

__all__ = [
    "QUEUE_LOCK",
    "ReleaseOutcome",
    "RetryMode",
    "TaskQueue",
]

QUEUE_LOCK = "queue"

SELECTABLE_STATUSES = {
    ItemStatus.UNCLAIMED,
    ItemStatus.FAILED,
    ItemStatus.PUSH_FAILED,
}


class ReleaseOutcome(Enum):
    """How a worker finished with a claimed item."""
    SUCCESS = "success"
    FAILURE = "failure"
    CONFLICT = "conflict"
    PUSH_FAILED = "push_failed"


class RetryMode(Enum):
    """How the next attempt at a failed item should run."""
    IN_PLACE = "in_place"
    FRESH_WITH_CONTEXT = "fresh_with_context"


@dataclass
class _Event:
    event_type: EventType
    item_id: str
    worker_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class TaskQueue:
    """
    Claim coordinator over the shared backlog.

    Features:
    - Atomic claiming in priority order (high, medium, low; then declaration order)
    - Leases that expire and can be stolen after a worker crash
    - Bounded attempts, after which an item is skipped into the ledger
    - Escalation Records that stop automatic retries of a failing item
    """

    def __init__(
        self,
        lock_manager: DistributedLockManager,
        paths: LoopPaths,
        config: Optional[LoopConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        events: Optional[EventLog] = None,
    ):
        """
        Initialize queue with lock manager and state layout.

        Args:
            lock_manager: DistributedLockManager instance
            paths: State directory layout
            config: Lease, attempt and escalation limits
            clock: Time source (injectable for tests)
            events: Optional event log for queue outcomes
        """
        self.lock_manager = lock_manager
        self.paths = paths
        self.config = config or LoopConfig()
        self._clock = clock
        self.events = events

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    def _mutate(self, operation: Callable[[Dict], None]) -> Dict:
        def _apply(data: Dict) -> None:
            data.setdefault("items", [])
            data.setdefault("claims", {})
            operation(data)

        return self.lock_manager.atomic_file_operation(
            self.paths.backlog, _apply, lock_name=QUEUE_LOCK
        )

    def _emit(self, pending: List[_Event]) -> None:
        if self.events is None:
            return
        for event in pending:
            self.events.emit(
                event.event_type,
                event.payload,
                item_id=event.item_id,
                worker_id=event.worker_id,
            )

    @staticmethod
    def _find(data: Dict, item_id: str) -> Tuple[int, Dict]:
        for index, entry in enumerate(data["items"]):
            if entry.get("id") == item_id:
                return index, entry
        raise ItemNotFoundError(f"Work item {item_id} not found in backlog", item_id=item_id)

    def _read_table(self, path) -> Dict:
        data = read_json_file(path, default={})
        return data if isinstance(data, dict) else {}

    def _append_ledger(self, entry: LedgerEntry) -> None:
        ledger = self._read_table(self.paths.ledger)
        ledger.setdefault("entries", []).append(entry.to_dict())
        write_json_atomic(self.paths.ledger, ledger)

    # ------------------------------------------------------------------
    # Backlog management
    # ------------------------------------------------------------------

    def add_items(self, items: List[WorkItem]) -> List[WorkItem]:
        """
        Append work items to the backlog in declaration order.

        Raises:
            DuplicateItemError: If an id is already in the backlog or ledger,
                or repeated within ``items``.
        """
        def _add(data: Dict) -> None:
            known = {entry["id"] for entry in data["items"]}
            ledger = self._read_table(self.paths.ledger)
            known.update(entry.get("id") for entry in ledger.get("entries", []))

            for item in items:
                if item.item_id in known:
                    raise DuplicateItemError(
                        f"Work item {item.item_id} already exists", item_id=item.item_id
                    )
                known.add(item.item_id)
                data["items"].append(item.to_dict())

        self._mutate(_add)
        logger.info(f"Added {len(items)} item(s) to backlog")
        return items

    def claim(self, worker_id: str, now: Optional[datetime] = None) -> Optional[WorkItem]:
        """
        Atomically claim the highest-priority selectable item.

        Selectable items are unclaimed, failed-but-retryable, push-failed, or
        held by a claim whose lease has expired. Escalated and conflict-blocked
        items are never selected.

        Args:
            worker_id: Identity of the claiming worker
            now: Claim time (defaults to the queue clock)

        Returns:
            The claimed WorkItem (with its Claim), or None if nothing is selectable
        """
        now = now or self._clock()
        claimed: List[WorkItem] = []
        pending: List[_Event] = []

        def _claim(data: Dict) -> None:
            escalated = set(self._read_table(self.paths.escalations))
            claims = data["claims"]

            candidates = []
            for index, entry in enumerate(data["items"]):
                item_id = entry["id"]
                if item_id in escalated:
                    continue
                status = ItemStatus(entry.get("status", ItemStatus.UNCLAIMED.value))
                current = claims.get(item_id)
                if status is ItemStatus.CLAIMED and current:
                    if not Claim.from_dict(current).is_expired(now):
                        continue
                elif status not in SELECTABLE_STATUSES and status is not ItemStatus.CLAIMED:
                    continue
                item = WorkItem.from_dict(entry)
                candidates.append((item.priority.rank, index, item_id, current))

            if not candidates:
                return

            _, index, item_id, previous = min(candidates)
            if previous:
                pending.append(_Event(
                    EventType.CLAIM_STOLEN, item_id, worker_id,
                    {"previous_holder": previous.get("holder")},
                ))

            claim = Claim.acquire(worker_id, now, self.config.lease)
            claims[item_id] = claim.to_dict()
            entry = data["items"][index]
            entry["status"] = ItemStatus.CLAIMED.value
            claimed.append(WorkItem.from_dict(entry, claims[item_id]))
            pending.append(_Event(
                EventType.ITEM_CLAIMED, item_id, worker_id,
                {"expires_at": format_timestamp(claim.expires_at)},
            ))

        self._mutate(_claim)
        self._emit(pending)

        if not claimed:
            logger.debug(f"Worker {worker_id} found no selectable item")
            return None
        return claimed[0]

    def release(
        self,
        item_id: str,
        worker_id: str,
        outcome: ReleaseOutcome,
        commit_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> WorkItem:
        """
        Release a claimed item with an outcome.

        - SUCCESS: item leaves the backlog and is appended to the ledger.
        - FAILURE / PUSH_FAILED: attempts += 1, claim dropped; at
          ``max_attempts`` the item is moved to the ledger as skipped.
        - CONFLICT: claim dropped, item conflict-blocked, attempts unchanged.

        Args:
            item_id: Item to release
            worker_id: Worker holding the claim
            outcome: How the work ended
            commit_ref: Evidence for a successful publish
            error: Error text for failures and conflicts

        Returns:
            The item as it stands after release

        Raises:
            ItemNotFoundError: If the item is not in the backlog
            ClaimOwnershipError: If ``worker_id`` does not hold the claim
        """
        now = self._clock()
        released: List[WorkItem] = []
        pending: List[_Event] = []

        def _release(data: Dict) -> None:
            index, entry = self._find(data, item_id)
            current = data["claims"].get(item_id)
            holder = current.get("holder") if current else None
            if holder != worker_id:
                raise ClaimOwnershipError(
                    f"Worker {worker_id} does not hold the claim on {item_id}"
                    + (f" (held by {holder})" if holder else " (unclaimed)"),
                    item_id=item_id,
                    holder=holder,
                    requester=worker_id,
                )
            del data["claims"][item_id]
            item = WorkItem.from_dict(entry)

            if outcome is ReleaseOutcome.SUCCESS:
                data["items"].pop(index)
                item.status = ItemStatus.COMPLETED
                self._append_ledger(LedgerEntry(
                    item_id=item.item_id,
                    title=item.title,
                    outcome="completed",
                    worker_id=worker_id,
                    recorded_at=now,
                    attempts=item.attempts,
                    commit_ref=commit_ref,
                ))
                self._reset_failures(item_id)
                pending.append(_Event(
                    EventType.ITEM_RELEASED, item_id, worker_id,
                    {"outcome": outcome.value, "commit_ref": commit_ref},
                ))

            elif outcome is ReleaseOutcome.CONFLICT:
                item.status = ItemStatus.CONFLICT_BLOCKED
                item.last_error = error or item.last_error
                data["items"][index] = item.to_dict()
                pending.append(_Event(
                    EventType.ITEM_RELEASED, item_id, worker_id,
                    {"outcome": outcome.value},
                ))

            else:
                pending.extend(self._record_failure(data, index, item, worker_id, outcome, error, now))

            released.append(item)

        self._mutate(_release)
        self._emit(pending)
        return released[0]

    def _record_failure(self, data: Dict, index: int, item: WorkItem, worker_id: str,
                        outcome: ReleaseOutcome, error: Optional[str],
                        now: datetime) -> List[_Event]:
        item.attempts += 1
        item.last_error = error or f"{outcome.value} without error detail"

        failures = self._read_table(self.paths.failures)
        history = failures.setdefault(item.item_id, {"count": 0, "errors": []})
        history["count"] += 1
        history["errors"].append({"error": item.last_error, "timestamp": format_timestamp(now)})
        history["last_failure"] = format_timestamp(now)
        write_json_atomic(self.paths.failures, failures)

        events = [_Event(
            EventType.ITEM_RELEASED, item.item_id, worker_id,
            {"outcome": outcome.value, "attempts": item.attempts, "error": item.last_error},
        )]

        if item.attempts >= self.config.max_attempts:
            data["items"].pop(index)
            item.status = ItemStatus.FAILED
            self._append_ledger(LedgerEntry(
                item_id=item.item_id,
                title=item.title,
                outcome="skipped",
                worker_id=worker_id,
                recorded_at=now,
                attempts=item.attempts,
                errors=[e["error"] for e in history["errors"]],
            ))
            events.append(_Event(
                EventType.ITEM_SKIPPED, item.item_id, worker_id,
                {"attempts": item.attempts},
            ))
            logger.warning(
                f"Item {item.item_id} skipped after {item.attempts} failed attempts"
            )
            if history["count"] >= self.config.escalation_threshold:
                events.append(self._escalate(item.item_id, worker_id, history, now))
            return events

        if outcome is ReleaseOutcome.PUSH_FAILED:
            item.status = ItemStatus.PUSH_FAILED
        else:
            item.status = ItemStatus.FAILED
        data["items"][index] = item.to_dict()

        if history["count"] >= self.config.escalation_threshold:
            events.append(self._escalate(item.item_id, worker_id, history, now))
        return events

    def _escalate(self, item_id: str, worker_id: str, history: Dict,
                  now: datetime) -> _Event:
        record = EscalationRecord(
            item_id=item_id,
            failures=history["count"],
            errors=[e["error"] for e in history["errors"][-3:]],
            created_at=now,
        )
        escalations = self._read_table(self.paths.escalations)
        escalations[item_id] = record.to_dict()
        write_json_atomic(self.paths.escalations, escalations)
        logger.warning(f"Item {item_id} escalated after {history['count']} consecutive failures")
        return _Event(EventType.ESCALATED, item_id, worker_id, {"failures": history["count"]})

    def _reset_failures(self, item_id: str) -> None:
        failures = self._read_table(self.paths.failures)
        if failures.pop(item_id, None) is not None:
            write_json_atomic(self.paths.failures, failures)

    def steal_expired(self, now: Optional[datetime] = None) -> List[str]:
        """
        Void every claim whose lease has passed.

        Returns:
            Ids of the items made selectable again
        """
        now = now or self._clock()
        stolen: List[str] = []
        pending: List[_Event] = []

        def _steal(data: Dict) -> None:
            claims = data["claims"]
            for entry in data["items"]:
                item_id = entry["id"]
                current = claims.get(item_id)
                if not current or not Claim.from_dict(current).is_expired(now):
                    continue
                del claims[item_id]
                entry["status"] = ItemStatus.UNCLAIMED.value
                stolen.append(item_id)
                pending.append(_Event(
                    EventType.CLAIM_STOLEN, item_id, None,
                    {"previous_holder": current.get("holder")},
                ))

        self._mutate(_steal)
        self._emit(pending)
        if stolen:
            logger.info(f"Voided expired claims: {', '.join(stolen)}")
        return stolen

    def mark_conflict_blocked(self, item_id: str, worker_id: str, reason: str) -> WorkItem:
        """Release an item that hit a content conflict, without counting an attempt."""
        return self.release(item_id, worker_id, ReleaseOutcome.CONFLICT, error=reason)

    def unblock(self, item_id: str) -> WorkItem:
        """
        Make a conflict-blocked item selectable again.

        Raises:
            ItemNotFoundError: If the item is not in the backlog
            QueueError: If the item is not conflict-blocked
        """
        unblocked: List[WorkItem] = []

        def _unblock(data: Dict) -> None:
            index, entry = self._find(data, item_id)
            item = WorkItem.from_dict(entry)
            if item.status is not ItemStatus.CONFLICT_BLOCKED:
                raise QueueError(f"Work item {item_id} is {item.status.value}, not conflict-blocked")
            item.status = ItemStatus.UNCLAIMED
            data["items"][index] = item.to_dict()
            unblocked.append(item)

        self._mutate(_unblock)
        logger.info(f"Unblocked item {item_id}")
        return unblocked[0]

    def complete_blocked(self, item_id: str, worker_id: str, commit_ref: Optional[str]) -> WorkItem:
        """Complete a conflict-blocked item whose change already reached the remote."""
        now = self._clock()
        completed: List[WorkItem] = []

        def _complete(data: Dict) -> None:
            index, entry = self._find(data, item_id)
            item = WorkItem.from_dict(entry)
            if item.status is not ItemStatus.CONFLICT_BLOCKED:
                raise QueueError(f"Work item {item_id} is {item.status.value}, not conflict-blocked")
            data["items"].pop(index)
            item.status = ItemStatus.COMPLETED
            self._append_ledger(LedgerEntry(
                item_id=item.item_id,
                title=item.title,
                outcome="completed",
                worker_id=worker_id,
                recorded_at=now,
                attempts=item.attempts,
                commit_ref=commit_ref,
            ))
            self._reset_failures(item_id)
            completed.append(item)

        self._mutate(_complete)
        logger.info(f"Completed conflict-blocked item {item_id} ({commit_ref})")
        return completed[0]

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def _snapshot(self) -> Dict:
        data = self.lock_manager.read_json(self.paths.backlog, default={}, lock_name=QUEUE_LOCK)
        if not isinstance(data, dict):
            return {"items": [], "claims": {}}
        data.setdefault("items", [])
        data.setdefault("claims", {})
        return data

    def list_items(self) -> List[WorkItem]:
        """All backlog items in declaration order, with their claims."""
        data = self._snapshot()
        return [
            WorkItem.from_dict(entry, data["claims"].get(entry["id"]))
            for entry in data["items"]
        ]

    def get_item(self, item_id: str) -> WorkItem:
        """
        Raises:
            ItemNotFoundError: If the item is not in the backlog
        """
        data = self._snapshot()
        _, entry = self._find(data, item_id)
        return WorkItem.from_dict(entry, data["claims"].get(item_id))

    def pending_items(self) -> List[WorkItem]:
        """Selectable-or-claimed items in claim order, for progress reporting."""
        escalated = {record.item_id for record in self.escalations()}
        items = [
            item for item in self.list_items()
            if item.item_id not in escalated
            and item.status in SELECTABLE_STATUSES | {ItemStatus.CLAIMED}
        ]
        return sorted(items, key=lambda item: item.priority.rank)

    def ledger(self) -> List[LedgerEntry]:
        data = self.lock_manager.read_json(self.paths.ledger, default={}, lock_name=QUEUE_LOCK)
        entries = data.get("entries", []) if isinstance(data, dict) else []
        return [LedgerEntry.from_dict(entry) for entry in entries]

    def failure_count(self, item_id: str) -> int:
        failures = self.lock_manager.read_json(self.paths.failures, default={}, lock_name=QUEUE_LOCK)
        if not isinstance(failures, dict):
            return 0
        return int(failures.get(item_id, {}).get("count", 0))

    def retry_mode(self, item: WorkItem) -> RetryMode:
        """In-place retries while failures stay within ``transient_retries``.

        The last attempt an item is allowed always starts fresh with the prior
        failure as context.
        """
        failures = self.failure_count(item.item_id)
        if failures == 0:
            return RetryMode.IN_PLACE
        if failures > self.config.transient_retries:
            return RetryMode.FRESH_WITH_CONTEXT
        if item.attempts + 1 >= self.config.max_attempts:
            return RetryMode.FRESH_WITH_CONTEXT
        return RetryMode.IN_PLACE

    # ------------------------------------------------------------------
    # Escalations
    # ------------------------------------------------------------------

    def escalations(self) -> List[EscalationRecord]:
        data = self.lock_manager.read_json(self.paths.escalations, default={}, lock_name=QUEUE_LOCK)
        if not isinstance(data, dict):
            return []
        return [EscalationRecord.from_dict(record) for record in data.values()]

    def clear_escalation(self, item_id: str) -> bool:
        """
        Remove an Escalation Record and reset the item's consecutive failures.

        Returns:
            True if a record was removed
        """
        cleared: List[bool] = []

        def _clear(data: Dict) -> None:
            escalations = self._read_table(self.paths.escalations)
            if escalations.pop(item_id, None) is None:
                return
            write_json_atomic(self.paths.escalations, escalations)
            self._reset_failures(item_id)
            cleared.append(True)

        self._mutate(_clear)
        if cleared:
            logger.info(f"Cleared escalation for {item_id}")
            if self.events is not None:
                self.events.emit(EventType.ESCALATED, {"cleared": True}, item_id=item_id)
        return bool(cleared)

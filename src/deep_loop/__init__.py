"""Deep Loop - Deterministic phase-loop orchestrator for long-running workers.

A host invokes the orchestrator every time its worker tries to exit. The
orchestrator either allows the exit or blocks it and re-injects the next
instruction, driving the worker through CHALLENGE -> PLAN -> BUILD -> REVIEW
(-> FIX -> REVIEW)* -> SHIP -> COMPLETE with every decision persisted to disk.

Example usage:
    from deep_loop import HookInput, Orchestrator

    orchestrator = Orchestrator.from_state_dir(Path(".deep"))
    decision = orchestrator.evaluate(HookInput("s-1", "/tmp/transcript.jsonl"))
    sys.exit(decision.exit_code)
"""

from .config import LoopConfig, LoopPaths, load_config, resolve_state_dir
from .events import EventLog, EventType, LoopEvent
from .exceptions import (
    ClaimOwnershipError,
    ConfigError,
    DeepLoopError,
    DuplicateItemError,
    InvalidPhaseError,
    ItemNotFoundError,
    LockTimeoutError,
    NoActiveSessionError,
    PublishError,
    QueueError,
    SessionExistsError,
    StateError,
    TransitionError,
)
from .gate import VerificationGate, VerificationResult
from .locking import DistributedLockManager
from .models import (
    Claim,
    ComplexityTier,
    ConflictRecord,
    EscalationRecord,
    ItemStatus,
    LedgerEntry,
    Phase,
    Priority,
    Session,
    WorkItem,
)
from .orchestrator import HookAction, HookDecision, HookInput, Orchestrator
from .phases import PhaseStateMachine
from .publish import (
    CIPoller,
    CIResult,
    CIState,
    ConflictRegistry,
    EvidenceRecorder,
    GitRunner,
    PublishPipeline,
    PublishResult,
)
from .queue import ReleaseOutcome, RetryMode, TaskQueue
from .safety import SafetyValveController
from .signals import CompletionSignalDetector
from .state_store import FileStateStore, InMemoryStateStore, SessionFiles, StateStore

__all__ = [
    # Models
    "Phase",
    "ComplexityTier",
    "Priority",
    "ItemStatus",
    "Session",
    "Claim",
    "WorkItem",
    "ConflictRecord",
    "EscalationRecord",
    "LedgerEntry",
    # Configuration
    "LoopConfig",
    "LoopPaths",
    "load_config",
    "resolve_state_dir",
    # State
    "StateStore",
    "FileStateStore",
    "InMemoryStateStore",
    "SessionFiles",
    "DistributedLockManager",
    # Loop
    "CompletionSignalDetector",
    "SafetyValveController",
    "PhaseStateMachine",
    "VerificationGate",
    "VerificationResult",
    "Orchestrator",
    "HookInput",
    "HookDecision",
    "HookAction",
    # Queue and publishing
    "TaskQueue",
    "ReleaseOutcome",
    "RetryMode",
    "GitRunner",
    "PublishPipeline",
    "PublishResult",
    "ConflictRegistry",
    "EvidenceRecorder",
    "CIPoller",
    "CIResult",
    "CIState",
    # Events
    "EventLog",
    "EventType",
    "LoopEvent",
    # Exceptions
    "DeepLoopError",
    "ConfigError",
    "StateError",
    "InvalidPhaseError",
    "SessionExistsError",
    "NoActiveSessionError",
    "LockTimeoutError",
    "QueueError",
    "ItemNotFoundError",
    "ClaimOwnershipError",
    "DuplicateItemError",
    "TransitionError",
    "PublishError",
]

__version__ = "0.1.0"

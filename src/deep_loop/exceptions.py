"""Custom exception hierarchy for the phase-loop orchestrator.

This module provides a consistent error handling strategy with domain-specific
exceptions that carry enough context for the CLI to report a precise message
and for callers to decide whether an error is recoverable.
"""

from typing import Optional


__all__ = [
    "DeepLoopError",
    "ConfigError",
    # State exceptions
    "StateError",
    "InvalidPhaseError",
    "SessionExistsError",
    "NoActiveSessionError",
    "LockTimeoutError",
    # Queue exceptions
    "QueueError",
    "ItemNotFoundError",
    "ClaimOwnershipError",
    "DuplicateItemError",
    # Machine / publish exceptions
    "TransitionError",
    "PublishError",
]


class DeepLoopError(Exception):
    """Base exception for all orchestrator errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        """Initialize DeepLoopError.

        Args:
            message: Human-readable error description.
        """
        self.message = message
        super().__init__(message)


class ConfigError(DeepLoopError):
    """Raised when the configuration file cannot be loaded or is invalid.

    Attributes:
        message: Human-readable error description.
        path: Path of the offending configuration file.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.original_error = original_error


class StateError(DeepLoopError):
    """Base exception for persisted-state errors.

    Raised when a state file cannot be read, parsed, or written.

    Attributes:
        message: Human-readable error description.
        path: The file involved in the failed operation.
        original_error: The underlying exception that caused this error.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        """Initialize StateError.

        Args:
            message: Human-readable error description.
            path: The file involved in the failed operation.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.path = path
        self.original_error = original_error


class InvalidPhaseError(StateError):
    """Raised when a persisted phase value is not a declared phase.

    Unknown phases are rejected at load time instead of being treated as a
    no-op, so a corrupted or hand-edited session record surfaces immediately.

    Attributes:
        value: The rejected phase value.
    """

    def __init__(self, message: str, value: Optional[str] = None) -> None:
        super().__init__(message)
        self.value = value


class SessionExistsError(StateError):
    """Raised when starting a session while another one is still active.

    Attributes:
        session_id: Identifier of the active session.
    """

    def __init__(self, message: str, session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class NoActiveSessionError(StateError):
    """Raised by operations that require an active session when none exists."""


class LockTimeoutError(DeepLoopError):
    """Raised when a named lock cannot be acquired in time.

    Attributes:
        message: Human-readable error description.
        lock_name: Name of the lock that timed out.
        timeout: Seconds waited before giving up.
    """

    def __init__(
        self,
        message: str,
        lock_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Initialize LockTimeoutError.

        Args:
            message: Human-readable error description.
            lock_name: Name of the lock that timed out.
            timeout: Seconds waited before giving up.
        """
        super().__init__(message)
        self.lock_name = lock_name
        self.timeout = timeout


class QueueError(DeepLoopError):
    """Base exception for task queue errors."""


class ItemNotFoundError(QueueError):
    """Raised when a work item id is not present in the backlog.

    Attributes:
        item_id: The identifier that was not found.
    """

    def __init__(self, message: str, item_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class ClaimOwnershipError(QueueError):
    """Raised when a worker releases an item it does not hold.

    Attributes:
        item_id: The work item involved.
        holder: The worker currently holding the claim, if any.
        requester: The worker that attempted the release.
    """

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        holder: Optional[str] = None,
        requester: Optional[str] = None,
    ) -> None:
        """Initialize ClaimOwnershipError.

        Args:
            message: Human-readable error description.
            item_id: The work item involved.
            holder: The worker currently holding the claim, if any.
            requester: The worker that attempted the release.
        """
        super().__init__(message)
        self.item_id = item_id
        self.holder = holder
        self.requester = requester


class DuplicateItemError(QueueError):
    """Raised when adding a work item whose id already exists.

    Attributes:
        item_id: The duplicated identifier.
    """

    def __init__(self, message: str, item_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class TransitionError(DeepLoopError):
    """Raised when the phase machine is asked for an illegal transition.

    Attributes:
        from_phase: Phase the session was in.
        to_phase: Requested target phase.
    """

    def __init__(
        self,
        message: str,
        from_phase: Optional[str] = None,
        to_phase: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.from_phase = from_phase
        self.to_phase = to_phase


class PublishError(DeepLoopError):
    """Raised when an external tool needed for publishing cannot be run.

    Ordinary non-zero exits (rejected push, conflicting rebase) are outcomes,
    not errors, and are reported through ``PublishResult`` instead.

    Attributes:
        message: Human-readable error description.
        step: The pipeline step that failed (e.g., "push", "rebase").
        returncode: Process exit code, if the process ran.
        stderr: Captured standard error output.
    """

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ) -> None:
        """Initialize PublishError.

        Args:
            message: Human-readable error description.
            step: The pipeline step that failed.
            returncode: Process exit code, if the process ran.
            stderr: Captured standard error output.
        """
        super().__init__(message)
        self.step = step
        self.returncode = returncode
        self.stderr = stderr

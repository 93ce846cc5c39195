"""Command-line interface for the phase-loop orchestrator.

Usage:
    deep-loop start --task "Add CSV export" --tier standard
    deep-loop hook < hook-input.json
    deep-loop status
    deep-loop queue claim --worker w1
    deep-loop publish --item item-1 --worker w1
    deep-loop force-complete --reason "accepted by reviewer"
"""

import argparse
import json
import logging
import os
import shutil
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import LoopConfig, LoopPaths, load_config, resolve_state_dir
from .events import EventLog
from .exceptions import DeepLoopError, NoActiveSessionError, QueueError
from .gate import VerificationGate
from .locking import DistributedLockManager, read_json_file
from .models import ComplexityTier, Priority, WorkItem, utc_now
from .orchestrator import HookInput, Orchestrator
from .phases import PhaseStateMachine
from .publish import (
    CIPoller,
    CIStatusChecker,
    ConflictRegistry,
    EvidenceRecorder,
    GitRunner,
    PublishPipeline,
    render_publish_script,
)
from .queue import ReleaseOutcome, TaskQueue
from .signals import transcript_size
from .state_store import FileStateStore, SessionFiles

logger = logging.getLogger(__name__)

__all__ = [
    "main",
    "create_parser",
    "configure_logging",
    "format_error",
]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SESSION_ID_ENV = "DEEP_LOOP_SESSION_ID"


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser with all subcommands.
    """
    parser = argparse.ArgumentParser(
        prog="deep-loop",
        description="Deterministic phase-loop orchestrator for long-running worker tasks",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="State directory (default: $DEEP_LOOP_DIR or ./.deep)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Also log to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Hook command
    hook_parser = subparsers.add_parser(
        "hook",
        help="Evaluate one worker exit attempt (reads JSON from stdin)",
    )
    hook_parser.add_argument("--session-id", help="Session id (overrides stdin)")
    hook_parser.add_argument("--transcript", help="Transcript path (overrides stdin)")
    hook_parser.set_defaults(func=cmd_hook)

    # Start command
    start_parser = subparsers.add_parser("start", help="Start a new session")
    task_group = start_parser.add_mutually_exclusive_group(required=True)
    task_group.add_argument("--task", help="Task description")
    task_group.add_argument("--task-file", type=Path, help="Read the task description from a file")
    start_parser.add_argument(
        "--tier",
        choices=[tier.value for tier in ComplexityTier],
        default=ComplexityTier.STANDARD.value,
        help="Complexity tier, selects the iteration ceiling (default: standard)",
    )
    start_parser.add_argument("--ceiling", type=int, help="Explicit iteration ceiling")
    start_parser.add_argument(
        "--skip-challenge",
        action="store_true",
        help="Start in PLAN instead of CHALLENGE",
    )
    start_parser.add_argument("--session-id", help=f"Session id (default: ${SESSION_ID_ENV} or random)")
    start_parser.add_argument("--transcript", help="Transcript path, to ignore earlier output")
    start_parser.add_argument(
        "--replace",
        action="store_true",
        help="Archive and replace an active session",
    )
    start_parser.set_defaults(func=cmd_start)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show session and backlog status")
    status_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    status_parser.set_defaults(func=cmd_status)

    # Operator markers
    abort_parser = subparsers.add_parser("abort", help="Abort the session at the next exit attempt")
    abort_parser.set_defaults(func=cmd_abort)

    force_parser = subparsers.add_parser(
        "force-complete",
        help="Complete the session at the next exit attempt, skipping verification",
    )
    force_parser.add_argument("--reason", required=True, help="Justification, kept for audit")
    force_parser.set_defaults(func=cmd_force_complete)

    handoff_parser = subparsers.add_parser(
        "handoff",
        help="Release the worker to an external orchestrator",
    )
    handoff_parser.add_argument("--note", default="", help="Optional note")
    handoff_parser.set_defaults(func=cmd_handoff)

    ceiling_parser = subparsers.add_parser("raise-ceiling", help="Raise the iteration ceiling")
    ceiling_parser.add_argument("ceiling", type=int, help="New ceiling")
    ceiling_parser.set_defaults(func=cmd_raise_ceiling)

    verify_parser = subparsers.add_parser("verify", help="Run the Verification Gate")
    verify_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    verify_parser.set_defaults(func=cmd_verify)

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Manage the shared backlog")
    queue_sub = queue_parser.add_subparsers(dest="queue_command", required=True)

    add_parser = queue_sub.add_parser("add", help="Add work items")
    add_parser.add_argument("--id", dest="item_id", help="Item id")
    add_parser.add_argument("--title", help="Item title")
    add_parser.add_argument("--acceptance", default="", help="Acceptance description")
    add_parser.add_argument(
        "--priority",
        choices=[p.value for p in Priority],
        default=Priority.MEDIUM.value,
        help="Priority (default: medium)",
    )
    add_parser.add_argument("--file", type=Path, help="JSON file with a list of items")
    add_parser.set_defaults(func=cmd_queue_add)

    list_parser = queue_sub.add_parser("list", help="List backlog items")
    list_parser.add_argument("--ledger", action="store_true", help="Show the ledger instead")
    list_parser.add_argument("--format", choices=["text", "json"], default="text")
    list_parser.set_defaults(func=cmd_queue_list)

    claim_parser = queue_sub.add_parser("claim", help="Claim the next item")
    claim_parser.add_argument("--worker", required=True, help="Worker id")
    claim_parser.set_defaults(func=cmd_queue_claim)

    release_parser = queue_sub.add_parser("release", help="Release a claimed item")
    release_parser.add_argument("--item", required=True, help="Item id")
    release_parser.add_argument("--worker", required=True, help="Worker id")
    release_parser.add_argument(
        "--outcome",
        choices=[o.value for o in ReleaseOutcome],
        required=True,
        help="How the work ended",
    )
    release_parser.add_argument("--commit", help="Commit reference (success)")
    release_parser.add_argument("--error", help="Error text (failure)")
    release_parser.set_defaults(func=cmd_queue_release)

    steal_parser = queue_sub.add_parser("steal", help="Void expired claims")
    steal_parser.set_defaults(func=cmd_queue_steal)

    # Publish command
    publish_parser = subparsers.add_parser("publish", help="Publish a completed item")
    publish_parser.add_argument("--item", required=True, help="Item id")
    publish_parser.add_argument("--worker", required=True, help="Worker id")
    publish_parser.add_argument("--repo", type=Path, default=Path("."), help="Working tree")
    publish_parser.add_argument("--remote", help="Remote (default from config)")
    publish_parser.add_argument("--branch", help="Branch (default: current)")
    publish_parser.add_argument("--no-ci", action="store_true", help="Do not wait for CI")
    publish_parser.set_defaults(func=cmd_publish)

    # Conflict commands
    conflicts_parser = subparsers.add_parser("conflicts", help="Inspect and resolve conflicts")
    conflicts_sub = conflicts_parser.add_subparsers(dest="conflicts_command", required=True)
    conflicts_list = conflicts_sub.add_parser("list", help="List Conflict Records")
    conflicts_list.set_defaults(func=cmd_conflicts_list)
    conflicts_resolve = conflicts_sub.add_parser("resolve", help="Resolve a conflict manually")
    conflicts_resolve.add_argument("item", help="Item id")
    conflicts_resolve.set_defaults(func=cmd_conflicts_resolve)
    conflicts_auto = conflicts_sub.add_parser(
        "auto-resolve",
        help="Resolve conflicts whose change already reached the remote",
    )
    conflicts_auto.add_argument("--repo", type=Path, default=Path("."), help="Working tree")
    conflicts_auto.set_defaults(func=cmd_conflicts_auto_resolve)

    # Escalation commands
    esc_parser = subparsers.add_parser("escalations", help="Inspect and clear escalations")
    esc_sub = esc_parser.add_subparsers(dest="escalations_command", required=True)
    esc_list = esc_sub.add_parser("list", help="List Escalation Records")
    esc_list.set_defaults(func=cmd_escalations_list)
    esc_clear = esc_sub.add_parser("clear", help="Clear an Escalation Record")
    esc_clear.add_argument("item", help="Item id")
    esc_clear.set_defaults(func=cmd_escalations_clear)

    script_parser = subparsers.add_parser(
        "write-publish-script",
        help="Generate publish.sh and reference it from the session",
    )
    script_parser.set_defaults(func=cmd_write_publish_script)

    return parser


def configure_logging(paths: LoopPaths, verbose: bool = False) -> None:
    """Log to ``logs/deep-loop.log``; also to stderr with ``--verbose``.

    Stdout and stderr are the host protocol channel for ``hook``, so nothing
    is logged there unless asked for.
    """
    handlers: List[logging.Handler] = []
    try:
        paths.logs_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(paths.logs_dir / "deep-loop.log", encoding="utf-8"))
    except OSError as e:
        print(f"Warning: file logging disabled: {e}", file=sys.stderr)
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def format_error(error: Exception) -> str:
    """Format an exception as a user-friendly error message.

    Args:
        error: Exception to format.

    Returns:
        Human-readable error message without stack trace.
    """
    if isinstance(error, DeepLoopError):
        return f"Error: {error.message}"
    return f"Unexpected error: {error}"


@dataclass
class _Context:
    paths: LoopPaths
    config: LoopConfig

    @property
    def store(self) -> FileStateStore:
        return FileStateStore(self.paths.state)

    @property
    def files(self) -> SessionFiles:
        return SessionFiles(self.paths, self.store)

    @property
    def events(self) -> EventLog:
        return EventLog(self.paths.logs_dir)

    @property
    def lock_manager(self) -> DistributedLockManager:
        return DistributedLockManager(self.paths.state_dir, default_timeout=self.config.lock_timeout)

    @property
    def queue(self) -> TaskQueue:
        return TaskQueue(self.lock_manager, self.paths, self.config, events=self.events)

    @property
    def conflicts(self) -> ConflictRegistry:
        return ConflictRegistry(self.lock_manager, self.paths, events=self.events)


def _context(args: argparse.Namespace) -> _Context:
    paths = LoopPaths(args.state_dir)
    return _Context(paths=paths, config=load_config(paths.config))


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


def cmd_hook(args: argparse.Namespace) -> int:
    """Evaluate one exit attempt.

    Exit code 2 blocks the worker and re-injects the instruction; 0 allows
    exit. Any internal failure allows exit: a broken orchestrator must never
    trap the worker.
    """
    try:
        payload = HookInput(None, None)
        if not sys.stdin.isatty():
            payload = HookInput.from_json(sys.stdin.read())
        hook = HookInput(
            session_id=args.session_id or payload.session_id,
            transcript_path=args.transcript or payload.transcript_path,
        )
        orchestrator = Orchestrator.from_state_dir(args.state_dir)
        decision = orchestrator.evaluate(hook)
    except Exception as e:
        logger.exception(f"Orchestrator failed; allowing exit: {e}")
        print(f"[deep-loop] orchestrator error, allowing exit: {e}", file=sys.stderr)
        return 0

    if decision.instruction:
        print(decision.instruction)
    if decision.blocked:
        print(decision.status_line, file=sys.stderr)
        print(decision.instruction, file=sys.stderr)
    return decision.exit_code


def cmd_start(args: argparse.Namespace) -> int:
    """Create a session and write its task description."""
    ctx = _context(args)
    task = args.task if args.task is not None else args.task_file.read_text(encoding="utf-8")
    tier = ComplexityTier(args.tier)
    ceiling = args.ceiling if args.ceiling is not None else ctx.config.ceiling_for(tier)
    if ceiling < 1:
        raise DeepLoopError(f"Ceiling must be at least 1, got {ceiling}")

    machine = PhaseStateMachine(skip_challenge=args.skip_challenge)
    session_id = args.session_id or os.environ.get(SESSION_ID_ENV) or uuid.uuid4().hex[:12]
    session = ctx.files.create_session(
        session_id=session_id,
        task=task,
        tier=tier,
        ceiling=ceiling,
        skip_challenge=args.skip_challenge,
        initial_phase=machine.initial_phase(),
        transcript_offset=transcript_size(args.transcript),
        replace=args.replace,
    )
    print(f"Started session {session.session_id}")
    print(machine.status_line(session))
    return 0


def _plan_progress(plan: Optional[str]) -> Optional[str]:
    if plan is None:
        return None
    done = sum(1 for line in plan.splitlines() if line.strip().lower().startswith("- [x]"))
    total = done + sum(1 for line in plan.splitlines() if line.strip().startswith("- [ ]"))
    return f"{done}/{total} checklist items done" if total else "present"


def cmd_status(args: argparse.Namespace) -> int:
    """Show the session, plan progress, issues and backlog summary."""
    ctx = _context(args)
    session = ctx.store.read()
    files = ctx.files
    queue = ctx.queue
    items = queue.list_items()
    counts: Dict[str, int] = {}
    for item in items:
        counts[item.status.value] = counts.get(item.status.value, 0) + 1

    status: Dict[str, Any] = {
        "session": session.to_dict() if session else None,
        "plan": _plan_progress(files.read_plan()),
        "open_issues": len(files.open_issues()),
        "backlog": counts,
        "conflicts": len(ctx.conflicts.list()),
        "escalations": len(queue.escalations()),
    }
    if args.format == "json":
        _print_json(status)
        return 0

    if session is None:
        print("No active session.")
    else:
        machine = PhaseStateMachine()
        print(machine.status_line(session))
        print(f"Session:       {session.session_id} ({session.tier.value})")
        print(f"Started:       {session.started_at.isoformat()}")
        print(f"Last activity: {session.last_activity.isoformat()}")
        print(f"Task:          {session.task.strip().splitlines()[0] if session.task.strip() else '-'}")
        print(f"Plan:          {status['plan'] or 'not written'}")
        print(f"Open issues:   {status['open_issues']}")
    if items:
        summary = ", ".join(f"{name}={count}" for name, count in sorted(counts.items()))
        print(f"Backlog:       {summary}")
    if status["conflicts"]:
        print(f"Conflicts:     {status['conflicts']} (see `deep-loop conflicts list`)")
    if status["escalations"]:
        print(f"Escalations:   {status['escalations']} (see `deep-loop escalations list`)")
    return 0


def cmd_abort(args: argparse.Namespace) -> int:
    paths = LoopPaths(args.state_dir)
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    paths.force_exit.touch()
    print("Abort requested; the loop stops at the next exit attempt.")
    return 0


def cmd_force_complete(args: argparse.Namespace) -> int:
    reason = args.reason.strip()
    if not reason:
        raise DeepLoopError("A non-empty --reason is required")
    paths = LoopPaths(args.state_dir)
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    paths.force_complete.write_text(reason + "\n", encoding="utf-8")
    print("Force-complete requested; the loop completes at the next exit attempt.")
    return 0


def cmd_handoff(args: argparse.Namespace) -> int:
    paths = LoopPaths(args.state_dir)
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    paths.handoff.write_text(args.note, encoding="utf-8")
    print("Handoff requested; the worker is released at the next exit attempt.")
    return 0


def cmd_raise_ceiling(args: argparse.Namespace) -> int:
    """Raise the iteration ceiling of the active session."""
    ctx = _context(args)
    store = ctx.store
    session = store.read()
    if session is None:
        raise NoActiveSessionError("No active session")
    if args.ceiling <= session.ceiling:
        raise DeepLoopError(
            f"New ceiling {args.ceiling} must be above the current ceiling {session.ceiling}"
        )
    previous = session.ceiling
    session.ceiling = args.ceiling
    session.record("ceiling_raised", utc_now(), previous=previous)
    store.write(session)
    print(f"Ceiling raised from {previous} to {session.ceiling}")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Run the Verification Gate without changing the session."""
    ctx = _context(args)
    result = VerificationGate(ctx.paths).verify()
    if args.format == "json":
        _print_json(result.to_dict())
    else:
        print(result.summary())
        if result.skipped:
            print(f"Publish evidence skipped: {result.skip_reason}")
    return 0 if result.passed else 1


# ---------------------------------------------------------------------------
# Queue commands
# ---------------------------------------------------------------------------


def _load_items(path: Path) -> List[WorkItem]:
    data = read_json_file(path)
    if isinstance(data, dict):
        data = data.get("items", [])
    if not isinstance(data, list):
        raise QueueError(f"{path} must contain a list of items")
    try:
        return [WorkItem.from_dict(entry) for entry in data]
    except (KeyError, TypeError, ValueError) as e:
        raise QueueError(f"Invalid work item in {path}: {e}") from e


def cmd_queue_add(args: argparse.Namespace) -> int:
    ctx = _context(args)
    if args.file:
        items = _load_items(args.file)
    elif args.item_id:
        items = [WorkItem(
            item_id=args.item_id,
            title=args.title or args.item_id,
            acceptance=args.acceptance,
            priority=Priority(args.priority),
        )]
    else:
        raise QueueError("Provide --id or --file")
    ctx.queue.add_items(items)
    print(f"Added {len(items)} item(s)")
    return 0


def cmd_queue_list(args: argparse.Namespace) -> int:
    ctx = _context(args)
    queue = ctx.queue
    if args.ledger:
        entries = queue.ledger()
        if args.format == "json":
            _print_json([entry.to_dict() for entry in entries])
            return 0
        for entry in entries:
            ref = f" {entry.commit_ref}" if entry.commit_ref else ""
            print(f"{entry.item_id:<20} {entry.outcome:<10} attempts={entry.attempts}{ref}")
        return 0

    items = queue.list_items()
    if args.format == "json":
        _print_json([
            dict(item.to_dict(), claim=item.claim.to_dict() if item.claim else None)
            for item in items
        ])
        return 0
    if not items:
        print("Backlog is empty.")
    for item in items:
        holder = f" ({item.claim.holder})" if item.claim else ""
        print(f"{item.item_id:<20} {item.priority.value:<7} {item.status.value:<17} "
              f"attempts={item.attempts}{holder}  {item.title}")
    return 0


def cmd_queue_claim(args: argparse.Namespace) -> int:
    ctx = _context(args)
    item = ctx.queue.claim(args.worker)
    if item is None:
        print("No claimable item.")
        return 1
    _print_json(dict(item.to_dict(), claim=item.claim.to_dict() if item.claim else None))
    return 0


def cmd_queue_release(args: argparse.Namespace) -> int:
    ctx = _context(args)
    item = ctx.queue.release(
        args.item, args.worker, ReleaseOutcome(args.outcome),
        commit_ref=args.commit, error=args.error,
    )
    print(f"{item.item_id}: {item.status.value} (attempts={item.attempts})")
    return 0


def cmd_queue_steal(args: argparse.Namespace) -> int:
    ctx = _context(args)
    stolen = ctx.queue.steal_expired()
    print(f"Voided {len(stolen)} expired claim(s)" + (f": {', '.join(stolen)}" if stolen else ""))
    return 0


# ---------------------------------------------------------------------------
# Publish / conflicts / escalations
# ---------------------------------------------------------------------------


def cmd_publish(args: argparse.Namespace) -> int:
    ctx = _context(args)
    config = ctx.config
    if args.remote:
        config.remote = args.remote
    if args.branch:
        config.branch = args.branch

    git = GitRunner(args.repo)
    ci_poller = None
    if not args.no_ci and shutil.which("gh"):
        branch = config.branch or git.run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()
        ci_poller = CIPoller(
            CIStatusChecker(args.repo, branch),
            interval=config.ci_poll_interval,
            timeout=config.ci_timeout,
        )
    lock_manager = ctx.lock_manager
    pipeline = PublishPipeline(
        git,
        ctx.queue,
        ctx.conflicts,
        config,
        ci_poller=ci_poller,
        evidence=EvidenceRecorder(lock_manager, ctx.paths),
    )
    result = pipeline.publish(args.item, args.worker)
    print(f"{args.item}: {result.outcome.value} after {result.attempts} push attempt(s)")
    if result.commit_ref:
        print(f"Commit: {result.commit_ref}")
    if result.conflict:
        print(f"Conflicting paths: {', '.join(result.conflict.paths)}")
        print(f"Work preserved on: {result.conflict.recovery_branch}")
    if result.error:
        print(f"Detail: {result.error}", file=sys.stderr)
    return 0 if result.outcome is ReleaseOutcome.SUCCESS else 1


def cmd_conflicts_list(args: argparse.Namespace) -> int:
    ctx = _context(args)
    records = ctx.conflicts.list()
    if not records:
        print("No conflicts.")
    for record in records:
        print(f"{record.item_id}: {', '.join(record.paths)}")
        print(f"  recovery branch: {record.recovery_branch}")
        print(f"  local {record.local_rev[:12]} / remote {record.remote_rev[:12]}, "
              f"{len(record.unpushed_commits)} unpushed commit(s), worker {record.worker_id}")
    return 0


def cmd_conflicts_resolve(args: argparse.Namespace) -> int:
    ctx = _context(args)
    record = ctx.conflicts.resolve(args.item, ctx.queue)
    print(f"Resolved {record.item_id}; recovery branch {record.recovery_branch} kept")
    return 0


def cmd_conflicts_auto_resolve(args: argparse.Namespace) -> int:
    ctx = _context(args)
    resolved = ctx.conflicts.auto_resolve(
        GitRunner(args.repo), ctx.queue, remote=ctx.config.remote, branch=ctx.config.branch
    )
    print(f"Auto-resolved {len(resolved)} conflict(s)" + (f": {', '.join(resolved)}" if resolved else ""))
    return 0


def cmd_escalations_list(args: argparse.Namespace) -> int:
    ctx = _context(args)
    records = ctx.queue.escalations()
    if not records:
        print("No escalations.")
    for record in records:
        print(f"{record.item_id}: {record.failures} consecutive failure(s)")
        for error in record.errors:
            print(f"  - {error}")
    return 0


def cmd_escalations_clear(args: argparse.Namespace) -> int:
    ctx = _context(args)
    if not ctx.queue.clear_escalation(args.item):
        raise QueueError(f"No escalation recorded for {args.item}")
    print(f"Cleared escalation for {args.item}")
    return 0


def cmd_write_publish_script(args: argparse.Namespace) -> int:
    ctx = _context(args)
    script = ctx.paths.publish_script
    ctx.paths.state_dir.mkdir(parents=True, exist_ok=True)
    script.write_text(render_publish_script(ctx.paths.state_dir, ctx.config), encoding="utf-8")
    script.chmod(0o755)

    store = ctx.store
    session = store.read()
    if session is not None:
        session.publish_script = str(script)
        store.write(session)
    print(f"Wrote {script}")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the deep-loop CLI.

    Exit Codes:
        0: Success (or allow, for ``hook``)
        1: User error (DeepLoopError)
        2: Unexpected error (for ``hook``: block)
        130: Interrupted
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    if args.state_dir is None:
        args.state_dir = resolve_state_dir()
    configure_logging(LoopPaths(args.state_dir), args.verbose)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nOperation cancelled.", file=sys.stderr)
        sys.exit(130)
    except DeepLoopError as e:
        print(format_error(e), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error")
        print(format_error(e), file=sys.stderr)
        sys.exit(2)

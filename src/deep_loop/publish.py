"""Conflict-aware publish pipeline.

Publishing the result of a completed work item:

1. Push the local branch.
2. On rejection, fetch the remote and rebase onto it.
3. If the rebase is clean, push again (bounded by ``push_attempts``).
4. If the rebase stops on conflicts, abort it, preserve the unpushed commits
   on a recovery branch, record a Conflict Record and release the claim
   without counting a failed attempt.
5. If pushes are exhausted without success or a conflict diagnosis, mark
   the item push-failed and count the attempt.

After a successful push the pipeline optionally waits for CI, the only
blocking wait in the system, with a fixed interval and a hard timeout.
"""

import json
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .config import LoopConfig, LoopPaths
from .events import EventLog, EventType
from .exceptions import ItemNotFoundError, PublishError, QueueError
from .locking import DistributedLockManager
from .models import ConflictRecord, utc_now
from .queue import ReleaseOutcome, TaskQueue

logger = logging.getLogger(__name__)

__all__ = [
    "CIPoller",
    "CIResult",
    "CIState",
    "CIStatusChecker",
    "ConflictRegistry",
    "EvidenceRecorder",
    "GitRunner",
    "PublishPipeline",
    "PublishResult",
    "recovery_branch_name",
    "render_publish_script",
]

RECOVERY_PREFIX = "deep-loop/recovery"


def recovery_branch_name(item_id: str, now: datetime) -> str:
    """Recovery branch for an item: ``deep-loop/recovery/<item>-<yyyymmddHHMMSS>``."""
    return f"{RECOVERY_PREFIX}/{item_id}-{now.strftime('%Y%m%d%H%M%S')}"


class GitRunner:
    """Thin wrapper around the ``git`` executable.

    Non-zero exits are returned to the caller, who decides whether they are
    outcomes (rejected push, conflicting rebase) or errors.
    """

    def __init__(self, cwd: Union[str, Path], binary: str = "git", timeout: float = 120):
        self.cwd = Path(cwd)
        self.binary = binary
        self.timeout = timeout

    def run(self, *args: str) -> subprocess.CompletedProcess:
        """Run ``git <args>`` in the working tree.

        Raises:
            PublishError: If git cannot be executed or times out.
        """
        command = [self.binary, *args]
        logger.debug(f"Running {' '.join(command)}")
        try:
            return subprocess.run(
                command,
                cwd=str(self.cwd),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise PublishError(f"{self.binary} executable not found", step=args[0]) from e
        except subprocess.TimeoutExpired as e:
            raise PublishError(
                f"{self.binary} {args[0]} timed out after {self.timeout}s", step=args[0]
            ) from e


class CIState(Enum):
    PASSED = "passed"
    FAILED = "failed"
    PENDING = "pending"
    TIMED_OUT = "timed_out"


@dataclass
class CIResult:
    """Outcome of waiting for CI."""
    state: CIState
    detail: str = ""
    checks: int = 0

    @property
    def passed(self) -> bool:
        return self.state is CIState.PASSED


class CIStatusChecker:
    """Queries the latest CI run for a branch through the ``gh`` CLI."""

    def __init__(self, cwd: Union[str, Path], branch: str, binary: str = "gh", timeout: float = 60):
        self.cwd = Path(cwd)
        self.branch = branch
        self.binary = binary
        self.timeout = timeout

    def status(self) -> Tuple[CIState, str]:
        """Return the state of the newest run on the branch.

        Query failures are reported as PENDING so the poller keeps waiting
        until its timeout.
        """
        try:
            result = subprocess.run(
                [self.binary, "run", "list", "--branch", self.branch,
                 "--limit", "1", "--json", "status,conclusion"],
                cwd=str(self.cwd),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise PublishError(f"{self.binary} executable not found", step="ci") from e
        except subprocess.TimeoutExpired:
            return CIState.PENDING, "gh run list timed out"

        if result.returncode != 0:
            return CIState.PENDING, result.stderr.strip()
        try:
            runs = json.loads(result.stdout or "[]")
        except ValueError:
            return CIState.PENDING, "unparseable gh output"

        if not runs:
            return CIState.PENDING, "no CI run yet"
        run = runs[0]
        if run.get("status") != "completed":
            return CIState.PENDING, str(run.get("status"))
        conclusion = run.get("conclusion") or "unknown"
        if conclusion == "success":
            return CIState.PASSED, conclusion
        return CIState.FAILED, conclusion


class CIPoller:
    """Polls CI at a fixed interval up to a hard timeout.

    ``clock`` and ``sleep`` are injectable so tests can simulate time.
    """

    def __init__(
        self,
        checker: Any,
        interval: float = 15,
        timeout: float = 600,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.checker = checker
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    def poll(self) -> CIResult:
        started = self._clock()
        checks = 0
        while True:
            state, detail = self.checker.status()
            checks += 1
            if state in (CIState.PASSED, CIState.FAILED):
                logger.info(f"CI {state.value} after {checks} check(s): {detail}")
                return CIResult(state, detail, checks)

            elapsed = self._clock() - started
            if elapsed >= self.timeout:
                logger.warning(f"CI still pending after {elapsed:.0f}s; giving up")
                return CIResult(CIState.TIMED_OUT, detail, checks)
            self._sleep(min(self.interval, self.timeout - elapsed))


class EvidenceRecorder:
    """Merges publish and CI outcomes into ``git-results.json``."""

    def __init__(self, lock_manager: DistributedLockManager, paths: LoopPaths):
        self.lock_manager = lock_manager
        self.paths = paths

    def record(self, commit_ref: Optional[str] = None, ci: Optional[CIResult] = None,
               **sections: Dict[str, Any]) -> Dict:
        """Update evidence sections in place.

        Args:
            commit_ref: Commit that was pushed.
            ci: CI outcome, if CI was polled.
            **sections: Extra sections merged as-is (``pr``, ``merge``, ``enforcement``).
        """
        def _merge(data: Dict) -> None:
            repository = data.setdefault("repository", {})
            repository["isGitRepo"] = True
            repository["hasGhCli"] = shutil.which("gh") is not None
            if commit_ref:
                data.setdefault("push", {})["commit"] = commit_ref
            if ci is not None:
                data["ci"] = {
                    "checked": ci.state is not CIState.TIMED_OUT,
                    "passed": ci.passed,
                    "status": ci.state.value,
                }
            for name, values in sections.items():
                data.setdefault(name, {}).update(values)

        return self.lock_manager.atomic_file_operation(
            self.paths.git_results, _merge, lock_name="git-results"
        )


class ConflictRegistry:
    """Conflict Records keyed by item id in ``conflicts.json``."""

    LOCK_NAME = "conflicts"

    def __init__(
        self,
        lock_manager: DistributedLockManager,
        paths: LoopPaths,
        events: Optional[EventLog] = None,
    ):
        self.lock_manager = lock_manager
        self.paths = paths
        self.events = events

    def record(self, conflict: ConflictRecord) -> None:
        def _record(data: Dict) -> None:
            data[conflict.item_id] = conflict.to_dict()

        self.lock_manager.atomic_file_operation(
            self.paths.conflicts, _record, lock_name=self.LOCK_NAME
        )
        logger.warning(
            f"Conflict recorded for {conflict.item_id} on {', '.join(conflict.paths)}; "
            f"work preserved on {conflict.recovery_branch}"
        )
        if self.events is not None:
            self.events.emit(
                EventType.CONFLICT_RECORDED,
                {"paths": conflict.paths, "recovery_branch": conflict.recovery_branch},
                item_id=conflict.item_id,
                worker_id=conflict.worker_id,
            )

    def list(self) -> List[ConflictRecord]:
        data = self.lock_manager.read_json(self.paths.conflicts, default={}, lock_name=self.LOCK_NAME)
        return [ConflictRecord.from_dict(record) for record in data.values()]

    def get(self, item_id: str) -> Optional[ConflictRecord]:
        for record in self.list():
            if record.item_id == item_id:
                return record
        return None

    def remove(self, item_id: str) -> bool:
        removed: List[bool] = []

        def _remove(data: Dict) -> None:
            if data.pop(item_id, None) is not None:
                removed.append(True)

        self.lock_manager.atomic_file_operation(
            self.paths.conflicts, _remove, lock_name=self.LOCK_NAME
        )
        return bool(removed)

    def resolve(self, item_id: str, queue: TaskQueue) -> ConflictRecord:
        """Manually resolve a conflict: drop the record and unblock the item.

        The recovery branch is left in place.

        Raises:
            QueueError: If no Conflict Record exists for the item.
        """
        record = self.get(item_id)
        if record is None:
            raise QueueError(f"No conflict recorded for {item_id}")
        try:
            queue.unblock(item_id)
        except ItemNotFoundError:
            logger.info(f"Item {item_id} no longer in backlog; dropping conflict record")
        self.remove(item_id)
        self._resolved(record, "manual")
        return record

    def auto_resolve(self, git: GitRunner, queue: TaskQueue, remote: str = "origin",
                     branch: Optional[str] = None) -> List[str]:
        """Drop records whose local change the remote history already contains.

        A change counts as contained when the recorded local revision is an
        ancestor of the remote branch, or every unpushed commit has a
        patch-equivalent commit upstream (``git cherry``). The item is then
        completed in the ledger.

        Returns:
            Ids of the items resolved.
        """
        resolved: List[str] = []
        records = self.list()
        if not records:
            return resolved

        fetched = git.run("fetch", remote)
        if fetched.returncode != 0:
            logger.warning(
                f"Fetch from {remote} failed; leaving conflicts unresolved: "
                f"{fetched.stderr.strip()}"
            )
            return resolved
        target_branch = branch or _current_branch(git)
        upstream = f"{remote}/{target_branch}"

        for record in records:
            if not self._contained(git, record.local_rev, upstream):
                continue
            try:
                queue.complete_blocked(record.item_id, record.worker_id, commit_ref=record.local_rev)
            except ItemNotFoundError:
                logger.info(f"Item {record.item_id} already left the backlog")
            except QueueError as e:
                logger.warning(f"Not completing {record.item_id}: {e.message}")
            self.remove(record.item_id)
            self._resolved(record, "auto")
            resolved.append(record.item_id)
        return resolved

    @staticmethod
    def _contained(git: GitRunner, local_rev: str, upstream: str) -> bool:
        if git.run("merge-base", "--is-ancestor", local_rev, upstream).returncode == 0:
            return True
        cherry = git.run("cherry", upstream, local_rev)
        if cherry.returncode != 0:
            return False
        return not any(line.startswith("+") for line in cherry.stdout.splitlines())

    def _resolved(self, record: ConflictRecord, how: str) -> None:
        logger.info(f"Conflict for {record.item_id} resolved ({how})")
        if self.events is not None:
            self.events.emit(
                EventType.CONFLICT_RESOLVED,
                {"resolution": how, "recovery_branch": record.recovery_branch},
                item_id=record.item_id,
            )


@dataclass
class PublishResult:
    """Outcome of publishing one work item."""
    outcome: ReleaseOutcome
    commit_ref: Optional[str] = None
    attempts: int = 0
    conflict: Optional[ConflictRecord] = None
    ci: Optional[CIResult] = None
    error: Optional[str] = None
    log: List[str] = field(default_factory=list)


def _current_branch(git: GitRunner) -> str:
    result = git.run("rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        raise PublishError("Cannot determine current branch", step="rev-parse",
                           returncode=result.returncode, stderr=result.stderr)
    return result.stdout.strip()


class PublishPipeline:
    """Push with fetch/rebase retries and conflict quarantine."""

    def __init__(
        self,
        git: GitRunner,
        queue: TaskQueue,
        conflicts: ConflictRegistry,
        config: Optional[LoopConfig] = None,
        ci_poller: Optional[CIPoller] = None,
        evidence: Optional[EvidenceRecorder] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.git = git
        self.queue = queue
        self.conflicts = conflicts
        self.config = config or LoopConfig()
        self.ci_poller = ci_poller
        self.evidence = evidence
        self._clock = clock

    def publish(self, item_id: str, worker_id: str) -> PublishResult:
        """Publish the committed work for a claimed item and release the claim.

        Args:
            item_id: Item the local commits belong to.
            worker_id: Worker holding the item's claim.

        Returns:
            PublishResult describing what happened; the claim is always released.

        Raises:
            PublishError: If git cannot be run or a recovery branch cannot be verified.
        """
        remote = self.config.remote
        branch = self.config.branch or _current_branch(self.git)
        result = PublishResult(outcome=ReleaseOutcome.PUSH_FAILED)
        last_error = ""

        for attempt in range(1, self.config.push_attempts + 1):
            result.attempts = attempt
            push = self.git.run("push", remote, f"HEAD:refs/heads/{branch}")
            if push.returncode == 0:
                return self._pushed(item_id, worker_id, result)

            last_error = push.stderr.strip() or f"push exited {push.returncode}"
            result.log.append(f"push {attempt} rejected: {last_error}")
            logger.warning(f"Push {attempt}/{self.config.push_attempts} for {item_id} rejected")
            if attempt == self.config.push_attempts:
                break

            fetch = self.git.run("fetch", remote)
            if fetch.returncode != 0:
                last_error = fetch.stderr.strip() or "fetch failed"
                result.log.append(f"fetch failed: {last_error}")
                continue

            rebase = self.git.run("rebase", f"{remote}/{branch}")
            if rebase.returncode == 0:
                result.log.append("rebase clean")
                continue

            paths = self._conflicting_paths()
            self.git.run("rebase", "--abort")
            if not paths:
                last_error = rebase.stderr.strip() or "rebase failed"
                result.log.append(f"rebase failed without conflicts: {last_error}")
                continue

            return self._quarantine(item_id, worker_id, remote, branch, paths, result)

        result.outcome = ReleaseOutcome.PUSH_FAILED
        result.error = f"push failed after {result.attempts} attempt(s): {last_error}"
        self.queue.release(item_id, worker_id, ReleaseOutcome.PUSH_FAILED, error=result.error)
        logger.error(f"Publishing {item_id} failed: {result.error}")
        return result

    def _pushed(self, item_id: str, worker_id: str, result: PublishResult) -> PublishResult:
        result.commit_ref = self._rev_parse("HEAD")
        logger.info(f"Pushed {item_id} at {result.commit_ref}")

        if self.ci_poller is not None:
            result.ci = self.ci_poller.poll()
        if self.evidence is not None:
            self.evidence.record(commit_ref=result.commit_ref, ci=result.ci)

        if result.ci is not None and not result.ci.passed:
            result.outcome = ReleaseOutcome.FAILURE
            result.error = f"CI {result.ci.state.value}: {result.ci.detail}"
            self.queue.release(item_id, worker_id, ReleaseOutcome.FAILURE,
                               commit_ref=result.commit_ref, error=result.error)
            return result

        result.outcome = ReleaseOutcome.SUCCESS
        self.queue.release(item_id, worker_id, ReleaseOutcome.SUCCESS, commit_ref=result.commit_ref)
        return result

    def _quarantine(self, item_id: str, worker_id: str, remote: str, branch: str,
                    paths: List[str], result: PublishResult) -> PublishResult:
        now = self._clock()
        local_rev = self._rev_parse("HEAD")
        remote_rev = self._rev_parse(f"{remote}/{branch}")
        recovery = recovery_branch_name(item_id, now)

        created = self.git.run("branch", recovery, local_rev)
        if created.returncode != 0:
            raise PublishError(f"Cannot create recovery branch {recovery}", step="branch",
                               returncode=created.returncode, stderr=created.stderr)
        if self._rev_parse(recovery) != local_rev:
            raise PublishError(f"Recovery branch {recovery} does not point at {local_rev}",
                               step="branch")

        log = self.git.run("log", "--format=%H", f"{remote_rev}..{local_rev}")
        unpushed = [line.strip() for line in log.stdout.splitlines() if line.strip()]

        conflict = ConflictRecord(
            item_id=item_id,
            worker_id=worker_id,
            blocked_at=now,
            paths=paths,
            local_rev=local_rev,
            remote_rev=remote_rev,
            recovery_branch=recovery,
            unpushed_commits=unpushed,
        )
        self.conflicts.record(conflict)
        self.queue.mark_conflict_blocked(
            item_id, worker_id, reason=f"rebase conflict on {', '.join(paths)}"
        )

        reset = self.git.run("reset", "--hard", remote_rev)
        if reset.returncode != 0:
            logger.error(f"Could not reset {branch} to {remote_rev}: {reset.stderr.strip()}")

        result.outcome = ReleaseOutcome.CONFLICT
        result.conflict = conflict
        result.error = f"conflict on {', '.join(paths)}"
        return result

    def _conflicting_paths(self) -> List[str]:
        diff = self.git.run("diff", "--name-only", "--diff-filter=U")
        return [line.strip() for line in diff.stdout.splitlines() if line.strip()]

    def _rev_parse(self, ref: str) -> str:
        parsed = self.git.run("rev-parse", ref)
        if parsed.returncode != 0:
            raise PublishError(f"Cannot resolve {ref}", step="rev-parse",
                               returncode=parsed.returncode, stderr=parsed.stderr)
        return parsed.stdout.strip()


def render_publish_script(state_dir: Path, config: LoopConfig) -> str:
    """Shell script that publishes the current item through the pipeline."""
    branch = f" --branch {config.branch}" if config.branch else ""
    return (
        "#!/usr/bin/env bash\n"
        "# Publish committed work for a claimed backlog item.\n"
        "# Usage: publish.sh <item-id> <worker-id>\n"
        "set -euo pipefail\n"
        "\n"
        "if [ \"$#\" -ne 2 ]; then\n"
        "  echo \"usage: $0 <item-id> <worker-id>\" >&2\n"
        "  exit 1\n"
        "fi\n"
        "\n"
        f"export DEEP_LOOP_DIR=\"{state_dir}\"\n"
        f"exec deep-loop publish --item \"$1\" --worker \"$2\" "
        f"--remote {config.remote}{branch}\n"
    )

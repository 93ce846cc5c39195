"""Tests for the publish pipeline, CI polling and conflict handling."""

import json
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

from conftest import START
from deep_loop.config import LoopConfig
from deep_loop.exceptions import PublishError, QueueError
from deep_loop.locking import read_json_file
from deep_loop.models import ConflictRecord, ItemStatus, WorkItem
from deep_loop.publish import (
    CIPoller,
    CIState,
    CIStatusChecker,
    ConflictRegistry,
    EvidenceRecorder,
    GitRunner,
    PublishPipeline,
    recovery_branch_name,
    render_publish_script,
)
from deep_loop.queue import ReleaseOutcome, TaskQueue

LOCAL = "a" * 40
REMOTE = "b" * 40


def ok(stdout: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], 0, stdout, "")


def failed(stderr: str = "error", returncode: int = 1) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], returncode, "", stderr)


class FakeGit:
    """Scripted stand-in for GitRunner.

    Results queued with ``on`` are returned in order; the last one repeats.
    Unscripted commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self.scripts: Dict[str, List[subprocess.CompletedProcess]] = {}
        self.refs = {"HEAD": LOCAL, "origin/main": REMOTE}

    def on(self, command: str, *results: subprocess.CompletedProcess) -> None:
        self.scripts.setdefault(command, []).extend(results)

    def run(self, *args: str) -> subprocess.CompletedProcess:
        self.calls.append(args)
        if args[0] == "rev-parse":
            ref = args[-1]
            return ok(self.refs[ref] + "\n") if ref in self.refs else failed("unknown revision")
        if args[0] == "branch" and "branch" not in self.scripts:
            self.refs[args[1]] = args[2]
            return ok()

        key = "rebase --abort" if args[:2] == ("rebase", "--abort") else args[0]
        script = self.scripts.get(key)
        if not script:
            return ok()
        return script.pop(0) if len(script) > 1 else script[0]

    def commands(self, name: str) -> List[Tuple[str, ...]]:
        return [call for call in self.calls if call[0] == name]


class FakeChecker:
    def __init__(self, *states: CIState) -> None:
        self.states = list(states)

    def status(self):
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        return state, state.value


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def config() -> LoopConfig:
    return LoopConfig(branch="main", push_attempts=3)


@pytest.fixture
def conflicts(lock_manager, paths, events) -> ConflictRegistry:
    return ConflictRegistry(lock_manager, paths, events=events)


@pytest.fixture
def claimed(queue: TaskQueue) -> WorkItem:
    queue.add_items([WorkItem(item_id="item-1", title="Export")])
    return queue.claim("w1")


def pipeline(git, queue, conflicts, config, clock, **kwargs) -> PublishPipeline:
    return PublishPipeline(git, queue, conflicts, config, clock=clock, **kwargs)


class TestPublishPipeline:
    """Tests for push, rebase and quarantine."""

    def test_first_push_succeeds(self, queue, conflicts, config, clock, claimed) -> None:
        git = FakeGit()

        result = pipeline(git, queue, conflicts, config, clock).publish("item-1", "w1")

        assert result.outcome is ReleaseOutcome.SUCCESS
        assert result.commit_ref == LOCAL
        assert result.attempts == 1
        assert git.commands("push") == [("push", "origin", "HEAD:refs/heads/main")]
        assert queue.ledger()[0].commit_ref == LOCAL

    def test_clean_rebase_then_push(self, queue, conflicts, config, clock, claimed) -> None:
        git = FakeGit()
        git.on("push", failed("rejected: fetch first"), ok())

        result = pipeline(git, queue, conflicts, config, clock).publish("item-1", "w1")

        assert result.outcome is ReleaseOutcome.SUCCESS
        assert result.attempts == 2
        assert ("fetch", "origin") in git.calls
        assert ("rebase", "origin/main") in git.calls

    def test_conflict_quarantines_work(self, queue, conflicts, config, clock, claimed) -> None:
        git = FakeGit()
        git.on("push", failed("rejected"))
        git.on("rebase", failed("CONFLICT (content): Merge conflict in src/app.py"))
        git.on("diff", ok("src/app.py\n"))
        git.on("log", ok(f"{LOCAL}\n"))

        result = pipeline(git, queue, conflicts, config, clock).publish("item-1", "w1")

        assert result.outcome is ReleaseOutcome.CONFLICT
        recovery = recovery_branch_name("item-1", START)
        assert result.conflict.recovery_branch == recovery
        assert ("branch", recovery, LOCAL) in git.calls
        assert ("rebase", "--abort") in git.calls
        assert ("reset", "--hard", REMOTE) in git.calls

        record = conflicts.get("item-1")
        assert record.paths == ["src/app.py"]
        assert record.local_rev == LOCAL
        assert record.remote_rev == REMOTE
        assert record.unpushed_commits == [LOCAL]

        blocked = queue.get_item("item-1")
        assert blocked.status is ItemStatus.CONFLICT_BLOCKED
        assert blocked.attempts == 0
        assert queue.failure_count("item-1") == 0

    def test_unverified_recovery_branch_raises(self, queue, conflicts, config, clock,
                                               claimed) -> None:
        git = FakeGit()
        git.on("push", failed("rejected"))
        git.on("rebase", failed("conflict"))
        git.on("diff", ok("src/app.py\n"))
        git.on("branch", ok())

        with pytest.raises(PublishError):
            pipeline(git, queue, conflicts, config, clock).publish("item-1", "w1")
        assert conflicts.list() == []
        assert ("reset", "--hard", REMOTE) not in git.calls

    def test_exhausted_pushes(self, queue, conflicts, config, clock, claimed) -> None:
        git = FakeGit()
        git.on("push", failed("rejected"))

        result = pipeline(git, queue, conflicts, config, clock).publish("item-1", "w1")

        assert result.outcome is ReleaseOutcome.PUSH_FAILED
        assert len(git.commands("push")) == 3
        assert len(git.commands("fetch")) == 2
        item = queue.get_item("item-1")
        assert item.status is ItemStatus.PUSH_FAILED
        assert item.attempts == 1
        assert "rejected" in item.last_error

    def test_rebase_failure_without_conflicts_retries(self, queue, conflicts, config, clock,
                                                      claimed) -> None:
        git = FakeGit()
        git.on("push", failed("rejected"))
        git.on("rebase", failed("cannot rebase: dirty tree"))

        result = pipeline(git, queue, conflicts, config, clock).publish("item-1", "w1")

        assert result.outcome is ReleaseOutcome.PUSH_FAILED
        assert conflicts.list() == []

    def test_ci_failure_releases_as_failure(self, queue, conflicts, config, clock,
                                            claimed) -> None:
        monotonic = FakeMonotonic()
        poller = CIPoller(FakeChecker(CIState.PENDING, CIState.FAILED), interval=10,
                          timeout=100, clock=monotonic, sleep=monotonic.sleep)

        result = pipeline(FakeGit(), queue, conflicts, config, clock,
                          ci_poller=poller).publish("item-1", "w1")

        assert result.outcome is ReleaseOutcome.FAILURE
        assert result.ci.state is CIState.FAILED
        assert queue.get_item("item-1").attempts == 1

    def test_records_evidence(self, queue, conflicts, config, clock, claimed, lock_manager,
                              paths) -> None:
        monotonic = FakeMonotonic()
        poller = CIPoller(FakeChecker(CIState.PASSED), clock=monotonic, sleep=monotonic.sleep)
        evidence = EvidenceRecorder(lock_manager, paths)

        pipeline(FakeGit(), queue, conflicts, config, clock,
                 ci_poller=poller, evidence=evidence).publish("item-1", "w1")

        data = read_json_file(paths.git_results)
        assert data["push"]["commit"] == LOCAL
        assert data["ci"] == {"checked": True, "passed": True, "status": "passed"}
        assert data["repository"]["isGitRepo"] is True


class TestCIPoller:
    """Tests for CIPoller with simulated time."""

    def test_waits_for_result(self) -> None:
        monotonic = FakeMonotonic()
        poller = CIPoller(FakeChecker(CIState.PENDING, CIState.PENDING, CIState.PASSED),
                          interval=15, timeout=600, clock=monotonic, sleep=monotonic.sleep)

        result = poller.poll()

        assert result.passed
        assert result.checks == 3
        assert monotonic.sleeps == [15, 15]

    def test_times_out(self) -> None:
        monotonic = FakeMonotonic()
        poller = CIPoller(FakeChecker(CIState.PENDING), interval=15, timeout=60,
                          clock=monotonic, sleep=monotonic.sleep)

        result = poller.poll()

        assert result.state is CIState.TIMED_OUT
        assert monotonic.now == 60
        assert result.checks == 5

    def test_never_sleeps_past_timeout(self) -> None:
        monotonic = FakeMonotonic()
        poller = CIPoller(FakeChecker(CIState.PENDING), interval=40, timeout=100,
                          clock=monotonic, sleep=monotonic.sleep)
        poller.poll()
        assert monotonic.sleeps == [40, 40, 20]


class TestCIStatusChecker:
    @pytest.fixture
    def respond(self, monkeypatch):
        def _respond(returncode: int, stdout: str) -> None:
            def fake_run(command, **kwargs):
                assert command[:3] == ["gh", "run", "list"]
                return subprocess.CompletedProcess(command, returncode, stdout, "gh error")
            monkeypatch.setattr("deep_loop.publish.subprocess.run", fake_run)
        return _respond

    @pytest.mark.parametrize("runs,expected", [
        ([{"status": "completed", "conclusion": "success"}], CIState.PASSED),
        ([{"status": "completed", "conclusion": "failure"}], CIState.FAILED),
        ([{"status": "in_progress", "conclusion": ""}], CIState.PENDING),
        ([], CIState.PENDING),
    ])
    def test_states(self, respond, tmp_path, runs, expected) -> None:
        respond(0, json.dumps(runs))
        state, _ = CIStatusChecker(tmp_path, "main").status()
        assert state is expected

    def test_query_error_is_pending(self, respond, tmp_path) -> None:
        respond(1, "")
        assert CIStatusChecker(tmp_path, "main").status() == (CIState.PENDING, "gh error")


class TestConflictRegistry:
    """Tests for Conflict Record bookkeeping."""

    def record(self, item_id: str = "item-1") -> ConflictRecord:
        return ConflictRecord(
            item_id=item_id,
            worker_id="w1",
            blocked_at=START,
            paths=["src/app.py"],
            local_rev=LOCAL,
            remote_rev=REMOTE,
            recovery_branch=recovery_branch_name(item_id, START),
            unpushed_commits=[LOCAL],
        )

    def block(self, queue: TaskQueue) -> None:
        queue.add_items([WorkItem(item_id="item-1", title="Export")])
        queue.claim("w1")
        queue.mark_conflict_blocked("item-1", "w1", reason="conflict")

    def test_record_and_remove(self, conflicts) -> None:
        conflicts.record(self.record())
        assert conflicts.get("item-1") == self.record()
        assert conflicts.remove("item-1")
        assert not conflicts.remove("item-1")
        assert conflicts.list() == []

    def test_manual_resolve_unblocks(self, conflicts, queue) -> None:
        self.block(queue)
        conflicts.record(self.record())

        conflicts.resolve("item-1", queue)

        assert conflicts.list() == []
        assert queue.get_item("item-1").status is ItemStatus.UNCLAIMED

    def test_resolve_without_record(self, conflicts, queue) -> None:
        with pytest.raises(QueueError):
            conflicts.resolve("item-1", queue)

    def test_auto_resolve_when_ancestor(self, conflicts, queue, events) -> None:
        self.block(queue)
        conflicts.record(self.record())
        git = FakeGit()

        resolved = conflicts.auto_resolve(git, queue, branch="main")

        assert resolved == ["item-1"]
        assert ("merge-base", "--is-ancestor", LOCAL, "origin/main") in git.calls
        assert queue.ledger()[0].commit_ref == LOCAL
        assert any(e["event"] == "conflict_resolved" for e in events.read_events())

    def test_auto_resolve_patch_equivalent(self, conflicts, queue) -> None:
        self.block(queue)
        conflicts.record(self.record())
        git = FakeGit()
        git.on("merge-base", failed(""))
        git.on("cherry", ok(f"- {LOCAL}\n"))

        assert conflicts.auto_resolve(git, queue, branch="main") == ["item-1"]

    def test_auto_resolve_keeps_unmerged(self, conflicts, queue) -> None:
        self.block(queue)
        conflicts.record(self.record())
        git = FakeGit()
        git.on("merge-base", failed(""))
        git.on("cherry", ok(f"+ {LOCAL}\n"))

        assert conflicts.auto_resolve(git, queue, branch="main") == []
        assert conflicts.get("item-1") is not None
        assert queue.get_item("item-1").status is ItemStatus.CONFLICT_BLOCKED


    def test_auto_resolve_skipped_when_fetch_fails(self, conflicts, queue, caplog) -> None:
        self.block(queue)
        conflicts.record(self.record())
        git = FakeGit()
        git.on("fetch", failed("could not resolve host"))

        assert conflicts.auto_resolve(git, queue, branch="main") == []
        assert git.commands("merge-base") == []
        assert conflicts.get("item-1") is not None
        assert "could not resolve host" in caplog.text

class TestPublishScript:
    def test_render(self, tmp_path) -> None:
        script = render_publish_script(tmp_path, LoopConfig(remote="upstream", branch="main"))
        assert script.startswith("#!/usr/bin/env bash\n")
        assert f'export DEEP_LOOP_DIR="{tmp_path}"' in script
        assert 'exec deep-loop publish --item "$1" --worker "$2" --remote upstream --branch main' in script


class TestGitRunner:
    def test_missing_binary(self, tmp_path) -> None:
        with pytest.raises(PublishError):
            GitRunner(tmp_path, binary="definitely-not-git-xyz").run("status")


def git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
    )
    return completed.stdout.strip()


def configure(repo: Path) -> None:
    git(repo, "config", "user.name", "Loop Test")
    git(repo, "config", "user.email", "loop@example.com")
    git(repo, "config", "commit.gpgsign", "false")


def commit_file(repo: Path, name: str, content: str, message: str) -> None:
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message)


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestPublishWithGit:
    """End-to-end publish against a local bare remote."""

    @pytest.fixture
    def clones(self, tmp_path: Path):
        remote = tmp_path / "remote.git"
        git(tmp_path, "init", "--bare", str(remote))
        git(remote, "symbolic-ref", "HEAD", "refs/heads/main")

        seed = tmp_path / "seed"
        seed.mkdir()
        git(seed, "init")
        configure(seed)
        git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
        commit_file(seed, "app.txt", "base\n", "seed")
        git(seed, "remote", "add", "origin", str(remote))
        git(seed, "push", "origin", "main")

        repos = []
        for name in ("a", "b"):
            git(tmp_path, "clone", str(remote), name)
            configure(tmp_path / name)
            repos.append(tmp_path / name)
        return remote, repos[0], repos[1]

    def test_conflict_is_quarantined(self, clones, queue, conflicts, config, clock,
                                     claimed) -> None:
        remote, repo_a, repo_b = clones
        commit_file(repo_b, "app.txt", "from b\n", "b change")
        git(repo_b, "push", "origin", "HEAD:refs/heads/main")
        commit_file(repo_a, "app.txt", "from a\n", "a change")
        local_rev = git(repo_a, "rev-parse", "HEAD")

        result = pipeline(GitRunner(repo_a), queue, conflicts, config, clock).publish("item-1", "w1")

        assert result.outcome is ReleaseOutcome.CONFLICT
        assert result.conflict.paths == ["app.txt"]
        assert git(repo_a, "rev-parse", result.conflict.recovery_branch) == local_rev
        assert git(repo_a, "rev-parse", "HEAD") == git(remote, "rev-parse", "main")
        assert queue.get_item("item-1").attempts == 0

    def test_clean_rebase_publishes(self, clones, queue, conflicts, config, clock,
                                    claimed) -> None:
        remote, repo_a, repo_b = clones
        commit_file(repo_b, "b.txt", "b\n", "b change")
        git(repo_b, "push", "origin", "HEAD:refs/heads/main")
        commit_file(repo_a, "a.txt", "a\n", "a change")

        result = pipeline(GitRunner(repo_a), queue, conflicts, config, clock).publish("item-1", "w1")

        assert result.outcome is ReleaseOutcome.SUCCESS
        assert result.attempts == 2
        assert git(remote, "rev-parse", "main") == result.commit_ref
        assert queue.ledger()[0].outcome == "completed"

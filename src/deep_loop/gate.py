"""Verification Gate guarding the terminal phase.

The worker's own claim of completion is never trusted. Before a session may
sit in ``COMPLETE`` the gate re-derives pass/fail from the evidence files:

* ``test-results.json``: ``results.{tests,types,lint,build}.{ran,passed}``,
  ``allPassed`` and ``blockers``.
* ``git-results.json``: PR, CI and merge status, each subject to the
  ``enforcement`` flags. Skipped entirely when the file is absent, the
  project is not a git repository, or the ``gh`` CLI is unavailable.

Any missing or failing category forces the session back to REVIEW.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import LoopPaths
from .exceptions import StateError
from .locking import read_json_file
from .models import Phase, Session, utc_now
from .phases import PhaseStateMachine
from .state_store import StateStore

logger = logging.getLogger(__name__)

__all__ = [
    "EVIDENCE_CATEGORIES",
    "VerificationGate",
    "VerificationResult",
]

EVIDENCE_CATEGORIES = ("tests", "types", "lint", "build")


@dataclass
class VerificationResult:
    """Verdict of the gate.

    Attributes:
        passed: True only when nothing is missing or failing.
        missing: Evidence that was never produced.
        failed: Evidence that reports failure.
        skipped: True when publish evidence was not evaluated.
        skip_reason: Why publish evidence was skipped.
    """

    passed: bool
    missing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "missing": list(self.missing),
            "failed": list(self.failed),
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
        }

    def summary(self) -> str:
        """Instruction text naming exactly what is missing and what failed."""
        if self.passed:
            return "## Verification passed"
        lines = ["## BLOCKED - Verification Failed", ""]
        if self.missing:
            lines.append("**Missing:** " + ", ".join(self.missing))
        if self.failed:
            lines.append("**Failed:** " + ", ".join(self.failed))
        lines.extend([
            "",
            "Fix what is listed and update "
            "test-results.json / git-results.json before shipping again.",
            "",
        ])
        return "\n".join(lines)


class VerificationGate:
    """Independent re-check of recorded evidence before completion."""

    def __init__(
        self,
        paths: LoopPaths,
        machine: Optional[PhaseStateMachine] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.paths = paths
        self.machine = machine or PhaseStateMachine()
        self._clock = clock

    def verify(self) -> VerificationResult:
        """Evaluate both evidence files. Pure read; repeated calls agree."""
        missing, failed = self._verify_tests()
        git_missing, git_failed, skip_reason = self._verify_git()
        missing.extend(git_missing)
        failed.extend(git_failed)

        result = VerificationResult(
            passed=not missing and not failed,
            missing=missing,
            failed=failed,
            skipped=skip_reason is not None,
            skip_reason=skip_reason,
        )
        if result.passed:
            logger.info("Verification gate passed")
        else:
            logger.warning(
                f"Verification gate failed: missing={result.missing} failed={result.failed}"
            )
        return result

    def enforce(self, session: Session, store: StateStore) -> VerificationResult:
        """Verify, and on failure force the session from COMPLETE back to REVIEW.

        The forced transition is persisted before returning. A session that is
        not sitting in COMPLETE is left alone, so enforcing twice on the same
        evidence has the same effect as enforcing once.
        """
        result = self.verify()
        if result.passed:
            return result

        if session.phase is Phase.COMPLETE:
            reason = "; ".join(
                [f"missing {item}" for item in result.missing]
                + [f"failed {item}" for item in result.failed]
            )
            self.machine.force_back(session, Phase.REVIEW, reason, now=self._clock())
            store.write(session)
        return result

    def _verify_tests(self):
        missing: List[str] = []
        failed: List[str] = []
        try:
            data = read_json_file(self.paths.test_results)
        except StateError as e:
            logger.warning(f"Unreadable test evidence: {e.message}")
            return ["test-results.json unreadable"], failed

        if data is None:
            return ["test-results.json not found"], failed
        if not isinstance(data, dict):
            return ["test-results.json unreadable"], failed

        results = data.get("results")
        if not isinstance(results, dict):
            results = {}
        for category in EVIDENCE_CATEGORIES:
            entry = results.get(category)
            if not isinstance(entry, dict):
                missing.append(f"{category}: no results")
            elif not entry.get("ran"):
                missing.append(f"{category}: not run")
            elif not entry.get("passed"):
                failed.append(f"{category}: failed")

        blockers = data.get("blockers") or []
        if isinstance(blockers, list):
            failed.extend(f"blocker: {blocker}" for blocker in blockers)

        if not data.get("allPassed") and not missing and not failed:
            failed.append("allPassed is false")
        return missing, failed

    def _verify_git(self):
        missing: List[str] = []
        failed: List[str] = []
        try:
            data = read_json_file(self.paths.git_results)
        except StateError as e:
            logger.warning(f"Unreadable publish evidence: {e.message}")
            return missing, failed, "Cannot read git results"

        if data is None:
            return missing, failed, "No git-results.json"
        if not isinstance(data, dict):
            return missing, failed, "Cannot read git results"

        repository = data.get("repository") or {}
        if not repository.get("isGitRepo"):
            return missing, failed, "Not a git repo"
        if not repository.get("hasGhCli"):
            return missing, failed, "No gh CLI"

        enforcement = data.get("enforcement") or {}
        pr = data.get("pr") or {}
        ci = data.get("ci") or {}
        merge = data.get("merge") or {}

        if enforcement.get("requirePR", True) is not False and not pr.get("created"):
            missing.append("PR not created")
        if enforcement.get("requireCIPass", True) is not False:
            if not ci.get("checked"):
                missing.append("CI not checked")
            elif not ci.get("passed"):
                failed.append("CI failed")
        if enforcement.get("requireMerge", True) is not False and not merge.get("merged"):
            missing.append("PR not merged")
        return missing, failed, None

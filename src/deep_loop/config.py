"""Configuration and on-disk layout for the phase-loop orchestrator.

Durations, ceilings and retry bounds are configuration defaults rather than
hard-coded constants. They can be overridden per project in
``<state dir>/config.yaml``:

    stale_hours: 12
    lease_minutes: 45
    ceilings:
      complex: 30
"""

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .exceptions import ConfigError
from .models import ComplexityTier

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_STATE_DIR",
    "STATE_DIR_ENV",
    "LoopConfig",
    "LoopPaths",
    "load_config",
    "resolve_state_dir",
]

DEFAULT_STATE_DIR = ".deep"
STATE_DIR_ENV = "DEEP_LOOP_DIR"

DEFAULT_CEILINGS: Dict[str, int] = {
    ComplexityTier.TRIVIAL.value: 3,
    ComplexityTier.STANDARD.value: 10,
    ComplexityTier.COMPLEX.value: 20,
}


@dataclass
class LoopConfig:
    """Tunable limits for the loop, queue and publish pipeline."""

    stale_hours: float = 8
    lease_minutes: float = 30
    max_attempts: int = 3
    escalation_threshold: int = 3
    transient_retries: int = 2
    tail_bytes: int = 50 * 1024
    max_entries: int = 10
    ceilings: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CEILINGS))
    push_attempts: int = 3
    ci_poll_interval: float = 15
    ci_timeout: float = 600
    remote: str = "origin"
    branch: Optional[str] = None
    lock_timeout: float = 5
    cleanup_on_complete: bool = True

    @property
    def stale_after(self) -> timedelta:
        return timedelta(hours=self.stale_hours)

    @property
    def lease(self) -> timedelta:
        return timedelta(minutes=self.lease_minutes)

    def ceiling_for(self, tier: ComplexityTier) -> int:
        """Iteration ceiling for a complexity tier."""
        return int(self.ceilings.get(tier.value, DEFAULT_CEILINGS[tier.value]))

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "LoopConfig":
        """Build a config from a mapping, ignoring unknown keys.

        ``ceilings`` is merged over the defaults so a file may override a
        single tier.
        """
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            values[key] = value

        if "ceilings" in values:
            ceilings = dict(DEFAULT_CEILINGS)
            ceilings.update({str(k).lower(): int(v) for k, v in (values["ceilings"] or {}).items()})
            values["ceilings"] = ceilings

        return cls(**values)


def resolve_state_dir(root: Optional[Union[str, Path]] = None) -> Path:
    """Resolve the state directory from ``DEEP_LOOP_DIR`` or the default.

    Args:
        root: Base directory; defaults to the current working directory.

    Returns:
        Absolute state directory path (not created).
    """
    base = Path(root) if root is not None else Path.cwd()
    configured = os.environ.get(STATE_DIR_ENV)
    state_dir = Path(configured) if configured else Path(DEFAULT_STATE_DIR)
    if not state_dir.is_absolute():
        state_dir = base / state_dir
    return state_dir.resolve()


def load_config(path: Optional[Path]) -> LoopConfig:
    """Load configuration with defaults applied.

    Args:
        path: Path to a YAML config file. Missing files yield defaults.

    Returns:
        LoopConfig instance.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping.
    """
    if path is None or not path.exists():
        logger.debug(f"Config file not found at {path}, using defaults")
        return LoopConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML in {path}: {e}", path=str(path), original_error=e
        ) from e
    except OSError as e:
        raise ConfigError(
            f"Cannot read config {path}: {e}", path=str(path), original_error=e
        ) from e

    if data is None:
        return LoopConfig()
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config {path} must contain a mapping, got {type(data).__name__}",
            path=str(path),
        )

    try:
        config = LoopConfig.from_mapping(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"Invalid value in {path}: {e}", path=str(path), original_error=e
        ) from e
    logger.info(f"Loaded configuration from {path}")
    return config


@dataclass(frozen=True)
class LoopPaths:
    """Every file the orchestrator reads or writes, relative to one directory."""

    state_dir: Path

    @property
    def state(self) -> Path:
        return self.state_dir / "state.json"

    @property
    def task(self) -> Path:
        return self.state_dir / "task.md"

    @property
    def plan(self) -> Path:
        return self.state_dir / "plan.md"

    @property
    def issues(self) -> Path:
        return self.state_dir / "issues.json"

    @property
    def test_results(self) -> Path:
        return self.state_dir / "test-results.json"

    @property
    def git_results(self) -> Path:
        return self.state_dir / "git-results.json"

    @property
    def backlog(self) -> Path:
        return self.state_dir / "backlog.json"

    @property
    def ledger(self) -> Path:
        return self.state_dir / "ledger.json"

    @property
    def conflicts(self) -> Path:
        return self.state_dir / "conflicts.json"

    @property
    def failures(self) -> Path:
        return self.state_dir / "failures.json"

    @property
    def escalations(self) -> Path:
        return self.state_dir / "escalations.json"

    @property
    def force_exit(self) -> Path:
        return self.state_dir / "FORCE_EXIT"

    @property
    def force_complete(self) -> Path:
        return self.state_dir / "FORCE_COMPLETE"

    @property
    def handoff(self) -> Path:
        return self.state_dir / "HANDOFF"

    @property
    def audit(self) -> Path:
        return self.state_dir / "audit.jsonl"

    @property
    def publish_script(self) -> Path:
        return self.state_dir / "publish.sh"

    @property
    def config(self) -> Path:
        return self.state_dir / "config.yaml"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def archive_dir(self) -> Path:
        return self.state_dir / "archive"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    def session_files(self):
        """Per-session files moved to the archive after completion."""
        return [
            self.state,
            self.task,
            self.plan,
            self.issues,
            self.test_results,
            self.git_results,
            self.publish_script,
        ]

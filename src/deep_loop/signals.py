"""Completion signal detection over the worker transcript.

The transcript is an append-only JSONL file that can grow for hours, so the
detector only reads its trailing window and inspects a bounded number of the
newest worker-authored entries. Entries are parsed structurally: a sentinel
counts only when the worker itself wrote ``<promise>SENTINEL</promise>`` in
plain prose, never inside code, quotes, tool traffic, or user messages.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

__all__ = [
    "CompletionSignalDetector",
    "promise_pattern",
    "transcript_size",
]

PathLike = Union[str, Path]

INLINE_CODE_RE = re.compile(r"(`+)(?:(?!\1)[^\n])+?\1")
FENCE_PREFIXES = ("```", "~~~")


def promise_pattern(sentinel: str) -> "re.Pattern[str]":
    """Regex matching the promise tag for one sentinel."""
    return re.compile(r"<promise>\s*" + re.escape(sentinel) + r"\s*</promise>")


def transcript_size(path: Optional[PathLike]) -> int:
    """Current size of the transcript in bytes (0 if it does not exist)."""
    if not path:
        return 0
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def _visible_prose(text: str) -> str:
    """Strip fenced blocks, quoted lines and inline code from markdown text."""
    kept: List[str] = []
    in_fence = False
    for line in text.splitlines():
        stripped = line.lstrip()
        if stripped.startswith(FENCE_PREFIXES):
            in_fence = not in_fence
            continue
        if in_fence or stripped.startswith(">"):
            continue
        kept.append(INLINE_CODE_RE.sub("", line))
    return "\n".join(kept)


def _is_worker_entry(entry: Dict[str, Any]) -> bool:
    if entry.get("isSidechain"):
        return False
    if entry.get("type") == "assistant":
        return True
    message = entry.get("message")
    if isinstance(message, dict) and message.get("role") == "assistant":
        return True
    return entry.get("role") == "assistant"


def _text_blocks(entry: Dict[str, Any]) -> Iterator[str]:
    """Yield the plain ``text`` blocks of a worker entry."""
    message = entry.get("message")
    content = message.get("content") if isinstance(message, dict) else entry.get("content")

    if isinstance(content, str):
        yield content
        return
    if not isinstance(content, list):
        return
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                yield text


class CompletionSignalDetector:
    """Bounded, structural scan of a transcript for a phase sentinel.

    Attributes:
        tail_bytes: Size of the trailing window read from the transcript.
        max_entries: Number of newest worker entries inspected.
    """

    def __init__(self, tail_bytes: int = 50 * 1024, max_entries: int = 10) -> None:
        if tail_bytes <= 0:
            raise ValueError(f"tail_bytes must be positive, got {tail_bytes}")
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.tail_bytes = tail_bytes
        self.max_entries = max_entries

    def has_signal(
        self,
        transcript_path: Optional[PathLike],
        sentinel: str,
        since_offset: int = 0,
    ) -> bool:
        """Check whether the worker emitted ``sentinel`` recently.

        Args:
            transcript_path: JSONL transcript written by the host.
            sentinel: Sentinel name, e.g. ``PLAN_COMPLETE``.
            since_offset: Byte offset where the current phase began; entries
                that start before it are ignored.

        Returns:
            True if one of the newest worker entries carries the sentinel.
        """
        if not transcript_path:
            return False
        path = Path(transcript_path)
        if not path.exists():
            logger.debug(f"Transcript {path} does not exist yet")
            return False

        pattern = promise_pattern(sentinel)
        inspected = 0
        for entry in self._newest_worker_entries(path, since_offset):
            inspected += 1
            for text in _text_blocks(entry):
                if pattern.search(_visible_prose(text)):
                    logger.info(f"Found sentinel {sentinel} in transcript {path.name}")
                    return True
            if inspected >= self.max_entries:
                break
        return False

    def _newest_worker_entries(self, path: Path, since_offset: int) -> Iterator[Dict[str, Any]]:
        lines = self._read_tail(path, since_offset)
        for line in reversed(lines):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except ValueError:
                logger.debug("Skipping malformed transcript line")
                continue
            if isinstance(entry, dict) and _is_worker_entry(entry):
                yield entry

    def _read_tail(self, path: Path, since_offset: int) -> List[str]:
        """Read complete lines from the trailing window, honouring ``since_offset``."""
        try:
            size = path.stat().st_size
            if since_offset > size:
                logger.debug(
                    f"Transcript shrank below phase offset ({size} < {since_offset}); "
                    "scanning from start of window"
                )
                since_offset = 0
            start = max(size - self.tail_bytes, since_offset, 0)

            with open(path, "rb") as f:
                boundary, data = self._read_from(f, start)
        except OSError as e:
            logger.warning(f"Cannot read transcript {path}: {e}")
            return []

        if not boundary:
            newline = data.find(b"\n")
            data = b"" if newline < 0 else data[newline + 1:]
        return data.decode("utf-8", errors="replace").splitlines()

    @staticmethod
    def _read_from(f: Any, start: int) -> Tuple[bool, bytes]:
        """Read from ``start``; report whether ``start`` is a line boundary."""
        if start == 0:
            return True, f.read()
        f.seek(start - 1)
        previous = f.read(1)
        return previous == b"\n", f.read()

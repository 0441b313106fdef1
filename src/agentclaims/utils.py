"""Common utilities for agentclaims.

- Atomic file writes (tmp file + rename)
- Stable hashing of task ids into file names
- UTC timestamp helpers
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

__all__ = [
    "atomic_write",
    "key_digest",
    "utc_now",
    "format_timestamp",
    "parse_timestamp",
]


def atomic_write(filepath: Path, content: str) -> None:
    """Write content to file atomically using tmp file + rename.

    Readers see either the old or the new file, never a partial write.

    Args:
        filepath: Path to write to
        content: Content to write

    Raises:
        OSError: If write fails
    """
    filepath.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=filepath.parent, prefix=f".{filepath.name}.", text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, filepath)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def key_digest(key: str) -> str:
    """Return a filesystem-safe name for an arbitrary key (hex SHA-256)."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with a trailing ``Z``.

    Naive datetimes are assumed to already be UTC. Whole seconds render as
    ``2025-01-01T00:00:00Z``; fractional seconds are kept.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    if dt.microsecond:
        text = dt.strftime("%Y-%m-%dT%H:%M:%S.%f")
    else:
        text = dt.strftime("%Y-%m-%dT%H:%M:%S")
    return f"{text}Z"


def parse_timestamp(ts: str) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z`` as well as explicit offsets.

    Raises:
        ValueError: If timestamp format is invalid
    """
    if not isinstance(ts, str):
        raise ValueError(f"Timestamp must be a string, got {type(ts).__name__}")
    text = ts.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

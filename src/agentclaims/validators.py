"""Input validation utilities for agentclaims.

Owner ids double as file names for the agent index, so they are restricted
to a conservative character set. Task ids are opaque: only emptiness,
length and NUL bytes are checked, because they are hashed before touching
the filesystem.

All validators raise ValidationError (a ValueError) with a message that can
be shown to the user as-is.
"""

from __future__ import annotations

import re
from typing import Any

__all__ = [
    "ValidationError",
    "validate_agent_id",
    "validate_task_id",
    "validate_ttl",
    "MAX_AGENT_ID_LENGTH",
    "MAX_TASK_ID_LENGTH",
    "MIN_TTL_SECONDS",
    "MAX_TTL_SECONDS",
]

MAX_AGENT_ID_LENGTH = 64
MAX_TASK_ID_LENGTH = 256
MIN_TTL_SECONDS = 1
MAX_TTL_SECONDS = 86400  # 24 hours

# alphanumeric + hyphens + underscores
AGENT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class ValidationError(ValueError):
    """Raised when validation fails."""

    pass


def validate_agent_id(agent_id: Any) -> str:
    """Validate an agent (owner) ID.

    Agent IDs must:
    - Be non-empty strings
    - Contain only alphanumeric characters, hyphens, and underscores
    - Be between 1 and 64 characters long
    - Not start or end with a hyphen

    Args:
        agent_id: Value to validate

    Returns:
        The validated agent ID with surrounding whitespace stripped

    Raises:
        ValidationError: If validation fails with specific reason

    Examples:
        >>> validate_agent_id("agent-A")
        'agent-A'
        >>> validate_agent_id("agent@123")
        ValidationError: Agent ID contains invalid characters
    """
    if not isinstance(agent_id, str):
        raise ValidationError(f"Agent ID must be a string, got {type(agent_id).__name__}")

    if not agent_id or agent_id.strip() == "":
        raise ValidationError("Agent ID cannot be empty")

    agent_id = agent_id.strip()

    if len(agent_id) > MAX_AGENT_ID_LENGTH:
        raise ValidationError(
            f"Agent ID too long (max {MAX_AGENT_ID_LENGTH} characters, got {len(agent_id)})"
        )

    if not AGENT_ID_PATTERN.match(agent_id):
        raise ValidationError(
            "Agent ID contains invalid characters. "
            f"Only alphanumeric, hyphens, and underscores allowed: '{agent_id}'"
        )

    if agent_id.startswith("-") or agent_id.endswith("-"):
        raise ValidationError(f"Agent ID cannot start or end with a hyphen: '{agent_id}'")

    return agent_id


def validate_task_id(task_id: Any) -> str:
    """Validate a task ID.

    Task IDs are chosen by callers and otherwise unconstrained; they are
    compared by exact text, so no stripping or normalization happens here.

    Raises:
        ValidationError: If the id is not a string, is empty or blank, is
            longer than 256 characters, or contains a NUL byte
    """
    if not isinstance(task_id, str):
        raise ValidationError(f"Task ID must be a string, got {type(task_id).__name__}")

    if not task_id or task_id.strip() == "":
        raise ValidationError("Task ID cannot be empty")

    if len(task_id) > MAX_TASK_ID_LENGTH:
        raise ValidationError(
            f"Task ID too long (max {MAX_TASK_ID_LENGTH} characters, got {len(task_id)})"
        )

    if "\x00" in task_id:
        raise ValidationError("Task ID cannot contain NUL bytes")

    return task_id


def validate_ttl(ttl: Any, min_val: int = MIN_TTL_SECONDS, max_val: int = MAX_TTL_SECONDS) -> int:
    """Validate a lease time-to-live in seconds.

    Args:
        ttl: TTL value to validate (int or int-like string)
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        Validated TTL as int

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_ttl(300)
        300
        >>> validate_ttl(0)
        ValidationError: TTL must be between 1 and 86400 seconds, got 0
    """
    if isinstance(ttl, bool):
        raise ValidationError("TTL must be an integer, got bool")
    try:
        ttl_int = int(ttl)
    except (TypeError, ValueError):
        raise ValidationError(f"TTL must be an integer, got {type(ttl).__name__}")

    if ttl_int < min_val or ttl_int > max_val:
        raise ValidationError(f"TTL must be between {min_val} and {max_val} seconds, got {ttl_int}")

    return ttl_int

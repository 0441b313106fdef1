"""Data structures shared by the claim store and its front ends.

A Lease is one worker's time-bounded claim on one task id. Lease records
are immutable once written: there is no renewal, and expiry is a pure
wall-clock comparison against ``claimed_at + ttl_seconds``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from .utils import format_timestamp, parse_timestamp, utc_now

__all__ = [
    "DEFAULT_TTL_SECONDS",
    "Lease",
    "TaskEntry",
    "ClaimStatus",
    "ReleaseStatus",
]

DEFAULT_TTL_SECONDS = 300


class ClaimStatus(str, Enum):
    """Outcome of a claim attempt."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


class ReleaseStatus(str, Enum):
    """Outcome of a release attempt."""

    RELEASED = "released"
    NOT_FOUND = "not_found"
    NOT_OWNER = "not_owner"


@dataclass(frozen=True)
class Lease:
    """An active claim on a task.

    Attributes:
        task_id: Task identifier, the store key
        owner_id: Agent that holds the claim
        claimed_at: UTC time the claim was created
        ttl_seconds: Lifetime of the claim in seconds
    """

    task_id: str
    owner_id: str
    claimed_at: datetime
    ttl_seconds: int = DEFAULT_TTL_SECONDS

    @property
    def expires_at(self) -> datetime:
        return self.claimed_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once ``now`` is strictly past ``expires_at``."""
        if now is None:
            now = utc_now()
        return now > self.expires_at

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        if now is None:
            now = utc_now()
        return (now - self.claimed_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert lease to a JSON-serializable dictionary."""
        return {
            "task_id": self.task_id,
            "owner_id": self.owner_id,
            "claimed_at": format_timestamp(self.claimed_at),
            "expires_at": format_timestamp(self.expires_at),
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Lease:
        """Create a Lease from its dictionary form.

        ``expires_at`` is ignored and recomputed from the other fields.

        Raises:
            KeyError: If a required field is missing
            ValueError: If a field has the wrong type or format
        """
        task_id = data["task_id"]
        owner_id = data["owner_id"]
        if not isinstance(task_id, str) or not isinstance(owner_id, str):
            raise ValueError("task_id and owner_id must be strings")

        ttl = data.get("ttl_seconds", DEFAULT_TTL_SECONDS)
        if isinstance(ttl, bool) or not isinstance(ttl, int):
            raise ValueError(f"ttl_seconds must be an integer, got {ttl!r}")

        return cls(
            task_id=task_id,
            owner_id=owner_id,
            claimed_at=parse_timestamp(data["claimed_at"]),
            ttl_seconds=ttl,
        )

    @classmethod
    def new(cls, task_id: str, owner_id: str, ttl_seconds: int, now: datetime) -> Lease:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return cls(task_id=task_id, owner_id=owner_id, claimed_at=now, ttl_seconds=ttl_seconds)


@dataclass(frozen=True)
class TaskEntry:
    """One line of an agent's task listing.

    ``lease`` is None when the index entry no longer has a matching claim.
    """

    task_id: str
    lease: Optional[Lease] = None

    @property
    def is_orphaned(self) -> bool:
        return self.lease is None

    @property
    def status(self) -> str:
        if self.lease is None:
            return "orphaned"
        return f"claimed_at={format_timestamp(self.lease.claimed_at)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "lease": self.lease.to_dict() if self.lease else None,
        }

"""Read-only summaries of the claim store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from .backends import ClaimBackend
from .models import Lease
from .utils import format_timestamp

__all__ = [
    "StatusReport",
    "collect_status",
    "DEFAULT_RECENT_WINDOW",
    "DEFAULT_RECENT_LIMIT",
]

DEFAULT_RECENT_WINDOW = 300
DEFAULT_RECENT_LIMIT = 5


@dataclass
class StatusReport:
    """Aggregate view of the claim store at one instant.

    Attributes:
        generated_at: The ``now`` the report was computed against
        live_count: Leases that have not expired
        expired_count: Leases past their TTL that no sweep has removed yet
        owner_count: Owners with a non-empty task index
        owners: Those owners, sorted
        recent: Leases claimed inside the trailing window, newest first
        window_seconds: Size of the trailing window
    """

    generated_at: datetime
    live_count: int = 0
    expired_count: int = 0
    owner_count: int = 0
    owners: list[str] = field(default_factory=list)
    recent: list[Lease] = field(default_factory=list)
    window_seconds: int = DEFAULT_RECENT_WINDOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": format_timestamp(self.generated_at),
            "live_count": self.live_count,
            "expired_count": self.expired_count,
            "owner_count": self.owner_count,
            "owners": list(self.owners),
            "window_seconds": self.window_seconds,
            "recent": [lease.to_dict() for lease in self.recent],
        }


def collect_status(
    backend: ClaimBackend,
    now: datetime,
    window_seconds: int = DEFAULT_RECENT_WINDOW,
    limit: Optional[int] = DEFAULT_RECENT_LIMIT,
) -> StatusReport:
    """Summarize the store without mutating it.

    Args:
        backend: Claim store to read
        now: Reference time for expiry and the recent window
        window_seconds: Leases claimed at or after ``now - window_seconds``
            count as recent
        limit: Maximum number of recent leases to return (None = all)
    """
    window_start = now - timedelta(seconds=window_seconds)
    report = StatusReport(generated_at=now, window_seconds=window_seconds)
    recent: list[Lease] = []

    for lease in backend.iter_leases():
        if lease.is_expired(now):
            report.expired_count += 1
        else:
            report.live_count += 1
        if lease.claimed_at >= window_start:
            recent.append(lease)

    recent.sort(key=lambda lease: (lease.claimed_at, lease.task_id), reverse=True)
    report.recent = recent if limit is None else recent[:limit]

    report.owners = backend.index_owners()
    report.owner_count = len(report.owners)
    return report

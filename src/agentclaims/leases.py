"""Task claim coordination for concurrent agents.

This module lets independent agents working on the same project agree on
who owns a named task:

- claim: take an exclusive, time-limited lease on a task id
- release: give a lease back (only its owner may)
- list_tasks: show the tasks an agent believes it holds
- sweep: reclaim leases whose TTL has passed
- status: aggregate counts for humans

Leases are advisory. Identity is whatever owner id the caller passes; the
owner check in release protects against mistakes, not against a hostile
agent. A lease is never renewed: once ``claimed_at + ttl_seconds`` has
passed, any agent may take the task over even if the original owner is
still working on it.

Expiry is passive. Nothing runs in the background; expired leases are
removed by ``sweep`` (run it from a scheduler or before reads) or reclaimed
on demand when another agent claims the same task.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .backends import ClaimBackend, FileClaimBackend
from .config import AgentClaimsConfig, get_config, load_config
from .logging_config import get_logger
from .models import ClaimStatus, Lease, ReleaseStatus, TaskEntry
from .project import get_project_root
from .status import StatusReport, collect_status
from .utils import format_timestamp, utc_now
from .validators import validate_agent_id, validate_task_id, validate_ttl

logger = get_logger(__name__)

__all__ = [
    "LeaseManager",
    "AgentTaskListing",
]

Clock = Callable[[], datetime]

# One retry covers a holder that expired or vanished between our failed
# create and the follow-up read.
CLAIM_ATTEMPTS = 2


class AgentTaskListing:
    """Lazy view of one agent's task index.

    Each iteration re-reads the index and looks every entry up in the claim
    store, so the listing can be iterated any number of times.
    """

    def __init__(self, backend: ClaimBackend, owner_id: str):
        self._backend = backend
        self.owner_id = owner_id

    def __iter__(self) -> Iterator[TaskEntry]:
        for task_id in self._backend.read_index(self.owner_id):
            lease = self._backend.get(task_id)
            # a lease now held by someone else is not this agent's claim
            if lease is not None and lease.owner_id != self.owner_id:
                lease = None
            yield TaskEntry(task_id=task_id, lease=lease)

    def __repr__(self) -> str:
        return f"AgentTaskListing(owner_id={self.owner_id!r})"


class LeaseManager:
    """Claims, releases and expires task leases.

    Usage:
        manager = LeaseManager(project_root=Path("."))
        status, lease = manager.claim("build-1", "agent-A")
        if status is ClaimStatus.CLAIMED:
            ...  # do the work
            manager.release("build-1", "agent-A")
    """

    def __init__(
        self,
        project_root: Optional[Path] = None,
        backend: Optional[ClaimBackend] = None,
        config: Optional[AgentClaimsConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the lease manager.

        Args:
            project_root: Project whose claim store to use (auto-detected if None)
            backend: Storage to use instead of the project's on-disk store
            config: Configuration. None loads the config file of an explicit
                project_root, or the global configuration otherwise
            clock: Returns the current UTC time (None = wall clock)
        """
        if config is None:
            if project_root is not None:
                config = load_config(start_path=get_project_root(project_root))
            else:
                config = get_config()
        self.config = config
        self.clock = clock or utc_now

        if backend is None:
            root = project_root if project_root is not None else self.config.project_root
            self.project_root: Optional[Path] = get_project_root(root)
            backend = FileClaimBackend(
                self.project_root / self.config.claims.claims_dir,
                lock_timeout=self.config.claims.lock_timeout,
            )
        else:
            self.project_root = Path(project_root).resolve() if project_root else None
        self.backend = backend

    # ── Operations ───────────────────────────────────────────────────

    def claim(
        self, task_id: str, owner_id: str, ttl_seconds: Optional[int] = None
    ) -> tuple[ClaimStatus, Optional[Lease]]:
        """Try to take the lease on a task.

        Args:
            task_id: Task to claim
            owner_id: Agent making the claim
            ttl_seconds: Lease lifetime (None = configured default)

        Returns:
            Tuple of (status, lease):
                - (CLAIMED, new lease) if this agent now holds the task
                - (ALREADY_CLAIMED, current lease) if another live lease
                  exists; the lease may be None if it disappeared meanwhile

        Raises:
            ValidationError: If an argument is invalid
            StorageUnavailableError: If the claim store cannot be used
        """
        task_id = validate_task_id(task_id)
        owner_id = validate_agent_id(owner_id)
        if ttl_seconds is None:
            ttl_seconds = self.config.claims.default_ttl
        ttl_seconds = validate_ttl(ttl_seconds)

        current: Optional[Lease] = None
        for _ in range(CLAIM_ATTEMPTS):
            now = self._now()
            lease = Lease.new(task_id, owner_id, ttl_seconds, now)

            if self.backend.create(lease):
                try:
                    self.backend.append_index(owner_id, task_id)
                except Exception:
                    # a lease missing from its owner's index must not outlive the call
                    self.backend.delete_if(task_id, lambda stored: stored == lease)
                    logger.warning(
                        f"Claim of '{task_id}' by {owner_id} rolled back: index update failed"
                    )
                    raise
                logger.info(
                    f"Task '{task_id}' claimed by {owner_id} "
                    f"(expires {format_timestamp(lease.expires_at)})"
                )
                return ClaimStatus.CLAIMED, lease

            current = self.backend.get(task_id)
            if current is None:
                continue
            if not current.is_expired(now):
                break
            self._reclaim_if_expired(task_id, now)

        logger.info(
            f"Task '{task_id}' already claimed"
            + (f" by {current.owner_id}" if current is not None else "")
        )
        return ClaimStatus.ALREADY_CLAIMED, current

    def release(self, task_id: str, owner_id: str) -> ReleaseStatus:
        """Give up a lease held by owner_id.

        Returns:
            RELEASED if the lease was removed, NOT_FOUND if no lease exists,
            NOT_OWNER if another agent holds it (the lease is left untouched)

        Raises:
            ValidationError: If an argument is invalid
            StorageUnavailableError: If the claim store cannot be used
        """
        task_id = validate_task_id(task_id)
        owner_id = validate_agent_id(owner_id)

        deleted, seen = self.backend.delete_if(task_id, lambda lease: lease.owner_id == owner_id)

        if seen is None:
            logger.info(f"Release of '{task_id}' by {owner_id}: no such claim")
            return ReleaseStatus.NOT_FOUND
        if not deleted:
            logger.info(
                f"Release of '{task_id}' by {owner_id} refused: owned by {seen.owner_id}"
            )
            return ReleaseStatus.NOT_OWNER

        self.backend.prune_index(owner_id, task_id)
        logger.info(f"Task '{task_id}' released by {owner_id}")
        return ReleaseStatus.RELEASED

    def list_tasks(self, owner_id: str) -> AgentTaskListing:
        """Return a restartable listing of the tasks in owner_id's index.

        Raises:
            ValidationError: If owner_id is invalid
        """
        return AgentTaskListing(self.backend, validate_agent_id(owner_id))

    def sweep(self) -> int:
        """Remove every expired lease and prune its owner's index.

        All leases are judged against a single ``now`` taken at the start.
        Lock files left behind by released or expired tasks are removed too.
        Safe to run concurrently with claims, releases and other sweeps.

        Returns:
            Number of leases this sweep removed
        """
        now = self._now()
        reclaimed = 0

        for lease in self.backend.iter_leases():
            if not lease.is_expired(now):
                continue
            if self._reclaim_if_expired(lease.task_id, now):
                reclaimed += 1

        if reclaimed:
            logger.info(f"Sweep reclaimed {reclaimed} expired lease(s)")
        else:
            logger.debug("Sweep found no expired leases")

        removed_locks = self.backend.remove_stale_locks()
        if removed_locks:
            logger.debug(f"Sweep removed {removed_locks} unused lock file(s)")
        return reclaimed

    def get_lease(self, task_id: str) -> Optional[Lease]:
        """Return the stored lease for task_id (expired or not), or None."""
        return self.backend.get(validate_task_id(task_id))

    def status(
        self, window_seconds: Optional[int] = None, limit: Optional[int] = None
    ) -> StatusReport:
        """Summarize the claim store.

        Args:
            window_seconds: Trailing window for recent claims (None = configured)
            limit: Maximum recent claims (None = configured; a configured
                recent_limit of null means unlimited)
        """
        if window_seconds is None:
            window_seconds = self.config.status.recent_window
        if limit is None:
            limit = self.config.status.recent_limit
        return collect_status(self.backend, self._now(), window_seconds=window_seconds, limit=limit)

    # ── Internals ────────────────────────────────────────────────────

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _reclaim_if_expired(self, task_id: str, now: datetime) -> bool:
        deleted, seen = self.backend.delete_if(task_id, lambda lease: lease.is_expired(now))
        if not deleted or seen is None:
            return False
        self.backend.prune_index(seen.owner_id, task_id)
        logger.info(
            f"Expired lease on '{task_id}' removed (owner {seen.owner_id}, "
            f"claimed {format_timestamp(seen.claimed_at)})"
        )
        return True

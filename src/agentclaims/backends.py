"""Storage backends for the claim store.

The lease logic only needs two atomic primitives from storage, so any store
that offers them can back it:

- create-if-absent for a lease record (exactly one concurrent creator wins)
- delete-if-predicate-matches for a lease record, atomic per task id

plus a small per-owner append-only task index.

FileClaimBackend is the shared on-disk store used by independent agent
processes on one host. Layout under its root directory:

    .agent_claims/
    ├── claims/        # <sha256(task_id)>.claim -> lease JSON
    ├── agents/        # <owner_id>.tasks -> JSON Lines of task ids
    ├── locks/         # advisory flock files, one per task key / owner;
    │                  # task lock files without a lease are removed by
    │                  # remove_stale_locks (run by every sweep)
    └── quarantine/    # unreadable lease files moved out of the way

Lease files are published with ``os.link`` from a fully written temp file,
which fails if the target exists, so readers never observe a partial record
and two creators can never both succeed.

MemoryClaimBackend keeps the same contract in a dict guarded by a mutex, for
single-process use and tests.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .file_lock import FileLock, FileLockError, FileLockTimeout
from .logging_config import get_logger
from .models import Lease
from .utils import atomic_write, key_digest

logger = get_logger(__name__)

__all__ = [
    "ClaimBackend",
    "FileClaimBackend",
    "MemoryClaimBackend",
    "StorageUnavailableError",
    "LeasePredicate",
]

LeasePredicate = Callable[[Lease], bool]

CLAIM_SUFFIX = ".claim"
INDEX_SUFFIX = ".tasks"
LOCK_SUFFIX = ".lock"
AGENT_LOCK_PREFIX = "agent-"


class StorageUnavailableError(Exception):
    """Raised when the claim store cannot be read or written."""

    pass


class _CorruptRecord(Exception):
    pass


class ClaimBackend(ABC):
    """Abstract claim store.

    Implementations must make ``create`` and ``delete_if`` atomic per task
    id. Nothing is required across different task ids.
    """

    @abstractmethod
    def create(self, lease: Lease) -> bool:
        """Store lease unless a record for its task id already exists.

        Returns:
            True if this call created the record, False if one existed.
        """
        ...

    @abstractmethod
    def get(self, task_id: str) -> Optional[Lease]:
        """Return the stored lease for task_id, or None."""
        ...

    @abstractmethod
    def delete_if(self, task_id: str, predicate: LeasePredicate) -> tuple[bool, Optional[Lease]]:
        """Delete the record for task_id if predicate(lease) is true.

        Returns:
            Tuple of (deleted, seen):
                - (False, None) if no record exists
                - (False, lease) if the predicate rejected the record
                - (True, lease) if the record was deleted
        """
        ...

    @abstractmethod
    def iter_leases(self) -> Iterator[Lease]:
        """Iterate over every stored lease, in no particular order."""
        ...

    @abstractmethod
    def append_index(self, owner_id: str, task_id: str) -> None:
        """Append task_id to owner_id's task index."""
        ...

    @abstractmethod
    def prune_index(self, owner_id: str, task_id: str) -> int:
        """Remove the oldest entry equal to task_id from owner_id's index.

        Each successful claim appends one entry and each removed lease
        prunes one, so an owner that re-claims a task between another
        agent's delete and prune keeps the entry for its new lease.

        Returns:
            Number of entries removed (0 or 1)
        """
        ...

    def remove_stale_locks(self) -> int:
        """Delete per-task lock files whose task has no lease.

        Returns:
            Number of lock files removed
        """
        return 0

    @abstractmethod
    def read_index(self, owner_id: str) -> list[str]:
        """Return owner_id's index entries in claim order."""
        ...

    @abstractmethod
    def index_owners(self) -> list[str]:
        """Return owners whose task index is non-empty, sorted."""
        ...


class MemoryClaimBackend(ClaimBackend):
    """In-process claim store guarded by a single mutex."""

    def __init__(self) -> None:
        self._leases: dict[str, Lease] = {}
        self._indexes: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def create(self, lease: Lease) -> bool:
        with self._lock:
            if lease.task_id in self._leases:
                return False
            self._leases[lease.task_id] = lease
            return True

    def get(self, task_id: str) -> Optional[Lease]:
        with self._lock:
            return self._leases.get(task_id)

    def delete_if(self, task_id: str, predicate: LeasePredicate) -> tuple[bool, Optional[Lease]]:
        with self._lock:
            lease = self._leases.get(task_id)
            if lease is None:
                return False, None
            if not predicate(lease):
                return False, lease
            del self._leases[task_id]
            return True, lease

    def iter_leases(self) -> Iterator[Lease]:
        with self._lock:
            snapshot = list(self._leases.values())
        return iter(snapshot)

    def append_index(self, owner_id: str, task_id: str) -> None:
        with self._lock:
            self._indexes.setdefault(owner_id, []).append(task_id)

    def prune_index(self, owner_id: str, task_id: str) -> int:
        with self._lock:
            entries = self._indexes.get(owner_id, [])
            if task_id not in entries:
                return 0
            entries.remove(task_id)
            return 1

    def read_index(self, owner_id: str) -> list[str]:
        with self._lock:
            return list(self._indexes.get(owner_id, []))

    def index_owners(self) -> list[str]:
        with self._lock:
            return sorted(owner for owner, entries in self._indexes.items() if entries)


class FileClaimBackend(ClaimBackend):
    """Claim store kept in a shared directory.

    Every filesystem failure is reported as StorageUnavailableError.
    """

    def __init__(self, root: Path | str, lock_timeout: float = 10.0):
        self.root = Path(root)
        self.claims_dir = self.root / "claims"
        self.agents_dir = self.root / "agents"
        self.locks_dir = self.root / "locks"
        self.quarantine_dir = self.root / "quarantine"
        self.lock_timeout = lock_timeout
        self._ensure_dirs()

    def __repr__(self) -> str:
        return f"FileClaimBackend(root={self.root})"

    # ── Paths and locking ────────────────────────────────────────────

    def _ensure_dirs(self) -> None:
        with self._storage_errors("create store directories"):
            for directory in (self.claims_dir, self.agents_dir, self.locks_dir):
                directory.mkdir(parents=True, exist_ok=True)

    def _claim_path(self, task_id: str) -> Path:
        return self.claims_dir / f"{key_digest(task_id)}{CLAIM_SUFFIX}"

    def _index_path(self, owner_id: str) -> Path:
        return self.agents_dir / f"{owner_id}{INDEX_SUFFIX}"

    def _key_lock(self, claim_path: Path) -> FileLock:
        return FileLock(
            self.locks_dir / f"{claim_path.stem}{LOCK_SUFFIX}", timeout=self.lock_timeout
        )

    def _index_lock(self, owner_id: str, shared: bool = False) -> FileLock:
        return FileLock(
            self.locks_dir / f"{AGENT_LOCK_PREFIX}{owner_id}{LOCK_SUFFIX}",
            timeout=self.lock_timeout,
            shared=shared,
        )

    @contextmanager
    def _storage_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except (OSError, FileLockError) as e:
            logger.error(f"Claim store failure ({action}) under {self.root}: {e}")
            raise StorageUnavailableError(f"Failed to {action}: {e}") from e

    # ── Lease records ────────────────────────────────────────────────

    def _read_record(self, path: Path) -> Optional[Lease]:
        """Parse one lease file.

        Raises:
            _CorruptRecord: If the file exists but does not hold a lease
        """
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise _CorruptRecord(str(e)) from e

        if not isinstance(data, dict):
            raise _CorruptRecord(f"expected an object, got {type(data).__name__}")
        try:
            return Lease.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise _CorruptRecord(str(e)) from e

    def _quarantine(self, path: Path, reason: str) -> None:
        """Move an unreadable lease file aside. Caller holds the key lock."""
        self.quarantine_dir.mkdir(parents=True, exist_ok=True)
        target = self.quarantine_dir / f"{path.name}.{time.time_ns()}"
        try:
            os.replace(path, target)
            logger.warning(f"Quarantined malformed lease {path} -> {target}: {reason}")
        except FileNotFoundError:
            logger.warning(f"Malformed lease disappeared before quarantine: {path}")

    def _load(self, path: Path) -> Optional[Lease]:
        try:
            return self._read_record(path)
        except _CorruptRecord:
            pass

        with self._key_lock(path):
            try:
                return self._read_record(path)
            except _CorruptRecord as e:
                self._quarantine(path, str(e))
                return None

    def create(self, lease: Lease) -> bool:
        path = self._claim_path(lease.task_id)
        payload = json.dumps(lease.to_dict(), indent=2)

        with self._storage_errors(f"create claim for task '{lease.task_id}'"):
            fd, tmp_path = tempfile.mkstemp(dir=self.claims_dir, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                try:
                    # link() refuses to overwrite, giving create-if-absent
                    os.link(tmp_path, path)
                except FileExistsError:
                    return False
            finally:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass

        return True

    def get(self, task_id: str) -> Optional[Lease]:
        with self._storage_errors(f"read claim for task '{task_id}'"):
            return self._load(self._claim_path(task_id))

    def delete_if(self, task_id: str, predicate: LeasePredicate) -> tuple[bool, Optional[Lease]]:
        path = self._claim_path(task_id)

        with self._storage_errors(f"delete claim for task '{task_id}'"):
            with self._key_lock(path):
                try:
                    lease = self._read_record(path)
                except _CorruptRecord as e:
                    self._quarantine(path, str(e))
                    return False, None

                if lease is None:
                    return False, None
                if not predicate(lease):
                    return False, lease

                try:
                    path.unlink()
                except FileNotFoundError:
                    logger.debug(f"Claim for task '{task_id}' already gone at delete time")
                return True, lease

    def iter_leases(self) -> Iterator[Lease]:
        with self._storage_errors("list claims"):
            paths = sorted(self.claims_dir.glob(f"*{CLAIM_SUFFIX}"))

        for path in paths:
            with self._storage_errors(f"read claim {path.name}"):
                lease = self._load(path)
            if lease is not None:
                yield lease

    def remove_stale_locks(self) -> int:
        """Delete task lock files whose lease is gone.

        A lock file is only unlinked while held, and FileLock re-opens a lock
        file that was replaced while it waited, so removal never lets two
        holders in at once. Lock files another process is using are skipped.
        """
        with self._storage_errors("list lock files"):
            lock_paths = sorted(self.locks_dir.glob(f"*{LOCK_SUFFIX}"))

        removed = 0
        for lock_path in lock_paths:
            if lock_path.name.startswith(AGENT_LOCK_PREFIX):
                continue
            claim_path = self.claims_dir / f"{lock_path.stem}{CLAIM_SUFFIX}"
            if claim_path.exists():
                continue

            with self._storage_errors(f"remove lock file {lock_path.name}"):
                try:
                    with FileLock(lock_path, timeout=0):
                        if claim_path.exists():
                            continue
                        lock_path.unlink(missing_ok=True)
                        removed += 1
                except FileLockTimeout:
                    logger.debug(f"Lock file in use, kept: {lock_path.name}")
        return removed

    # ── Agent index ──────────────────────────────────────────────────

    @staticmethod
    def _parse_index(text: str) -> list[str]:
        entries = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                # plain one-id-per-line files written by older tooling
                entry = line
            entries.append(entry if isinstance(entry, str) else line)
        return entries

    @staticmethod
    def _render_index(entries: list[str]) -> str:
        return "".join(json.dumps(entry) + "\n" for entry in entries)

    def append_index(self, owner_id: str, task_id: str) -> None:
        path = self._index_path(owner_id)
        with self._storage_errors(f"update task index for '{owner_id}'"):
            with self._index_lock(owner_id):
                with path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(task_id) + "\n")
                    f.flush()
                    os.fsync(f.fileno())

    def prune_index(self, owner_id: str, task_id: str) -> int:
        path = self._index_path(owner_id)
        with self._storage_errors(f"update task index for '{owner_id}'"):
            with self._index_lock(owner_id):
                try:
                    entries = self._parse_index(path.read_text(encoding="utf-8"))
                except FileNotFoundError:
                    return 0
                if task_id not in entries:
                    return 0
                entries.remove(task_id)
                atomic_write(path, self._render_index(entries))
                return 1

    def read_index(self, owner_id: str) -> list[str]:
        path = self._index_path(owner_id)
        with self._storage_errors(f"read task index for '{owner_id}'"):
            with self._index_lock(owner_id, shared=True):
                try:
                    return self._parse_index(path.read_text(encoding="utf-8"))
                except FileNotFoundError:
                    return []

    def index_owners(self) -> list[str]:
        with self._storage_errors("list task indexes"):
            owners = []
            for path in self.agents_dir.glob(f"*{INDEX_SUFFIX}"):
                try:
                    if path.stat().st_size > 0:
                        owners.append(path.stem)
                except FileNotFoundError:
                    continue
            return sorted(owners)

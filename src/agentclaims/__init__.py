"""agentclaims - task claim coordination for concurrent agents.

Independent agents sharing a project use a claim store to agree on who is
working on which task:
- Exclusive, time-limited leases on task ids
- Owner-checked release
- Per-agent task listings
- Sweeping of expired leases
- Status summaries for humans
"""

from .backends import ClaimBackend, FileClaimBackend, MemoryClaimBackend, StorageUnavailableError
from .leases import LeaseManager
from .models import ClaimStatus, Lease, ReleaseStatus, TaskEntry
from .validators import ValidationError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "LeaseManager",
    "Lease",
    "TaskEntry",
    "ClaimStatus",
    "ReleaseStatus",
    "ClaimBackend",
    "FileClaimBackend",
    "MemoryClaimBackend",
    "StorageUnavailableError",
    "ValidationError",
]

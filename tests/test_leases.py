"""Unit tests for lease operations.

Tests cover:
- Claim / release ownership rules
- TTL expiry and sweeping
- Reclaiming an expired lease on claim
- Agent task listings (live and orphaned entries)
- Behaviour shared by the in-memory and on-disk stores
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from agentclaims.backends import MemoryClaimBackend, StorageUnavailableError
from agentclaims.config import AgentClaimsConfig, ClaimsConfig, StatusConfig
from agentclaims.leases import LeaseManager
from agentclaims.models import ClaimStatus, Lease, ReleaseStatus
from agentclaims.validators import ValidationError


class TestClaim:
    """Tests for LeaseManager.claim."""

    def test_claim_free_task(self, manager, clock):
        status, lease = manager.claim("build-1", "agent-A")

        assert status is ClaimStatus.CLAIMED
        assert lease.task_id == "build-1"
        assert lease.owner_id == "agent-A"
        assert lease.claimed_at == clock.now
        assert lease.ttl_seconds == 300
        assert manager.get_lease("build-1") == lease

    def test_claim_appends_to_index(self, manager):
        manager.claim("build-1", "agent-A")
        manager.claim("lint-1", "agent-A")

        assert manager.backend.read_index("agent-A") == ["build-1", "lint-1"]

    def test_claim_held_task_reports_holder(self, manager):
        manager.claim("build-1", "agent-A")

        status, current = manager.claim("build-1", "agent-B")

        assert status is ClaimStatus.ALREADY_CLAIMED
        assert current.owner_id == "agent-A"
        assert manager.backend.read_index("agent-B") == []

    def test_owner_cannot_claim_twice(self, manager):
        manager.claim("build-1", "agent-A")

        status, current = manager.claim("build-1", "agent-A")

        assert status is ClaimStatus.ALREADY_CLAIMED
        assert current.owner_id == "agent-A"
        assert manager.backend.read_index("agent-A") == ["build-1"]

    def test_failed_index_update_rolls_back_claim(self, manager):
        with patch.object(
            manager.backend, "append_index", side_effect=StorageUnavailableError("disk full")
        ):
            with pytest.raises(StorageUnavailableError):
                manager.claim("build-1", "agent-A")

        assert manager.get_lease("build-1") is None

        status, lease = manager.claim("build-1", "agent-A")

        assert status is ClaimStatus.CLAIMED
        assert manager.get_lease("build-1") == lease
        assert manager.backend.read_index("agent-A") == ["build-1"]

    def test_custom_ttl(self, manager):
        _, lease = manager.claim("build-1", "agent-A", ttl_seconds=60)
        assert lease.ttl_seconds == 60
        assert lease.expires_at == lease.claimed_at + timedelta(seconds=60)

    def test_default_ttl_from_config(self, clock):
        config = AgentClaimsConfig(claims=ClaimsConfig(default_ttl=900))
        manager = LeaseManager(backend=MemoryClaimBackend(), config=config, clock=clock)

        _, lease = manager.claim("build-1", "agent-A")

        assert lease.ttl_seconds == 900

    def test_claim_expired_lease_takes_over(self, manager, clock):
        manager.claim("build-1", "agent-A", ttl_seconds=10)
        clock.advance(11)

        status, lease = manager.claim("build-1", "agent-B")

        assert status is ClaimStatus.CLAIMED
        assert lease.owner_id == "agent-B"
        assert manager.get_lease("build-1").owner_id == "agent-B"
        # previous holder's index is pruned during the takeover
        assert manager.backend.read_index("agent-A") == []
        assert manager.backend.read_index("agent-B") == ["build-1"]

    def test_claim_at_exact_expiry_is_refused(self, manager, clock):
        manager.claim("build-1", "agent-A", ttl_seconds=10)
        clock.advance(10)

        status, current = manager.claim("build-1", "agent-B")

        assert status is ClaimStatus.ALREADY_CLAIMED
        assert current.owner_id == "agent-A"

    @pytest.mark.parametrize("task_id", ["", "   ", None, "x" * 257, "a\x00b"])
    def test_invalid_task_id(self, manager, task_id):
        with pytest.raises(ValidationError):
            manager.claim(task_id, "agent-A")

    @pytest.mark.parametrize("owner_id", ["", "agent A", "-agent", "a" * 65, 42])
    def test_invalid_owner_id(self, manager, owner_id):
        with pytest.raises(ValidationError):
            manager.claim("build-1", owner_id)

    @pytest.mark.parametrize("ttl", [0, -5, 86401, True, "soon"])
    def test_invalid_ttl(self, manager, ttl):
        with pytest.raises(ValidationError):
            manager.claim("build-1", "agent-A", ttl_seconds=ttl)

    def test_task_ids_are_compared_exactly(self, manager):
        manager.claim("build-1", "agent-A")

        status, _ = manager.claim("build-1 ", "agent-B")
        assert status is ClaimStatus.CLAIMED

    def test_task_id_with_path_characters(self, manager):
        status, _ = manager.claim("../etc/passwd", "agent-A")
        assert status is ClaimStatus.CLAIMED
        assert manager.get_lease("../etc/passwd").owner_id == "agent-A"


class TestRelease:
    """Tests for LeaseManager.release."""

    def test_release_by_owner(self, manager):
        manager.claim("build-1", "agent-A")

        assert manager.release("build-1", "agent-A") is ReleaseStatus.RELEASED
        assert manager.get_lease("build-1") is None
        assert manager.backend.read_index("agent-A") == []

    def test_release_by_other_agent(self, manager):
        _, lease = manager.claim("build-1", "agent-A")

        assert manager.release("build-1", "agent-B") is ReleaseStatus.NOT_OWNER
        assert manager.get_lease("build-1") == lease
        assert manager.backend.read_index("agent-A") == ["build-1"]

    def test_release_missing_task(self, manager):
        assert manager.release("nothing", "agent-A") is ReleaseStatus.NOT_FOUND

    def test_release_twice(self, manager):
        manager.claim("build-1", "agent-A")
        manager.release("build-1", "agent-A")

        assert manager.release("build-1", "agent-A") is ReleaseStatus.NOT_FOUND

    def test_release_keeps_other_index_entries(self, manager):
        manager.claim("build-1", "agent-A")
        manager.claim("lint-1", "agent-A")

        manager.release("build-1", "agent-A")

        assert manager.backend.read_index("agent-A") == ["lint-1"]

    def test_owner_can_release_expired_lease(self, manager, clock):
        manager.claim("build-1", "agent-A", ttl_seconds=10)
        clock.advance(60)

        assert manager.release("build-1", "agent-A") is ReleaseStatus.RELEASED

    def test_handover_between_agents(self, manager):
        """Claim, conflict, refused release, release, reclaim by the other agent."""
        assert manager.claim("build-1", "agent-A")[0] is ClaimStatus.CLAIMED
        assert manager.claim("build-1", "agent-B")[0] is ClaimStatus.ALREADY_CLAIMED
        assert manager.release("build-1", "agent-B") is ReleaseStatus.NOT_OWNER
        assert manager.release("build-1", "agent-A") is ReleaseStatus.RELEASED

        status, lease = manager.claim("build-1", "agent-B")

        assert status is ClaimStatus.CLAIMED
        assert lease.owner_id == "agent-B"


class TestSweep:
    """Tests for LeaseManager.sweep."""

    def test_sweep_respects_ttl_boundary(self, manager, clock):
        start = clock.now
        manager.claim("lint-1", "agent-A", ttl_seconds=300)

        clock.now = start + timedelta(seconds=299)
        assert manager.sweep() == 0
        assert manager.backend.read_index("agent-A") == ["lint-1"]

        clock.now = start + timedelta(seconds=301)
        assert manager.sweep() == 1
        assert manager.get_lease("lint-1") is None
        assert manager.backend.read_index("agent-A") == []

    def test_lease_at_expiry_instant_survives(self, manager, clock):
        manager.claim("lint-1", "agent-A", ttl_seconds=300)
        clock.advance(300)

        assert manager.sweep() == 0
        assert manager.get_lease("lint-1") is not None

    def test_sweep_is_idempotent(self, manager, clock):
        manager.claim("a", "agent-A", ttl_seconds=10)
        manager.claim("b", "agent-B", ttl_seconds=10)
        clock.advance(11)

        assert manager.sweep() == 2
        assert manager.sweep() == 0

    def test_sweep_leaves_live_leases_unchanged(self, manager, clock):
        manager.claim("short", "agent-A", ttl_seconds=10)
        _, long_lease = manager.claim("long", "agent-A", ttl_seconds=1000)
        clock.advance(11)

        assert manager.sweep() == 1
        assert manager.get_lease("short") is None
        assert manager.get_lease("long") == long_lease
        assert manager.backend.read_index("agent-A") == ["long"]

    def test_sweep_empty_store(self, manager):
        assert manager.sweep() == 0

    def test_listing_after_sweep_is_empty(self, manager, clock):
        manager.claim("lint-1", "agent-A", ttl_seconds=300)
        clock.advance(301)
        manager.sweep()

        assert list(manager.list_tasks("agent-A")) == []

    def test_sweep_after_release_race(self, manager, clock):
        """A lease released between the scan and the delete is skipped quietly."""
        manager.claim("build-1", "agent-A", ttl_seconds=10)
        clock.advance(11)

        leases = list(manager.backend.iter_leases())
        manager.release("build-1", "agent-A")
        for lease in leases:
            assert manager._reclaim_if_expired(lease.task_id, clock.now) is False

        assert manager.sweep() == 0

    def test_sweep_does_not_remove_fresh_reclaim(self, manager, clock):
        manager.claim("build-1", "agent-A", ttl_seconds=10)
        clock.advance(11)
        manager.claim("build-1", "agent-B", ttl_seconds=10)

        assert manager.sweep() == 0
        assert manager.get_lease("build-1").owner_id == "agent-B"

    def test_reclaim_by_same_owner_before_prune_keeps_entry(self, manager, clock, monkeypatch):
        """The owner re-claims between the sweep's delete and its index prune."""
        manager.claim("build-1", "agent-A", ttl_seconds=10)
        clock.advance(11)
        delete_if = manager.backend.delete_if
        reclaims = []

        def delete_then_reclaim(task_id, predicate):
            result = delete_if(task_id, predicate)
            if result[0] and not reclaims:
                reclaims.append(manager.claim(task_id, "agent-A", ttl_seconds=10))
            return result

        monkeypatch.setattr(manager.backend, "delete_if", delete_then_reclaim)

        assert manager.sweep() == 1
        assert reclaims[0][0] is ClaimStatus.CLAIMED
        assert manager.backend.read_index("agent-A") == ["build-1"]

        entries = list(manager.list_tasks("agent-A"))
        assert len(entries) == 1
        assert entries[0].lease == reclaims[0][1]
        assert not entries[0].is_orphaned

    def test_sweep_removes_unused_lock_files(self, file_manager, clock):
        file_manager.claim("build-1", "agent-A", ttl_seconds=10)
        file_manager.claim("lint-1", "agent-A")
        file_manager.release("lint-1", "agent-A")
        clock.advance(11)
        locks_dir = file_manager.backend.locks_dir
        assert len(list(locks_dir.glob("*.lock"))) == 2

        assert file_manager.sweep() == 1

        assert [p.name for p in locks_dir.glob("*.lock")] == ["agent-agent-A.lock"]


class TestListTasks:
    """Tests for LeaseManager.list_tasks."""

    def test_list_held_tasks(self, manager):
        _, lease = manager.claim("build-1", "agent-A")

        entries = list(manager.list_tasks("agent-A"))

        assert len(entries) == 1
        assert entries[0].task_id == "build-1"
        assert entries[0].lease == lease
        assert entries[0].status.startswith("claimed_at=")
        assert not entries[0].is_orphaned

    def test_list_unknown_agent(self, manager):
        assert list(manager.list_tasks("agent-Z")) == []

    def test_listing_is_restartable(self, manager):
        manager.claim("build-1", "agent-A")
        listing = manager.list_tasks("agent-A")

        assert [e.task_id for e in listing] == ["build-1"]
        manager.claim("lint-1", "agent-A")
        assert [e.task_id for e in listing] == ["build-1", "lint-1"]

    def test_orphaned_entry(self, manager):
        manager.claim("build-1", "agent-A")
        # lease removed without touching the index
        manager.backend.delete_if("build-1", lambda lease: True)

        entries = list(manager.list_tasks("agent-A"))

        assert [(e.task_id, e.status) for e in entries] == [("build-1", "orphaned")]

    def test_entry_held_by_other_agent_is_orphaned(self, manager):
        manager.claim("build-1", "agent-A")
        manager.backend.delete_if("build-1", lambda lease: True)
        manager.claim("build-1", "agent-B")

        entries = list(manager.list_tasks("agent-A"))

        assert entries[0].is_orphaned

    def test_expired_unswept_lease_still_listed(self, manager, clock):
        manager.claim("build-1", "agent-A", ttl_seconds=10)
        clock.advance(60)

        entries = list(manager.list_tasks("agent-A"))

        assert entries[0].lease is not None
        assert entries[0].lease.is_expired(clock.now)

    def test_invalid_owner(self, manager):
        with pytest.raises(ValidationError):
            manager.list_tasks("bad owner")


class TestStatus:
    """Tests for LeaseManager.status."""

    def test_status_counts(self, manager, clock):
        manager.claim("a", "agent-A", ttl_seconds=10)
        manager.claim("b", "agent-B")
        manager.claim("c", "agent-B")
        clock.advance(20)

        report = manager.status()

        assert report.live_count == 2
        assert report.expired_count == 1
        assert report.owner_count == 2
        assert report.owners == ["agent-A", "agent-B"]

    def test_status_uses_configured_window(self, clock):
        config = AgentClaimsConfig(status=StatusConfig(recent_window=60, recent_limit=None))
        manager = LeaseManager(backend=MemoryClaimBackend(), config=config, clock=clock)
        manager.claim("old", "agent-A")
        clock.advance(120)
        manager.claim("new", "agent-A")

        report = manager.status()

        assert [lease.task_id for lease in report.recent] == ["new"]
        assert report.window_seconds == 60

    def test_status_explicit_limit(self, manager, clock):
        for i in range(4):
            manager.claim(f"task-{i}", "agent-A")
            clock.advance(1)

        report = manager.status(limit=2)

        assert [lease.task_id for lease in report.recent] == ["task-3", "task-2"]

    def test_status_does_not_mutate(self, manager, clock):
        manager.claim("a", "agent-A", ttl_seconds=10)
        clock.advance(20)

        manager.status()

        assert manager.get_lease("a") is not None


class TestLeaseManagerSetup:
    """Tests for LeaseManager construction."""

    def test_file_store_under_project_root(self, temp_project_dir):
        manager = LeaseManager(project_root=temp_project_dir, config=AgentClaimsConfig())

        assert manager.project_root == temp_project_dir.resolve()
        assert manager.backend.root == temp_project_dir.resolve() / ".agent_claims"
        assert (temp_project_dir / ".agent_claims" / "claims").is_dir()

    def test_project_root_from_environment(self, temp_project_dir, monkeypatch):
        monkeypatch.setenv("AGENTCLAIMS_ROOT", str(temp_project_dir))

        manager = LeaseManager(config=AgentClaimsConfig())

        assert manager.project_root == temp_project_dir.resolve()

    def test_claims_dir_from_config(self, temp_project_dir):
        config = AgentClaimsConfig(claims=ClaimsConfig(claims_dir="state/claims"))
        manager = LeaseManager(project_root=temp_project_dir, config=config)

        assert manager.backend.root == temp_project_dir.resolve() / "state" / "claims"

    def test_config_file_read_from_project_root(self, temp_project_dir, tmp_path, monkeypatch):
        (temp_project_dir / ".agentclaims.yaml").write_text("claims:\n  claims_dir: .claims\n")
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)

        manager = LeaseManager(project_root=temp_project_dir)

        assert manager.config.claims.claims_dir == ".claims"
        assert manager.backend.root == temp_project_dir.resolve() / ".claims"

    def test_two_managers_share_store(self, temp_project_dir):
        first = LeaseManager(project_root=temp_project_dir, config=AgentClaimsConfig())
        second = LeaseManager(project_root=temp_project_dir, config=AgentClaimsConfig())

        first.claim("build-1", "agent-A")

        assert second.claim("build-1", "agent-B")[0] is ClaimStatus.ALREADY_CLAIMED
        assert second.release("build-1", "agent-A") is ReleaseStatus.RELEASED

    def test_naive_clock_is_treated_as_utc(self):
        naive = datetime(2025, 1, 1, 12, 0, 0)
        manager = LeaseManager(
            backend=MemoryClaimBackend(), config=AgentClaimsConfig(), clock=lambda: naive
        )

        _, lease = manager.claim("build-1", "agent-A")

        assert lease.claimed_at == naive.replace(tzinfo=timezone.utc)


class TestLeaseModel:
    """Tests for the Lease record."""

    def test_round_trip_through_dict(self):
        lease = Lease(
            task_id="build-1",
            owner_id="agent-A",
            claimed_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            ttl_seconds=300,
        )

        data = lease.to_dict()

        assert data["claimed_at"] == "2025-01-01T00:00:00Z"
        assert data["expires_at"] == "2025-01-01T00:05:00Z"
        assert Lease.from_dict(data) == lease

    def test_from_dict_defaults_ttl(self):
        lease = Lease.from_dict(
            {"task_id": "t", "owner_id": "a", "claimed_at": "2025-01-01T00:00:00Z"}
        )
        assert lease.ttl_seconds == 300

    @pytest.mark.parametrize(
        "data",
        [
            {"task_id": 1, "owner_id": "a", "claimed_at": "2025-01-01T00:00:00Z"},
            {"task_id": "t", "owner_id": "a", "claimed_at": "yesterday"},
            {"task_id": "t", "owner_id": "a", "claimed_at": "2025-01-01T00:00:00Z", "ttl_seconds": "300"},
        ],
    )
    def test_from_dict_rejects_bad_fields(self, data):
        with pytest.raises(ValueError):
            Lease.from_dict(data)

    def test_from_dict_missing_field(self):
        with pytest.raises(KeyError):
            Lease.from_dict({"task_id": "t", "owner_id": "a"})

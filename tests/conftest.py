"""Pytest configuration and shared fixtures for agentclaims tests.

This module provides:
- Temporary project directories
- A controllable clock for TTL tests
- Lease managers over the in-memory and on-disk stores
- Sample YAML/TOML configuration
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agentclaims.backends import FileClaimBackend, MemoryClaimBackend
from agentclaims.config import AgentClaimsConfig, reset_config
from agentclaims.leases import LeaseManager

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set_offset(self, seconds: float) -> datetime:
        """Move to T0 + seconds."""
        self.now = T0 + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def reset_config_singleton(monkeypatch):
    """Keep configuration and environment from leaking between tests."""
    monkeypatch.delenv("AGENTCLAIMS_ROOT", raising=False)
    monkeypatch.delenv("AGENTCLAIMS_AGENT_ID", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_project_dir(tmp_path):
    """Create a temporary project directory (with a .git marker)."""
    project = tmp_path / "project"
    project.mkdir()
    (project / ".git").mkdir()
    return project


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_manager(clock):
    """LeaseManager over an in-memory store with a fake clock."""
    return LeaseManager(backend=MemoryClaimBackend(), config=AgentClaimsConfig(), clock=clock)


@pytest.fixture
def file_backend(temp_project_dir):
    return FileClaimBackend(temp_project_dir / ".agent_claims", lock_timeout=2.0)


@pytest.fixture
def file_manager(file_backend, clock):
    """LeaseManager over an on-disk store with a fake clock."""
    return LeaseManager(backend=file_backend, config=AgentClaimsConfig(), clock=clock)


@pytest.fixture(params=["memory", "file"])
def manager(request, clock, temp_project_dir):
    """LeaseManager over each store implementation."""
    if request.param == "memory":
        backend = MemoryClaimBackend()
    else:
        backend = FileClaimBackend(temp_project_dir / ".agent_claims", lock_timeout=2.0)
    return LeaseManager(backend=backend, config=AgentClaimsConfig(), clock=clock)


@pytest.fixture
def sample_yaml_config():
    """Provide a sample YAML config string."""
    return """# agentclaims configuration
claims:
  default_ttl: 600
  claims_dir: .claims
  lock_timeout: 5.0

status:
  recent_window: 120
  recent_limit: 10

logging:
  level: INFO
"""


@pytest.fixture
def sample_toml_config():
    """Provide a sample TOML config string."""
    return """# agentclaims configuration
[claims]
default_ttl = 900
claims_dir = ".claims"

[status]
recent_window = 60

[logging]
level = "DEBUG"
"""


@pytest.fixture
def yaml_config_file(tmp_path: Path, sample_yaml_config):
    config_file = tmp_path / ".agentclaims.yaml"
    config_file.write_text(sample_yaml_config)
    return config_file


@pytest.fixture
def toml_config_file(tmp_path: Path, sample_toml_config):
    config_file = tmp_path / ".agentclaims.toml"
    config_file.write_text(sample_toml_config)
    return config_file

"""Configuration system for agentclaims.

This module provides a configuration system that:
- Defines configuration schema using dataclasses
- Supports loading from YAML and TOML files
- Provides defaults matching the historical shell tooling (300s claim TTL)
- Validates configuration values
- Implements thread-safe singleton pattern
- Supports configuration reload

Configuration files are searched in the following order:
1. Explicit path provided to load_config()
2. .agentclaims.yaml in the current directory or a parent
3. .agentclaims.toml in the current directory or a parent
4. Default values

Example configuration (.agentclaims.yaml):
    claims:
      default_ttl: 300
      claims_dir: .agent_claims
      lock_timeout: 10.0

    status:
      recent_window: 300
      recent_limit: 5

    logging:
      level: WARNING
      log_file: null

Example configuration (.agentclaims.toml):
    [claims]
    default_ttl = 300
    claims_dir = ".agent_claims"

    [status]
    recent_window = 300
    recent_limit = 5

    [logging]
    level = "INFO"
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePath
from typing import Any

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python 3.10

import yaml

from .logging_config import LOG_LEVELS
from .validators import MAX_TTL_SECONDS, MIN_TTL_SECONDS

# YAML DoS prevention limits
MAX_CONFIG_FILE_SIZE_BYTES = 1 * 1024 * 1024  # 1MB
MAX_YAML_NESTING_DEPTH = 10

CONFIG_FILE_NAMES = (".agentclaims.yaml", ".agentclaims.toml")

__all__ = [
    "ClaimsConfig",
    "StatusConfig",
    "LoggingConfig",
    "AgentClaimsConfig",
    "ConfigValidationError",
    "DEFAULT_CONFIG_YAML",
    "load_config",
    "get_config",
    "reload_config",
    "reset_config",
    "find_config_file",
]


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ClaimsConfig:
    """Configuration for the claim store.

    Attributes:
        default_ttl: Lease lifetime in seconds used when a claim gives none
        claims_dir: Store directory name, relative to the project root
        lock_timeout: Seconds to wait for a per-key store lock before
            reporting the store as unavailable
    """

    default_ttl: int = 300
    claims_dir: str = ".agent_claims"
    lock_timeout: float = 10.0

    def validate(self) -> None:
        """Validate claim store configuration.

        Raises:
            ConfigValidationError: If validation fails
        """
        if not isinstance(self.default_ttl, int) or isinstance(self.default_ttl, bool):
            raise ConfigValidationError(
                f"default_ttl must be an integer, got {type(self.default_ttl).__name__}"
            )
        if self.default_ttl < MIN_TTL_SECONDS:
            raise ConfigValidationError(f"default_ttl must be > 0, got {self.default_ttl}")
        if self.default_ttl > MAX_TTL_SECONDS:
            raise ConfigValidationError(
                f"default_ttl too high (max {MAX_TTL_SECONDS}s), got {self.default_ttl}"
            )
        if not isinstance(self.claims_dir, str) or not self.claims_dir.strip():
            raise ConfigValidationError("claims_dir cannot be empty")
        if PurePath(self.claims_dir).is_absolute() or ".." in PurePath(self.claims_dir).parts:
            raise ConfigValidationError(
                f"claims_dir must be a path inside the project root, got '{self.claims_dir}'"
            )
        if not isinstance(self.lock_timeout, (int, float)) or isinstance(self.lock_timeout, bool):
            raise ConfigValidationError(
                f"lock_timeout must be a number, got {type(self.lock_timeout).__name__}"
            )
        if self.lock_timeout <= 0:
            raise ConfigValidationError(f"lock_timeout must be > 0, got {self.lock_timeout}")
        if self.lock_timeout > 300:
            raise ConfigValidationError(
                f"lock_timeout too high (max 300s), got {self.lock_timeout}"
            )


@dataclass
class StatusConfig:
    """Configuration for the status report.

    Attributes:
        recent_window: Trailing window in seconds for the "recent claims" view
        recent_limit: Maximum number of recent claims shown (None = all)
    """

    recent_window: int = 300
    recent_limit: int | None = 5

    def validate(self) -> None:
        """Validate status configuration.

        Raises:
            ConfigValidationError: If validation fails
        """
        if not isinstance(self.recent_window, int) or isinstance(self.recent_window, bool):
            raise ConfigValidationError(
                f"recent_window must be an integer, got {type(self.recent_window).__name__}"
            )
        if self.recent_window <= 0:
            raise ConfigValidationError(f"recent_window must be > 0, got {self.recent_window}")
        if self.recent_window > 86400:
            raise ConfigValidationError(
                f"recent_window too high (max 24h), got {self.recent_window}"
            )
        if self.recent_limit is not None:
            if not isinstance(self.recent_limit, int) or isinstance(self.recent_limit, bool):
                raise ConfigValidationError(
                    f"recent_limit must be an integer, got {type(self.recent_limit).__name__}"
                )
            if self.recent_limit < 1:
                raise ConfigValidationError(
                    f"recent_limit must be >= 1, got {self.recent_limit}"
                )


@dataclass
class LoggingConfig:
    """Configuration for logging.

    Attributes:
        level: Log level name
        log_file: Optional file to append log records to
    """

    level: str = "WARNING"
    log_file: str | None = None

    def validate(self) -> None:
        """Validate logging configuration.

        Raises:
            ConfigValidationError: If validation fails
        """
        if not isinstance(self.level, str) or self.level.upper() not in LOG_LEVELS:
            raise ConfigValidationError(
                f"logging.level must be one of {LOG_LEVELS}, got '{self.level}'"
            )
        if self.log_file is not None and (
            not isinstance(self.log_file, str) or not self.log_file.strip()
        ):
            raise ConfigValidationError("logging.log_file cannot be empty")


@dataclass
class AgentClaimsConfig:
    """Complete configuration for agentclaims.

    Attributes:
        claims: Claim store configuration
        status: Status report configuration
        logging: Logging configuration
        project_root: Project root directory (None = auto-detect)
    """

    claims: ClaimsConfig = field(default_factory=ClaimsConfig)
    status: StatusConfig = field(default_factory=StatusConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    project_root: Path | None = None

    def validate(self) -> None:
        """Validate all configuration sections.

        Raises:
            ConfigValidationError: If any validation fails
        """
        self.claims.validate()
        self.status.validate()
        self.logging.validate()

        if self.project_root is not None:
            project_path = Path(self.project_root)
            if not project_path.exists():
                raise ConfigValidationError(f"project_root does not exist: {project_path}")
            if not project_path.is_dir():
                raise ConfigValidationError(f"project_root is not a directory: {project_path}")

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        result: dict[str, Any] = {
            "claims": asdict(self.claims),
            "status": asdict(self.status),
            "logging": asdict(self.logging),
        }
        if self.project_root is not None:
            result["project_root"] = str(self.project_root)
        return result


DEFAULT_CONFIG_YAML = """# agentclaims configuration

# Task claim store
claims:
  # Lease lifetime in seconds when a claim does not pass one
  default_ttl: 300
  # Store directory, relative to the project root
  claims_dir: .agent_claims
  # Seconds to wait for a per-task store lock
  lock_timeout: 10.0

# Status report
status:
  # Trailing window in seconds for "recent claims"
  recent_window: 300
  # Maximum recent claims to show (null = all)
  recent_limit: 5

# Logging (written to stderr)
logging:
  level: WARNING
  log_file: null

# Project root directory (null = auto-detect)
project_root: null
"""


def _check_yaml_nesting_depth(
    obj: Any, current_depth: int = 0, max_depth: int = MAX_YAML_NESTING_DEPTH
) -> None:
    """Reject YAML documents nested deeper than max_depth.

    Raises:
        ConfigValidationError: If nesting depth exceeds max_depth
    """
    if current_depth > max_depth:
        raise ConfigValidationError(f"YAML nesting depth exceeds maximum of {max_depth} levels")

    if isinstance(obj, dict):
        for value in obj.values():
            _check_yaml_nesting_depth(value, current_depth + 1, max_depth)
    elif isinstance(obj, list):
        for item in obj:
            _check_yaml_nesting_depth(item, current_depth + 1, max_depth)


def find_config_file(start_path: Path | None = None) -> Path | None:
    """Find configuration file in the given directory or its parents.

    YAML wins over TOML when both exist in the same directory.

    Args:
        start_path: Starting directory for search (None = current directory)

    Returns:
        Path to configuration file if found, None otherwise
    """
    search_path = (start_path or Path.cwd()).resolve()

    for directory in [search_path] + list(search_path.parents):
        for name in CONFIG_FILE_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate

    return None


def _check_file_size(path: Path) -> None:
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigValidationError(f"Failed to check file size for {path}: {e}") from e
    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigValidationError(
            f"Configuration file too large: {file_size} bytes "
            f"(max {MAX_CONFIG_FILE_SIZE_BYTES} bytes)"
        )


def _load_yaml_config(path: Path) -> dict[str, Any]:
    """Load configuration from YAML file.

    Raises:
        ConfigValidationError: If the file is too large or cannot be parsed
    """
    _check_file_size(path)

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Failed to parse YAML file {path}: {e}") from e
    except OSError as e:
        raise ConfigValidationError(f"Failed to load YAML file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"Configuration root in {path} must be a mapping, got {type(data).__name__}"
        )
    _check_yaml_nesting_depth(data)
    return data


def _load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file.

    Raises:
        ConfigValidationError: If the file is too large or cannot be parsed
    """
    _check_file_size(path)

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigValidationError(f"Failed to parse TOML file {path}: {e}") from e
    except OSError as e:
        raise ConfigValidationError(f"Failed to load TOML file {path}: {e}") from e


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"Section '{name}' must be a mapping, got {type(value).__name__}")
    return value


def _dict_to_config(data: dict[str, Any]) -> AgentClaimsConfig:
    """Convert a parsed configuration dictionary to AgentClaimsConfig.

    Missing keys fall back to the dataclass defaults.

    Raises:
        ConfigValidationError: If a section has the wrong shape
    """
    claims_data = _section(data, "claims")
    status_data = _section(data, "status")
    logging_data = _section(data, "logging")

    defaults_claims = ClaimsConfig()
    defaults_status = StatusConfig()
    defaults_logging = LoggingConfig()

    claims = ClaimsConfig(
        default_ttl=claims_data.get("default_ttl", defaults_claims.default_ttl),
        claims_dir=claims_data.get("claims_dir", defaults_claims.claims_dir),
        lock_timeout=claims_data.get("lock_timeout", defaults_claims.lock_timeout),
    )
    status = StatusConfig(
        recent_window=status_data.get("recent_window", defaults_status.recent_window),
        recent_limit=status_data.get("recent_limit", defaults_status.recent_limit),
    )
    logging_config = LoggingConfig(
        level=logging_data.get("level", defaults_logging.level),
        log_file=logging_data.get("log_file", defaults_logging.log_file),
    )

    project_root = None
    if data.get("project_root") is not None:
        project_root = Path(data["project_root"])

    return AgentClaimsConfig(
        claims=claims,
        status=status,
        logging=logging_config,
        project_root=project_root,
    )


def load_config(
    config_path: Path | None = None, start_path: Path | None = None
) -> AgentClaimsConfig:
    """Load configuration from file or use defaults.

    Args:
        config_path: Optional explicit path to configuration file
        start_path: Directory to search upward from when no explicit path is
            given (None = current directory). Pass the project root so every
            agent on a project reads the same file.

    Returns:
        Loaded and validated configuration

    Raises:
        ConfigValidationError: If configuration is invalid or the explicit
            file does not exist
    """
    config_dict: dict[str, Any] = {}

    if config_path is not None:
        file_to_load: Path | None = Path(config_path)
        if not file_to_load.exists():
            raise ConfigValidationError(f"Configuration file not found: {file_to_load}")
    else:
        file_to_load = find_config_file(start_path)

    if file_to_load is not None:
        suffix = file_to_load.suffix.lower()

        if suffix in (".yaml", ".yml"):
            config_dict = _load_yaml_config(file_to_load)
        elif suffix == ".toml":
            config_dict = _load_toml_config(file_to_load)
        else:
            raise ConfigValidationError(
                f"Unsupported configuration file format: {suffix}. "
                "Supported formats: .yaml, .yml, .toml"
            )

    config = _dict_to_config(config_dict)
    config.validate()

    return config


# Global configuration singleton
_config_instance: AgentClaimsConfig | None = None
_config_lock = threading.Lock()


def get_config() -> AgentClaimsConfig:
    """Get singleton configuration instance.

    Lazy-loads configuration on first access. Thread-safe.
    """
    global _config_instance

    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = load_config()

    return _config_instance


def reload_config(
    config_path: Path | None = None, start_path: Path | None = None
) -> AgentClaimsConfig:
    """Force reload configuration from disk.

    Args:
        config_path: Optional explicit path to configuration file
        start_path: Directory to search upward from (None = current directory)

    Returns:
        Newly loaded configuration instance

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    global _config_instance

    with _config_lock:
        _config_instance = load_config(config_path, start_path)
        return _config_instance


def reset_config() -> None:
    """Drop the cached singleton so the next get_config() reloads."""
    global _config_instance

    with _config_lock:
        _config_instance = None

"""Command-line interface for agentclaims.

Each subcommand maps onto one LeaseManager operation. Exit codes:

- 0: success
- 1: expected contention outcome (already claimed, not found, not owner)
     or invalid input
- 2: the claim store is unavailable
"""

from __future__ import annotations

import argparse
import functools
import json
import os
import sys
from pathlib import Path
from typing import Callable, NoReturn, Optional

from agentclaims.backends import StorageUnavailableError
from agentclaims.config import (
    DEFAULT_CONFIG_YAML,
    ConfigValidationError,
    find_config_file,
    get_config,
    load_config,
    reload_config,
)
from agentclaims.leases import LeaseManager
from agentclaims.logging_config import LOG_LEVELS, setup_logging
from agentclaims.models import ClaimStatus, ReleaseStatus
from agentclaims.project import get_project_root
from agentclaims.utils import format_timestamp
from agentclaims.validators import ValidationError

__all__ = ["main", "AGENT_ID_ENV_VAR"]

AGENT_ID_ENV_VAR = "AGENTCLAIMS_AGENT_ID"

EXIT_OK = 0
EXIT_REFUSED = 1
EXIT_STORAGE = 2

CommandHandler = Callable[[argparse.Namespace], None]


def _handles_errors(func: CommandHandler) -> CommandHandler:
    """Turn validation and storage failures into messages and exit codes."""

    @functools.wraps(func)
    def wrapper(args: argparse.Namespace) -> None:
        try:
            func(args)
        except ValidationError as e:
            print(f"Validation error: {e}", file=sys.stderr)
            sys.exit(EXIT_REFUSED)
        except ConfigValidationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            sys.exit(EXIT_REFUSED)
        except StorageUnavailableError as e:
            print(f"Claim store unavailable: {e}", file=sys.stderr)
            sys.exit(EXIT_STORAGE)

    return wrapper


def _resolve_agent_id(args: argparse.Namespace) -> str:
    agent_id = getattr(args, "agent_id", None) or os.environ.get(AGENT_ID_ENV_VAR)
    if not agent_id:
        print(
            f"Error: agent id not set (pass --agent-id or export {AGENT_ID_ENV_VAR})",
            file=sys.stderr,
        )
        sys.exit(EXIT_REFUSED)
    return agent_id


def _project_root(args: argparse.Namespace) -> Path:
    return get_project_root(getattr(args, "project_root", None))


def _manager(args: argparse.Namespace) -> LeaseManager:
    return LeaseManager(project_root=args.project_root, config=get_config())


@_handles_errors
def cmd_claim(args: argparse.Namespace) -> None:
    """Claim a task for this agent."""
    agent_id = _resolve_agent_id(args)
    manager = _manager(args)

    status, lease = manager.claim(args.task_id, agent_id, ttl_seconds=args.ttl)

    if args.json:
        print(
            json.dumps(
                {"status": status.value, "lease": lease.to_dict() if lease else None}, indent=2
            )
        )
        sys.exit(EXIT_OK if status is ClaimStatus.CLAIMED else EXIT_REFUSED)

    if status is ClaimStatus.CLAIMED:
        print(f"✓ Task '{args.task_id}' claimed by {agent_id}")
        print(f"  Expires: {format_timestamp(lease.expires_at)}")
        sys.exit(EXIT_OK)

    print(f"✗ Task '{args.task_id}' already claimed", file=sys.stderr)
    if lease is not None:
        print(f"  Current owner: {lease.owner_id}", file=sys.stderr)
        print(f"  Claimed at: {format_timestamp(lease.claimed_at)}", file=sys.stderr)
    sys.exit(EXIT_REFUSED)


@_handles_errors
def cmd_release(args: argparse.Namespace) -> None:
    """Release a task held by this agent."""
    agent_id = _resolve_agent_id(args)
    manager = _manager(args)

    result = manager.release(args.task_id, agent_id)

    if result is ReleaseStatus.RELEASED:
        print(f"✓ Task '{args.task_id}' released")
        sys.exit(EXIT_OK)

    if result is ReleaseStatus.NOT_OWNER:
        lease = manager.get_lease(args.task_id)
        owner = lease.owner_id if lease else "another agent"
        print(f"✗ Cannot release task '{args.task_id}' - owned by {owner}", file=sys.stderr)
    else:
        print(f"✗ Task '{args.task_id}' not found", file=sys.stderr)
    sys.exit(EXIT_REFUSED)


@_handles_errors
def cmd_list(args: argparse.Namespace) -> None:
    """List the tasks in an agent's index."""
    agent_id = _resolve_agent_id(args)
    manager = _manager(args)

    entries = list(manager.list_tasks(agent_id))

    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        sys.exit(EXIT_OK)

    print(f"=== Tasks for {agent_id} ===")
    if not entries:
        print("  No active tasks")
        sys.exit(EXIT_OK)

    now = manager.clock()
    for entry in entries:
        if entry.lease is None:
            print(f"  • {entry.task_id} (orphaned - claim missing)")
            continue
        marker = " [EXPIRED]" if entry.lease.is_expired(now) else ""
        print(f"  • {entry.task_id}{marker}")
        print(f"    Claimed: {format_timestamp(entry.lease.claimed_at)}")
        print(f"    Expires: {format_timestamp(entry.lease.expires_at)}")
    sys.exit(EXIT_OK)


@_handles_errors
def cmd_who_has(args: argparse.Namespace) -> None:
    """Show who holds a task."""
    manager = _manager(args)
    lease = manager.get_lease(args.task_id)

    if args.json:
        print(json.dumps(lease.to_dict() if lease else None, indent=2))
        sys.exit(EXIT_OK)

    if lease is None:
        print(f"No active claim on: {args.task_id}")
        sys.exit(EXIT_OK)

    now = manager.clock()
    marker = " [EXPIRED]" if lease.is_expired(now) else ""
    print(f"Claim on: {args.task_id}{marker}")
    print(f"  Held by: {lease.owner_id}")
    print(f"  Claimed at: {format_timestamp(lease.claimed_at)}")
    print(f"  Expires at: {format_timestamp(lease.expires_at)}")
    print(f"  Age: {lease.age_seconds(now):.1f} seconds")
    sys.exit(EXIT_OK)


@_handles_errors
def cmd_sweep(args: argparse.Namespace) -> None:
    """Remove expired claims."""
    manager = _manager(args)
    count = manager.sweep()
    print(f"Cleaned {count} expired claim(s)")
    sys.exit(EXIT_OK)


@_handles_errors
def cmd_status(args: argparse.Namespace) -> None:
    """Show a summary of the claim store."""
    manager = _manager(args)
    report = manager.status()
    agent_id = os.environ.get(AGENT_ID_ENV_VAR)

    if args.json:
        data = report.to_dict()
        data["agent_id"] = agent_id
        data["project_root"] = str(manager.project_root) if manager.project_root else None
        print(json.dumps(data, indent=2))
        sys.exit(EXIT_OK)

    print("=== Claim Coordination Status ===")
    print(f"Agent ID: {agent_id or 'Not set'}")
    print(f"Project Root: {manager.project_root or 'Not set'}")
    print()
    print(f"Active claims: {report.live_count}")
    if report.expired_count:
        print(f"Expired claims awaiting sweep: {report.expired_count}")
    print(f"Active agents: {report.owner_count}")

    if report.recent:
        print()
        print(f"Recent claims (last {report.window_seconds}s):")
        for lease in report.recent:
            print(f"  • {lease.task_id} by {lease.owner_id} at {format_timestamp(lease.claimed_at)}")
    sys.exit(EXIT_OK)


def cmd_config_init(args: argparse.Namespace) -> None:
    """Create default configuration file."""
    config_path = Path(args.output or ".agentclaims.yaml")

    if config_path.exists() and not args.force:
        print(f"Error: Config file already exists: {config_path}", file=sys.stderr)
        print("Use --force to overwrite", file=sys.stderr)
        sys.exit(EXIT_REFUSED)

    try:
        config_path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    except OSError as e:
        print(f"Error creating config file: {e}", file=sys.stderr)
        sys.exit(EXIT_REFUSED)

    print(f"Created config file: {config_path.resolve()}")
    sys.exit(EXIT_OK)


def cmd_config_show(args: argparse.Namespace) -> None:
    """Display current configuration."""
    try:
        if args.file:
            config_path: Optional[Path] = Path(args.file)
            config = load_config(config_path)
            source = str(config_path)
        else:
            config_path = find_config_file(_project_root(args))
            config = load_config(config_path)
            source = str(config_path) if config_path else "defaults (no config file found)"
    except ConfigValidationError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(EXIT_REFUSED)

    if args.json:
        print(json.dumps(config.to_dict(), indent=2))
        sys.exit(EXIT_OK)

    print(f"Configuration source: {source}")
    print()
    for section, values in config.to_dict().items():
        if isinstance(values, dict):
            print(f"{section}:")
            for key, value in values.items():
                print(f"  {key}: {value}")
        else:
            print(f"{section}: {values}")
        print()
    sys.exit(EXIT_OK)


def cmd_config_validate(args: argparse.Namespace) -> None:
    """Validate configuration file."""
    config_path = Path(args.file) if args.file else find_config_file(_project_root(args))
    if config_path is None:
        print("No config file found to validate", file=sys.stderr)
        print("Create one with: agentclaims config init", file=sys.stderr)
        sys.exit(EXIT_REFUSED)

    print(f"Validating: {config_path}")
    try:
        load_config(config_path)
    except ConfigValidationError as e:
        print("✗ Invalid configuration:", file=sys.stderr)
        print(f"  - {e}", file=sys.stderr)
        sys.exit(EXIT_REFUSED)

    print(f"✓ Config file is valid: {config_path}")
    sys.exit(EXIT_OK)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all subcommands."""
    parser = argparse.ArgumentParser(
        prog="agentclaims",
        description="agentclaims - task claim coordination for concurrent agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=None,
        help="Project root directory (default: auto-detect)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: search for .agentclaims.yaml/.toml)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=None,
        help="Log level (default: from config, WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    agent_help = f"Agent ID (default: ${AGENT_ID_ENV_VAR})"

    claim_parser = subparsers.add_parser("claim", help="Claim a task")
    claim_parser.add_argument("task_id", help="Task to claim")
    claim_parser.add_argument("--agent-id", default=None, help=agent_help)
    claim_parser.add_argument(
        "--ttl", type=int, default=None, help="Claim lifetime in seconds (default: from config, 300)"
    )
    claim_parser.add_argument("--json", action="store_true", help="Output as JSON")
    claim_parser.set_defaults(func=cmd_claim)

    release_parser = subparsers.add_parser("release", help="Release a claimed task")
    release_parser.add_argument("task_id", help="Task to release")
    release_parser.add_argument("--agent-id", default=None, help=agent_help)
    release_parser.set_defaults(func=cmd_release)

    list_parser = subparsers.add_parser("list", help="List an agent's claimed tasks")
    list_parser.add_argument("--agent-id", default=None, help=agent_help)
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=cmd_list)

    who_parser = subparsers.add_parser("who-has", help="Show who holds a task")
    who_parser.add_argument("task_id", help="Task to look up")
    who_parser.add_argument("--json", action="store_true", help="Output as JSON")
    who_parser.set_defaults(func=cmd_who_has)

    sweep_parser = subparsers.add_parser("sweep", help="Remove expired claims")
    sweep_parser.set_defaults(func=cmd_sweep)

    status_parser = subparsers.add_parser("status", help="Show claim store status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")
    status_parser.set_defaults(func=cmd_status)

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config command")

    config_init_parser = config_subparsers.add_parser("init", help="Create default configuration file")
    config_init_parser.add_argument(
        "-o", "--output", type=str, help="Output path (default: .agentclaims.yaml)"
    )
    config_init_parser.add_argument(
        "-f", "--force", action="store_true", help="Overwrite existing file"
    )
    config_init_parser.set_defaults(func=cmd_config_init)

    config_show_parser = config_subparsers.add_parser("show", help="Display current configuration")
    config_show_parser.add_argument("--file", type=str, help="Path to config file")
    config_show_parser.add_argument("--json", action="store_true", help="Output as JSON")
    config_show_parser.set_defaults(func=cmd_config_show)

    config_validate_parser = config_subparsers.add_parser(
        "validate", help="Validate configuration file"
    )
    config_validate_parser.add_argument("--file", type=str, help="Path to config file")
    config_validate_parser.set_defaults(func=cmd_config_validate)

    return parser


def main() -> NoReturn:
    """Main entry point for the agentclaims CLI.

    Parses command-line arguments, configures logging and dispatches to the
    matching handler.
    """
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_REFUSED)
    if not hasattr(args, "func"):
        # "config" without a subcommand
        parser.parse_args([args.command, "--help"])

    try:
        if args.config:
            config = reload_config(args.config)
        else:
            # agents outside the tree must read the same file as those inside
            config = reload_config(start_path=_project_root(args))
    except ConfigValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_REFUSED)

    setup_logging(level=args.log_level or config.logging.level, log_file=config.logging.log_file)

    args.func(args)
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()

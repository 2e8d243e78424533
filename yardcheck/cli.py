#!/usr/bin/env python3
"""yardcheck - End-to-end verification CLI for dockyard hosts.

Main command-line interface: runs the phase sequence against a target host
and browses the history of past runs.
"""

import argparse
import logging
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from yardcheck.config import (
    ConfigError,
    HarnessConfig,
    Instance,
    parse_duration,
    parse_trust_policy,
)
from yardcheck.core import (
    PhaseResult,
    PhaseSequencer,
    ResultRecorder,
    RunContext,
    build_phase_table,
)
from yardcheck.persistence import DatabaseError, StateManager
from yardcheck.persistence.state_manager import DEFAULT_DB_PATH
from yardcheck.remote import AuthError, ConnectionManager, TransportError


# Constants
DEFAULT_CONFIG_PATH = "yardcheck.yaml"
EXAMPLE_CONFIG_NAME = "yardcheck.yaml.example"

# Configure logging
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbose: If True, enable DEBUG level logging (paramiko included)
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")
    if not verbose:
        logging.getLogger("paramiko").setLevel(logging.WARNING)


def load_config(config_path: Optional[str]) -> Dict[str, Any]:
    """Load configuration from YAML file.

    A missing default file yields an empty configuration; a missing file
    named explicitly is an error.

    Args:
        config_path: Path to YAML configuration file (None for the default)

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If an explicit file is missing or the file is malformed
    """
    path = Path(config_path or DEFAULT_CONFIG_PATH)

    if not path.exists():
        if config_path:
            raise ConfigError(f"config file not found: {config_path}")
        logger.debug(f"No {DEFAULT_CONFIG_PATH} found, using defaults")
        return {}

    try:
        with path.open() as f:
            config_dict = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse {path}: {exc}") from exc

    if not isinstance(config_dict, dict):
        raise ConfigError(f"{path} must contain a mapping at top level")

    # Resolve artifact path relative to config file location
    artifact = config_dict.get("artifact")
    if artifact and not Path(artifact).expanduser().is_absolute():
        resolved_path = (path.parent.resolve() / artifact).resolve()
        config_dict["artifact"] = str(resolved_path)
        logger.debug(f"Resolved artifact path: {artifact} -> {resolved_path}")

    return config_dict


def _parse_instances(entries: List[Dict[str, Any]]) -> List[Instance]:
    instances = []
    for entry in entries:
        missing = [key for key in ("label", "prefix", "root") if key not in entry]
        if missing:
            raise ConfigError(f"instance entry {entry} is missing {', '.join(missing)}")
        root = str(entry["root"])
        instances.append(
            Instance(
                label=str(entry["label"]),
                prefix=str(entry["prefix"]),
                root=root,
                env_file=entry.get("env_file", f"~/{Path(root).name}.env"),
                socket=entry.get("socket", f"{root.rstrip('/')}/run/docker.sock"),
            )
        )
    return instances


def create_harness_config(config_dict: Dict[str, Any], args: argparse.Namespace) -> HarnessConfig:
    """Create HarnessConfig from config dict and CLI args.

    Command-line values override file values.

    Args:
        config_dict: Configuration dictionary from YAML
        args: Parsed command-line arguments

    Returns:
        Validated HarnessConfig

    Raises:
        ConfigError: If a value is invalid or a required value is missing
    """
    target = config_dict.get("target", {})
    timeouts = config_dict.get("timeouts", {})
    trust = config_dict.get("trust", {})

    config = HarnessConfig(
        host=args.host or target.get("host", ""),
        user=args.user or target.get("user", ""),
        key_path=args.key or target.get("key"),
    )

    port = args.port if args.port is not None else target.get("port")
    if port is not None:
        config.port = int(port)

    overall = args.timeout if args.timeout is not None else timeouts.get("overall")
    if overall is not None:
        config.overall_timeout = parse_duration(overall)
    if "connect" in timeouts:
        config.connect_timeout = parse_duration(timeouts["connect"])
    if "reboot_wait" in timeouts:
        config.reboot_wait = parse_duration(timeouts["reboot_wait"])
    if "reboot_settle" in timeouts:
        config.reboot_settle = parse_duration(timeouts["reboot_settle"])
    if "post_boot_settle" in timeouts:
        config.post_boot_settle = parse_duration(timeouts["post_boot_settle"])
    if "create_stagger" in timeouts:
        config.create_stagger = parse_duration(timeouts["create_stagger"])

    artifact = args.artifact or config_dict.get("artifact")
    if artifact:
        config.artifact = artifact

    policy = args.trust or trust.get("policy")
    if policy:
        config.trust_policy = parse_trust_policy(policy)
    config.host_fingerprint = args.fingerprint or trust.get("fingerprint")
    config.known_hosts = trust.get("known_hosts")

    config.db_path = args.db or config_dict.get("database_path")

    if config_dict.get("instances"):
        config.instances = _parse_instances(config_dict["instances"])

    config.validate()
    return config


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full verification sequence against the target host.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 if every recorded phase passed, 1 otherwise)
    """
    try:
        config = create_harness_config(load_config(args.config), args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    connections = ConnectionManager(config)
    print(f"Connecting to {config.user}@{config.host}...")
    try:
        client = connections.connect()
    except (AuthError, TransportError) as exc:
        print(f"SSH connect failed: {exc}", file=sys.stderr)
        return 1
    print("Connected.")

    phases = build_phase_table(config.instances)

    state: Optional[StateManager] = None
    run_id: Optional[int] = None
    if config.db_path:
        try:
            state = StateManager(config.db_path)
            run_id = state.create_run(config.host, config.user, len(phases))
        except DatabaseError as exc:
            logger.warning(f"Run history disabled: {exc}")
            if state is not None:
                state.close()
            state = None

    def persist(result: PhaseResult) -> None:
        if state is not None and run_id is not None:
            state.record_phase(run_id, result)

    recorder = ResultRecorder(sink=persist)
    ctx = RunContext(config=config, client=client, connections=connections)
    sequencer = PhaseSequencer(ctx, recorder, phases=phases, budget=config.overall_timeout)

    error_message = None
    try:
        success = sequencer.run()
    except KeyboardInterrupt:
        error_message = "interrupted by user"
        raise
    finally:
        ctx.client.close()
        if state is not None and run_id is not None:
            try:
                state.finish_run(run_id, sequencer.summary(), error_message)
            except DatabaseError as exc:
                logger.warning(f"Could not finalize run {run_id}: {exc}")
            state.close()

    print()
    print(recorder.render_summary(sequencer.declared_total))
    if run_id is not None:
        print(f"Run recorded as #{run_id} in {config.db_path}")
    return 0 if success else 1


def _history_db_path(args: argparse.Namespace) -> str:
    if args.db:
        return args.db
    return load_config(args.config).get("database_path") or DEFAULT_DB_PATH


def cmd_history(args: argparse.Namespace) -> int:
    """List recent runs.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    try:
        db_path = _history_db_path(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not Path(db_path).exists():
        print(f"No run history at {db_path}")
        return 0

    state = StateManager(db_path)
    try:
        runs = state.list_runs(limit=args.limit)
    finally:
        state.close()

    if not runs:
        print("No runs recorded")
        return 0

    print("=== Run History ===\n")
    print(f"{'Run':<6} {'Target':<30} {'Status':<9} {'Passed':<9} {'Skipped':<8} {'Started':<20}")
    print("-" * 86)
    for run in runs:
        target = f"{run.ssh_user}@{run.host}"
        passed = f"{run.passed}/{run.declared_total}" if run.passed is not None else "-"
        skipped = str(run.skipped) if run.skipped is not None else "-"
        started = run.start_time[:19] if run.start_time else "N/A"
        print(
            f"{run.run_id:<6} {target:<30} {run.status:<9} {passed:<9} {skipped:<8} {started:<20}"
        )
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    """Render one recorded run.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    try:
        db_path = _history_db_path(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not Path(db_path).exists():
        print(f"No run history at {db_path}")
        return 1

    state = StateManager(db_path)
    try:
        report = state.export_report(args.run_id, format=args.format)
    finally:
        state.close()

    if not report:
        print(f"Run {args.run_id} not found")
        return 1
    print(report)
    return 0


def cmd_init_config(args: argparse.Namespace) -> int:
    """Generate example configuration file.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    source_file = Path(__file__).parent / "config" / EXAMPLE_CONFIG_NAME

    if not source_file.exists():
        print(f"Error: Example config file not found at {source_file}")
        print("This might indicate a corrupted installation.")
        return 1

    output_file = Path(args.output) if args.output else Path(DEFAULT_CONFIG_PATH)

    if output_file.exists() and not args.force:
        response = input(f"File '{output_file}' already exists. Overwrite? [y/N]: ")
        if response.lower() not in ["y", "yes"]:
            print("Aborted.")
            return 1

    try:
        shutil.copy(source_file, output_file)
    except OSError as exc:
        print(f"Error copying config file: {exc}")
        return 1

    print(f"✓ Example configuration created: {output_file}")
    print("\nNext steps:")
    print(f"  1. Edit {output_file} with your target host")
    print("  2. Run: yardcheck run")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="yardcheck",
        description="End-to-end verification of dockyard instances on a remote host",
    )
    parser.add_argument(
        "--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG_PATH} if present)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    parser_run = subparsers.add_parser("run", help="Run the verification sequence")
    parser_run.add_argument("--host", help="Target host name or IP address")
    parser_run.add_argument("--user", help="SSH user on the target host")
    parser_run.add_argument(
        "--key", help="Private key path (default: ~/.ssh/id_ed25519, then ~/.ssh/id_rsa)"
    )
    parser_run.add_argument("--port", type=int, help="SSH port (default: 22)")
    parser_run.add_argument(
        "--timeout", help="Overall run budget, e.g. 1200, 90s, 20m (default: 20m)"
    )
    parser_run.add_argument(
        "--artifact", help="Local provisioning tool to upload (default: dist/dockyard.sh)"
    )
    parser_run.add_argument(
        "--trust",
        choices=["strict", "pin", "none"],
        help="Host key trust policy (default: none)",
    )
    parser_run.add_argument("--fingerprint", help="Pinned host key fingerprint (SHA256:...)")
    parser_run.add_argument("--db", help="Record the run in this SQLite database")

    # history command
    parser_history = subparsers.add_parser("history", help="List recorded runs")
    parser_history.add_argument("--limit", type=int, default=20, help="Number of runs to list")
    parser_history.add_argument("--db", help=f"Run history database (default: {DEFAULT_DB_PATH})")

    # show command
    parser_show = subparsers.add_parser("show", help="Show a recorded run")
    parser_show.add_argument("run_id", type=int, help="Run ID to display")
    parser_show.add_argument(
        "--format", choices=["text", "json"], default="text", help="Report format"
    )
    parser_show.add_argument("--db", help=f"Run history database (default: {DEFAULT_DB_PATH})")

    # init-config command
    parser_init_config = subparsers.add_parser(
        "init-config", help="Generate example configuration file"
    )
    parser_init_config.add_argument(
        "--output", "-o", help=f"Output file path (default: {DEFAULT_CONFIG_PATH})"
    )
    parser_init_config.add_argument(
        "--force", "-f", action="store_true", help="Overwrite existing file without prompting"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    # Route to command handlers
    try:
        if args.command == "run":
            return cmd_run(args)
        if args.command == "history":
            return cmd_history(args)
        if args.command == "show":
            return cmd_show(args)
        if args.command == "init-config":
            return cmd_init_config(args)

        parser.print_help()
        return 1

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130
    except Exception as exc:
        logger.error(f"Fatal error: {exc}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())

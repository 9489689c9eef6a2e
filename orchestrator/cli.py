"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the stack runner.

- Provides argparse-based CLI
- Loads configuration from .env, environment and flags (in that order)
- Mirrors every stack's output to this process's stdout/stderr
- Entry point for the application

============================================================
USAGE
============================================================
stackrun run --stack infra/net:net-01 --stack infra/app:app-01 -- terraform plan
stackrun run --cloud-sync-deployment --stack infra/app:app-01 -- terraform apply
stackrun events 1234567890

============================================================
EXIT CODES
============================================================
0  every stack reached ok
1  validation, execution or cancellation failure
2  usage error

============================================================
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from core.constants import ENV_CLOUD_ORG, EXIT_FAILURE, EXIT_OK, EXIT_USAGE, SYSTEM_VERSION
from core.exceptions import StackRunError, TransportError
from cloud.client import CloudClient, EnvCredential, fetch_deployment_events

from .core import create_orchestrator, setup_logging, validate_stack_ids
from .models import OrchestratorConfig, Stack


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def _add_logging_options(parser: argparse.ArgumentParser) -> None:
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Logging level (default: STACKRUN_LOG_LEVEL or INFO)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default=None,
        help="Logging format (default: STACKRUN_LOG_FORMAT or text)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="stackrun",
        description="Run a command across stacks and track each stack's lifecycle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Lifecycle:
  pending -> running -> ok | failed | canceled

Examples:
  %(prog)s run --stack infra/app -- make plan
  %(prog)s run --cloud-sync-deployment --stack infra/app:app-01 -- make apply
  %(prog)s events $GITHUB_RUN_ID
        """,
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"%(prog)s {SYSTEM_VERSION}",
    )

    subparsers = parser.add_subparsers(dest="subcommand", metavar="COMMAND")
    subparsers.required = True

    # --------------------------------------------------------
    # run
    # --------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        help="Run a command in every selected stack",
    )

    run_parser.add_argument(
        "--stack", "-s",
        dest="stacks",
        action="append",
        default=[],
        metavar="DIR[:ID]",
        help="Stack directory with optional id; repeat to select several, in order",
    )

    execution_group = run_parser.add_argument_group("Execution Options")

    execution_group.add_argument(
        "--continue-on-error",
        action="store_true",
        default=None,
        help="Run remaining stacks after a stack fails",
    )

    execution_group.add_argument(
        "--kill-after-interrupts",
        type=int,
        default=None,
        metavar="N",
        help="Interrupt count that force-kills the running stack (default: 3)",
    )

    execution_group.add_argument(
        "--kill-timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Force-kill this long after the first forwarded interrupt",
    )

    cloud_group = run_parser.add_argument_group("Cloud Options")

    cloud_group.add_argument(
        "--cloud-sync-deployment",
        action="store_true",
        help="Report every lifecycle transition to the deployment tracking service",
    )

    cloud_group.add_argument(
        "--cloud-strict",
        action="store_true",
        default=None,
        help="Fail the run when an event could not be delivered",
    )

    _add_logging_options(run_parser)

    run_parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        metavar="-- CMD [ARGS...]",
        help="Command executed in each stack",
    )

    # --------------------------------------------------------
    # events
    # --------------------------------------------------------
    events_parser = subparsers.add_parser(
        "events",
        help="Print the event log recorded for a run",
    )

    events_parser.add_argument("run_id", metavar="RUN_ID")

    events_parser.add_argument(
        "--org",
        default=None,
        metavar="ORG_ID",
        help=f"Organization id (default: {ENV_CLOUD_ORG})",
    )

    _add_logging_options(events_parser)

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Args:
        args: Parsed arguments

    Returns:
        List of validation errors
    """
    errors = []

    if args.subcommand == "run":
        if not args.stacks:
            errors.append("at least one --stack is required")
        if not args.command:
            errors.append("missing command to run (after --)")
        if args.kill_after_interrupts is not None and args.kill_after_interrupts < 1:
            errors.append("--kill-after-interrupts must be at least 1")
        if args.kill_timeout is not None and args.kill_timeout <= 0:
            errors.append("--kill-timeout must be positive")

    return errors


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> OrchestratorConfig:
    """
    Build orchestrator configuration: environment first, flags on top.

    Args:
        args: Parsed arguments

    Returns:
        OrchestratorConfig instance
    """
    config = OrchestratorConfig.from_env()
    overrides = {}

    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.log_format is not None:
        overrides["log_format"] = args.log_format

    if args.subcommand == "run":
        overrides["cloud_sync"] = args.cloud_sync_deployment
        if args.continue_on_error is not None:
            overrides["continue_on_error"] = args.continue_on_error
        if args.kill_after_interrupts is not None:
            overrides["kill_after_interrupts"] = args.kill_after_interrupts
        if args.kill_timeout is not None:
            overrides["kill_timeout_seconds"] = args.kill_timeout
        if args.cloud_strict is not None:
            overrides["report_strict"] = args.cloud_strict

    if args.subcommand == "events" and args.org:
        overrides["cloud_org_id"] = args.org

    return dataclasses.replace(config, **overrides)


def _command(args: argparse.Namespace) -> List[str]:
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    return command


# ============================================================
# SUBCOMMANDS
# ============================================================

async def run_command(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    """Execute ``stackrun run``."""
    stacks = [Stack.parse(spec) for spec in args.stacks]
    if config.cloud_sync:
        validate_stack_ids(stacks)

    orchestrator = create_orchestrator(
        config,
        stdout_sink=sys.stdout.buffer,
        stderr_sink=sys.stderr.buffer,
    )
    session = orchestrator.prepare(stacks, args.command)

    setup_logging(config.log_level, config.log_format, correlation_id=session.run_id)

    return await orchestrator.execute(session)


async def events_command(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    """Execute ``stackrun events``."""
    if not config.cloud_org_id:
        print(f"Error: organization id required (--org or {ENV_CLOUD_ORG})", file=sys.stderr)
        return EXIT_FAILURE

    client = CloudClient(
        base_url=config.cloud_base_url,
        credential=EnvCredential(config.cloud_token_env),
        timeout=config.request_timeout_seconds,
    )
    async with client:
        events = await fetch_deployment_events(client, config.cloud_org_id, args.run_id)

    print(json.dumps(events.as_names(), indent=2, sort_keys=True))
    return EXIT_OK


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    """
    Async main entry point.

    Args:
        args: Parsed arguments
        config: Effective configuration

    Returns:
        Exit code
    """
    try:
        if args.subcommand == "events":
            return await events_command(args, config)
        return await run_command(args, config)
    except TransportError as e:
        logger.debug(f"Transport failure: {e.to_dict()}")
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    except StackRunError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_FAILURE


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    if args.subcommand == "run":
        args.command = _command(args)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return EXIT_USAGE

    load_dotenv()

    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Error: invalid environment configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(config.log_level, config.log_format)

    try:
        return asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        print("Error: interrupted", file=sys.stderr)
        return EXIT_FAILURE


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())

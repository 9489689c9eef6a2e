"""
Orchestrator Package - Run Coordination Layer.

============================================================
PACKAGE OVERVIEW
============================================================
This package runs one user command across an ordered set of stacks and
drives each stack through its lifecycle. It is the SINGLE ENTRYPOINT of
the application.

============================================================
CORE PRINCIPLES
============================================================
1. Preconditions are checked over the whole stack set before anything runs
2. Stacks run strictly one at a time, in the order given
3. Every transition is recorded locally before it is reported
4. Telemetry never decides the outcome unless strict reporting is on
5. Default behavior on cancellation is to stop the run

============================================================
ARCHITECTURE
============================================================

    +-----------------------------------------------------+
    |                   RunOrchestrator                   |
    |-----------------------------------------------------|
    |  StackLifecycle     |  pending -> running -> done   |
    |  ProcessExecutor    |  child process groups         |
    |  SignalRelay        |  interrupt, then kill         |
    |  CloudEventReporter |  ordered event delivery       |
    |  CLI                |  command-line interface       |
    +-----------------------------------------------------+

============================================================
QUICK START
============================================================
Command line usage::

    stackrun run --stack infra/app:app-01 -- terraform plan
    stackrun run --cloud-sync-deployment --stack infra/app:app-01 -- terraform apply
    stackrun events $GITHUB_RUN_ID

Programmatic usage::

    from orchestrator import OrchestratorConfig, RunOrchestrator, Stack

    config = OrchestratorConfig.from_env()
    orchestrator = RunOrchestrator(config)
    exit_code = await orchestrator.run([Stack(path="infra/app")], ["make", "plan"])

============================================================
"""

# Models
from .models import (
    Stack,
    StackResult,
    StackExecution,
    RunSession,
    OrchestratorConfig,
)

# Core
from .core import (
    setup_logging,
    derive_run_id,
    validate_stack_ids,
    RunOrchestrator,
    create_orchestrator,
)

# CLI
from .cli import (
    create_parser,
    validate_args,
    build_config,
    main,
)


__all__ = [
    # Models
    "Stack",
    "StackResult",
    "StackExecution",
    "RunSession",
    "OrchestratorConfig",
    # Core
    "setup_logging",
    "derive_run_id",
    "validate_stack_ids",
    "RunOrchestrator",
    "create_orchestrator",
    # CLI
    "create_parser",
    "validate_args",
    "build_config",
    "main",
]


__version__ = "0.1.0"

"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Runs one command across an ordered set of stacks.

- Validates preconditions over the whole stack set before anything runs
- Derives the run id once per invocation
- Executes stacks strictly one at a time, in the order given
- Drives each stack's lifecycle and relays operator interruptions
- Mirrors every transition to the deployment tracking service
- Aggregates the exit code

============================================================
ARCHITECTURAL POSITION
============================================================
- The orchestrator owns every StackExecution while it runs
- Processes are started through ProcessExecutor only
- Events reach the network through CloudEventReporter only
- The orchestrator never waits on the network between stacks

============================================================
"""

import asyncio
import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import BinaryIO, Iterable, List, Mapping, Optional, Sequence

from core.constants import CI_RUN_ID_ENV_VARS, MSG_STACK_ID_REQUIRED
from core.exceptions import (
    CancellationError,
    ConfigurationError,
    ExecutionError,
    StartError,
    ValidationError,
)
from core.lifecycle import LifecycleState
from cloud.client import CloudClient, EnvCredential
from cloud.reporter import CloudEvent, CloudEventReporter, ReportingPolicy
from executor.process import ProcessExecutor
from executor.relay import CancellationToken, SignalListener, SignalRelay

from .models import OrchestratorConfig, RunSession, Stack, StackExecution


logger = logging.getLogger(__name__)


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging.

    Logs go to stderr; stdout carries the stacks' own output.

    Args:
        level: Log level
        log_format: Output format (json or text)
        correlation_id: Correlation ID for tracing (the run id)

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
                "correlation_id": correlation_id or "",
            })
        )
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or ''} | %(message)s"
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


# ============================================================
# RUN ID
# ============================================================

def derive_run_id(
    env_vars: Iterable[str] = CI_RUN_ID_ENV_VARS,
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Reuse the CI run id when one is set, otherwise generate a fresh one.
    """
    environ = os.environ if environ is None else environ
    for name in env_vars:
        value = environ.get(name, "").strip()
        if value:
            logger.debug(f"Using run id from {name}")
            return value
    return str(uuid.uuid4())


# ============================================================
# PRECONDITIONS
# ============================================================

def validate_stack_ids(stacks: Sequence[Stack]) -> None:
    """
    Check that every stack has an id and that ids are unique.

    Raises:
        ValidationError: A stack has no id, or two stacks share one
    """
    missing = [str(stack.path) for stack in stacks if not stack.id]
    if missing:
        raise ValidationError(
            MSG_STACK_ID_REQUIRED,
            requirement="stack_id",
            stacks=missing,
        )

    seen = set()
    duplicates = []
    for stack in stacks:
        if stack.id in seen and stack.id not in duplicates:
            duplicates.append(stack.id)
        seen.add(stack.id)
    if duplicates:
        raise ValidationError(
            f"stack ids must be unique: {', '.join(duplicates)}",
            requirement="unique_stack_id",
            stacks=duplicates,
        )


# ============================================================
# RUN ORCHESTRATOR
# ============================================================

class RunOrchestrator:
    """
    Sequences stack execution for one run.

    Usage::

        orchestrator = RunOrchestrator(config)
        exit_code = await orchestrator.run(stacks, ["terraform", "plan"])
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        executor: Optional[ProcessExecutor] = None,
        client: Optional[CloudClient] = None,
        token: Optional[CancellationToken] = None,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Orchestrator configuration
            executor: Process executor (one is built from config if omitted)
            client: API client for cloud sync (one is built from config if omitted)
            token: Cancellation token fed by signals or by cancel()
            install_signal_handlers: Route SIGINT/SIGTERM into the token while executing
        """
        errors = config.validate()
        if errors:
            raise ConfigurationError(
                message=f"Invalid configuration: {', '.join(errors)}",
            )

        self._config = config
        self._executor = executor or ProcessExecutor(
            drain_timeout=config.drain_timeout_seconds,
        )
        self._client = client
        self._owns_client = client is None
        self._token = token or CancellationToken()
        self._install_signal_handlers = install_signal_handlers

        self._session: Optional[RunSession] = None
        self._reporter: Optional[CloudEventReporter] = None

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def session(self) -> Optional[RunSession]:
        """Session being (or last) executed."""
        return self._session

    @property
    def reporter(self) -> Optional[CloudEventReporter]:
        return self._reporter

    def cancel(self) -> None:
        """Request cancellation, exactly as one received interrupt signal would."""
        self._token.request()

    # --------------------------------------------------------
    # Preparation
    # --------------------------------------------------------

    def prepare(self, stacks: Sequence[Stack], command: Sequence[str]) -> RunSession:
        """
        Validate the stack set and build the session.

        No process is started and nothing is reported.

        Raises:
            ValidationError: A precondition over the stack set does not hold
        """
        if not command:
            raise ValidationError("no command given", requirement="command")

        if not stacks:
            raise ValidationError("no stacks selected", requirement="stacks")

        if self._config.cloud_sync:
            validate_stack_ids(stacks)

        run_id = derive_run_id(self._config.run_id_env_vars)
        session = RunSession.create(run_id, list(stacks), list(command))

        logger.info(
            f"Prepared run | run_id={run_id} | stacks={len(stacks)} | "
            f"cloud_sync={self._config.cloud_sync}"
        )
        return session

    # --------------------------------------------------------
    # Execution
    # --------------------------------------------------------

    async def run(self, stacks: Sequence[Stack], command: Sequence[str]) -> int:
        """Prepare and execute a run. Returns the exit code."""
        session = self.prepare(stacks, command)
        return await self.execute(session)

    async def execute(self, session: RunSession) -> int:
        """
        Drive every stack of the session and return the exit code.

        All stacks are announced as pending up front, then run one at a
        time. The first stack that does not end ok stops the run unless
        continue_on_error is set; cancellation always stops it. Stacks
        not started stay pending.
        """
        self._session = session

        listener = SignalListener(self._token) if self._install_signal_handlers else None
        if listener is not None:
            listener.install()

        try:
            if self._config.cloud_sync:
                self._reporter = self._create_reporter(session)
                for execution in session.executions:
                    execution.lifecycle.register_listener(self._reporter.on_transition)

            for execution in session.executions:
                await execution.lifecycle.transition_to(LifecycleState.PENDING, reason="queued")

            for execution in session.executions:
                if self._token.cancelled:
                    session.cancelled = True
                    session.aborted_reason = "run cancelled"
                    logger.warning(
                        f"Run cancelled, not starting {execution.stack.key} "
                        f"or later stacks"
                    )
                    break

                await self._execute_stack(session, execution)

                if execution.state == LifecycleState.CANCELED:
                    session.cancelled = True
                    session.aborted_reason = f"stack {execution.stack.key} canceled"
                    break

                if execution.state == LifecycleState.FAILED and not self._config.continue_on_error:
                    session.aborted_reason = f"stack {execution.stack.key} failed"
                    logger.error(f"Stopping run: {session.aborted_reason}")
                    break
        finally:
            if listener is not None:
                listener.restore()
            await self._shutdown_reporting(session)
            session.completed_at = datetime.now(timezone.utc)

        self._log_summary(session)
        return session.exit_code

    async def _execute_stack(self, session: RunSession, execution: StackExecution) -> None:
        """Run the command in one stack and record its terminal state."""
        stack = execution.stack
        execution.started_at = datetime.now(timezone.utc)

        await execution.lifecycle.transition_to(LifecycleState.RUNNING, reason="starting command")

        try:
            process = await self._executor.start(
                session.command,
                cwd=stack.path,
                stdout=execution.stdout,
                stderr=execution.stderr,
            )
        except StartError as e:
            execution.error = e.message
            execution.termination_cause = "start failed"
            execution.completed_at = datetime.now(timezone.utc)
            logger.error(f"Stack {stack.key} could not start: {e.message}")
            await execution.lifecycle.transition_to(LifecycleState.FAILED, reason=e.message)
            return

        relay = SignalRelay(
            process,
            kill_after_interrupts=self._config.kill_after_interrupts,
            kill_timeout=self._config.kill_timeout_seconds,
        )
        follower = asyncio.create_task(relay.follow(self._token))

        try:
            outcome = await process.wait()
        except asyncio.CancelledError:
            process.kill()
            raise
        finally:
            follower.cancel()
            await asyncio.gather(follower, return_exceptions=True)
            relay.close()

        execution.exit_code = outcome.exit_code
        execution.termination_cause = outcome.termination_cause
        execution.interrupts = relay.attempts
        execution.forced = relay.forced
        execution.completed_at = datetime.now(timezone.utc)

        if relay.interrupted:
            error = CancellationError(
                f"Stack {stack.key} canceled after {relay.attempts} interrupt(s), "
                f"{outcome.termination_cause}",
                interrupts=relay.attempts,
                forced=relay.forced,
                stack=stack.key,
                command=session.command,
                exit_code=outcome.exit_code,
            )
            execution.error = error.message
            logger.warning(error.message)
            target = LifecycleState.CANCELED
        elif outcome.succeeded:
            target = LifecycleState.OK
        else:
            error = ExecutionError(
                f"Stack {stack.key} failed: {outcome.termination_cause}",
                stack=stack.key,
                command=session.command,
                exit_code=outcome.exit_code,
            )
            execution.error = error.message
            logger.error(error.message)
            target = LifecycleState.FAILED

        await execution.lifecycle.transition_to(target, reason=outcome.termination_cause)

    # --------------------------------------------------------
    # Reporting
    # --------------------------------------------------------

    def _create_reporter(self, session: RunSession) -> CloudEventReporter:
        if self._client is None:
            self._client = CloudClient(
                base_url=self._config.cloud_base_url,
                credential=EnvCredential(self._config.cloud_token_env),
                timeout=self._config.request_timeout_seconds,
            )
            self._owns_client = True

        executions = {e.stack.key: e for e in session.executions}

        def on_delivered(event: CloudEvent) -> None:
            execution = executions.get(event.stack_id)
            if execution is not None:
                execution.reported_states.append(event.state)

        policy = ReportingPolicy(
            max_attempts=self._config.report_max_attempts,
            retry_backoff_base=self._config.report_retry_backoff_base,
            strict=self._config.report_strict,
            flush_timeout=self._config.report_flush_timeout_seconds,
        )

        return CloudEventReporter(
            client=self._client,
            org_id=self._config.cloud_org_id or "",
            run_id=session.run_id,
            policy=policy,
            on_delivered=on_delivered,
        )

    async def _shutdown_reporting(self, session: RunSession) -> None:
        if self._reporter is not None:
            await self._reporter.close()
            session.reporting_failures = len(self._reporter.failures)
            session.reporting_strict = self._reporter.policy.strict
            for execution in session.executions:
                execution.lifecycle.unregister_listener(self._reporter.on_transition)

        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None

    def _log_summary(self, session: RunSession) -> None:
        for execution in session.executions:
            state = execution.state.value if execution.state else "none"
            logger.info(
                f"Stack {execution.stack.key} | state={state} | "
                f"cause={execution.termination_cause or '-'}"
            )

        if session.reporting_failures:
            logger.warning(
                f"{session.reporting_failures} event(s) not delivered | "
                f"strict={session.reporting_strict}"
            )

        logger.info(f"Run {session.run_id} finished | exit_code={session.exit_code}")


# ============================================================
# FACTORY
# ============================================================

def create_orchestrator(
    config: Optional[OrchestratorConfig] = None,
    stdout_sink: Optional[BinaryIO] = None,
    stderr_sink: Optional[BinaryIO] = None,
    install_signal_handlers: bool = True,
) -> RunOrchestrator:
    """
    Create an orchestrator whose stacks' output is mirrored to the given sinks.

    Args:
        config: Configuration (defaults to OrchestratorConfig.from_env())
        stdout_sink: Binary stream receiving every stack's stdout
        stderr_sink: Binary stream receiving every stack's stderr
        install_signal_handlers: Route SIGINT/SIGTERM into the run
    """
    config = config or OrchestratorConfig.from_env()
    executor = ProcessExecutor(
        drain_timeout=config.drain_timeout_seconds,
        stdout_sink=stdout_sink,
        stderr_sink=stderr_sink,
    )
    return RunOrchestrator(
        config,
        executor=executor,
        install_signal_handlers=install_signal_handlers,
    )


__all__ = [
    "setup_logging",
    "derive_run_id",
    "validate_stack_ids",
    "RunOrchestrator",
    "create_orchestrator",
]

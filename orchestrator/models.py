"""
Orchestrator - Models.

============================================================
RESPONSIBILITY
============================================================
Defines data models for the run orchestrator.

- Stack: unit of infrastructure a command is executed in
- StackExecution: mutable per-stack record owned by the orchestrator
- StackResult: immutable outcome of one stack
- RunSession: one invocation across the selected stacks
- OrchestratorConfig: settings, loaded from the environment

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import os

from core.constants import (
    CI_RUN_ID_ENV_VARS,
    DEFAULT_CLOUD_URL,
    DEFAULT_DRAIN_TIMEOUT_SECONDS,
    DEFAULT_KILL_AFTER_INTERRUPTS,
    DEFAULT_REPORT_FLUSH_TIMEOUT_SECONDS,
    DEFAULT_REPORT_MAX_ATTEMPTS,
    DEFAULT_REPORT_RETRY_BACKOFF_BASE,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ENV_CLOUD_ORG,
    ENV_CLOUD_TOKEN,
    ENV_CLOUD_URL,
    ENV_CONTINUE_ON_ERROR,
    ENV_LOG_FORMAT,
    ENV_LOG_LEVEL,
    EXIT_FAILURE,
    EXIT_OK,
)
from core.lifecycle import LifecycleState, StackLifecycle
from executor.output import CapturedOutput


# ============================================================
# STACK
# ============================================================

@dataclass(frozen=True)
class Stack:
    """A directory the command is executed in."""

    path: Path
    id: Optional[str] = None
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        if not self.name:
            object.__setattr__(self, "name", self.path.name or str(self.path))

    @property
    def key(self) -> str:
        """Identifier when present, path otherwise."""
        return self.id or str(self.path)

    @classmethod
    def parse(cls, spec: str) -> "Stack":
        """
        Parse ``DIR`` or ``DIR:ID``.

        The id may not contain a path separator, so ``a:b/c`` is a path.
        """
        head, sep, tail = spec.rpartition(":")
        if sep and head and tail and "/" not in tail and "\\" not in tail:
            return cls(path=Path(head).resolve(), id=tail)
        return cls(path=Path(spec).resolve())

    def to_dict(self) -> Dict[str, Any]:
        return {"path": str(self.path), "id": self.id, "name": self.name}


# ============================================================
# STACK RESULT
# ============================================================

@dataclass(frozen=True)
class StackResult:
    """Immutable outcome of one stack."""

    stack: Stack
    state: Optional[LifecycleState]
    states: Tuple[LifecycleState, ...]
    reported_states: Tuple[LifecycleState, ...]
    exit_code: Optional[int]
    termination_cause: Optional[str]
    error: Optional[str]
    stdout: bytes
    stderr: bytes
    interrupts: int = 0
    forced: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.state == LifecycleState.OK

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "stack": self.stack.to_dict(),
            "state": self.state.value if self.state else None,
            "states": [s.value for s in self.states],
            "reported_states": [s.value for s in self.reported_states],
            "exit_code": self.exit_code,
            "termination_cause": self.termination_cause,
            "error": self.error,
            "interrupts": self.interrupts,
            "forced": self.forced,
            "duration_seconds": self.duration_seconds,
        }


# ============================================================
# STACK EXECUTION
# ============================================================

@dataclass
class StackExecution:
    """Per-stack record, owned by the orchestrator while the stack runs."""

    stack: Stack
    lifecycle: StackLifecycle
    stdout: CapturedOutput = field(default_factory=lambda: CapturedOutput("stdout"))
    stderr: CapturedOutput = field(default_factory=lambda: CapturedOutput("stderr"))
    exit_code: Optional[int] = None
    termination_cause: Optional[str] = None
    error: Optional[str] = None
    interrupts: int = 0
    forced: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reported_states: List[LifecycleState] = field(default_factory=list)

    @classmethod
    def for_stack(cls, stack: Stack) -> "StackExecution":
        return cls(stack=stack, lifecycle=StackLifecycle(stack.key))

    @property
    def state(self) -> Optional[LifecycleState]:
        return self.lifecycle.state

    @property
    def is_terminal(self) -> bool:
        return self.lifecycle.is_terminal

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def to_result(self) -> StackResult:
        return StackResult(
            stack=self.stack,
            state=self.state,
            states=tuple(self.lifecycle.states),
            reported_states=tuple(self.reported_states),
            exit_code=self.exit_code,
            termination_cause=self.termination_cause,
            error=self.error,
            stdout=self.stdout.getvalue(),
            stderr=self.stderr.getvalue(),
            interrupts=self.interrupts,
            forced=self.forced,
            duration_seconds=self.duration_seconds,
        )


# ============================================================
# RUN SESSION
# ============================================================

@dataclass
class RunSession:
    """One invocation of the orchestrator across the selected stacks."""

    run_id: str
    stacks: List[Stack]
    command: List[str] = field(default_factory=list)
    executions: List[StackExecution] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    cancelled: bool = False
    aborted_reason: Optional[str] = None
    reporting_failures: int = 0
    reporting_strict: bool = False

    @classmethod
    def create(
        cls,
        run_id: str,
        stacks: List[Stack],
        command: Optional[List[str]] = None,
    ) -> "RunSession":
        return cls(
            run_id=run_id,
            stacks=list(stacks),
            command=list(command or []),
            executions=[StackExecution.for_stack(stack) for stack in stacks],
        )

    @property
    def all_ok(self) -> bool:
        return bool(self.executions) and all(
            e.state == LifecycleState.OK for e in self.executions
        )

    @property
    def exit_code(self) -> int:
        """0 only if every stack reached ok (and, when strict, every event was delivered)."""
        if not self.all_ok:
            return EXIT_FAILURE
        if self.reporting_strict and self.reporting_failures:
            return EXIT_FAILURE
        return EXIT_OK

    def execution_for(self, stack: Stack) -> StackExecution:
        for execution in self.executions:
            if execution.stack == stack:
                return execution
        raise KeyError(stack.key)

    def results(self) -> List[StackResult]:
        return [e.to_result() for e in self.executions]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "run_id": self.run_id,
            "command": list(self.command),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled": self.cancelled,
            "aborted_reason": self.aborted_reason,
            "reporting_failures": self.reporting_failures,
            "exit_code": self.exit_code,
            "stacks": [r.to_dict() for r in self.results()],
        }


# ============================================================
# ORCHESTRATOR CONFIGURATION
# ============================================================

def _env_flag(name: str, default: bool = False) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator."""

    # Run settings
    cloud_sync: bool = False
    """Mirror lifecycle events to the deployment tracking service."""

    continue_on_error: bool = False
    """Keep going after a stack fails instead of stopping the run."""

    run_id_env_vars: Tuple[str, ...] = CI_RUN_ID_ENV_VARS
    """CI variables whose value is reused as the run id."""

    # Cloud settings
    cloud_base_url: str = DEFAULT_CLOUD_URL
    """Base URL of the deployment tracking API."""

    cloud_org_id: Optional[str] = None
    """Organization the deployment is recorded under."""

    cloud_token_env: str = ENV_CLOUD_TOKEN
    """Environment variable holding the bearer token."""

    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    """Timeout of a single API request."""

    # Reporting policy
    report_max_attempts: int = DEFAULT_REPORT_MAX_ATTEMPTS
    """Delivery attempts per event."""

    report_retry_backoff_base: float = DEFAULT_REPORT_RETRY_BACKOFF_BASE
    """Delay before the first retry, doubled on each further retry."""

    report_strict: bool = False
    """Fail the run when an event could not be delivered."""

    report_flush_timeout_seconds: float = DEFAULT_REPORT_FLUSH_TIMEOUT_SECONDS
    """Time allowed to flush queued events at the end of the run."""

    # Process settings
    kill_after_interrupts: int = DEFAULT_KILL_AFTER_INTERRUPTS
    """Interruption count that escalates to a forced kill."""

    kill_timeout_seconds: Optional[float] = None
    """Kill the group this long after the first forwarded interrupt."""

    drain_timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECONDS
    """Bound on waiting for output pipes after the child exits."""

    # Logging
    log_level: str = "INFO"
    """Logging level."""

    log_format: str = "text"
    """Logging format (json or text)."""

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load configuration from environment variables."""
        kill_timeout = os.getenv("STACKRUN_KILL_TIMEOUT_SECONDS")
        return cls(
            continue_on_error=_env_flag(ENV_CONTINUE_ON_ERROR),
            cloud_base_url=os.getenv(ENV_CLOUD_URL, DEFAULT_CLOUD_URL),
            cloud_org_id=os.getenv(ENV_CLOUD_ORG) or None,
            request_timeout_seconds=float(
                os.getenv("STACKRUN_REQUEST_TIMEOUT_SECONDS", str(DEFAULT_REQUEST_TIMEOUT_SECONDS))
            ),
            report_max_attempts=int(
                os.getenv("STACKRUN_REPORT_MAX_ATTEMPTS", str(DEFAULT_REPORT_MAX_ATTEMPTS))
            ),
            report_retry_backoff_base=float(
                os.getenv("STACKRUN_REPORT_RETRY_BACKOFF", str(DEFAULT_REPORT_RETRY_BACKOFF_BASE))
            ),
            report_strict=_env_flag("STACKRUN_REPORT_STRICT"),
            report_flush_timeout_seconds=float(
                os.getenv(
                    "STACKRUN_REPORT_FLUSH_TIMEOUT_SECONDS",
                    str(DEFAULT_REPORT_FLUSH_TIMEOUT_SECONDS),
                )
            ),
            kill_after_interrupts=int(
                os.getenv("STACKRUN_KILL_AFTER_INTERRUPTS", str(DEFAULT_KILL_AFTER_INTERRUPTS))
            ),
            kill_timeout_seconds=float(kill_timeout) if kill_timeout else None,
            drain_timeout_seconds=float(
                os.getenv("STACKRUN_DRAIN_TIMEOUT_SECONDS", str(DEFAULT_DRAIN_TIMEOUT_SECONDS))
            ),
            log_level=os.getenv(ENV_LOG_LEVEL, "INFO"),
            log_format=os.getenv(ENV_LOG_FORMAT, "text"),
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.cloud_sync:
            if not self.cloud_org_id:
                errors.append(f"cloud sync requires an organization id ({ENV_CLOUD_ORG})")
            if not self.cloud_base_url:
                errors.append(f"cloud sync requires a base URL ({ENV_CLOUD_URL})")

        if self.request_timeout_seconds <= 0:
            errors.append("request_timeout_seconds must be positive")

        if self.report_max_attempts < 1:
            errors.append("report_max_attempts must be at least 1")

        if self.report_retry_backoff_base < 0:
            errors.append("report_retry_backoff_base must not be negative")

        if self.kill_after_interrupts < 1:
            errors.append("kill_after_interrupts must be at least 1")

        if self.kill_timeout_seconds is not None and self.kill_timeout_seconds <= 0:
            errors.append("kill_timeout_seconds must be positive")

        if self.drain_timeout_seconds <= 0:
            errors.append("drain_timeout_seconds must be positive")

        if self.log_format not in ("json", "text"):
            errors.append("log_format must be 'json' or 'text'")

        return errors


__all__ = [
    "Stack",
    "StackResult",
    "StackExecution",
    "RunSession",
    "OrchestratorConfig",
]

"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the stack runner.

- Provides clear exception hierarchy
- Separates run-fatal errors from per-stack outcomes
- Tells the reporter which transport failures are transient
- Includes context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
StackRunError (base)
├── ConfigurationError
├── ValidationError
├── StateTransitionError
├── ExecutionError
│   ├── StartError
│   └── CancellationError
├── ReportingError
└── TransportError
    ├── CredentialError
    ├── NetworkError
    ├── HTTPStatusError
    └── SchemaValidationError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Affects a single stack or a single event."""

    HIGH = "high"
    """Affects the whole run."""

    CRITICAL = "critical"
    """Programming error, the run state can no longer be trusted."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class StackRunError(Exception):
    """
    Base exception for all stack runner errors.

    All exceptions carry:
    - severity: for logging
    - context: for debugging
    - cause: the underlying exception, when wrapping one
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# RUN-LEVEL ERRORS
# ============================================================

class ConfigurationError(StackRunError):
    """Error in configuration."""

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key

        super().__init__(message, context=context, **kwargs)


class ValidationError(StackRunError):
    """
    A precondition over the selected stacks does not hold.

    Raised before any process is started; nothing is executed or reported.
    """

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        requirement: Optional[str] = None,
        stacks: Optional[list] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if requirement:
            context["requirement"] = requirement
        if stacks:
            context["stacks"] = list(stacks)

        super().__init__(message, context=context, **kwargs)


class StateTransitionError(StackRunError):
    """Illegal lifecycle transition. Indicates a bug in the orchestrator."""

    default_severity = Severity.CRITICAL

    def __init__(
        self,
        message: str,
        stack_id: Optional[str] = None,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if stack_id:
            context["stack_id"] = stack_id
        if from_state:
            context["from_state"] = from_state
        if to_state:
            context["to_state"] = to_state

        super().__init__(message, context=context, **kwargs)


# ============================================================
# EXECUTION ERRORS
# ============================================================

class ExecutionError(StackRunError):
    """The user command ran and did not succeed."""

    def __init__(
        self,
        message: str,
        stack: Optional[str] = None,
        command: Optional[list] = None,
        exit_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if stack:
            context["stack"] = stack
        if command:
            context["command"] = list(command)
        if exit_code is not None:
            context["exit_code"] = exit_code

        super().__init__(message, context=context, **kwargs)


class StartError(ExecutionError):
    """The user command could not be launched."""


class CancellationError(ExecutionError):
    """The run was interrupted by the operator."""

    def __init__(
        self,
        message: str,
        interrupts: int = 0,
        forced: bool = False,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["interrupts"] = interrupts
        context["forced"] = forced

        super().__init__(message, context=context, **kwargs)


# ============================================================
# REPORTING ERRORS
# ============================================================

class ReportingError(StackRunError):
    """A lifecycle event could not be delivered to the tracking service."""

    default_severity = Severity.LOW

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        stack_id: Optional[str] = None,
        state: Optional[str] = None,
        attempts: int = 0,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if run_id:
            context["run_id"] = run_id
        if stack_id:
            context["stack_id"] = stack_id
        if state:
            context["state"] = state
        context["attempts"] = attempts

        super().__init__(message, context=context, **kwargs)


# ============================================================
# TRANSPORT ERRORS
# ============================================================

class TransportError(StackRunError):
    """Base class for API client failures."""

    transient: bool = False

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        url: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if method:
            context["method"] = method
        if url:
            context["url"] = url

        super().__init__(message, context=context, **kwargs)


class CredentialError(TransportError):
    """The credential could not produce a bearer token."""


class NetworkError(TransportError):
    """Connection failure or timeout."""

    transient = True


class HTTPStatusError(TransportError):
    """The service answered with a non-success status."""

    def __init__(
        self,
        message: str,
        status_code: int,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["status_code"] = status_code
        if response_body:
            context["response_body"] = response_body[:1000]

        super().__init__(message, context=context, **kwargs)

        self.status_code = status_code
        self.transient = status_code >= 500 or status_code == 429


class SchemaValidationError(TransportError):
    """The response body could not be decoded or failed validation."""


__all__ = [
    "Severity",
    "StackRunError",
    "ConfigurationError",
    "ValidationError",
    "StateTransitionError",
    "ExecutionError",
    "StartError",
    "CancellationError",
    "ReportingError",
    "TransportError",
    "CredentialError",
    "NetworkError",
    "HTTPStatusError",
    "SchemaValidationError",
]

"""
Executor Package - Process Execution & Cancellation.

Runs the user command for a stack as its own process group, captures
its output while it runs, and relays operator interruptions to it.

    ProcessExecutor.start() -> RunningProcess
    RunningProcess.wait()   -> ProcessOutcome
    SignalRelay.follow(CancellationToken)
"""

from .output import CapturedOutput
from .process import ProcessExecutor, ProcessOutcome, RunningProcess
from .relay import CancellationToken, SignalListener, SignalRelay

__all__ = [
    "CapturedOutput",
    "ProcessExecutor",
    "ProcessOutcome",
    "RunningProcess",
    "CancellationToken",
    "SignalListener",
    "SignalRelay",
]

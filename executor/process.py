"""
Executor - Process.

============================================================
RESPONSIBILITY
============================================================
Runs the user command for one stack.

- Starts the command as the leader of a new process group
- Drains stdout and stderr continuously into shared buffers
- Optionally mirrors the streams to the orchestrator's own streams
- Signals the whole group, never just the leader
- Reports completion without ever blocking on a stuck pipe

============================================================
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, List, Mapping, Optional, Sequence

from core.constants import DEFAULT_DRAIN_TIMEOUT_SECONDS, MSG_EXECUTABLE_NOT_FOUND
from core.exceptions import StartError

from .output import CapturedOutput


logger = logging.getLogger(__name__)


READ_CHUNK_SIZE = 64 * 1024


# ============================================================
# PROCESS OUTCOME
# ============================================================

@dataclass(frozen=True)
class ProcessOutcome:
    """How a child process ended."""

    exit_code: int
    """Raw return code; negative when the leader died from a signal."""

    drained: bool = True
    """False when output pipes had to be abandoned after exit."""

    @property
    def signal(self) -> Optional[signal.Signals]:
        """Signal that terminated the leader, if any."""
        if self.exit_code < 0:
            try:
                return signal.Signals(-self.exit_code)
            except ValueError:
                return None
        return None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def termination_cause(self) -> str:
        sig = self.signal
        if sig is not None:
            return f"terminated by {sig.name}"
        return f"exit status {self.exit_code}"


# ============================================================
# RUNNING PROCESS
# ============================================================

class RunningProcess:
    """
    Handle on a started child process group.

    Output is drained by two background tasks from the moment the
    process starts; ``stdout`` and ``stderr`` reflect it as it arrives.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: Sequence[str],
        stdout: CapturedOutput,
        stderr: CapturedOutput,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
        stdout_sink: Optional[BinaryIO] = None,
        stderr_sink: Optional[BinaryIO] = None,
    ):
        self._process = process
        self._command = list(command)
        self.stdout = stdout
        self.stderr = stderr
        self._drain_timeout = drain_timeout
        self._outcome: Optional[ProcessOutcome] = None
        self._wait_lock = asyncio.Lock()

        self._drains: List[asyncio.Task] = [
            asyncio.create_task(self._drain(process.stdout, stdout, stdout_sink)),
            asyncio.create_task(self._drain(process.stderr, stderr, stderr_sink)),
        ]

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def pgid(self) -> int:
        # Started with a new session, so the leader's pid names the group
        return self._process.pid

    @property
    def command(self) -> List[str]:
        return list(self._command)

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    def send_signal(self, sig: int) -> bool:
        """
        Send a signal to the entire process group.

        Returns False if the process already exited.
        """
        if not self.running:
            return False
        try:
            os.killpg(self.pgid, sig)
        except ProcessLookupError:
            return False
        logger.debug(f"Sent {signal.Signals(sig).name} to process group {self.pgid}")
        return True

    def kill(self) -> bool:
        """Force-terminate the entire process group."""
        return self.send_signal(signal.SIGKILL)

    async def wait(self) -> ProcessOutcome:
        """
        Wait for the process to exit and its output to be drained.

        Draining is bounded: a descendant that escaped the group and keeps a
        pipe open does not hold up completion.
        """
        async with self._wait_lock:
            if self._outcome is not None:
                return self._outcome

            exit_code = await self._process.wait()

            drained = True
            done, pending = await asyncio.wait(self._drains, timeout=self._drain_timeout)
            if pending:
                drained = False
                logger.warning(
                    f"Output of pid {self.pid} still open {self._drain_timeout}s after exit, "
                    f"abandoning {len(pending)} stream(s)"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"Output drain failed for pid {self.pid}: {task.exception()}")

            await self.stdout.close()
            await self.stderr.close()

            self._outcome = ProcessOutcome(exit_code=exit_code, drained=drained)
            return self._outcome

    async def _drain(
        self,
        stream: Optional[asyncio.StreamReader],
        buffer: CapturedOutput,
        sink: Optional[BinaryIO],
    ) -> None:
        """Copy a pipe into its buffer until EOF."""
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            await buffer.append(chunk)
            if sink is not None:
                sink.write(chunk)
                sink.flush()


# ============================================================
# PROCESS EXECUTOR
# ============================================================

class ProcessExecutor:
    """
    Starts user commands as process groups.

    Stateless apart from its settings; one executor serves a whole run.
    """

    def __init__(
        self,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
        stdout_sink: Optional[BinaryIO] = None,
        stderr_sink: Optional[BinaryIO] = None,
    ):
        """
        Initialize executor.

        Args:
            drain_timeout: Seconds to wait for pipes to close after exit
            stdout_sink: Binary stream the child's stdout is mirrored to
            stderr_sink: Binary stream the child's stderr is mirrored to
        """
        self._drain_timeout = drain_timeout
        self._stdout_sink = stdout_sink
        self._stderr_sink = stderr_sink

    async def start(
        self,
        command: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        stdout: Optional[CapturedOutput] = None,
        stderr: Optional[CapturedOutput] = None,
    ) -> RunningProcess:
        """
        Start a command in a new process group.

        Args:
            command: Executable and arguments
            cwd: Working directory
            env: Full environment (defaults to the current one)
            stdout: Buffer to capture stdout into
            stderr: Buffer to capture stderr into

        Returns:
            RunningProcess handle

        Raises:
            StartError: If the command could not be launched
        """
        if not command:
            raise StartError("empty command", command=list(command))

        if cwd is not None and not Path(cwd).is_dir():
            raise StartError(
                f"working directory not found: {cwd}",
                command=list(command),
            )

        child_env: Dict[str, str] = dict(os.environ if env is None else env)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd is not None else None,
                env=child_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise StartError(
                MSG_EXECUTABLE_NOT_FOUND.format(command=command[0]),
                command=list(command),
                cause=e,
            )
        except PermissionError as e:
            raise StartError(
                f"{command[0]}: permission denied",
                command=list(command),
                cause=e,
            )
        except OSError as e:
            raise StartError(
                f"{command[0]}: {e.strerror or e}",
                command=list(command),
                cause=e,
            )

        logger.debug(f"Started pid={process.pid} command={list(command)} cwd={cwd}")

        return RunningProcess(
            process=process,
            command=command,
            stdout=stdout if stdout is not None else CapturedOutput("stdout"),
            stderr=stderr if stderr is not None else CapturedOutput("stderr"),
            drain_timeout=self._drain_timeout,
            stdout_sink=self._stdout_sink,
            stderr_sink=self._stderr_sink,
        )


__all__ = [
    "ProcessOutcome",
    "RunningProcess",
    "ProcessExecutor",
]

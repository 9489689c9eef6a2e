"""
Executor - Cancellation Relay.

============================================================
RESPONSIBILITY
============================================================
Carries operator interruptions to the running child.

- CancellationToken: single-slot channel fed by OS signal handlers
- SignalListener: installs/restores the orchestrator's signal handlers
- SignalRelay: forwards each interruption to the child process group,
  escalating to a forced kill

============================================================
ESCALATION
============================================================
Interruptions are edge-triggered: every received signal is one relay
attempt. Attempts 1..N-1 forward SIGINT to the group so the child can
shut down gracefully. Attempt N (``kill_after_interrupts``) sends
SIGKILL. With ``kill_timeout`` set, the group is also killed that many
seconds after the first forwarded interrupt. Attempts made after the
child exited are no-ops.

============================================================
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional, Tuple

from core.constants import DEFAULT_KILL_AFTER_INTERRUPTS

from .process import RunningProcess


logger = logging.getLogger(__name__)


# ============================================================
# CANCELLATION TOKEN
# ============================================================

class CancellationToken:
    """
    Counts cancellation requests and hands them to one consumer.

    ``request`` is synchronous so it can be called straight from a signal
    handler. Requests coalesce into a single slot until the consumer takes
    them; the count is preserved so no attempt is lost. Once requested,
    the token stays cancelled for the rest of the run.
    """

    def __init__(self) -> None:
        self._requests = 0
        self._unconsumed = 0
        self._event: Optional[asyncio.Event] = None

    def _slot(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
        return self._event

    @property
    def cancelled(self) -> bool:
        return self._requests > 0

    @property
    def requests(self) -> int:
        """Total number of requests received."""
        return self._requests

    def request(self) -> None:
        """Record one cancellation request."""
        self._requests += 1
        self._unconsumed += 1
        self._slot().set()

    async def wait(self) -> int:
        """Wait for at least one unconsumed request and take all of them."""
        slot = self._slot()
        while self._unconsumed == 0:
            slot.clear()
            await slot.wait()
        taken, self._unconsumed = self._unconsumed, 0
        slot.clear()
        return taken


# ============================================================
# SIGNAL LISTENER
# ============================================================

class SignalListener:
    """Routes SIGINT/SIGTERM received by this process into a token."""

    SIGNALS: Tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, token: CancellationToken):
        self._token = token
        self._installed = False
        self._original_handlers: Dict[signal.Signals, Any] = {}

    def install(self) -> None:
        """Install signal handlers on the running loop."""
        if self._installed:
            return

        if sys.platform == "win32":
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGBREAK):
                self._original_handlers[sig] = signal.getsignal(sig)
                signal.signal(
                    sig,
                    lambda s, f: loop.call_soon_threadsafe(self._on_signal, s),
                )
        else:
            loop = asyncio.get_running_loop()
            for sig in self.SIGNALS:
                self._original_handlers[sig] = signal.getsignal(sig)
                loop.add_signal_handler(sig, self._on_signal, sig)

        self._installed = True

    def restore(self) -> None:
        """Restore original signal handlers."""
        if not self._installed:
            return

        if sys.platform == "win32":
            for sig, handler in self._original_handlers.items():
                signal.signal(sig, handler)
        else:
            loop = asyncio.get_running_loop()
            for sig in self._original_handlers:
                loop.remove_signal_handler(sig)

        self._original_handlers.clear()
        self._installed = False

    def _on_signal(self, sig: int) -> None:
        logger.info(f"Received signal {signal.Signals(sig).name}")
        self._token.request()

    def __enter__(self) -> "SignalListener":
        self.install()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.restore()


# ============================================================
# SIGNAL RELAY
# ============================================================

class SignalRelay:
    """
    Forwards interruptions to one running process group.

    All methods run on the event loop thread, so the counters need no lock.
    """

    def __init__(
        self,
        process: RunningProcess,
        kill_after_interrupts: int = DEFAULT_KILL_AFTER_INTERRUPTS,
        kill_timeout: Optional[float] = None,
    ):
        """
        Initialize relay.

        Args:
            process: Process group to signal
            kill_after_interrupts: Attempt number that escalates to SIGKILL
            kill_timeout: Seconds after the first interrupt before SIGKILL
        """
        if kill_after_interrupts < 1:
            raise ValueError("kill_after_interrupts must be at least 1")

        self._process = process
        self._kill_after = kill_after_interrupts
        self._kill_timeout = kill_timeout

        self._attempts = 0
        self._delivered = 0
        self._forced = False
        self._kill_timer: Optional[asyncio.Task] = None

    @property
    def attempts(self) -> int:
        """Interruptions received while this relay was active."""
        return self._attempts

    @property
    def delivered(self) -> int:
        """Interruptions that reached a still-running process group."""
        return self._delivered

    @property
    def forced(self) -> bool:
        """True once the group was sent SIGKILL."""
        return self._forced

    @property
    def interrupted(self) -> bool:
        return self._delivered > 0

    def interrupt(self) -> None:
        """Handle one interruption attempt."""
        self._attempts += 1

        if not self._process.running:
            logger.debug(f"Interrupt #{self._attempts} after pid {self._process.pid} exited, ignoring")
            return

        if self._attempts >= self._kill_after:
            self.force_kill(reason=f"interrupt #{self._attempts}")
            return

        if self._process.send_signal(signal.SIGINT):
            self._delivered += 1
            logger.info(
                f"Forwarded interrupt #{self._attempts} to process group {self._process.pgid}"
            )
            self._arm_kill_timer()

    def force_kill(self, reason: str = "requested") -> None:
        """Kill the process group unconditionally."""
        if self._process.kill():
            self._delivered += 1
            self._forced = True
            logger.warning(
                f"Killed process group {self._process.pgid} | reason={reason}"
            )

    async def follow(self, token: CancellationToken) -> None:
        """Relay every request taken from the token until cancelled."""
        while True:
            count = await token.wait()
            for _ in range(count):
                self.interrupt()

    def close(self) -> None:
        """Stop the escalation timer."""
        if self._kill_timer is not None and not self._kill_timer.done():
            self._kill_timer.cancel()
        self._kill_timer = None

    def _arm_kill_timer(self) -> None:
        if self._kill_timeout is None or self._kill_timer is not None:
            return
        self._kill_timer = asyncio.create_task(self._kill_later(self._kill_timeout))

    async def _kill_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._process.running:
            self.force_kill(reason=f"no exit {delay}s after interrupt")


__all__ = [
    "CancellationToken",
    "SignalListener",
    "SignalRelay",
]

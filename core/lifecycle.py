"""
Core Module - Stack Lifecycle.

============================================================
RESPONSIBILITY
============================================================
Tracks the execution lifecycle of a single stack.

- Enforces the legal transition graph
- Timestamps and records every transition
- Notifies listeners after the transition is recorded
- Never talks to the network itself

============================================================
STATE MACHINE
============================================================
    (initial) -> pending -> running -> ok
                                    -> failed
                                    -> canceled

Terminal states accept no transition. No state can be skipped.

============================================================
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional
import asyncio
import logging

from .exceptions import StateTransitionError


logger = logging.getLogger(__name__)


# ============================================================
# LIFECYCLE STATE
# ============================================================

class LifecycleState(Enum):
    """Lifecycle state of a stack execution."""

    PENDING = "pending"
    """Stack queued, not yet started."""

    RUNNING = "running"
    """Child process group started (or start attempted)."""

    OK = "ok"
    """Process exited with success code."""

    FAILED = "failed"
    """Process exited with failure code, or could not start."""

    CANCELED = "canceled"
    """Process terminated due to external interruption."""

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is possible."""
        return self in (LifecycleState.OK, LifecycleState.FAILED, LifecycleState.CANCELED)

    @property
    def is_success(self) -> bool:
        """Check if state is the successful terminal state."""
        return self == LifecycleState.OK


# ============================================================
# STATE TRANSITIONS
# ============================================================

# None is the state of a lifecycle that has not been queued yet
VALID_TRANSITIONS: Dict[Optional[LifecycleState], FrozenSet[LifecycleState]] = {
    None: frozenset({LifecycleState.PENDING}),
    LifecycleState.PENDING: frozenset({LifecycleState.RUNNING}),
    LifecycleState.RUNNING: frozenset({
        LifecycleState.OK,
        LifecycleState.FAILED,
        LifecycleState.CANCELED,
    }),
    LifecycleState.OK: frozenset(),
    LifecycleState.FAILED: frozenset(),
    LifecycleState.CANCELED: frozenset(),
}


def is_valid_sequence(states: List[LifecycleState]) -> bool:
    """Check that a sequence of states is a legal path from the initial state."""
    current: Optional[LifecycleState] = None
    for state in states:
        if state not in VALID_TRANSITIONS[current]:
            return False
        current = state
    return True


@dataclass(frozen=True)
class StateTransition:
    """Record of a lifecycle transition."""

    stack_id: str
    from_state: Optional[LifecycleState]
    to_state: LifecycleState
    position: int
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "stack_id": self.stack_id,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "position": self.position,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================
# STATE LISTENER TYPES
# ============================================================

TransitionListener = Callable[[StateTransition], Awaitable[None]]


# ============================================================
# STACK LIFECYCLE
# ============================================================

class StackLifecycle:
    """
    Lifecycle state container for one stack.

    Transitions are serialized by a lock, appended to the history,
    and only then handed to listeners in registration order.
    """

    def __init__(self, stack_id: str):
        self._stack_id = stack_id
        self._state: Optional[LifecycleState] = None
        self._history: List[StateTransition] = []
        self._listeners: List[TransitionListener] = []
        self._lock = asyncio.Lock()

    @property
    def stack_id(self) -> str:
        return self._stack_id

    @property
    def state(self) -> Optional[LifecycleState]:
        """Current state, None until the stack is queued."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state is not None and self._state.is_terminal

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    @property
    def states(self) -> List[LifecycleState]:
        """States entered so far, in order."""
        return [t.to_state for t in self._history]

    def can_transition_to(self, target_state: LifecycleState) -> bool:
        """Check if transition to target state is valid."""
        return target_state in VALID_TRANSITIONS[self._state]

    def register_listener(self, listener: TransitionListener) -> None:
        """Register a transition listener."""
        self._listeners.append(listener)

    def unregister_listener(self, listener: TransitionListener) -> None:
        """Unregister a transition listener."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def transition_to(
        self,
        target_state: LifecycleState,
        reason: str = "",
    ) -> StateTransition:
        """
        Transition to a new state.

        Args:
            target_state: Target state
            reason: Human readable cause, logged and kept in the record

        Returns:
            StateTransition record

        Raises:
            StateTransitionError: If the transition is not in the graph
        """
        async with self._lock:
            if not self.can_transition_to(target_state):
                from_name = self._state.value if self._state else "initial"
                raise StateTransitionError(
                    message=(
                        f"Invalid lifecycle transition for stack {self._stack_id}: "
                        f"{from_name} -> {target_state.value}"
                    ),
                    stack_id=self._stack_id,
                    from_state=from_name,
                    to_state=target_state.value,
                )

            transition = StateTransition(
                stack_id=self._stack_id,
                from_state=self._state,
                to_state=target_state,
                position=len(self._history),
                reason=reason,
            )

            self._state = target_state
            self._history.append(transition)

            logger.info(
                f"Stack lifecycle: {self._stack_id} -> {target_state.value}"
                + (f" | reason={reason}" if reason else "")
            )

            await self._notify_listeners(transition)

            return transition

    async def _notify_listeners(self, transition: StateTransition) -> None:
        """Notify all listeners of a recorded transition."""
        for listener in self._listeners:
            try:
                await listener(transition)
            except Exception as e:
                logger.error(
                    f"Lifecycle listener error: {e}",
                    exc_info=True,
                )


__all__ = [
    "LifecycleState",
    "StateTransition",
    "TransitionListener",
    "StackLifecycle",
    "VALID_TRANSITIONS",
    "is_valid_sequence",
]

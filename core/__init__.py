"""
Core Module Package.

This package contains the core infrastructure components
that all other packages depend on.

Components:
- lifecycle: Per-stack lifecycle state machine
- exceptions: Custom exception hierarchy
- constants: System-wide constants
"""

from .exceptions import StackRunError
from .lifecycle import LifecycleState, StackLifecycle, StateTransition

__all__ = [
    "StackRunError",
    "LifecycleState",
    "StackLifecycle",
    "StateTransition",
]

"""
Pydantic schemas for the deployment tracking API.
"""
from datetime import datetime, timezone
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, RootModel

from core.lifecycle import LifecycleState, is_valid_sequence


class SemanticValidation:
    """
    Post-decode validation hook.

    Pydantic checks the shape; ``validate_semantics`` checks what the
    shape cannot express and raises ValueError when the payload is wrong.
    """

    def validate_semantics(self) -> None:
        return None


# =======================
# WRITE PATH
# =======================

class DeploymentEventPayload(BaseModel):
    """Body of POST /v1/deployments/{org_id}/{run_id}/events."""

    model_config = ConfigDict(use_enum_values=True)

    run_id: str = Field(min_length=1)
    stack_id: str = Field(min_length=1)
    state: LifecycleState
    position: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeploymentEventAck(BaseModel, SemanticValidation):
    """Service acknowledgement of a recorded event."""

    run_id: str
    stack_id: str
    state: LifecycleState
    position: int

    def validate_semantics(self) -> None:
        if self.position < 0:
            raise ValueError(f"negative event position {self.position}")


# =======================
# READ PATH
# =======================

class DeploymentEvents(RootModel[Dict[str, List[LifecycleState]]], SemanticValidation):
    """Recorded event log: stack id -> states in the order they were observed."""

    def validate_semantics(self) -> None:
        for stack_id, states in self.root.items():
            if not is_valid_sequence(states):
                names = [s.value for s in states]
                raise ValueError(f"stack {stack_id} has an impossible event sequence {names}")

    def as_names(self) -> Dict[str, List[str]]:
        return {stack_id: [s.value for s in states] for stack_id, states in self.root.items()}

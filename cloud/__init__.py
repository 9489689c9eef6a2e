"""
Cloud Package - Deployment Tracking Synchronization.

Mirrors local lifecycle transitions to the remote deployment tracking
service and reads them back.

Components:
- client: authenticated, schema-validating request transport
- models: wire schemas
- reporter: ordered, best-effort event delivery
- testserver: in-memory implementation of the service
"""

from .client import (
    CloudClient,
    Credential,
    EnvCredential,
    StaticCredential,
    fetch_deployment_events,
)
from .models import DeploymentEventAck, DeploymentEventPayload, DeploymentEvents
from .reporter import CloudEvent, CloudEventReporter, ReportingPolicy

__all__ = [
    "CloudClient",
    "Credential",
    "EnvCredential",
    "StaticCredential",
    "fetch_deployment_events",
    "DeploymentEventAck",
    "DeploymentEventPayload",
    "DeploymentEvents",
    "CloudEvent",
    "CloudEventReporter",
    "ReportingPolicy",
]

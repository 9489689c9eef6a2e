"""
Fake Deployment Tracking Service.

============================================================
PURPOSE
============================================================
In-memory implementation of the deployment events API, used by the
test suite and for local runs.

ROUTES:
- POST /v1/deployments/{org_id}/{run_id}/events   record one event
- GET  /v1/deployments/{org_id}/{run_id}/events   {stack_id: [state, ...]}
- GET  /health

Every /v1 route requires a bearer token. Failures can be injected with
``DeploymentStore.fail_next`` to exercise client retries.
A POST is identified by (stack_id, position): retries of a recorded
event are acknowledged without a second record; gaps answer 409.

Standalone::

    python -m cloud.testserver --port 3001

============================================================
"""

import argparse
import json
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from .models import DeploymentEventPayload


logger = logging.getLogger(__name__)


DEFAULT_ORG_ID = "0a1b2c3d-0000-4000-8000-000000000001"


class PositionConflict(ValueError):
    """An event does not extend the stack's recorded log."""


# ============================================================
# STORE
# ============================================================

class DeploymentStore:
    """Recorded events, keyed by (org id, run id)."""

    def __init__(self, tokens: Optional[Set[str]] = None):
        """
        Initialize store.

        Args:
            tokens: Accepted bearer tokens (None accepts any non-empty token)
        """
        self.tokens = tokens
        self._events: Dict[Tuple[str, str], Dict[str, List[str]]] = {}
        self._injected: Deque[int] = deque()
        self.requests: List[Dict[str, Any]] = []

    def fail_next(self, count: int = 1, status: int = 503) -> None:
        """Answer the next ``count`` write requests with ``status``."""
        self._injected.extend([status] * count)

    def take_injected_failure(self) -> Optional[int]:
        if self._injected:
            return self._injected.popleft()
        return None

    def accepts(self, token: str) -> bool:
        if not token:
            return False
        return self.tokens is None or token in self.tokens

    def record(
        self,
        org_id: str,
        run_id: str,
        stack_id: str,
        state: str,
        position: Optional[int] = None,
    ) -> int:
        """
        Record an event, returning its position in the stack's log.

        With a position, (stack_id, position) identifies the event: a
        repeat of an already recorded event is acknowledged again without
        being stored twice. A different state at a recorded position or a
        position past the end of the log raises PositionConflict.
        """
        states = self._events.get((org_id, run_id), {}).get(stack_id, [])

        if position is None or position == len(states):
            stacks = self._events.setdefault((org_id, run_id), {})
            stacks.setdefault(stack_id, []).append(state)
            return len(stacks[stack_id]) - 1

        if position < len(states) and states[position] == state:
            logger.debug(f"Duplicate {stack_id}:{state} at position {position}")
            return position

        raise PositionConflict(
            f"stack {stack_id} has {len(states)} event(s), "
            f"cannot record {state} at position {position}"
        )

    def events(self, org_id: str, run_id: str) -> Dict[str, List[str]]:
        stacks = self._events.get((org_id, run_id), {})
        return {stack_id: list(states) for stack_id, states in stacks.items()}


STORE_KEY = web.AppKey("store", DeploymentStore)


# ============================================================
# HELPERS
# ============================================================

def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(
        text=json.dumps(data),
        status=status,
        content_type="application/json",
    )


def error_response(message: str, status: int) -> web.Response:
    return json_response({"error": message}, status=status)


def _bearer_token(request: web.Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


# ============================================================
# API HANDLERS
# ============================================================

class DeploymentTrackingAPI:
    """HTTP handlers over a DeploymentStore."""

    def __init__(self, store: DeploymentStore):
        self._store = store

    def _authorized(self, request: web.Request) -> bool:
        return self._store.accepts(_bearer_token(request))

    async def post_event(self, request: web.Request) -> web.Response:
        """
        POST /v1/deployments/{org_id}/{run_id}/events

        Record one lifecycle event.
        """
        if not self._authorized(request):
            return error_response("unauthorized", 401)

        injected = self._store.take_injected_failure()
        if injected is not None:
            return error_response("injected failure", injected)

        org_id = request.match_info["org_id"]
        run_id = request.match_info["run_id"]

        try:
            body = await request.json()
        except ValueError:
            return error_response("body is not JSON", 400)

        self._store.requests.append(body)

        try:
            payload = DeploymentEventPayload.model_validate(body)
        except PydanticValidationError as e:
            return error_response(f"invalid event: {e.error_count()} error(s)", 400)

        if payload.run_id != run_id:
            return error_response("run_id in body does not match path", 400)

        try:
            position = self._store.record(
                org_id, run_id, payload.stack_id, payload.state, payload.position
            )
        except PositionConflict as e:
            return error_response(str(e), 409)
        logger.debug(f"Recorded {payload.stack_id}:{payload.state} run_id={run_id}")

        return json_response(
            {
                "run_id": run_id,
                "stack_id": payload.stack_id,
                "state": payload.state,
                "position": position,
            },
            status=201,
        )

    async def get_events(self, request: web.Request) -> web.Response:
        """
        GET /v1/deployments/{org_id}/{run_id}/events

        Stack id mapped to the ordered list of recorded state names.
        """
        if not self._authorized(request):
            return error_response("unauthorized", 401)

        org_id = request.match_info["org_id"]
        run_id = request.match_info["run_id"]
        return json_response(self._store.events(org_id, run_id))

    async def health(self, request: web.Request) -> web.Response:
        return json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "deployment-tracking",
        })


# ============================================================
# APPLICATION FACTORY
# ============================================================

def create_app(store: Optional[DeploymentStore] = None) -> web.Application:
    """
    Create the fake service application.

    The store is reachable as ``app[STORE_KEY]``.
    """
    store = store or DeploymentStore()
    api = DeploymentTrackingAPI(store)

    app = web.Application()
    app[STORE_KEY] = store

    events_route = "/v1/deployments/{org_id}/{run_id}/events"
    app.router.add_post(events_route, api.post_event)
    app.router.add_get(events_route, api.get_events)
    app.router.add_get("/health", api.health)

    return app


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="cloud.testserver",
        description="In-memory deployment tracking service",
    )
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=3001)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    web.run_app(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()

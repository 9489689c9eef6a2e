"""
Cloud - Authenticated API Client.

============================================================
RESPONSIBILITY
============================================================
Generic request/response transport for the deployment tracking API.

- Attaches a bearer token obtained from a Credential per request
- Decodes the JSON body into the expected pydantic model
- Runs the model's semantic validation hook before returning
- Maps every failure to a typed TransportError

The client has no state besides its HTTP session; the reporter and
any read-side query share it.

============================================================
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional, Protocol, Type, TypeVar, Union

import aiohttp
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from core.constants import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEPLOYMENT_EVENTS_PATH,
    ENV_CLOUD_TOKEN,
    SYSTEM_NAME,
    SYSTEM_VERSION,
)
from core.exceptions import (
    CredentialError,
    HTTPStatusError,
    NetworkError,
    SchemaValidationError,
)

from .models import DeploymentEvents


logger = logging.getLogger(__name__)


ResponseT = TypeVar("ResponseT", bound=BaseModel)


# ============================================================
# CREDENTIALS
# ============================================================

class Credential(Protocol):
    """Anything that can produce a bearer token or fail."""

    async def token(self) -> str:
        ...


class StaticCredential:
    """Credential holding a fixed token."""

    def __init__(self, token: str):
        self._token = token

    async def token(self) -> str:
        if not self._token:
            raise CredentialError("empty bearer token")
        return self._token


class EnvCredential:
    """Credential read from an environment variable at request time."""

    def __init__(self, variable: str = ENV_CLOUD_TOKEN):
        self._variable = variable

    async def token(self) -> str:
        value = os.getenv(self._variable, "")
        if not value:
            raise CredentialError(
                f"no bearer token: environment variable {self._variable} is not set",
                context={"variable": self._variable},
            )
        return value


# ============================================================
# CLIENT
# ============================================================

class CloudClient:
    """
    Authenticated JSON client.

    Usage::

        async with CloudClient(base_url, credential) as client:
            events = await client.request(DeploymentEvents, "GET", path)
    """

    def __init__(
        self,
        base_url: str,
        credential: Credential,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._credential = credential
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers=self._get_default_headers(),
            )
            self._owns_session = True
        return self._session

    def _get_default_headers(self) -> Dict[str, str]:
        """Get default HTTP headers."""
        return {
            "Accept": "application/json",
            "User-Agent": f"{SYSTEM_NAME}/{SYSTEM_VERSION}",
        }

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "CloudClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _bearer_token(self) -> str:
        try:
            token = await self._credential.token()
        except CredentialError:
            raise
        except Exception as e:
            raise CredentialError(f"credential failed: {e}", cause=e)
        if not token:
            raise CredentialError("credential produced an empty token")
        return token

    async def request(
        self,
        response_model: Type[ResponseT],
        method: str,
        path: str,
        payload: Optional[Union[BaseModel, Dict[str, Any]]] = None,
    ) -> ResponseT:
        """
        Perform an authenticated request and return the validated response.

        Args:
            response_model: Pydantic model the body must decode into
            method: HTTP method
            path: Path relative to the base URL
            payload: JSON body

        Returns:
            Instance of response_model

        Raises:
            CredentialError: No token could be obtained
            NetworkError: Connection failure or timeout
            HTTPStatusError: Non-2xx response
            SchemaValidationError: Body could not be decoded or validated
        """
        token = await self._bearer_token()
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}

        body: Optional[Dict[str, Any]] = None
        if isinstance(payload, BaseModel):
            body = payload.model_dump(mode="json")
        elif payload is not None:
            body = payload

        session = await self._get_session()

        try:
            async with session.request(method, url, json=body, headers=headers) as response:
                text = await response.text()
                logger.debug(f"{method} {path} -> {response.status}")

                if response.status >= 400:
                    raise HTTPStatusError(
                        message=f"HTTP {response.status} from {method} {path}",
                        status_code=response.status,
                        response_body=text,
                        method=method,
                        url=url,
                    )
        except aiohttp.ClientError as e:
            raise NetworkError(
                message=f"Connection error: {e}",
                method=method,
                url=url,
                cause=e,
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(
                message=f"Timeout after {self._timeout}s",
                method=method,
                url=url,
                cause=e,
            )

        return self._decode(response_model, text, method, url)

    def _decode(
        self,
        response_model: Type[ResponseT],
        text: str,
        method: str,
        url: str,
    ) -> ResponseT:
        try:
            data = json.loads(text)
        except ValueError as e:
            raise SchemaValidationError(
                message=f"Response is not JSON: {e}",
                method=method,
                url=url,
                cause=e,
            )

        try:
            result = response_model.model_validate(data)
        except PydanticValidationError as e:
            raise SchemaValidationError(
                message=f"Response does not match {response_model.__name__}: {e.error_count()} error(s)",
                method=method,
                url=url,
                cause=e,
            )

        validate = getattr(result, "validate_semantics", None)
        if callable(validate):
            try:
                validate()
            except ValueError as e:
                raise SchemaValidationError(
                    message=f"Invalid {response_model.__name__}: {e}",
                    method=method,
                    url=url,
                    cause=e,
                )

        return result


# ============================================================
# READ-SIDE QUERIES
# ============================================================

def deployment_events_path(org_id: str, run_id: str) -> str:
    return DEPLOYMENT_EVENTS_PATH.format(org_id=org_id, run_id=run_id)


async def fetch_deployment_events(
    client: CloudClient,
    org_id: str,
    run_id: str,
) -> DeploymentEvents:
    """Fetch the event log recorded for a run."""
    return await client.request(
        DeploymentEvents,
        "GET",
        deployment_events_path(org_id, run_id),
    )


__all__ = [
    "Credential",
    "StaticCredential",
    "EnvCredential",
    "CloudClient",
    "deployment_events_path",
    "fetch_deployment_events",
]

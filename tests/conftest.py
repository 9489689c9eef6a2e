"""
Shared fixtures.

The fake deployment tracking service runs in-process on a random port
through aiohttp's TestServer.
"""

import pytest
from aiohttp.test_utils import TestServer

from cloud.client import CloudClient, StaticCredential
from cloud.testserver import DEFAULT_ORG_ID, DeploymentStore, create_app


TEST_TOKEN = "test-token"


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def deployment_store():
    """Store accepting only TEST_TOKEN."""
    return DeploymentStore(tokens={TEST_TOKEN})


@pytest.fixture
async def cloud_server(deployment_store):
    """Running fake deployment tracking service."""
    server = TestServer(create_app(deployment_store))
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def cloud_url(cloud_server):
    """Base URL of the fake service, without trailing slash."""
    return str(cloud_server.make_url("")).rstrip("/")


@pytest.fixture
async def cloud_client(cloud_url):
    """Client authenticated against the fake service."""
    client = CloudClient(cloud_url, StaticCredential(TEST_TOKEN), timeout=5.0)
    yield client
    await client.close()


@pytest.fixture
def org_id():
    return DEFAULT_ORG_ID


@pytest.fixture
def stack_root(tmp_path):
    """Directory holding stack-a and stack-b."""
    for name in ("stack-a", "stack-b"):
        (tmp_path / name).mkdir()
    return tmp_path

# src/tests/conftest.py
import pytest
import httpx
from fastapi.testclient import TestClient
from typing import Any, Dict, Generator

# To allow tests to run from the root directory and import src modules
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))


# Settings are read at import time, so the environment has to be in place
# before anything from src is imported.
os.environ["AIRTABLE_TOKEN"] = "patTESTTOKEN"
os.environ["AIRTABLE_BASE_ID"] = "appTEST"
os.environ["AIRTABLE_PRELOAD_TABLES"] = "False"
os.environ["MIDDLEWARE_KEY"] = "test-middleware-key"
os.environ["DEBUG_MODE"] = "True"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_FILENAME"] = "" # No file logging during tests
os.environ["AUDIT_LOG_FILENAME"] = ""


from src.app.main import app as fastapi_app
from src.airtable.client import AirtableApiClient, get_airtable_client
from src.app.middleware.rate_limiting import reset_limiters
from src.core.config import settings
from src.tests.fake_airtable import TEST_BASE_ID, FakeAirtable


@pytest.fixture
def fake_airtable() -> FakeAirtable:
    return FakeAirtable()

@pytest.fixture
def airtable_client(fake_airtable: FakeAirtable) -> AirtableApiClient:
    """Real gateway talking to the in-memory fake."""
    http_client = httpx.AsyncClient(
        base_url="https://api.airtable.test",
        transport=httpx.MockTransport(fake_airtable.handler),
    )
    return AirtableApiClient(http_client, TEST_BASE_ID)

@pytest.fixture(scope="module")
def client() -> Generator[TestClient, Any, None]:
    """
    Test client for the FastAPI application.
    """
    with TestClient(fastapi_app) as c:
        yield c

@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {settings.MIDDLEWARE_KEY}"}


# Override FastAPI dependencies for testing
@pytest.fixture(autouse=True) # autouse to apply to all tests
def override_dependencies(airtable_client: AirtableApiClient):
    async def mock_get_airtable_client():
        return airtable_client

    fastapi_app.dependency_overrides[get_airtable_client] = mock_get_airtable_client
    reset_limiters()

    yield

    fastapi_app.dependency_overrides = {}

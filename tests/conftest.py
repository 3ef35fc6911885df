"""
Pytest configuration for embedrelay.

Live provider URLs are loaded from environment variables for privacy.
Locally, add them to your .env file. For CI/CD, configure GitHub Secrets.
"""

import os
from pathlib import Path

import httpx
import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def get_test_url():
    """
    Factory fixture that returns a function to get live provider page URLs from environment.

    Usage:
        def test_something(get_test_url):
            url = get_test_url("vidsrc")
            if url is None:
                pytest.skip("TEST_URL_VIDSRC not set")
    """

    def _get_url(provider_name: str) -> str | None:
        env_var = f"TEST_URL_{provider_name.upper()}"
        return os.environ.get(env_var)

    return _get_url


@pytest.fixture
def client():
    """A TestClient that does not run the lifespan, so no browser is launched."""
    from embedrelay.main import app

    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def mock_upstream(monkeypatch):
    """
    Route every outbound relay request to a handler function instead of the network.

    Usage:
        def test_something(mock_upstream):
            requests = mock_upstream(lambda request: httpx.Response(200, content=b"data"))
    """

    def _install(handler):
        seen = []

        def _recording_handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        def _create_client(follow_redirects: bool = True, **kwargs):
            return httpx.AsyncClient(
                transport=httpx.MockTransport(_recording_handler), follow_redirects=follow_redirects
            )

        monkeypatch.setattr("embedrelay.handlers.create_httpx_client", _create_client)
        monkeypatch.setattr("embedrelay.utils.http_utils.create_httpx_client", _create_client)
        return seen

    return _install

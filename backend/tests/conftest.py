"""
Pytest configuration and shared test fixtures.

Services are exercised over the in-memory fakes in ``fakes``; the API is
exercised through FastAPI's TestClient with the pipeline dependency
replaced by the same fakes.
"""

from types import SimpleNamespace
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from fakes import Clock, build_components
from giftpipe.api.deps import get_pipeline
from giftpipe.core.config import get_settings
from giftpipe.core.logging import clear_context
from giftpipe.main import app


@pytest.fixture
def clock() -> Clock:
    """Settable clock starting at a fixed instant."""
    return Clock()


@pytest.fixture
def components(clock: Clock) -> SimpleNamespace:
    """
    Real pipeline services wired over in-memory fakes.

    Returns:
        Namespace shaped like ``Pipeline`` plus the fakes it wraps
    """
    return build_components(clock)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": get_settings().admin_api_key}


@pytest.fixture
def test_client(components: SimpleNamespace) -> Generator[TestClient, None, None]:
    """
    Synchronous test client whose pipeline is the faked component set.

    Yields:
        TestClient: Client for the FastAPI app
    """
    app.dependency_overrides[get_pipeline] = lambda: components
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_logging_context():
    """Keep request and order ids from leaking between tests."""
    yield
    clear_context()

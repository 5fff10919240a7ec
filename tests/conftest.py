"""Pytest fixtures for referral intake tests."""
from __future__ import annotations

import uuid
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app, rate_limiter
from app.services.encryption import generate_key
from tests.helpers import make_mock_db


@pytest.fixture
def phi_key():
    """A valid PHI_ENCRYPTION_KEY for the duration of the test."""
    key = generate_key()
    with patch("app.config.PHI_ENCRYPTION_KEY", key):
        yield key


@pytest.fixture
def mock_db():
    return make_mock_db()


@pytest.fixture
def client(mock_db) -> TestClient:
    """FastAPI test client with the DB dependency replaced by a mock session."""
    async def _override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = _override_get_db
    rate_limiter.reset()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)
        rate_limiter.reset()


@pytest.fixture
def caller_headers() -> dict:
    return {"X-User-Id": str(uuid.uuid4()), "X-Practice-Id": str(uuid.uuid4())}

"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite database and storage directory under
tmp_path, so no environment setup is needed.
"""

import asyncio
import time
from datetime import date

import pytest
from fastapi.testclient import TestClient

from quickloans import repository
from quickloans.config import Settings
from quickloans.main import create_app
from quickloans.models import Profile
from quickloans.policies import Identity
from quickloans.storage import create_platform, init_db

TEST_API_KEY = "test-key"

VALID_PROFILE = {
    "full_name": "Jane Wanjiru",
    "address": "Moi Avenue, Nairobi",
    "phone": "+254711000111",
    "date_of_birth": "1990-04-12",
    "employment_status": "employed",
    "monthly_income": 85000.0,
}

VALID_APPLICATION = {
    "amount": 250000,
    "purpose": "Working capital for my shop",
    "term_months": 24,
    "monthly_income": 85000,
    "employment_status": "self-employed",
}


def auth_headers(user_id: str) -> dict:
    """Headers the auth gateway would forward for user_id."""
    return {"X-Api-Key": TEST_API_KEY, "X-User-Id": user_id}


def seed_profile(platform, user_id: str, is_admin: bool = False, **overrides) -> Profile:
    """Store a complete profile, flagging it admin directly in the database."""
    data = dict(VALID_PROFILE, **overrides)
    data["date_of_birth"] = _as_date(data["date_of_birth"])
    with platform.session() as db:
        repository.upsert_profile(db, Identity(user_id), user_id, data)
        if is_admin:
            profile = repository.find_profile(db, user_id)
            profile.is_admin = True
            db.commit()
        return repository.find_profile(db, user_id)


def _as_date(value):
    return date.fromisoformat(value) if isinstance(value, str) else value


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    """Poll predicate on the running loop until it holds or timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        PLATFORM_URL=f"sqlite:///{tmp_path / 'test.db'}",
        PLATFORM_KEY=TEST_API_KEY,
        STORAGE_DIR=str(tmp_path / "storage"),
        PUBLIC_BASE_URL="http://testserver",
        TYPING_IDLE_SECONDS=0.2,
        TYPING_SWEEP_INTERVAL=0,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def platform(settings):
    """Platform with the schema applied, for tests that bypass HTTP."""
    platform = create_platform(settings)
    init_db(platform)
    yield platform
    platform.dispose()


@pytest.fixture
def client(settings):
    """Test client over a fresh app; the lifespan creates the tables."""
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def app_platform(client):
    return client.app.state.platform

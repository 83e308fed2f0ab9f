# tests/conftest.py
from __future__ import annotations

import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Settings  # noqa: E402
from database import create_session_factory  # noqa: E402
from fakes import FakeUpstream  # noqa: E402
from license_client import LicenseClient  # noqa: E402
from store import LocalStore  # noqa: E402

VALID_KEY = "ABCDEFGHIJKLMNOPQRSTUVWXYZ012345"
OTHER_KEY = "ZYXWVUTSRQPONMLKJIHGFEDCBA543210"


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DISCORD_TOKEN="test-token",
        LICENSE_API_URL="https://licensing.test",
        LICENSE_API_KEY="secret-key",
        LICENSE_APP_ID="app-1",
        BOT_OWNER_ID="1000",
        ADMIN_ROLE_IDS="role-admin, role-staff",
        DATABASE_URL="sqlite://",
        WEBHOOK_SECRET="whsec",
    )


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def api(settings, upstream) -> LicenseClient:
    return LicenseClient(settings=settings, transport=httpx.MockTransport(upstream.handler))


@pytest.fixture()
def store() -> LocalStore:
    # Fresh in-memory database per test
    return LocalStore(create_session_factory("sqlite://"))

"""
Shared test fixtures for Haven.

This module provides common fixtures used across all test modules:
- Settings with in-memory device storage and an in-memory SQLite store
- Device storage, session provider and record store
- Established principal contexts (authenticated and anonymous)
- Service instances wired to the test store

Usage:
    All fixtures are automatically available to any test in the tests/ directory.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from haven.config.settings import DeviceStorageBackend, Settings
from haven.core.identity import Identity, InMemorySessionProvider
from haven.core.session import PrincipalContext
from haven.core.store import SQLRecordStore, create_store
from haven.lib.device_storage import MemoryDeviceStorage
from haven.lib.encryption import KeyDerivation
from haven.services.coping_tools import CopingToolsService
from haven.services.insight_records import InsightRecordService
from haven.services.mood_service import MoodService
from haven.services.peer_support import PeerSupportService
from haven.services.profiles import ProfileService

TEST_SALT = "test-salt"


def make_auth_context(user_id: str = "user-1", token: str = "token-1") -> PrincipalContext:
    """Authenticated context with a key derived from `token`."""
    keys = KeyDerivation(MemoryDeviceStorage(), salt=TEST_SALT)
    keys.derive_from_session(token)
    return PrincipalContext(Identity.authenticated(user_id), keys)


def make_anon_context(anonymous_id: str = "a1b2c3d4e5f60718") -> PrincipalContext:
    """Anonymous context with a fresh random device key."""
    keys = KeyDerivation(MemoryDeviceStorage(), salt=TEST_SALT)
    keys.device_key()
    return PrincipalContext(Identity.anonymous(anonymous_id), keys)


# ---------------------------------------------------------------------------
# 1. Configuration and device state
# ---------------------------------------------------------------------------

@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        session_key_salt=TEST_SALT,
        device_storage=DeviceStorageBackend.MEMORY,
    )


@pytest.fixture()
def storage() -> MemoryDeviceStorage:
    return MemoryDeviceStorage()


@pytest.fixture()
def provider() -> InMemorySessionProvider:
    return InMemorySessionProvider()


# ---------------------------------------------------------------------------
# 2. Record store -- fresh in-memory SQLite database per test
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def store(settings: Settings) -> AsyncIterator[SQLRecordStore]:
    record_store = create_store(settings)
    await record_store.create_all()
    yield record_store
    await record_store.dispose()


# ---------------------------------------------------------------------------
# 3. Principal contexts
# ---------------------------------------------------------------------------

@pytest.fixture()
def auth_ctx() -> PrincipalContext:
    return make_auth_context()


@pytest.fixture()
def other_ctx() -> PrincipalContext:
    return make_auth_context(user_id="user-2", token="token-2")


@pytest.fixture()
def anon_ctx() -> PrincipalContext:
    return make_anon_context()


@pytest.fixture()
def auth_context_factory():
    """make_auth_context(user_id, token) for tests needing several principals."""
    return make_auth_context


@pytest.fixture()
def anon_context_factory():
    return make_anon_context


# ---------------------------------------------------------------------------
# 4. Services
# ---------------------------------------------------------------------------

@pytest.fixture()
def mood_service(store: SQLRecordStore) -> MoodService:
    return MoodService(store)


@pytest.fixture()
def coping_service(store: SQLRecordStore) -> CopingToolsService:
    return CopingToolsService(store)


@pytest.fixture()
def peer_service(store: SQLRecordStore, settings: Settings) -> PeerSupportService:
    return PeerSupportService(store, settings=settings)


@pytest.fixture()
def insight_records(store: SQLRecordStore) -> InsightRecordService:
    return InsightRecordService(store)


@pytest.fixture()
def profile_service(store: SQLRecordStore, provider: InMemorySessionProvider) -> ProfileService:
    return ProfileService(store, provider=provider)

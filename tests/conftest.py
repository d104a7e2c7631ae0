"""
Pytest configuration and common fixtures for the client portal tests.

Every test gets its own temp-file SQLite database, a fresh pub/sub registry
and a memory cache driven by a fake clock, so TTL behaviour can be exercised
without sleeping.
"""

from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

import pytest

import models.auth
from core.cache import CacheService
from core.client_storage import MemoryClientStorage
from core.config import Settings
from core.database import Database
from core.pubsub import PubSubService
from services.messaging import MessagingService
from services.notifications import NotificationService
from services.security import SecurityMonitor
from services.session import AuthSession
from services.storage import BucketStorage, DeliverableService
from services.user_auth import UserAuthService

PASSWORD = "Secret123"
CLIENT_PHONE = "+2348012345678"
OTHER_CLIENT_PHONE = "+2348112345678"
ADMIN_PHONE = "+2349012345678"


class FakeClock:
    """Callable clock the cache reads instead of time.time()."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    """Cheap password hashing for tests."""
    monkeypatch.setattr(models.auth, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/portal.db",
        storage_root=str(tmp_path / "storage"),
        redis_enabled=False,
        log_format="console",
        log_level="WARNING",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pubsub() -> PubSubService:
    return PubSubService()


@pytest.fixture
async def database(settings, pubsub) -> AsyncGenerator[Database, None]:
    db = Database(settings, pubsub=pubsub)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def cache(settings, clock) -> AsyncGenerator[CacheService, None]:
    """Memory-backed cache (no database handed in)."""
    service = CacheService(settings, clock=clock)
    await service.startup()
    yield service
    await service.shutdown()


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def security(database, cache, settings) -> SecurityMonitor:
    return SecurityMonitor(database, cache, settings)


@pytest.fixture
def user_auth(database, security, settings) -> UserAuthService:
    return UserAuthService(database, security, settings)


@pytest.fixture
def notifications(database, pubsub, settings) -> NotificationService:
    return NotificationService(database, pubsub, settings)


@pytest.fixture
def messaging(database, pubsub, notifications, settings) -> MessagingService:
    return MessagingService(database, pubsub, notifications, settings)


@pytest.fixture
def storage(settings) -> BucketStorage:
    return BucketStorage(settings)


@pytest.fixture
def deliverables(database, storage, notifications, settings) -> DeliverableService:
    return DeliverableService(database, storage, notifications, settings)


@pytest.fixture
def client_storage() -> MemoryClientStorage:
    return MemoryClientStorage()


@pytest.fixture
def auth_session(cache, user_auth, client_storage, settings) -> AuthSession:
    return AuthSession(cache, user_auth, client_storage, settings)


# ============================================================================
# Data Fixtures
# ============================================================================


@pytest.fixture
def make_user(user_auth) -> Callable[..., Awaitable[Dict[str, Any]]]:
    """Factory creating users through the real sign-up path."""

    async def factory(phone: str = CLIENT_PHONE, full_name: str = "Ada Client",
                      company_name: Optional[str] = "Acme Ltd", is_admin: bool = False) -> Dict[str, Any]:
        user, error = await user_auth.sign_up(phone, PASSWORD, full_name, company_name, is_admin=is_admin)
        assert error is None, error
        return user

    return factory


@pytest.fixture
async def client_user(make_user) -> Dict[str, Any]:
    return await make_user()


@pytest.fixture
async def admin_user(make_user) -> Dict[str, Any]:
    return await make_user(ADMIN_PHONE, full_name="Grace Admin", company_name="Portal HQ", is_admin=True)


@pytest.fixture
async def project(database, client_user) -> Dict[str, Any]:
    return await database.insert("projects", {
        "user_id": client_user["id"],
        "name": "Brand Refresh",
        "description": "Logo and colours",
    })

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set test env before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from keyward.clock import ManualClock  # noqa: E402
from keyward.config import Settings  # noqa: E402
from keyward.service.audit import AuditEmitter, MemoryAuditSink  # noqa: E402
from keyward.service.auth_config import AuthConfigRegistry  # noqa: E402
from keyward.service.keys import KeyIssuer, KeyValidator  # noqa: E402
from keyward.service.runtime import reset_runtime_for_tests  # noqa: E402
from keyward.service.signin_tokens import SigninTokenService  # noqa: E402
from keyward.service.tenants import AppCreateOptions, TenantLifecycleManager  # noqa: E402
from keyward.storage.memory import MemoryStore  # noqa: E402
from keyward.storage.models import TenantUser  # noqa: E402

START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def settings():
    return Settings(use_memory_store=True, test_mode=True)


@pytest.fixture
def store():
    return MemoryStore(token_key_encryption_secret="test-token-key-secret")


@pytest.fixture
def hasher():
    """Cheap argon2id parameters so key generation does not dominate test time."""
    return PasswordHasher(type=Type.ID, time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def issuer(hasher):
    return KeyIssuer(hasher)


@pytest.fixture
def validator(store, clock):
    return KeyValidator(store, clock=clock)


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def manager(store, issuer, clock, settings, audit_sink):
    return TenantLifecycleManager(
        store,
        issuer=issuer,
        clock=clock,
        settings=settings,
        audit_emitter=AuditEmitter([audit_sink]),
    )


@pytest.fixture
def make_app(manager):
    """Create an app and return its freshly issued keys."""

    def _make(app_id="testapp123", admin_email="admin@example.com", **options):
        result = manager.create(app_id, AppCreateOptions(admin_email=admin_email, **options))
        assert result.is_ok, result.problem
        return result.value

    return _make


@pytest.fixture
def registry(store, clock, make_app):
    make_app()
    return AuthConfigRegistry(store.for_tenant("testapp123"), clock=clock)


@pytest.fixture
def token_service(store, registry, clock, settings):
    return SigninTokenService(
        store.for_tenant("testapp123"),
        registry,
        store,
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def pending_app(registry, manager, store, clock):
    """testapp123, old enough and with a user so marking it schedules deletion."""
    store.for_tenant("testapp123").add_user(
        TenantUser(user_id="user-1", tenant_id="testapp123", created_at=clock.now())
    )
    clock.advance(timedelta(days=5))
    result = manager.mark_for_deletion("testapp123", None, "https://admin.example.com")
    assert not result.value.is_deleted
    return "testapp123"

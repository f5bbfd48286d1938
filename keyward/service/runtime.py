from __future__ import annotations

import threading
from datetime import timedelta
from typing import List, Optional, Union
from urllib.parse import urlparse, urlunparse

from keyward.clock import Clock, SystemClock
from keyward.config import Settings, get_settings, reset_settings_cache
from keyward.logging import get_logger
from keyward.service.audit import AuditEmitter, AuditSink
from keyward.service.auth_config import AuthConfigRegistry
from keyward.service.features import FeatureContext
from keyward.service.keys import KeyIssuer, KeyValidator
from keyward.service.signin_tokens import SigninTokenService
from keyward.service.tenants import TenantLifecycleManager
from keyward.storage.common import SigninTokenStore
from keyward.storage.memory import MemoryStore
from keyward.storage.postgres import PostgresStore
from keyward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with '***' for logging.

    redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store and the shared services; per-tenant services are built on demand."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        store: Union[MemoryStore, PostgresStore, None] = None,
        audit_sinks: Optional[List[AuditSink]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        if store is not None:
            self.store = store
        else:
            try:
                self.store = (
                    MemoryStore(
                        fs_root=self.settings.shared_fs_root,
                        token_key_encryption_secret=self.settings.token_key_encryption_secret,
                    )
                    if self.settings.use_memory_store
                    else PostgresStore(
                        self.settings.database_url,
                        token_key_encryption_secret=self.settings.token_key_encryption_secret,
                    )
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        logger.info("runtime_store_initialized", store_type=type(self.store).__name__)

        self.cache: Optional[RedisCache] = None
        if self.settings.use_redis_token_store:
            if not self.settings.redis_url:
                raise RuntimeError("USE_REDIS_TOKEN_STORE requires REDIS_URL")
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
            except Exception:
                logger.error(
                    "runtime_redis_unreachable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                )
                cache.close()
                raise
            self.cache = cache
            logger.info(
                "runtime_redis_token_store_enabled",
                redis_url=_mask_url_password(self.settings.redis_url),
            )

        self.audit = AuditEmitter(audit_sinks)
        self.issuer = KeyIssuer()
        self.validator = KeyValidator(self.store, clock=self.clock)
        self.tenants = TenantLifecycleManager(
            self.store,
            issuer=self.issuer,
            clock=self.clock,
            settings=self.settings,
            audit_emitter=self.audit,
        )
        self.features = FeatureContext(self.store, clock=self.clock)

    @property
    def token_store(self) -> SigninTokenStore:
        return self.cache if self.cache is not None else self.store

    def auth_config(self, tenant_id: str) -> AuthConfigRegistry:
        return AuthConfigRegistry(
            self.store.for_tenant(tenant_id),
            clock=self.clock,
            default_signin_ttl=timedelta(seconds=self.settings.default_signin_ttl_seconds),
        )

    def signin_tokens(self, tenant_id: str) -> SigninTokenService:
        return SigninTokenService(
            self.store.for_tenant(tenant_id),
            self.auth_config(tenant_id),
            self.token_store,
            clock=self.clock,
            settings=self.settings,
        )

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from keyward.clock import Clock, SystemClock
from keyward.logging import get_logger
from keyward.service import errors
from keyward.service.errors import Result
from keyward.service.tenants import writable_problem
from keyward.storage.common import GlobalStore
from keyward.storage.models import AppFeatures

logger = get_logger(__name__)


@dataclass(frozen=True)
class FeatureUpdate:
    """Partial update; ``None`` leaves the stored value unchanged.

    ``clear_developer_logging`` ends developer logging by clearing its end
    timestamp, which ``None`` cannot express.
    """

    event_logging_is_enabled: Optional[bool] = None
    event_logging_retention_period: Optional[int] = None
    developer_logging_ends_at: Optional[datetime] = None
    clear_developer_logging: bool = False

    def changes(self) -> dict:
        changed = {
            name: value
            for name, value in dataclasses.asdict(self).items()
            if name != "clear_developer_logging" and value is not None
        }
        if self.clear_developer_logging:
            changed["developer_logging_ends_at"] = None
        return changed


class FeatureContext:
    """Per-tenant feature flags."""

    def __init__(self, store: GlobalStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def get(self, tenant_id: str) -> Result[AppFeatures]:
        features = self.store.for_tenant(tenant_id).get_app_features()
        if features is None:
            return Result.fail(errors.app_not_found(tenant_id))
        return Result.ok(features)

    def set(self, tenant_id: str, flags: FeatureUpdate) -> Result[AppFeatures]:
        if flags.event_logging_retention_period is not None and flags.event_logging_retention_period < 1:
            return Result.fail(
                errors.validation_error(
                    "eventLoggingRetentionPeriod must be at least one day.",
                    eventLoggingRetentionPeriod=flags.event_logging_retention_period,
                )
            )
        if flags.clear_developer_logging and flags.developer_logging_ends_at is not None:
            return Result.fail(
                errors.validation_error(
                    "developerLoggingEndsAt cannot be set and cleared in one update."
                )
            )
        tenant = self.store.for_tenant(tenant_id)
        problem = writable_problem(tenant)
        if problem is not None:
            return Result.fail(problem)

        current = tenant.get_app_features() or AppFeatures(tenant_id=tenant_id)
        changes = flags.changes()
        updated = dataclasses.replace(current, **changes)
        tenant.set_features(updated)
        logger.info("app_features_updated", tenant_id=tenant_id, changed=sorted(changes))
        return Result.ok(updated)

    def retention_cutoff(self, tenant_id: str, now: Optional[datetime] = None) -> Optional[datetime]:
        """Oldest event timestamp the logging subsystem must keep, or None when logging is off."""
        result = self.get(tenant_id)
        if not result.is_ok or not result.value.event_logging_is_enabled:
            return None
        return (now or self.clock.now()) - result.value.retention

    def is_developer_logging_active(self, tenant_id: str, now: Optional[datetime] = None) -> bool:
        result = self.get(tenant_id)
        if not result.is_ok or result.value.developer_logging_ends_at is None:
            return False
        return (now or self.clock.now()) < result.value.developer_logging_ends_at

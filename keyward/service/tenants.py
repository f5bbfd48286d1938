from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from keyward.clock import Clock, SystemClock, add_months
from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service import audit, errors
from keyward.service.audit import AuditEmitter
from keyward.service.errors import Result
from keyward.service.keys import KeyIssuer, is_valid_account_id
from keyward.storage.common import GlobalStore, TenantStore, normalize_emails
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import AccountInformation, AppFeatures, KeyClass

logger = get_logger(__name__)

KEYS_STORED_MESSAGE = "Store keys safely. They will only be shown to you once."
CANCELLED_MESSAGE = (
    "Your account will not be deleted since the process was aborted with the cancellation link"
)
MIN_ACCOUNT_ID_LENGTH = 3


@dataclass(frozen=True)
class AppCreateOptions:
    admin_email: str
    event_logging_is_enabled: bool = False
    event_logging_retention_period: int = 365


@dataclass(frozen=True)
class AccountKeysCreation:
    api_key1: str
    api_key2: str
    api_secret1: str
    api_secret2: str
    message: str = KEYS_STORED_MESSAGE


@dataclass(frozen=True)
class AppDeletionResult:
    message: str
    is_deleted: bool
    delete_at: datetime
    admin_emails: Tuple[str, ...] = ()
    cancel_link: Optional[str] = None


@dataclass(frozen=True)
class CancelResult:
    message: str = CANCELLED_MESSAGE


def writable_problem(tenant: TenantStore) -> Optional[errors.Problem]:
    """Problem to fail with when ``tenant`` is missing or pending deletion."""
    account = tenant.get_account_information()
    if account is None:
        return errors.app_not_found(tenant.tenant_id)
    if account.deleted_at is not None:
        return errors.app_pending_deletion(tenant.tenant_id, account.deleted_at.isoformat())
    return None


@dataclass
class _PurgeReport:
    deleted: List[AppDeletionResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class TenantLifecycleManager:
    """Create, freeze, schedule and erase tenants.

    Every operation that writes more than one row stages the writes on a
    storage unit of work and commits once.
    """

    def __init__(
        self,
        store: GlobalStore,
        *,
        issuer: Optional[KeyIssuer] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        audit_emitter: Optional[AuditEmitter] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer or KeyIssuer()
        self.clock = clock or SystemClock()
        self.settings = settings or Settings()
        self.audit = audit_emitter or AuditEmitter()

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def is_available(self, app_id: str) -> bool:
        if not app_id or len(app_id) < MIN_ACCOUNT_ID_LENGTH:
            return False
        return not self.store.for_tenant(app_id).tenant_exists()

    def create(self, app_id: str, options: Optional[AppCreateOptions]) -> Result[AccountKeysCreation]:
        if not app_id or not app_id.strip():
            return Result.fail(errors.validation_error("'appId' cannot be null, empty or whitespace."))
        if options is None or not (options.admin_email or "").strip():
            return Result.fail(errors.validation_error("Please set argument 'accountName' and 'adminEmail'"))
        if not is_valid_account_id(app_id):
            return Result.fail(
                errors.validation_error(
                    "accountName needs to be alphanumeric and start with a letter", appId=app_id
                )
            )
        if options.event_logging_retention_period < 1:
            return Result.fail(
                errors.validation_error(
                    "eventLoggingRetentionPeriod must be at least one day.",
                    eventLoggingRetentionPeriod=options.event_logging_retention_period,
                )
            )

        tenant = self.store.for_tenant(app_id)
        if tenant.tenant_exists():
            return Result.fail(errors.app_conflict(app_id))

        now = self.clock.now()
        public_keys = [self.issuer.generate(app_id, KeyClass.PUBLIC) for _ in range(2)]
        secret_keys = [self.issuer.generate(app_id, KeyClass.SECRET) for _ in range(2)]
        account = AccountInformation(
            account_id=app_id,
            created_at=now,
            admin_emails=normalize_emails([options.admin_email]),
        )
        features = AppFeatures(
            tenant_id=app_id,
            event_logging_is_enabled=options.event_logging_is_enabled,
            event_logging_retention_period=options.event_logging_retention_period,
        )
        try:
            with tenant.transaction() as tx:
                tx.save_account_information(account)
                tx.set_features(features)
                for issued in public_keys + secret_keys:
                    tx.store_api_key(issued.to_record(app_id, now))
        except ConstraintViolation as exc:
            logger.info("app_create_conflict", tenant_id=app_id, reason=exc.message)
            return Result.fail(errors.app_conflict(app_id))

        logger.info("app_created", tenant_id=app_id)
        self.audit.emit(audit.APP_CREATED, app_id, now, admin_emails=list(account.admin_emails))
        return Result.ok(
            AccountKeysCreation(
                api_key1=public_keys[0].plaintext,
                api_key2=public_keys[1].plaintext,
                api_secret1=secret_keys[0].plaintext,
                api_secret2=secret_keys[1].plaintext,
            )
        )

    # ------------------------------------------------------------------
    # freeze / unfreeze
    # ------------------------------------------------------------------

    def freeze(self, app_id: str) -> Result[str]:
        tenant = self.store.for_tenant(app_id)
        if not tenant.tenant_exists():
            return Result.fail(errors.app_not_found(app_id))
        now = self.clock.now()
        with tenant.transaction() as tx:
            tx.lock_all_api_keys(True, now)
        logger.info("app_frozen", tenant_id=app_id)
        self.audit.emit(audit.APP_FROZEN, app_id, now)
        return Result.ok(app_id)

    def unfreeze(self, app_id: str) -> Result[str]:
        """Unlock every key and clear any scheduled deletion."""
        tenant = self.store.for_tenant(app_id)
        if not tenant.tenant_exists():
            return Result.fail(errors.app_not_found(app_id))
        now = self.clock.now()
        with tenant.transaction() as tx:
            tx.lock_all_api_keys(False, None)
            tx.set_app_deletion_date(None)
        logger.info("app_unfrozen", tenant_id=app_id)
        self.audit.emit(audit.APP_UNFROZEN, app_id, now)
        return Result.ok(app_id)

    def cancel_deletion(self, app_id: str) -> Result[CancelResult]:
        return self.unfreeze(app_id).map(lambda _: CancelResult())

    # ------------------------------------------------------------------
    # deletion
    # ------------------------------------------------------------------

    def mark_for_deletion(
        self, app_id: str, requested_by: Optional[str], base_url: str
    ) -> Result[AppDeletionResult]:
        tenant = self.store.for_tenant(app_id)
        account = tenant.get_account_information()
        if account is None:
            return Result.fail(errors.app_not_found(app_id))
        if account.deleted_at is not None:
            return Result.fail(errors.already_pending(app_id, account.deleted_at.isoformat()))

        now = self.clock.now()
        young = account.created_at > now - timedelta(days=self.settings.immediate_deletion_max_age_days)
        if young or not tenant.has_users():
            try:
                with tenant.transaction() as tx:
                    tx.delete_account()
            except ConstraintViolation:
                return Result.fail(errors.app_not_found(app_id))
            logger.info(
                "app_deleted",
                tenant_id=app_id,
                requested_by=requested_by,
                immediate=True,
            )
            self.audit.emit(audit.APP_DELETED, app_id, now, actor_id=requested_by, immediate=True)
            return Result.ok(
                AppDeletionResult(
                    message=f"The app '{app_id}' was deleted.",
                    is_deleted=True,
                    delete_at=now,
                    admin_emails=account.admin_emails,
                )
            )

        delete_at = add_months(now, self.settings.deletion_grace_months)
        try:
            with tenant.transaction() as tx:
                tx.schedule_deletion(delete_at)
                tx.lock_all_api_keys(True, now)
        except ConstraintViolation as exc:
            # Another request for the same tenant committed first
            logger.info("app_mark_conflict", tenant_id=app_id, reason=exc.message)
            current = tenant.get_account_information()
            if current is None:
                return Result.fail(errors.app_not_found(app_id))
            pending_at = current.deleted_at.isoformat() if current.deleted_at else None
            return Result.fail(errors.already_pending(app_id, pending_at))
        logger.info(
            "app_marked_for_deletion",
            tenant_id=app_id,
            requested_by=requested_by,
            delete_at=delete_at.isoformat(),
        )
        self.audit.emit(
            audit.APP_MARKED_FOR_DELETION,
            app_id,
            now,
            actor_id=requested_by,
            delete_at=delete_at.isoformat(),
        )
        return Result.ok(
            AppDeletionResult(
                message=f"The app '{app_id}' will be deleted at '{delete_at.isoformat()}'.",
                is_deleted=False,
                delete_at=delete_at,
                admin_emails=account.admin_emails,
                cancel_link=f"{base_url.rstrip('/')}/apps/delete/cancel/{app_id}",
            )
        )

    def delete(self, app_id: str) -> Result[AppDeletionResult]:
        """Erase a tenant whose grace period has elapsed."""
        tenant = self.store.for_tenant(app_id)
        account = tenant.get_account_information()
        if account is None:
            return Result.fail(errors.app_not_found(app_id))
        now = self.clock.now()
        if account.deleted_at is None or account.deleted_at > now:
            return Result.fail(errors.not_pending(app_id))

        with tenant.transaction() as tx:
            tx.delete_account()
        logger.info("app_deleted", tenant_id=app_id, immediate=False)
        self.audit.emit(audit.APP_DELETED, app_id, now, immediate=False)
        return Result.ok(
            AppDeletionResult(
                message=f"The app '{app_id}' was deleted.",
                is_deleted=True,
                delete_at=now,
                admin_emails=account.admin_emails,
            )
        )

    def list_pending_deletion(self) -> List[str]:
        return sorted(self.store.get_applications_pending_deletion())

    def purge_elapsed(self, *, dry_run: bool = False) -> List[AppDeletionResult]:
        """Delete every pending tenant whose grace period is over."""
        report = _PurgeReport()
        now = self.clock.now()
        for app_id in self.list_pending_deletion():
            account = self.store.for_tenant(app_id).get_account_information()
            if account is None or account.deleted_at is None or account.deleted_at > now:
                report.skipped.append(app_id)
                continue
            if dry_run:
                report.deleted.append(
                    AppDeletionResult(
                        message=f"The app '{app_id}' would be deleted.",
                        is_deleted=False,
                        delete_at=account.deleted_at,
                        admin_emails=account.admin_emails,
                    )
                )
                continue
            result = self.delete(app_id)
            if result.is_ok:
                report.deleted.append(result.value)
            else:
                report.skipped.append(app_id)
        logger.info(
            "pending_deletions_purged",
            deleted=len(report.deleted),
            skipped=len(report.skipped),
            dry_run=dry_run,
        )
        return report.deleted

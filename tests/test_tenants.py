"""Tests for the tenant lifecycle: create, freeze, scheduled deletion."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from keyward.service import audit
from keyward.service.errors import ConflictError
from keyward.service.tenants import KEYS_STORED_MESSAGE, AppCreateOptions, TenantLifecycleManager
from keyward.storage.errors import StorageError
from keyward.storage.memory import MemoryStore
from keyward.storage.models import TenantUser


def _add_user(store, clock, app_id="testapp123", user_id="user-1", disabled=False):
    store.for_tenant(app_id).add_user(
        TenantUser(user_id=user_id, tenant_id=app_id, created_at=clock.now(), disabled=disabled)
    )


class _StaleAccountStore:
    """Store whose account lookups return a fixed, possibly outdated, record."""

    def __init__(self, store, account):
        self._store = store
        self._account = account

    def for_tenant(self, tenant_id):
        tenant = self._store.for_tenant(tenant_id)
        tenant.get_account_information = lambda: self._account
        return tenant

    def __getattr__(self, name):
        return getattr(self._store, name)


class TestCreate:
    def test_returns_four_keys_and_message(self, make_app):
        keys = make_app()
        assert keys.api_key1.startswith("pk_testapp123_")
        assert keys.api_key2.startswith("pk_testapp123_")
        assert keys.api_secret1.startswith("sk_testapp123_")
        assert keys.api_secret2.startswith("sk_testapp123_")
        assert len({keys.api_key1, keys.api_key2, keys.api_secret1, keys.api_secret2}) == 4
        assert keys.message == KEYS_STORED_MESSAGE

    def test_persists_account_features_and_keys(self, make_app, store):
        make_app(event_logging_is_enabled=True, event_logging_retention_period=30)
        tenant = store.for_tenant("testapp123")
        account = tenant.get_account_information()
        assert account.admin_emails == ("admin@example.com",)
        assert account.subscription_tier == "Free"
        assert account.deleted_at is None
        features = tenant.get_app_features()
        assert features.event_logging_is_enabled
        assert features.event_logging_retention_period == 30
        assert len(tenant.list_api_keys()) == 4

    def test_secret_keys_are_never_stored_in_plaintext(self, make_app, store):
        keys = make_app()
        stored_values = {record.value for record in store.for_tenant("testapp123").list_api_keys()}
        assert keys.api_secret1 not in stored_values
        assert keys.api_secret2 not in stored_values
        assert keys.api_key1 in stored_values

    @pytest.mark.parametrize("app_id", ["1app", "ab", "my-app", "a" * 64, "app_1"])
    def test_invalid_app_id(self, manager, app_id):
        result = manager.create(app_id, AppCreateOptions(admin_email="a@example.com"))
        assert result.error_code == "validation_error"
        assert result.problem.status == 400

    def test_missing_admin_email(self, manager):
        result = manager.create("testapp123", AppCreateOptions(admin_email="  "))
        assert result.error_code == "validation_error"

    def test_missing_options(self, manager):
        assert manager.create("testapp123", None).error_code == "validation_error"

    def test_duplicate_is_conflict(self, make_app, manager):
        make_app()
        result = manager.create("testapp123", AppCreateOptions(admin_email="b@example.com"))
        assert result.error_code == "conflict"
        assert result.problem.status == 409
        assert result.problem.extensions["appId"] == "testapp123"
        with pytest.raises(ConflictError):
            result.unwrap()

    def test_concurrent_creates_yield_one_winner(self, manager):
        results = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            results.append(manager.create("raceapp", AppCreateOptions(admin_email="a@example.com")))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.is_ok) == 1
        assert all(r.error_code == "conflict" for r in results if not r.is_ok)

    def test_failed_snapshot_write_leaves_no_tenant(self, tmp_path, monkeypatch, issuer, clock, settings):
        store = MemoryStore(str(tmp_path), token_key_encryption_secret="s3cret")
        manager = TenantLifecycleManager(store, issuer=issuer, clock=clock, settings=settings)

        def fail():
            raise StorageError("failed to persist in-memory state: disk full")

        monkeypatch.setattr(store, "_persist_state", fail)

        with pytest.raises(StorageError):
            manager.create("testapp123", AppCreateOptions(admin_email="admin@example.com"))

        assert not store.for_tenant("testapp123").tenant_exists()
        assert store.for_tenant("testapp123").list_api_keys() == []
        assert manager.is_available("testapp123")

    def test_is_available(self, make_app, manager):
        assert manager.is_available("freshapp")
        make_app("takenapp")
        assert not manager.is_available("takenapp")
        assert not manager.is_available("ab")
        assert not manager.is_available("")

    def test_emits_audit_event(self, make_app, audit_sink):
        make_app()
        assert audit_sink.actions() == [audit.APP_CREATED]
        assert audit_sink.events[0].tenant_id == "testapp123"


class TestFreeze:
    def test_create_validate_freeze_locked(self, make_app, manager, validator):
        keys = make_app()
        assert validator.validate_secret_key(keys.api_secret1).value == "testapp123"

        assert manager.freeze("testapp123").is_ok

        result = validator.validate_secret_key(keys.api_secret1)
        assert result.error_code == "locked"
        assert result.problem.status == 403
        assert "locked" in result.problem.title

    def test_freeze_locks_every_key(self, make_app, manager, store):
        make_app()
        manager.freeze("testapp123")
        assert all(record.locked for record in store.for_tenant("testapp123").list_api_keys())

    def test_unfreeze_unlocks_every_key(self, make_app, manager, validator):
        keys = make_app()
        manager.freeze("testapp123")
        assert manager.unfreeze("testapp123").is_ok
        assert validator.validate_public_key(keys.api_key1).is_ok
        assert validator.validate_secret_key(keys.api_secret2).is_ok

    def test_unknown_app(self, manager):
        assert manager.freeze("nosuchapp").error_code == "app_not_found"
        assert manager.unfreeze("nosuchapp").error_code == "app_not_found"
        assert manager.freeze("nosuchapp").problem.status == 404

    def test_audit_trail(self, make_app, manager, audit_sink):
        make_app()
        manager.freeze("testapp123")
        manager.unfreeze("testapp123")
        assert audit_sink.actions() == [audit.APP_CREATED, audit.APP_FROZEN, audit.APP_UNFROZEN]


class TestMarkForDeletion:
    def test_young_app_is_deleted_immediately(self, make_app, manager, store, clock):
        make_app()
        _add_user(store, clock)
        clock.advance(timedelta(days=1))

        result = manager.mark_for_deletion("testapp123", "admin@example.com", "https://admin.example.com")

        assert result.is_ok
        assert result.value.is_deleted
        assert result.value.admin_emails == ("admin@example.com",)
        assert not store.for_tenant("testapp123").tenant_exists()

    def test_app_without_users_is_deleted_immediately(self, make_app, manager, store, clock):
        make_app()
        clock.advance(timedelta(days=10))
        result = manager.mark_for_deletion("testapp123", None, "https://admin.example.com")
        assert result.value.is_deleted
        assert not store.for_tenant("testapp123").tenant_exists()

    def test_disabled_users_still_count(self, make_app, manager, store, clock):
        make_app()
        _add_user(store, clock, disabled=True)
        clock.advance(timedelta(days=10))
        result = manager.mark_for_deletion("testapp123", None, "https://admin.example.com")
        assert not result.value.is_deleted

    def test_established_app_gets_grace_period(self, make_app, manager, store, validator, clock):
        keys = make_app()
        _add_user(store, clock)
        clock.advance(timedelta(days=4))
        now = clock.now()

        result = manager.mark_for_deletion("testapp123", "ops@example.com", "https://admin.example.com/")

        assert result.is_ok
        deletion = result.value
        assert not deletion.is_deleted
        assert deletion.delete_at == datetime(2024, 2, 19, 12, 0, tzinfo=timezone.utc)
        assert deletion.delete_at == now.replace(month=2)
        assert deletion.cancel_link == "https://admin.example.com/apps/delete/cancel/testapp123"
        assert deletion.admin_emails == ("admin@example.com",)
        assert "will be deleted" in deletion.message

        assert manager.list_pending_deletion() == ["testapp123"]
        assert validator.validate_secret_key(keys.api_secret1).error_code == "locked"

    def test_already_pending(self, make_app, manager, store, clock):
        make_app()
        _add_user(store, clock)
        clock.advance(timedelta(days=4))
        manager.mark_for_deletion("testapp123", None, "https://x")
        result = manager.mark_for_deletion("testapp123", None, "https://x")
        assert result.error_code == "already_pending"
        assert result.problem.status == 400

    def test_unknown_app(self, manager):
        assert manager.mark_for_deletion("nosuchapp", None, "https://x").error_code == "app_not_found"

    def test_concurrent_mark_keeps_first_deletion_date(
        self, make_app, manager, store, issuer, clock, settings
    ):
        make_app()
        _add_user(store, clock)
        clock.advance(timedelta(days=4))
        unscheduled = store.for_tenant("testapp123").get_account_information()
        first = manager.mark_for_deletion("testapp123", None, "https://x").value

        clock.advance(timedelta(days=1))
        # The second request read the account before the first one committed
        racing = TenantLifecycleManager(
            _StaleAccountStore(store, unscheduled), issuer=issuer, clock=clock, settings=settings
        )
        result = racing.mark_for_deletion("testapp123", None, "https://x")

        assert result.error_code == "already_pending"
        assert store.for_tenant("testapp123").get_account_information().deleted_at == first.delete_at


class TestCancelAndDelete:
    @pytest.fixture
    def pending_app(self, make_app, manager, store, clock):
        keys = make_app()
        _add_user(store, clock)
        clock.advance(timedelta(days=4))
        manager.mark_for_deletion("testapp123", None, "https://x")
        return keys

    def test_cancel_restores_app(self, pending_app, manager, store, validator):
        result = manager.cancel_deletion("testapp123")
        assert result.is_ok
        assert "will not be deleted" in result.value.message
        assert store.for_tenant("testapp123").get_account_information().deleted_at is None
        assert manager.list_pending_deletion() == []
        assert validator.validate_secret_key(pending_app.api_secret1).is_ok

    def test_cancel_is_idempotent(self, pending_app, manager):
        assert manager.cancel_deletion("testapp123").is_ok
        assert manager.cancel_deletion("testapp123").is_ok

    def test_delete_before_grace_period_ends(self, pending_app, manager, clock):
        clock.advance(timedelta(days=10))
        result = manager.delete("testapp123")
        assert result.error_code == "not_pending"
        assert result.problem.status == 400

    def test_delete_without_schedule(self, make_app, manager):
        make_app()
        assert manager.delete("testapp123").error_code == "not_pending"

    def test_delete_after_grace_period(self, pending_app, manager, store, validator, clock, audit_sink):
        clock.advance(timedelta(days=40))
        result = manager.delete("testapp123")

        assert result.is_ok
        assert result.value.is_deleted
        assert not store.for_tenant("testapp123").tenant_exists()
        assert store.for_tenant("testapp123").list_api_keys() == []
        assert manager.list_pending_deletion() == []
        assert validator.validate_secret_key(pending_app.api_secret1).error_code == "unknown_key"
        assert audit_sink.actions()[-1] == audit.APP_DELETED

    def test_app_id_is_available_again_after_delete(self, pending_app, manager, clock):
        clock.advance(timedelta(days=40))
        manager.delete("testapp123")
        assert manager.is_available("testapp123")
        assert manager.create("testapp123", AppCreateOptions(admin_email="new@example.com")).is_ok

    def test_delete_unknown_app(self, manager):
        assert manager.delete("nosuchapp").error_code == "app_not_found"


class TestPurgeElapsed:
    def test_only_elapsed_apps_are_purged(self, make_app, manager, store, clock):
        make_app("firstapp")
        _add_user(store, clock, app_id="firstapp")
        clock.advance(timedelta(days=4))
        manager.mark_for_deletion("firstapp", None, "https://x")

        clock.advance(timedelta(days=20))
        make_app("secondapp")
        _add_user(store, clock, app_id="secondapp")
        clock.advance(timedelta(days=4))
        manager.mark_for_deletion("secondapp", None, "https://x")

        clock.advance(timedelta(days=10))
        deleted = manager.purge_elapsed()

        assert [d.message for d in deleted] == ["The app 'firstapp' was deleted."]
        assert manager.list_pending_deletion() == ["secondapp"]

    def test_dry_run_changes_nothing(self, make_app, manager, store, clock):
        make_app()
        _add_user(store, clock)
        clock.advance(timedelta(days=4))
        manager.mark_for_deletion("testapp123", None, "https://x")
        clock.advance(timedelta(days=40))

        reported = manager.purge_elapsed(dry_run=True)

        assert len(reported) == 1
        assert not reported[0].is_deleted
        assert store.for_tenant("testapp123").tenant_exists()

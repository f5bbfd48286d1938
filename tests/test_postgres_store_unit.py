import contextlib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from keyward.logging import get_logger
from keyward.storage.common import token_key_cipher
from keyward.storage.errors import ConstraintViolation, StorageUnavailable
from keyward.storage.models import AccountInformation, TokenKey
from keyward.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextlib.contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


@pytest.fixture
def conn():
    return MagicMock()


@pytest.fixture
def pg(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.logger = get_logger(__name__)
    store._cipher = token_key_cipher("unit-test-secret")
    return store


def test_requires_encryption_secret():
    with pytest.raises(RuntimeError):
        PostgresStore("postgresql://localhost/keyward", token_key_encryption_secret=None)


def test_unit_of_work_runs_in_one_transaction(pg, conn):
    account = AccountInformation(account_id="tenantone", created_at=NOW)
    with pg.for_tenant("tenantone").transaction() as tx:
        tx.save_account_information(account)
        tx.lock_all_api_keys(True, NOW)

    assert pg.pool.checkouts == 1
    conn.transaction.assert_called_once()
    assert conn.execute.call_count == 2
    first_sql = conn.execute.call_args_list[0].args[0]
    assert "INSERT INTO account_information" in first_sql


def test_empty_unit_of_work_touches_nothing(pg, conn):
    with pg.for_tenant("tenantone").transaction():
        pass
    assert pg.pool.checkouts == 0


def test_token_key_secret_is_encrypted(pg, conn):
    with pg.for_tenant("tenantone").transaction() as tx:
        tx.add_token_key(TokenKey(1, "tenantone", NOW, b"s" * 32))

    params = conn.execute.call_args.args[1]
    ciphertext = params[3]
    assert b"s" * 32 != ciphertext.encode()
    assert pg._cipher.decrypt(ciphertext.encode()) == b"s" * 32


def test_unique_violation_maps_to_constraint(pg, conn):
    conn.execute.side_effect = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation):
        with pg.for_tenant("tenantone").transaction() as tx:
            tx.save_account_information(AccountInformation(account_id="tenantone", created_at=NOW))


def test_operational_error_is_retryable(pg, conn):
    conn.execute.side_effect = psycopg.OperationalError("connection refused")
    with pytest.raises(StorageUnavailable) as excinfo:
        pg.for_tenant("tenantone").tenant_exists()
    assert excinfo.value.retryable


def test_pool_timeout_is_retryable(pg):
    class ExhaustedPool:
        @contextlib.contextmanager
        def connection(self):
            raise PoolTimeout("no connection available")
            yield  # pragma: no cover

    pg.pool = ExhaustedPool()
    with pytest.raises(StorageUnavailable):
        pg.get_applications_pending_deletion()


def test_delete_account_of_missing_tenant(pg, conn):
    conn.execute.return_value.rowcount = 0
    with pytest.raises(ConstraintViolation):
        with pg.for_tenant("ghost").transaction() as tx:
            tx.delete_account()


def test_consume_uses_delete_returning(pg, conn):
    conn.execute.return_value.fetchone.return_value = {
        "token_id": "t1",
        "tenant_id": "tenantone",
        "user_id": "user-1",
        "purpose": "sign-in",
        "issued_at": NOW,
        "expires_at": NOW + timedelta(minutes=2),
        "key_id": 1,
    }

    token = pg.consume_signin_token("tenantone", "t1")

    sql = conn.execute.call_args.args[0]
    assert sql.startswith("DELETE FROM signin_token")
    assert "RETURNING" in sql
    assert token.user_id == "user-1"


def test_consume_missing_token(pg, conn):
    conn.execute.return_value.fetchone.return_value = None
    assert pg.consume_signin_token("tenantone", "t1") is None


def test_token_keys_are_decrypted(pg, conn):
    ciphertext = pg._cipher.encrypt(b"k" * 32).decode("ascii")
    conn.execute.return_value.fetchall.return_value = [
        {"tenant_id": "tenantone", "key_id": 3, "created_at": NOW, "secret": ciphertext}
    ]
    keys = pg.for_tenant("tenantone").get_token_keys()
    assert keys[0].key_id == 3
    assert keys[0].secret == b"k" * 32


def test_pending_deletion(pg, conn):
    conn.execute.return_value.fetchall.return_value = [{"account_id": "a1"}, {"account_id": "b2"}]
    assert pg.get_applications_pending_deletion() == {"a1", "b2"}


def test_schedule_deletion_only_updates_unscheduled_rows(pg, conn):
    conn.execute.return_value.rowcount = 1
    with pg.for_tenant("tenantone").transaction() as tx:
        tx.schedule_deletion(NOW)

    sql, params = conn.execute.call_args.args
    assert "deleted_at IS NULL" in sql
    assert params == (NOW, "tenantone")


def test_schedule_deletion_on_pending_tenant(pg, conn):
    conn.execute.return_value.rowcount = 0
    with pytest.raises(ConstraintViolation):
        with pg.for_tenant("tenantone").transaction() as tx:
            tx.schedule_deletion(NOW)

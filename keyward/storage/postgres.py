from __future__ import annotations

import contextlib
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Set

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from keyward.logging import get_logger
from keyward.storage.common import (
    StagedWrite,
    UnitOfWork,
    decrypt_token_key,
    token_key_cipher,
)
from keyward.storage.errors import ConstraintViolation, StorageError, StorageUnavailable
from keyward.storage.models import (
    AccountInformation,
    ApiKeyRecord,
    AppFeatures,
    AuthPolicy,
    KeyClass,
    SigninToken,
    TenantUser,
    TokenKey,
    UserVerificationRequirement,
)

# Every tenant-owned table cascades from account_information, so deleting the
# account row erases the tenant in one statement.
_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account_information (
        account_id TEXT PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL,
        admin_emails JSONB NOT NULL DEFAULT '[]'::jsonb,
        subscription_tier TEXT NOT NULL DEFAULT 'Free',
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS account_information_pending_idx
        ON account_information (deleted_at) WHERE deleted_at IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS api_key (
        tenant_id TEXT NOT NULL REFERENCES account_information(account_id) ON DELETE CASCADE,
        key_id TEXT NOT NULL,
        key_class TEXT NOT NULL,
        value TEXT NOT NULL,
        scopes JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL,
        locked BOOLEAN NOT NULL DEFAULT false,
        locked_at TIMESTAMPTZ,
        PRIMARY KEY (tenant_id, key_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_features (
        tenant_id TEXT PRIMARY KEY REFERENCES account_information(account_id) ON DELETE CASCADE,
        event_logging_is_enabled BOOLEAN NOT NULL DEFAULT false,
        event_logging_retention_period INTEGER NOT NULL DEFAULT 365,
        developer_logging_ends_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_policy (
        tenant_id TEXT NOT NULL REFERENCES account_information(account_id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        ttl_seconds DOUBLE PRECISION NOT NULL,
        user_verification TEXT NOT NULL,
        created_at TIMESTAMPTZ,
        edited_at TIMESTAMPTZ,
        PRIMARY KEY (tenant_id, purpose)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS signin_token (
        tenant_id TEXT NOT NULL REFERENCES account_information(account_id) ON DELETE CASCADE,
        token_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        purpose TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        key_id INTEGER NOT NULL,
        PRIMARY KEY (tenant_id, token_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_key (
        tenant_id TEXT NOT NULL REFERENCES account_information(account_id) ON DELETE CASCADE,
        key_id INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        secret TEXT NOT NULL,
        PRIMARY KEY (tenant_id, key_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant_user (
        tenant_id TEXT NOT NULL REFERENCES account_information(account_id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        disabled BOOLEAN NOT NULL DEFAULT false,
        PRIMARY KEY (tenant_id, user_id)
    )
    """,
)


class PostgresStore:
    """Postgres-backed store; each unit of work runs in one transaction."""

    def __init__(
        self,
        dsn: str,
        *,
        token_key_encryption_secret: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        if not token_key_encryption_secret:
            raise RuntimeError("TOKEN_KEY_ENCRYPTION_SECRET is required when using Postgres storage")
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = token_key_cipher(token_key_encryption_secret)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        """Translate driver exceptions into storage errors."""
        try:
            yield
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation(f"{op} violated a constraint", {"op": op}) from exc
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.warning("postgres_unavailable", op=op, error=str(exc))
            raise StorageUnavailable(f"{op} failed: database unavailable", {"op": op}) from exc

    def _ensure_schema(self) -> None:
        with self._guard("ensure_schema"), self._connect() as conn, conn.transaction():
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def for_tenant(self, tenant_id: str) -> "PostgresTenantStore":
        return PostgresTenantStore(self, tenant_id)

    def get_applications_pending_deletion(self) -> Set[str]:
        with self._guard("get_applications_pending_deletion"), self._connect() as conn:
            rows = conn.execute(
                "SELECT account_id FROM account_information WHERE deleted_at IS NOT NULL"
            ).fetchall()
        return {row["account_id"] for row in rows}

    # ------------------------------------------------------------------
    # sign-in tokens
    # ------------------------------------------------------------------

    def save_signin_token(self, token: SigninToken) -> None:
        with self._guard("save_signin_token"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO signin_token (tenant_id, token_id, user_id, purpose, issued_at, expires_at, key_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.tenant_id,
                    token.token_id,
                    token.user_id,
                    token.purpose,
                    token.issued_at,
                    token.expires_at,
                    token.key_id,
                ),
            )

    def get_signin_token(self, tenant_id: str, token_id: str) -> Optional[SigninToken]:
        with self._guard("get_signin_token"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM signin_token WHERE tenant_id = %s AND token_id = %s",
                (tenant_id, token_id),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def consume_signin_token(self, tenant_id: str, token_id: str) -> Optional[SigninToken]:
        with self._guard("consume_signin_token"), self._connect() as conn:
            row = conn.execute(
                "DELETE FROM signin_token WHERE tenant_id = %s AND token_id = %s RETURNING *",
                (tenant_id, token_id),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def purge_expired_signin_tokens(self, now: datetime, retain: timedelta = timedelta(days=1)) -> int:
        with self._guard("purge_expired_signin_tokens"), self._connect() as conn:
            cur = conn.execute("DELETE FROM signin_token WHERE expires_at <= %s", (now - retain,))
        return cur.rowcount or 0

    # ------------------------------------------------------------------
    # unit of work
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _transaction(self, tenant_id: str) -> Iterator[UnitOfWork]:
        uow = UnitOfWork(tenant_id)
        yield uow
        self._commit(uow)

    def _commit(self, uow: UnitOfWork) -> None:
        if not uow.writes:
            return
        with self._guard("commit"), self._connect() as conn, conn.transaction():
            for write in uow.writes:
                self._apply(conn, uow.tenant_id, write)

    def _apply(self, conn, tenant_id: str, write: StagedWrite) -> None:
        op, args = write.op, write.args
        if op == "save_account_information":
            account: AccountInformation = args[0]
            conn.execute(
                """
                INSERT INTO account_information (account_id, created_at, admin_emails, subscription_tier, deleted_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    account.account_id,
                    account.created_at,
                    json.dumps(list(account.admin_emails)),
                    account.subscription_tier,
                    account.deleted_at,
                ),
            )
        elif op == "store_api_key":
            record: ApiKeyRecord = args[0]
            conn.execute(
                """
                INSERT INTO api_key (tenant_id, key_id, key_class, value, scopes, created_at, locked, locked_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    tenant_id,
                    record.key_id,
                    record.key_class.value,
                    record.value,
                    json.dumps(list(record.scopes)),
                    record.created_at,
                    record.locked,
                    record.locked_at,
                ),
            )
        elif op == "set_features":
            features: AppFeatures = args[0]
            conn.execute(
                """
                INSERT INTO app_features (tenant_id, event_logging_is_enabled, event_logging_retention_period, developer_logging_ends_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    event_logging_is_enabled = EXCLUDED.event_logging_is_enabled,
                    event_logging_retention_period = EXCLUDED.event_logging_retention_period,
                    developer_logging_ends_at = EXCLUDED.developer_logging_ends_at
                """,
                (
                    tenant_id,
                    features.event_logging_is_enabled,
                    features.event_logging_retention_period,
                    features.developer_logging_ends_at,
                ),
            )
        elif op == "lock_all_api_keys":
            locked, at = args
            conn.execute(
                "UPDATE api_key SET locked = %s, locked_at = %s WHERE tenant_id = %s AND locked <> %s",
                (locked, at if locked else None, tenant_id, locked),
            )
        elif op == "set_app_deletion_date":
            cur = conn.execute(
                "UPDATE account_information SET deleted_at = %s WHERE account_id = %s",
                (args[0], tenant_id),
            )
            if not cur.rowcount:
                raise ConstraintViolation("set_app_deletion_date requires an existing tenant", {"tenant_id": tenant_id})
        elif op == "schedule_deletion":
            cur = conn.execute(
                "UPDATE account_information SET deleted_at = %s WHERE account_id = %s AND deleted_at IS NULL",
                (args[0], tenant_id),
            )
            if not cur.rowcount:
                raise ConstraintViolation(
                    "tenant missing or already pending deletion", {"tenant_id": tenant_id}
                )
        elif op == "add_token_key":
            key: TokenKey = args[0]
            conn.execute(
                "INSERT INTO token_key (tenant_id, key_id, created_at, secret) VALUES (%s, %s, %s, %s)",
                (
                    tenant_id,
                    key.key_id,
                    key.created_at,
                    self._cipher.encrypt(key.secret).decode("ascii"),
                ),
            )
        elif op == "remove_token_keys":
            conn.execute(
                "DELETE FROM token_key WHERE tenant_id = %s AND key_id = ANY(%s)",
                (tenant_id, list(args[0])),
            )
        elif op == "delete_account":
            cur = conn.execute(
                "DELETE FROM account_information WHERE account_id = %s", (tenant_id,)
            )
            if not cur.rowcount:
                raise ConstraintViolation("delete_account requires an existing tenant", {"tenant_id": tenant_id})
        else:
            raise StorageError(f"unsupported staged write {op}")

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _json_list(raw: Any) -> tuple:
        if raw is None:
            return ()
        if isinstance(raw, str):
            raw = json.loads(raw)
        return tuple(raw)

    def _account_from_row(self, row: Dict[str, Any]) -> AccountInformation:
        return AccountInformation(
            account_id=row["account_id"],
            created_at=row["created_at"],
            admin_emails=self._json_list(row.get("admin_emails")),
            subscription_tier=row.get("subscription_tier") or "Free",
            deleted_at=row.get("deleted_at"),
        )

    def _api_key_from_row(self, row: Dict[str, Any]) -> ApiKeyRecord:
        return ApiKeyRecord(
            key_id=row["key_id"],
            tenant_id=row["tenant_id"],
            key_class=KeyClass(row["key_class"]),
            value=row["value"],
            scopes=self._json_list(row.get("scopes")),
            created_at=row["created_at"],
            locked=bool(row.get("locked")),
            locked_at=row.get("locked_at"),
        )

    @staticmethod
    def _features_from_row(row: Dict[str, Any]) -> AppFeatures:
        return AppFeatures(
            tenant_id=row["tenant_id"],
            event_logging_is_enabled=bool(row.get("event_logging_is_enabled")),
            event_logging_retention_period=int(row.get("event_logging_retention_period") or 365),
            developer_logging_ends_at=row.get("developer_logging_ends_at"),
        )

    @staticmethod
    def _policy_from_row(row: Dict[str, Any]) -> AuthPolicy:
        return AuthPolicy(
            purpose=row["purpose"],
            tenant_id=row["tenant_id"],
            time_to_live=timedelta(seconds=float(row["ttl_seconds"])),
            user_verification=UserVerificationRequirement(row["user_verification"]),
            created_at=row.get("created_at"),
            edited_at=row.get("edited_at"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> SigninToken:
        return SigninToken(
            token_id=row["token_id"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            purpose=row["purpose"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            key_id=int(row["key_id"]),
        )


class PostgresTenantStore:
    """PostgresStore view bound to one tenant."""

    def __init__(self, store: PostgresStore, tenant_id: str) -> None:
        self.store = store
        self.tenant_id = tenant_id

    def _fetchone(self, op: str, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        with self.store._guard(op), self.store._connect() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetchall(self, op: str, sql: str, params: tuple) -> List[Dict[str, Any]]:
        with self.store._guard(op), self.store._connect() as conn:
            return conn.execute(sql, params).fetchall()

    def tenant_exists(self) -> bool:
        row = self._fetchone(
            "tenant_exists",
            "SELECT 1 AS present FROM account_information WHERE account_id = %s",
            (self.tenant_id,),
        )
        return row is not None

    def get_account_information(self) -> Optional[AccountInformation]:
        row = self._fetchone(
            "get_account_information",
            "SELECT * FROM account_information WHERE account_id = %s",
            (self.tenant_id,),
        )
        return self.store._account_from_row(row) if row else None

    def get_api_key(self, key_id: str) -> Optional[ApiKeyRecord]:
        row = self._fetchone(
            "get_api_key",
            "SELECT * FROM api_key WHERE tenant_id = %s AND key_id = %s",
            (self.tenant_id, key_id),
        )
        return self.store._api_key_from_row(row) if row else None

    def list_api_keys(self) -> List[ApiKeyRecord]:
        rows = self._fetchall(
            "list_api_keys",
            "SELECT * FROM api_key WHERE tenant_id = %s ORDER BY created_at, key_id",
            (self.tenant_id,),
        )
        return [self.store._api_key_from_row(row) for row in rows]

    def has_users(self) -> bool:
        # Disabled users count: their data would be lost too
        row = self._fetchone(
            "has_users",
            "SELECT EXISTS (SELECT 1 FROM tenant_user WHERE tenant_id = %s) AS present",
            (self.tenant_id,),
        )
        return bool(row and row.get("present"))

    def add_user(self, user: TenantUser) -> None:
        with self.store._guard("add_user"), self.store._connect() as conn:
            conn.execute(
                """
                INSERT INTO tenant_user (tenant_id, user_id, created_at, disabled)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (tenant_id, user_id) DO UPDATE SET disabled = EXCLUDED.disabled
                """,
                (self.tenant_id, user.user_id, user.created_at, user.disabled),
            )

    def get_token_keys(self) -> List[TokenKey]:
        rows = self._fetchall(
            "get_token_keys",
            "SELECT * FROM token_key WHERE tenant_id = %s ORDER BY created_at, key_id",
            (self.tenant_id,),
        )
        return [
            TokenKey(
                key_id=int(row["key_id"]),
                tenant_id=self.tenant_id,
                created_at=row["created_at"],
                secret=decrypt_token_key(self.store._cipher, row["secret"]),
            )
            for row in rows
        ]

    def get_app_features(self) -> Optional[AppFeatures]:
        row = self._fetchone(
            "get_app_features",
            "SELECT * FROM app_features WHERE tenant_id = %s",
            (self.tenant_id,),
        )
        return self.store._features_from_row(row) if row else None

    def set_features(self, features: AppFeatures) -> None:
        with self.transaction() as tx:
            tx.set_features(features)

    def get_auth_policy(self, purpose: str) -> Optional[AuthPolicy]:
        row = self._fetchone(
            "get_auth_policy",
            "SELECT * FROM auth_policy WHERE tenant_id = %s AND purpose = %s",
            (self.tenant_id, purpose),
        )
        return self.store._policy_from_row(row) if row else None

    def list_auth_policies(self) -> List[AuthPolicy]:
        rows = self._fetchall(
            "list_auth_policies",
            "SELECT * FROM auth_policy WHERE tenant_id = %s ORDER BY purpose",
            (self.tenant_id,),
        )
        return [self.store._policy_from_row(row) for row in rows]

    def save_auth_policy(self, policy: AuthPolicy) -> None:
        with self.store._guard("save_auth_policy"), self.store._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_policy (tenant_id, purpose, ttl_seconds, user_verification, created_at, edited_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, purpose) DO UPDATE SET
                    ttl_seconds = EXCLUDED.ttl_seconds,
                    user_verification = EXCLUDED.user_verification,
                    edited_at = EXCLUDED.edited_at
                """,
                (
                    self.tenant_id,
                    policy.purpose,
                    policy.time_to_live.total_seconds(),
                    policy.user_verification.value,
                    policy.created_at,
                    policy.edited_at,
                ),
            )

    def delete_auth_policy(self, purpose: str) -> bool:
        with self.store._guard("delete_auth_policy"), self.store._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_policy WHERE tenant_id = %s AND purpose = %s",
                (self.tenant_id, purpose),
            )
            return bool(cur.rowcount)

    def transaction(self):
        return self.store._transaction(self.tenant_id)

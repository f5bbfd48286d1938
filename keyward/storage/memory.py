from __future__ import annotations

import contextlib
import dataclasses
import json
import os
import secrets
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from cryptography.fernet import Fernet

from keyward.logging import get_logger
from keyward.storage.common import (
    UnitOfWork,
    decrypt_token_key,
    deserialize_datetime,
    serialize_datetime,
    token_key_cipher,
)
from keyward.storage.errors import ConstraintViolation, StorageError
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

# Tables keyed by tenant id
_TENANT_TABLES = (
    "accounts",
    "api_keys",
    "features",
    "auth_policies",
    "signin_tokens",
    "token_keys",
    "users",
)


class MemoryStore:
    """Thread-safe in-memory backing store with an optional JSON snapshot."""

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        token_key_encryption_secret: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, AccountInformation] = {}
        self.api_keys: Dict[str, Dict[str, ApiKeyRecord]] = {}
        self.features: Dict[str, AppFeatures] = {}
        self.auth_policies: Dict[str, Dict[str, AuthPolicy]] = {}
        self.signin_tokens: Dict[str, Dict[str, SigninToken]] = {}
        # Token key secrets are held Fernet-encrypted
        self.token_keys: Dict[str, Dict[int, tuple[datetime, str]]] = {}
        self.users: Dict[str, Dict[str, TenantUser]] = {}
        self._pending_deletion: Set[str] = set()
        # RLock for all data operations; a commit holds it for the whole unit of work
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(token_key_encryption_secret)

        if self.fs_root:
            self._load_state()

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("TOKEN_KEY_ENCRYPTION_SECRET")
        if not material and self.fs_root:
            secret_path = self.fs_root / ".token_key_secret"
            try:
                material = secret_path.read_text().strip() or None
            except FileNotFoundError:
                material = None
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    secret_path.write_text(generated)
                    os.chmod(secret_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist token key encryption secret") from exc
                material = generated
        if not material:
            # Nothing is persisted, so a process-local key is enough
            material = secrets.token_urlsafe(64)
        return token_key_cipher(material)

    def _decrypt(self, ciphertext: str) -> bytes:
        return decrypt_token_key(self._cipher, ciphertext)

    def for_tenant(self, tenant_id: str) -> "MemoryTenantStore":
        return MemoryTenantStore(self, tenant_id)

    # ------------------------------------------------------------------
    # global queries
    # ------------------------------------------------------------------

    def get_applications_pending_deletion(self) -> Set[str]:
        with self._data_lock:
            return set(self._pending_deletion)

    # ------------------------------------------------------------------
    # sign-in tokens
    # ------------------------------------------------------------------

    def save_signin_token(self, token: SigninToken) -> None:
        with self._data_lock:
            if token.tenant_id not in self.accounts:
                raise ConstraintViolation("tenant missing for token", {"tenant_id": token.tenant_id})
            if token.token_id in self.signin_tokens.get(token.tenant_id, {}):
                raise ConstraintViolation("token id already exists", {"token_id": token.token_id})
            with self._restore_on_failure(token.tenant_id):
                self.signin_tokens.setdefault(token.tenant_id, {})[token.token_id] = token
                self._persist_state()

    def get_signin_token(self, tenant_id: str, token_id: str) -> Optional[SigninToken]:
        with self._data_lock:
            return self.signin_tokens.get(tenant_id, {}).get(token_id)

    def consume_signin_token(self, tenant_id: str, token_id: str) -> Optional[SigninToken]:
        with self._data_lock, self._restore_on_failure(tenant_id):
            token = self.signin_tokens.get(tenant_id, {}).pop(token_id, None)
            if token is not None:
                self._persist_state()
            return token

    def purge_expired_signin_tokens(self, now: datetime, retain: timedelta = timedelta(days=1)) -> int:
        """Drop tokens that expired more than ``retain`` ago."""
        cutoff = now - retain
        removed = 0
        with self._data_lock:
            for tokens in self.signin_tokens.values():
                for token_id in [t for t, tok in tokens.items() if tok.expires_at <= cutoff]:
                    tokens.pop(token_id, None)
                    removed += 1
            if removed:
                self._persist_state()
        return removed

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
        with self._data_lock:
            # Apply to copies so a failing write leaves the live state untouched
            staged = _TenantState.snapshot(self, uow.tenant_id)
            for write in uow.writes:
                apply = getattr(staged, write.op, None)
                if apply is None:
                    raise StorageError(f"unsupported staged write {write.op}")
                apply(*write.args)
            with self._restore_on_failure(uow.tenant_id):
                staged.install(self)
                self._persist_state()

    @contextlib.contextmanager
    def _restore_on_failure(self, tenant_id: str) -> Iterator[None]:
        """Put the tenant's rows back if the block raises, e.g. when the snapshot write fails."""
        saved = {}
        for name in _TENANT_TABLES:
            rows = getattr(self, name).get(tenant_id)
            saved[name] = dict(rows) if isinstance(rows, dict) else rows
        was_pending = tenant_id in self._pending_deletion
        try:
            yield
        except Exception:
            for name, rows in saved.items():
                table = getattr(self, name)
                if rows is None:
                    table.pop(tenant_id, None)
                else:
                    table[tenant_id] = rows
            if was_pending:
                self._pending_deletion.add(tenant_id)
            else:
                self._pending_deletion.discard(tenant_id)
            self.logger.warning("memory_store_write_rolled_back", tenant_id=tenant_id)
            raise

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "api_keys": [
                self._serialize_api_key(k)
                for keys in self.api_keys.values()
                for k in keys.values()
            ],
            "features": [self._serialize_features(f) for f in self.features.values()],
            "auth_policies": [
                self._serialize_policy(p)
                for policies in self.auth_policies.values()
                for p in policies.values()
            ],
            "signin_tokens": [
                self._serialize_token(t)
                for tokens in self.signin_tokens.values()
                for t in tokens.values()
            ],
            "token_keys": [
                {
                    "tenant_id": tenant_id,
                    "key_id": key_id,
                    "created_at": serialize_datetime(created_at),
                    "secret": ciphertext,
                }
                for tenant_id, keys in self.token_keys.items()
                for key_id, (created_at, ciphertext) in keys.items()
            ],
            "users": [
                {
                    "tenant_id": u.tenant_id,
                    "user_id": u.user_id,
                    "created_at": serialize_datetime(u.created_at),
                    "disabled": u.disabled,
                }
                for users in self.users.values()
                for u in users.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["account_id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._pending_deletion = {
            tenant for tenant, account in self.accounts.items() if account.deleted_at
        }
        self.api_keys = {}
        for raw in data.get("api_keys", []):
            record = self._deserialize_api_key(raw)
            self.api_keys.setdefault(record.tenant_id, {})[record.key_id] = record
        self.features = {
            f["tenant_id"]: self._deserialize_features(f) for f in data.get("features", [])
        }
        self.auth_policies = {}
        for raw in data.get("auth_policies", []):
            policy = self._deserialize_policy(raw)
            self.auth_policies.setdefault(policy.tenant_id, {})[policy.purpose] = policy
        self.signin_tokens = {}
        for raw in data.get("signin_tokens", []):
            token = self._deserialize_token(raw)
            self.signin_tokens.setdefault(token.tenant_id, {})[token.token_id] = token
        self.token_keys = {}
        for raw in data.get("token_keys", []):
            created_at = deserialize_datetime(raw["created_at"])
            self.token_keys.setdefault(raw["tenant_id"], {})[int(raw["key_id"])] = (
                created_at,
                raw["secret"],
            )
        self.users = {}
        for raw in data.get("users", []):
            user = TenantUser(
                user_id=raw["user_id"],
                tenant_id=raw["tenant_id"],
                created_at=deserialize_datetime(raw["created_at"]),
                disabled=bool(raw.get("disabled", False)),
            )
            self.users.setdefault(user.tenant_id, {})[user.user_id] = user
        self.logger.info("memory_store_loaded", tenants=len(self.accounts), path=str(path))
        return True

    @staticmethod
    def _serialize_account(account: AccountInformation) -> dict:
        return {
            "account_id": account.account_id,
            "created_at": serialize_datetime(account.created_at),
            "admin_emails": list(account.admin_emails),
            "subscription_tier": account.subscription_tier,
            "deleted_at": serialize_datetime(account.deleted_at),
        }

    @staticmethod
    def _deserialize_account(data: dict) -> AccountInformation:
        return AccountInformation(
            account_id=data["account_id"],
            created_at=deserialize_datetime(data["created_at"]),
            admin_emails=tuple(data.get("admin_emails") or ()),
            subscription_tier=data.get("subscription_tier", "Free"),
            deleted_at=deserialize_datetime(data.get("deleted_at")),
        )

    @staticmethod
    def _serialize_api_key(record: ApiKeyRecord) -> dict:
        return {
            "key_id": record.key_id,
            "tenant_id": record.tenant_id,
            "key_class": record.key_class.value,
            "value": record.value,
            "scopes": list(record.scopes),
            "created_at": serialize_datetime(record.created_at),
            "locked": record.locked,
            "locked_at": serialize_datetime(record.locked_at),
        }

    @staticmethod
    def _deserialize_api_key(data: dict) -> ApiKeyRecord:
        return ApiKeyRecord(
            key_id=data["key_id"],
            tenant_id=data["tenant_id"],
            key_class=KeyClass(data["key_class"]),
            value=data["value"],
            scopes=tuple(data.get("scopes") or ()),
            created_at=deserialize_datetime(data["created_at"]),
            locked=bool(data.get("locked", False)),
            locked_at=deserialize_datetime(data.get("locked_at")),
        )

    @staticmethod
    def _serialize_features(features: AppFeatures) -> dict:
        return {
            "tenant_id": features.tenant_id,
            "event_logging_is_enabled": features.event_logging_is_enabled,
            "event_logging_retention_period": features.event_logging_retention_period,
            "developer_logging_ends_at": serialize_datetime(features.developer_logging_ends_at),
        }

    @staticmethod
    def _deserialize_features(data: dict) -> AppFeatures:
        return AppFeatures(
            tenant_id=data["tenant_id"],
            event_logging_is_enabled=bool(data.get("event_logging_is_enabled", False)),
            event_logging_retention_period=int(data.get("event_logging_retention_period", 365)),
            developer_logging_ends_at=deserialize_datetime(data.get("developer_logging_ends_at")),
        )

    @staticmethod
    def _serialize_policy(policy: AuthPolicy) -> dict:
        return {
            "purpose": policy.purpose,
            "tenant_id": policy.tenant_id,
            "time_to_live": policy.time_to_live.total_seconds(),
            "user_verification": policy.user_verification.value,
            "created_at": serialize_datetime(policy.created_at),
            "edited_at": serialize_datetime(policy.edited_at),
        }

    @staticmethod
    def _deserialize_policy(data: dict) -> AuthPolicy:
        return AuthPolicy(
            purpose=data["purpose"],
            tenant_id=data["tenant_id"],
            time_to_live=timedelta(seconds=float(data["time_to_live"])),
            user_verification=UserVerificationRequirement(data["user_verification"]),
            created_at=deserialize_datetime(data.get("created_at")),
            edited_at=deserialize_datetime(data.get("edited_at")),
        )

    @staticmethod
    def _serialize_token(token: SigninToken) -> dict:
        return {
            "token_id": token.token_id,
            "tenant_id": token.tenant_id,
            "user_id": token.user_id,
            "purpose": token.purpose,
            "issued_at": serialize_datetime(token.issued_at),
            "expires_at": serialize_datetime(token.expires_at),
            "key_id": token.key_id,
        }

    @staticmethod
    def _deserialize_token(data: dict) -> SigninToken:
        return SigninToken(
            token_id=data["token_id"],
            tenant_id=data["tenant_id"],
            user_id=data["user_id"],
            purpose=data["purpose"],
            issued_at=deserialize_datetime(data["issued_at"]),
            expires_at=deserialize_datetime(data["expires_at"]),
            key_id=int(data["key_id"]),
        )


@dataclasses.dataclass
class _TenantState:
    """Copy of one tenant's rows that a unit of work is applied to before install."""

    tenant_id: str
    account: Optional[AccountInformation]
    api_keys: Dict[str, ApiKeyRecord]
    features: Optional[AppFeatures]
    token_keys: Dict[int, tuple[datetime, str]]
    cipher: Fernet
    deleted: bool = False

    @classmethod
    def snapshot(cls, store: MemoryStore, tenant_id: str) -> "_TenantState":
        return cls(
            tenant_id=tenant_id,
            account=store.accounts.get(tenant_id),
            api_keys=dict(store.api_keys.get(tenant_id, {})),
            features=store.features.get(tenant_id),
            token_keys=dict(store.token_keys.get(tenant_id, {})),
            cipher=store._cipher,
        )

    def _require_account(self, op: str) -> AccountInformation:
        if self.account is None:
            raise ConstraintViolation(f"{op} requires an existing tenant", {"tenant_id": self.tenant_id})
        return self.account

    def save_account_information(self, account: AccountInformation) -> None:
        if account.account_id != self.tenant_id:
            raise ConstraintViolation("account id does not match tenant", {"tenant_id": self.tenant_id})
        if self.account is not None:
            raise ConstraintViolation("tenant already exists", {"tenant_id": self.tenant_id})
        self.account = account
        self.deleted = False

    def store_api_key(self, record: ApiKeyRecord) -> None:
        self._require_account("store_api_key")
        if record.key_id in self.api_keys:
            raise ConstraintViolation("api key id already exists", {"key_id": record.key_id})
        self.api_keys[record.key_id] = record

    def set_features(self, features: AppFeatures) -> None:
        self._require_account("set_features")
        self.features = features

    def lock_all_api_keys(self, locked: bool, at: Optional[datetime]) -> None:
        for key_id, record in self.api_keys.items():
            if record.locked == locked:
                continue
            self.api_keys[key_id] = dataclasses.replace(
                record, locked=locked, locked_at=at if locked else None
            )

    def set_app_deletion_date(self, deleted_at: Optional[datetime]) -> None:
        account = self._require_account("set_app_deletion_date")
        self.account = dataclasses.replace(account, deleted_at=deleted_at)

    def schedule_deletion(self, deleted_at: datetime) -> None:
        account = self._require_account("schedule_deletion")
        if account.deleted_at is not None:
            raise ConstraintViolation("tenant already pending deletion", {"tenant_id": self.tenant_id})
        self.account = dataclasses.replace(account, deleted_at=deleted_at)

    def add_token_key(self, key: TokenKey) -> None:
        self._require_account("add_token_key")
        if key.key_id in self.token_keys:
            raise ConstraintViolation("token key id already exists", {"key_id": key.key_id})
        self.token_keys[key.key_id] = (
            key.created_at,
            self.cipher.encrypt(key.secret).decode("ascii"),
        )

    def remove_token_keys(self, key_ids: tuple[int, ...]) -> None:
        for key_id in key_ids:
            self.token_keys.pop(key_id, None)

    def delete_account(self) -> None:
        self._require_account("delete_account")
        self.account = None
        self.api_keys = {}
        self.features = None
        self.token_keys = {}
        self.deleted = True

    def install(self, store: MemoryStore) -> None:
        tenant = self.tenant_id
        if self.deleted:
            for table in (
                store.accounts,
                store.api_keys,
                store.features,
                store.auth_policies,
                store.signin_tokens,
                store.token_keys,
                store.users,
            ):
                table.pop(tenant, None)
            store._pending_deletion.discard(tenant)
            return
        if self.account is None:
            return
        store.accounts[tenant] = self.account
        store.api_keys[tenant] = self.api_keys
        if self.features is not None:
            store.features[tenant] = self.features
        store.token_keys[tenant] = self.token_keys
        if self.account.deleted_at is not None:
            store._pending_deletion.add(tenant)
        else:
            store._pending_deletion.discard(tenant)


class MemoryTenantStore:
    """MemoryStore view bound to one tenant."""

    def __init__(self, store: MemoryStore, tenant_id: str) -> None:
        self.store = store
        self.tenant_id = tenant_id

    @property
    def _lock(self) -> threading.RLock:
        return self.store._data_lock

    def tenant_exists(self) -> bool:
        with self._lock:
            return self.tenant_id in self.store.accounts

    def get_account_information(self) -> Optional[AccountInformation]:
        with self._lock:
            return self.store.accounts.get(self.tenant_id)

    def get_api_key(self, key_id: str) -> Optional[ApiKeyRecord]:
        with self._lock:
            return self.store.api_keys.get(self.tenant_id, {}).get(key_id)

    def list_api_keys(self) -> List[ApiKeyRecord]:
        with self._lock:
            return sorted(
                self.store.api_keys.get(self.tenant_id, {}).values(),
                key=lambda k: (k.created_at, k.key_id),
            )

    def has_users(self) -> bool:
        # Disabled users count: their data would be lost too
        with self._lock:
            return bool(self.store.users.get(self.tenant_id))

    def add_user(self, user: TenantUser) -> None:
        with self._lock:
            if self.tenant_id not in self.store.accounts:
                raise ConstraintViolation("tenant missing for user", {"tenant_id": self.tenant_id})
            with self.store._restore_on_failure(self.tenant_id):
                self.store.users.setdefault(self.tenant_id, {})[user.user_id] = user
                self.store._persist_state()

    def get_token_keys(self) -> List[TokenKey]:
        with self._lock:
            raw = dict(self.store.token_keys.get(self.tenant_id, {}))
        return sorted(
            (
                TokenKey(
                    key_id=key_id,
                    tenant_id=self.tenant_id,
                    created_at=created_at,
                    secret=self.store._decrypt(ciphertext),
                )
                for key_id, (created_at, ciphertext) in raw.items()
            ),
            key=lambda k: k.created_at,
        )

    def get_app_features(self) -> Optional[AppFeatures]:
        with self._lock:
            return self.store.features.get(self.tenant_id)

    def set_features(self, features: AppFeatures) -> None:
        with self.transaction() as tx:
            tx.set_features(features)

    def get_auth_policy(self, purpose: str) -> Optional[AuthPolicy]:
        with self._lock:
            return self.store.auth_policies.get(self.tenant_id, {}).get(purpose)

    def list_auth_policies(self) -> List[AuthPolicy]:
        with self._lock:
            return sorted(
                self.store.auth_policies.get(self.tenant_id, {}).values(),
                key=lambda p: p.purpose,
            )

    def save_auth_policy(self, policy: AuthPolicy) -> None:
        with self._lock:
            if self.tenant_id not in self.store.accounts:
                raise ConstraintViolation("tenant missing for policy", {"tenant_id": self.tenant_id})
            with self.store._restore_on_failure(self.tenant_id):
                self.store.auth_policies.setdefault(self.tenant_id, {})[policy.purpose] = policy
                self.store._persist_state()

    def delete_auth_policy(self, purpose: str) -> bool:
        with self._lock, self.store._restore_on_failure(self.tenant_id):
            removed = self.store.auth_policies.get(self.tenant_id, {}).pop(purpose, None)
            if removed is not None:
                self.store._persist_state()
            return removed is not None

    def transaction(self):
        return self.store._transaction(self.tenant_id)

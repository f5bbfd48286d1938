"""Storage collaborator contracts shared between memory and postgres backends.

Core services only talk to these protocols. Multi-step writes are staged on a
``UnitOfWork`` and applied by the backend in a single commit, so a failure
before the commit leaves nothing behind.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    ContextManager,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
)

from cryptography.fernet import Fernet, InvalidToken

from keyward.clock import ensure_utc
from keyward.storage.errors import StorageError
from keyward.storage.models import (
    AccountInformation,
    ApiKeyRecord,
    AppFeatures,
    AuthPolicy,
    SigninToken,
    TenantUser,
    TokenKey,
)


# ============================================================================
# UNIT OF WORK
# ============================================================================


@dataclass(frozen=True)
class StagedWrite:
    op: str
    args: Tuple[Any, ...] = ()


@dataclass
class UnitOfWork:
    """Ordered list of writes for one tenant, applied atomically on commit."""

    tenant_id: str
    writes: List[StagedWrite] = field(default_factory=list)

    def _stage(self, op: str, *args: Any) -> None:
        self.writes.append(StagedWrite(op, args))

    def save_account_information(self, account: AccountInformation) -> None:
        self._stage("save_account_information", account)

    def store_api_key(self, record: ApiKeyRecord) -> None:
        self._stage("store_api_key", record)

    def set_features(self, features: AppFeatures) -> None:
        self._stage("set_features", features)

    def lock_all_api_keys(self, locked: bool, at: Optional[datetime]) -> None:
        self._stage("lock_all_api_keys", locked, at)

    def set_app_deletion_date(self, deleted_at: Optional[datetime]) -> None:
        self._stage("set_app_deletion_date", deleted_at)

    def schedule_deletion(self, deleted_at: datetime) -> None:
        """Set DeletedAt; fails the commit when it is already set."""
        self._stage("schedule_deletion", deleted_at)

    def add_token_key(self, key: TokenKey) -> None:
        self._stage("add_token_key", key)

    def remove_token_keys(self, key_ids: Iterable[int]) -> None:
        self._stage("remove_token_keys", tuple(key_ids))

    def delete_account(self) -> None:
        self._stage("delete_account")

    @property
    def ops(self) -> List[str]:
        return [write.op for write in self.writes]


# ============================================================================
# COLLABORATOR PROTOCOLS
# ============================================================================


class SigninTokenStore(Protocol):
    """Where sign-in token records live; the primary store or Redis."""

    def save_signin_token(self, token: SigninToken) -> None: ...

    def get_signin_token(self, tenant_id: str, token_id: str) -> Optional[SigninToken]: ...

    def consume_signin_token(self, tenant_id: str, token_id: str) -> Optional[SigninToken]: ...


class TenantStore(Protocol):
    """Storage view bound to one tenant."""

    tenant_id: str

    def tenant_exists(self) -> bool: ...

    def get_account_information(self) -> Optional[AccountInformation]: ...

    def get_api_key(self, key_id: str) -> Optional[ApiKeyRecord]: ...

    def list_api_keys(self) -> List[ApiKeyRecord]: ...

    def has_users(self) -> bool: ...

    def add_user(self, user: TenantUser) -> None: ...

    def get_token_keys(self) -> List[TokenKey]: ...

    def get_app_features(self) -> Optional[AppFeatures]: ...

    def set_features(self, features: AppFeatures) -> None: ...

    def get_auth_policy(self, purpose: str) -> Optional[AuthPolicy]: ...

    def list_auth_policies(self) -> List[AuthPolicy]: ...

    def save_auth_policy(self, policy: AuthPolicy) -> None: ...

    def delete_auth_policy(self, purpose: str) -> bool: ...

    def transaction(self) -> ContextManager[UnitOfWork]: ...


class GlobalStore(Protocol):
    """Cross-tenant storage entry point."""

    def for_tenant(self, tenant_id: str) -> TenantStore: ...

    def get_applications_pending_deletion(self) -> Set[str]: ...


# ============================================================================
# SERIALIZATION HELPERS
# ============================================================================


def normalize_emails(emails: Optional[Sequence[str]]) -> Tuple[str, ...]:
    if not emails:
        return ()
    cleaned: List[str] = []
    lowered: Set[str] = set()
    for email in emails:
        text = (email or "").strip()
        if text and text.lower() not in lowered:
            lowered.add(text.lower())
            cleaned.append(text)
    return tuple(cleaned)


def token_key_cipher(key_material: str) -> Fernet:
    """Fernet cipher for token signing keys at rest, derived from arbitrary key material."""
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest()))


def decrypt_token_key(cipher: Fernet, ciphertext: str) -> bytes:
    try:
        return cipher.decrypt(ciphertext.encode("ascii"))
    except InvalidToken as exc:
        raise StorageError("token key could not be decrypted") from exc


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_utc(datetime.fromisoformat(raw))


__all__ = [
    "StagedWrite",
    "UnitOfWork",
    "SigninTokenStore",
    "TenantStore",
    "GlobalStore",
    "normalize_emails",
    "serialize_datetime",
    "deserialize_datetime",
    "token_key_cipher",
    "decrypt_token_key",
]

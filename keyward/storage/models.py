from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple


class KeyClass(str, Enum):
    """Credential class; the value is the tag that prefixes the plaintext key."""

    PUBLIC = "pk"
    SECRET = "sk"


class UserVerificationRequirement(str, Enum):
    DISCOURAGED = "discouraged"
    PREFERRED = "preferred"
    REQUIRED = "required"

    @classmethod
    def parse(cls, value: "str | UserVerificationRequirement") -> "UserVerificationRequirement":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


@dataclass(frozen=True)
class AccountInformation:
    account_id: str
    created_at: datetime
    admin_emails: Tuple[str, ...] = ()
    subscription_tier: str = "Free"
    deleted_at: Optional[datetime] = None

    @property
    def is_pending_deletion(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class ApiKeyRecord:
    key_id: str
    tenant_id: str
    key_class: KeyClass
    # Plaintext for public keys, argon2id hash for secret keys
    value: str
    scopes: Tuple[str, ...]
    created_at: datetime
    locked: bool = False
    locked_at: Optional[datetime] = None


@dataclass(frozen=True)
class AppFeatures:
    tenant_id: str
    event_logging_is_enabled: bool = False
    # Days
    event_logging_retention_period: int = 365
    developer_logging_ends_at: Optional[datetime] = None

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.event_logging_retention_period)


@dataclass(frozen=True)
class AuthPolicy:
    purpose: str
    time_to_live: timedelta
    user_verification: UserVerificationRequirement
    tenant_id: str
    is_preset: bool = False
    created_at: Optional[datetime] = None
    edited_at: Optional[datetime] = None


@dataclass(frozen=True)
class SigninToken:
    token_id: str
    tenant_id: str
    user_id: str
    purpose: str
    issued_at: datetime
    expires_at: datetime
    key_id: int


@dataclass(frozen=True)
class TokenKey:
    key_id: int
    tenant_id: str
    created_at: datetime
    secret: bytes = field(repr=False)


@dataclass(frozen=True)
class TenantUser:
    user_id: str
    tenant_id: str
    created_at: datetime
    disabled: bool = False

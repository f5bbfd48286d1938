from __future__ import annotations

import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from keyward.clock import Clock, SystemClock, describe_elapsed
from keyward.logging import credential_hint, get_logger
from keyward.service import errors
from keyward.service.errors import Result
from keyward.storage.common import GlobalStore
from keyward.storage.models import ApiKeyRecord, KeyClass

logger = get_logger(__name__)

ACCOUNT_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]{2,62}$")

# Random suffix: 32 bytes rendered as 64 lowercase hex characters
RANDOM_SUFFIX_BYTES = 32
# Trailing characters of the random suffix used as the per-tenant record index
LOOKUP_FRAGMENT_LENGTH = 8

_KEY_PATTERN = re.compile(
    r"^(?P<tag>pk|sk)_(?P<tenant>[A-Za-z][A-Za-z0-9]{2,62})_(?P<random>[0-9a-f]{%d})$"
    % (RANDOM_SUFFIX_BYTES * 2)
)

DEFAULT_SCOPES: Mapping[KeyClass, Tuple[str, ...]] = {
    KeyClass.PUBLIC: ("register", "login"),
    KeyClass.SECRET: ("token_register", "token_verify"),
}

# Capability table: scope name -> credential class that may carry it
SCOPE_KEY_CLASS: Mapping[str, KeyClass] = {
    "register": KeyClass.PUBLIC,
    "login": KeyClass.PUBLIC,
    "token_register": KeyClass.SECRET,
    "token_verify": KeyClass.SECRET,
}


def is_valid_account_id(app_id: Optional[str]) -> bool:
    return bool(app_id) and ACCOUNT_ID_PATTERN.match(app_id) is not None


def required_key_class(scope: str) -> Optional[KeyClass]:
    return SCOPE_KEY_CLASS.get(scope)


@dataclass(frozen=True)
class StoredPlainValue:
    """Public keys are stored as-is; they are not secrets."""

    value: str
    reversible: bool = True


@dataclass(frozen=True)
class StoredSecretHash:
    """Salted argon2id digest; the plaintext cannot be recovered from it."""

    value: str
    reversible: bool = False


StorableKey = Union[StoredPlainValue, StoredSecretHash]


@dataclass(frozen=True)
class IssuedKey:
    plaintext: str
    storable: StorableKey
    key_class: KeyClass
    key_id: str

    def to_record(
        self,
        tenant_id: str,
        created_at: datetime,
        scopes: Optional[Tuple[str, ...]] = None,
    ) -> ApiKeyRecord:
        return ApiKeyRecord(
            key_id=self.key_id,
            tenant_id=tenant_id,
            key_class=self.key_class,
            value=self.storable.value,
            scopes=scopes if scopes is not None else DEFAULT_SCOPES[self.key_class],
            created_at=created_at,
        )


@dataclass(frozen=True)
class ParsedKey:
    key_class: KeyClass
    tenant_id: str
    key_id: str
    plaintext: str


def parse_api_key(presented: Optional[str]) -> Optional[ParsedKey]:
    """Extract class and tenant from a presented key without touching storage."""
    if not presented or not isinstance(presented, str):
        return None
    match = _KEY_PATTERN.match(presented.strip())
    if not match:
        return None
    return ParsedKey(
        key_class=KeyClass(match.group("tag")),
        tenant_id=match.group("tenant"),
        key_id=match.group("random")[-LOOKUP_FRAGMENT_LENGTH:],
        plaintext=presented.strip(),
    )


class KeyIssuer:
    """Generates credential material for a tenant."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def generate(self, tenant_id: str, key_class: KeyClass) -> IssuedKey:
        if not is_valid_account_id(tenant_id):
            raise ValueError(f"invalid tenant id for key generation: {tenant_id!r}")
        random_part = secrets.token_hex(RANDOM_SUFFIX_BYTES)
        plaintext = f"{key_class.value}_{tenant_id}_{random_part}"
        if key_class is KeyClass.SECRET:
            storable: StorableKey = StoredSecretHash(self._hasher.hash(plaintext))
        else:
            storable = StoredPlainValue(plaintext)
        return IssuedKey(
            plaintext=plaintext,
            storable=storable,
            key_class=key_class,
            key_id=random_part[-LOOKUP_FRAGMENT_LENGTH:],
        )


class PasswordVerifier(Protocol):
    def verify(self, hash: str, password: str) -> bool: ...


class KeyValidator:
    """Resolves a presented API key to its tenant."""

    def __init__(
        self,
        store: GlobalStore,
        *,
        clock: Optional[Clock] = None,
        hasher: Optional[PasswordVerifier] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def validate(
        self, presented: Optional[str], expected_class: Optional[KeyClass] = None
    ) -> Result[str]:
        return self._resolve(presented, expected_class).map(lambda record: record.tenant_id)

    def _resolve(
        self, presented: Optional[str], expected_class: Optional[KeyClass]
    ) -> Result[ApiKeyRecord]:
        parsed = parse_api_key(presented)
        if parsed is None or (expected_class and parsed.key_class is not expected_class):
            logger.info(
                "api_key_unparsable",
                api_key_hint=credential_hint(presented),
                expected_class=expected_class.name if expected_class else None,
            )
            return Result.fail(errors.invalid_format())

        record = self.store.for_tenant(parsed.tenant_id).get_api_key(parsed.key_id)
        if record is None or record.key_class is not parsed.key_class:
            logger.info(
                "api_key_unknown",
                tenant_id=parsed.tenant_id,
                api_key_hint=credential_hint(presented),
            )
            return Result.fail(errors.unknown_key())

        if record.locked:
            locked_for = None
            if record.locked_at is not None:
                locked_for = describe_elapsed(self.clock.now() - record.locked_at)
            logger.info("api_key_locked", tenant_id=parsed.tenant_id, key_id=record.key_id)
            return Result.fail(errors.key_locked(locked_for))

        if not self._matches(record, parsed.plaintext):
            logger.info(
                "api_key_mismatch",
                tenant_id=parsed.tenant_id,
                api_key_hint=credential_hint(presented),
            )
            return Result.fail(errors.key_mismatch())
        return Result.ok(record)

    def validate_public_key(self, presented: Optional[str]) -> Result[str]:
        return self.validate(presented, KeyClass.PUBLIC)

    def validate_secret_key(self, presented: Optional[str]) -> Result[str]:
        return self.validate(presented, KeyClass.SECRET)

    def authorize(self, presented: Optional[str], scope: str) -> Result[str]:
        """Validate a key and require that it carries ``scope``."""
        key_class = required_key_class(scope)
        if key_class is None:
            return Result.fail(errors.validation_error(f"Unknown scope '{scope}'.", scope=scope))
        resolved = self._resolve(presented, key_class)
        if not resolved.is_ok:
            return Result.fail(resolved.problem)
        record = resolved.value
        if scope not in record.scopes:
            return Result.fail(errors.forbidden_scope(scope))
        return Result.ok(record.tenant_id)

    def _matches(self, record: ApiKeyRecord, plaintext: str) -> bool:
        if record.key_class is KeyClass.PUBLIC:
            return hmac.compare_digest(record.value.encode(), plaintext.encode())
        try:
            return self._hasher.verify(record.value, plaintext)
        except (InvalidHash, VerificationError):
            return False


__all__ = [
    "ACCOUNT_ID_PATTERN",
    "DEFAULT_SCOPES",
    "SCOPE_KEY_CLASS",
    "IssuedKey",
    "KeyIssuer",
    "KeyValidator",
    "ParsedKey",
    "StoredPlainValue",
    "StoredSecretHash",
    "is_valid_account_id",
    "parse_api_key",
    "required_key_class",
]

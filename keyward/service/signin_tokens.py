"""Short-lived sign-in tokens.

A token reads ``verify_{key_id}.{token_id}.{signature}``. The signature is an
HMAC-SHA256 over ``tenant_id:token_id:user_id`` keyed with one of the tenant's
token keys, so a token minted for one tenant never verifies under another.
The record itself (user, purpose, expiry) lives in the token store.

Token keys rotate: a fresh key is minted once the newest is older than
``KEY_ROTATION_AGE`` and keys older than ``KEY_MAX_AGE`` are pruned. The
rotation age leaves room for a token issued with the longest allowed lifetime
to still find its key.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from keyward.clock import Clock, SystemClock
from keyward.config import MAX_TOKEN_TTL_SECONDS, Settings
from keyward.logging import get_logger
from keyward.service import errors
from keyward.service.auth_config import SIGN_IN_PURPOSE, AuthConfigRegistry, validate_ttl
from keyward.service.errors import Result
from keyward.service.tenants import writable_problem
from keyward.storage.common import SigninTokenStore, TenantStore
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import SigninToken, TokenKey, UserVerificationRequirement

logger = get_logger(__name__)

TOKEN_PREFIX = "verify_"
KEY_MAX_AGE = timedelta(days=30)
KEY_ROTATION_AGE = KEY_MAX_AGE - timedelta(seconds=MAX_TOKEN_TTL_SECONDS)
TOKEN_KEY_BYTES = 32


@dataclass(frozen=True)
class IssuedSigninToken:
    token: str
    user_id: str
    purpose: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class VerifiedSignin:
    tenant_id: str
    user_id: str
    purpose: str
    issued_at: datetime
    expires_at: datetime
    user_verification: Optional[UserVerificationRequirement] = None


@dataclass(frozen=True)
class _ParsedToken:
    key_id: int
    token_id: str
    signature: str


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def sign(secret: bytes, tenant_id: str, token_id: str, user_id: str) -> str:
    message = f"{tenant_id}:{token_id}:{user_id}".encode("utf-8")
    return _b64(hmac.new(secret, message, hashlib.sha256).digest())


def _parse(token: Optional[str]) -> Optional[_ParsedToken]:
    if not token or not token.startswith(TOKEN_PREFIX):
        return None
    parts = token[len(TOKEN_PREFIX):].split(".")
    if len(parts) != 3 or not all(parts):
        return None
    key_part, token_id, signature = parts
    if not key_part.isdigit():
        return None
    return _ParsedToken(int(key_part), token_id, signature)


class SigninTokenService:
    """Issues and verifies sign-in tokens for one tenant."""

    def __init__(
        self,
        store: TenantStore,
        registry: AuthConfigRegistry,
        token_store: SigninTokenStore,
        *,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.token_store = token_store
        self.clock = clock or SystemClock()
        self.settings = settings or Settings()

    @property
    def tenant_id(self) -> str:
        return self.store.tenant_id

    def issue(
        self,
        user_id: str,
        purpose: str = SIGN_IN_PURPOSE,
        ttl: Optional[timedelta] = None,
    ) -> Result[IssuedSigninToken]:
        if not user_id or not user_id.strip():
            return Result.fail(errors.validation_error("userId is required.", field="userId"))
        problem = writable_problem(self.store)
        if problem is not None:
            return Result.fail(problem)

        if ttl is None:
            policy = self.registry.get(purpose)
            if policy.is_ok:
                ttl = policy.value.time_to_live
            else:
                ttl = timedelta(seconds=self.settings.default_signin_ttl_seconds)
        ttl_problem = validate_ttl(ttl)
        if ttl_problem is not None:
            return Result.fail(ttl_problem)

        now = self.clock.now()
        try:
            key = self._signing_key(now)
        except ConstraintViolation:
            # The tenant was deleted while the token was being issued
            return Result.fail(errors.app_not_found(self.tenant_id))
        token_id = secrets.token_hex(16)
        record = SigninToken(
            token_id=token_id,
            tenant_id=self.tenant_id,
            user_id=user_id,
            purpose=purpose,
            issued_at=now,
            expires_at=now + ttl,
            key_id=key.key_id,
        )
        try:
            self.token_store.save_signin_token(record)
        except ConstraintViolation:
            if self.store.tenant_exists():
                raise
            return Result.fail(errors.app_not_found(self.tenant_id))
        signature = sign(key.secret, self.tenant_id, token_id, user_id)
        logger.info(
            "signin_token_issued",
            tenant_id=self.tenant_id,
            purpose=purpose,
            ttl_seconds=ttl.total_seconds(),
            signing_key=key.key_id,
        )
        return Result.ok(
            IssuedSigninToken(
                token=f"{TOKEN_PREFIX}{key.key_id}.{token_id}.{signature}",
                user_id=user_id,
                purpose=purpose,
                issued_at=record.issued_at,
                expires_at=record.expires_at,
            )
        )

    def verify(self, token: Optional[str]) -> Result[VerifiedSignin]:
        parsed = _parse(token)
        if parsed is None:
            return Result.fail(errors.unknown_token())

        key = next((k for k in self.store.get_token_keys() if k.key_id == parsed.key_id), None)
        record = self.token_store.get_signin_token(self.tenant_id, parsed.token_id)
        if key is None or record is None or record.key_id != key.key_id:
            logger.info("signin_token_unknown", tenant_id=self.tenant_id, signing_key=parsed.key_id)
            return Result.fail(errors.unknown_token())

        expected = sign(key.secret, self.tenant_id, record.token_id, record.user_id)
        if not hmac.compare_digest(expected.encode(), parsed.signature.encode()):
            logger.info("signin_token_bad_signature", tenant_id=self.tenant_id)
            return Result.fail(errors.unknown_token())

        now = self.clock.now()
        if now >= record.expires_at:
            expired_seconds = int((now - record.expires_at).total_seconds())
            return Result.fail(errors.expired_token(expired_seconds))

        if self.settings.signin_token_single_use:
            if self.token_store.consume_signin_token(self.tenant_id, record.token_id) is None:
                # Another verification consumed it first
                return Result.fail(errors.unknown_token())

        policy = self.registry.get(record.purpose)
        logger.info("signin_token_verified", tenant_id=self.tenant_id, purpose=record.purpose)
        return Result.ok(
            VerifiedSignin(
                tenant_id=self.tenant_id,
                user_id=record.user_id,
                purpose=record.purpose,
                issued_at=record.issued_at,
                expires_at=record.expires_at,
                user_verification=policy.value.user_verification if policy.is_ok else None,
            )
        )

    def _signing_key(self, now: datetime) -> TokenKey:
        keys = self.store.get_token_keys()
        newest = keys[-1] if keys else None
        stale: List[int] = [k.key_id for k in keys if now - k.created_at > KEY_MAX_AGE]
        fresh: Optional[TokenKey] = None
        if newest is None or now - newest.created_at > KEY_ROTATION_AGE:
            fresh = TokenKey(
                key_id=max((k.key_id for k in keys), default=0) + 1,
                tenant_id=self.tenant_id,
                created_at=now,
                secret=secrets.token_bytes(TOKEN_KEY_BYTES),
            )
        if fresh is None and not stale:
            return newest  # type: ignore[return-value]

        try:
            with self.store.transaction() as tx:
                if fresh is not None:
                    tx.add_token_key(fresh)
                if stale:
                    tx.remove_token_keys(stale)
        except ConstraintViolation:
            # A concurrent issue rotated first; sign with whatever it installed
            keys = self.store.get_token_keys()
            if not keys or not self.store.tenant_exists():
                raise
            return keys[-1]
        logger.info(
            "token_keys_rotated",
            tenant_id=self.tenant_id,
            created=fresh.key_id if fresh else None,
            pruned=stale,
        )
        return fresh or newest  # type: ignore[return-value]

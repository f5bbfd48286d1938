from __future__ import annotations

import dataclasses
import re
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from keyward.clock import Clock, SystemClock
from keyward.config import MAX_TOKEN_TTL_SECONDS, MIN_TOKEN_TTL_SECONDS
from keyward.logging import get_logger
from keyward.service import errors
from keyward.service.errors import Result
from keyward.service.tenants import writable_problem
from keyward.storage.common import TenantStore
from keyward.storage.models import AuthPolicy, UserVerificationRequirement

logger = get_logger(__name__)

SIGN_IN_PURPOSE = "sign-in"
STEP_UP_PURPOSE = "step-up"

_PURPOSE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,254}$")


def sign_in_preset(tenant_id: str, ttl: Optional[timedelta] = None) -> AuthPolicy:
    return AuthPolicy(
        purpose=SIGN_IN_PURPOSE,
        time_to_live=ttl or timedelta(minutes=2),
        user_verification=UserVerificationRequirement.PREFERRED,
        tenant_id=tenant_id,
        is_preset=True,
    )


def step_up_preset(tenant_id: str) -> AuthPolicy:
    return AuthPolicy(
        purpose=STEP_UP_PURPOSE,
        time_to_live=timedelta(minutes=3),
        user_verification=UserVerificationRequirement.REQUIRED,
        tenant_id=tenant_id,
        is_preset=True,
    )


PRESETS: Dict[str, Callable[[str], AuthPolicy]] = {
    SIGN_IN_PURPOSE: sign_in_preset,
    STEP_UP_PURPOSE: step_up_preset,
}


def validate_ttl(ttl: timedelta) -> Optional[errors.Problem]:
    seconds = ttl.total_seconds()
    if seconds < MIN_TOKEN_TTL_SECONDS or seconds > MAX_TOKEN_TTL_SECONDS:
        return errors.invalid_ttl(seconds, MIN_TOKEN_TTL_SECONDS, MAX_TOKEN_TTL_SECONDS)
    return None


class AuthConfigRegistry:
    """Per-tenant authentication policies keyed by purpose."""

    def __init__(
        self,
        store: TenantStore,
        *,
        clock: Optional[Clock] = None,
        default_signin_ttl: Optional[timedelta] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.default_signin_ttl = default_signin_ttl

    def _preset(self, purpose: str) -> Optional[AuthPolicy]:
        if purpose == SIGN_IN_PURPOSE:
            return sign_in_preset(self.tenant_id, self.default_signin_ttl)
        factory = PRESETS.get(purpose)
        return factory(self.tenant_id) if factory else None

    @property
    def tenant_id(self) -> str:
        return self.store.tenant_id

    def get(self, purpose: str) -> Result[AuthPolicy]:
        """Return the stored policy for ``purpose``, else its preset."""
        stored = self.store.get_auth_policy(purpose)
        if stored is not None:
            return Result.ok(dataclasses.replace(stored, is_preset=purpose in PRESETS))
        preset = self._preset(purpose)
        if preset is not None:
            return Result.ok(preset)
        return Result.fail(errors.purpose_not_found(purpose))

    def list(self) -> List[AuthPolicy]:
        stored = {p.purpose: p for p in self.store.list_auth_policies()}
        policies: List[AuthPolicy] = []
        for purpose in PRESETS:
            if purpose in stored:
                policies.append(dataclasses.replace(stored.pop(purpose), is_preset=True))
            else:
                policies.append(self._preset(purpose))
        policies.extend(stored[purpose] for purpose in sorted(stored))
        return policies

    def set(
        self,
        purpose: str,
        ttl: timedelta,
        user_verification: UserVerificationRequirement | str,
    ) -> Result[AuthPolicy]:
        """Create or replace the policy for ``purpose``."""
        purpose = (purpose or "").strip()
        if not _PURPOSE_PATTERN.match(purpose):
            return Result.fail(
                errors.validation_error("Purpose must be a non-empty identifier.", purpose=purpose)
            )
        ttl_problem = validate_ttl(ttl)
        if ttl_problem is not None:
            return Result.fail(ttl_problem)
        try:
            uv = UserVerificationRequirement.parse(user_verification)
        except ValueError:
            return Result.fail(
                errors.validation_error(
                    "Unsupported user verification requirement.",
                    userVerificationRequirement=str(user_verification),
                )
            )
        problem = writable_problem(self.store)
        if problem is not None:
            return Result.fail(problem)

        now = self.clock.now()
        existing = self.store.get_auth_policy(purpose)
        policy = AuthPolicy(
            purpose=purpose,
            time_to_live=ttl,
            user_verification=uv,
            tenant_id=self.tenant_id,
            is_preset=purpose in PRESETS,
            created_at=existing.created_at if existing and existing.created_at else now,
            edited_at=now if existing else None,
        )
        self.store.save_auth_policy(policy)
        logger.info(
            "auth_policy_saved",
            tenant_id=self.tenant_id,
            purpose=purpose,
            ttl_seconds=ttl.total_seconds(),
            user_verification=uv.value,
            updated=existing is not None,
        )
        return Result.ok(policy)

    def delete(self, purpose: str) -> Result[str]:
        if purpose in PRESETS:
            return Result.fail(errors.preset_purpose(purpose))
        problem = writable_problem(self.store)
        if problem is not None:
            return Result.fail(problem)
        if not self.store.delete_auth_policy(purpose):
            return Result.fail(errors.purpose_not_found(purpose))
        logger.info("auth_policy_deleted", tenant_id=self.tenant_id, purpose=purpose)
        return Result.ok(purpose)

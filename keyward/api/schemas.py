from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from keyward.config import MAX_TOKEN_TTL_SECONDS, MIN_TOKEN_TTL_SECONDS
from keyward.service.auth_config import SIGN_IN_PURPOSE
from keyward.service.features import FeatureUpdate
from keyward.service.tenants import AccountKeysCreation, AppCreateOptions, AppDeletionResult
from keyward.storage.models import AuthPolicy, UserVerificationRequirement

DEFAULT_SIGNIN_TTL = timedelta(seconds=120)

# d.hh:mm:ss[.fffffff] with the day part optional
_TIMESPAN = re.compile(
    r"^(?:(?P<days>\d+)\.)?(?P<hours>\d{1,2}):(?P<minutes>\d{2}):(?P<seconds>\d{2})(?:\.(?P<fraction>\d{1,7}))?$"
)

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def parse_timespan(value: Any) -> timedelta:
    """Accept seconds (int/float/numeric string), a timedelta or a ``d.hh:mm:ss`` span."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError("time span must be a number of seconds or d.hh:mm:ss")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return timedelta(seconds=float(text))
        except ValueError:
            pass
        match = _TIMESPAN.match(text)
        if match:
            fraction = match.group("fraction") or "0"
            return timedelta(
                days=int(match.group("days") or 0),
                hours=int(match.group("hours")),
                minutes=int(match.group("minutes")),
                seconds=int(match.group("seconds")),
                microseconds=int(fraction.ljust(7, "0")[:6]),
            )
    raise ValueError("time span must be a number of seconds or d.hh:mm:ss")


def format_timespan(value: timedelta) -> str:
    total = int(value.total_seconds())
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    span = f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{days}.{span}" if days else span


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class ProblemDetails(BaseModel):
    """RFC 7807 body; extension members are kept as extra fields."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, serialize_by_alias=True)

    type: str
    title: str
    status: int
    error_code: str = Field(..., alias="errorCode")


class AppCreateRequest(_CamelModel):
    admin_email: str = Field(..., alias="adminEmail", max_length=320)
    event_logging_is_enabled: bool = Field(False, alias="eventLoggingIsEnabled")
    event_logging_retention_period: int = Field(365, alias="eventLoggingRetentionPeriod", ge=1)

    @field_validator("admin_email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip()
        if not _EMAIL.match(value):
            raise ValueError("adminEmail must be a valid email address")
        return value

    def to_options(self) -> AppCreateOptions:
        return AppCreateOptions(
            admin_email=self.admin_email,
            event_logging_is_enabled=self.event_logging_is_enabled,
            event_logging_retention_period=self.event_logging_retention_period,
        )


class AccountKeysCreationResponse(_CamelModel):
    api_key1: str = Field(..., alias="apiKey1")
    api_key2: str = Field(..., alias="apiKey2")
    api_secret1: str = Field(..., alias="apiSecret1")
    api_secret2: str = Field(..., alias="apiSecret2")
    message: str

    @classmethod
    def from_result(cls, created: AccountKeysCreation) -> "AccountKeysCreationResponse":
        return cls(
            api_key1=created.api_key1,
            api_key2=created.api_key2,
            api_secret1=created.api_secret1,
            api_secret2=created.api_secret2,
            message=created.message,
        )


class SigninTokenRequest(_CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    purpose: str = SIGN_IN_PURPOSE
    time_to_live_seconds: Optional[int] = Field(
        None,
        alias="timeToLive",
        ge=MIN_TOKEN_TTL_SECONDS,
        le=MAX_TOKEN_TTL_SECONDS,
        description="Seconds the token stays valid",
    )

    @property
    def time_to_live(self) -> timedelta:
        if self.time_to_live_seconds is None:
            return DEFAULT_SIGNIN_TTL
        return timedelta(seconds=self.time_to_live_seconds)


class SetAuthenticationConfigurationRequest(_CamelModel):
    purpose: str = Field(..., min_length=1, max_length=255)
    time_to_live: timedelta = Field(..., alias="timeToLive")
    user_verification_requirement: UserVerificationRequirement = Field(
        UserVerificationRequirement.PREFERRED, alias="userVerificationRequirement"
    )

    @field_validator("time_to_live", mode="before")
    @classmethod
    def _parse_time_to_live(cls, value: Any) -> timedelta:
        return parse_timespan(value)

    @field_validator("user_verification_requirement", mode="before")
    @classmethod
    def _parse_user_verification(cls, value: Any) -> UserVerificationRequirement:
        return UserVerificationRequirement.parse(value)


class AuthenticationConfigurationDto(_CamelModel):
    purpose: str
    time_to_live: str = Field(..., alias="timeToLive")
    user_verification_requirement: str = Field(..., alias="userVerificationRequirement")
    is_preset: bool = Field(False, alias="isPreset")
    created_on: Optional[datetime] = Field(None, alias="createdOn")
    edited_on: Optional[datetime] = Field(None, alias="editedOn")

    @classmethod
    def from_policy(cls, policy: AuthPolicy) -> "AuthenticationConfigurationDto":
        return cls(
            purpose=policy.purpose,
            time_to_live=format_timespan(policy.time_to_live),
            user_verification_requirement=policy.user_verification.value,
            is_preset=policy.is_preset,
            created_on=policy.created_at,
            edited_on=policy.edited_at,
        )


class ManageFeaturesRequest(_CamelModel):
    event_logging_is_enabled: Optional[bool] = Field(None, alias="eventLoggingIsEnabled")
    event_logging_retention_period: Optional[int] = Field(
        None, alias="eventLoggingRetentionPeriod", ge=1
    )
    developer_logging_ends_at: Optional[datetime] = Field(None, alias="developerLoggingEndsAt")

    def to_update(self) -> FeatureUpdate:
        return FeatureUpdate(
            event_logging_is_enabled=self.event_logging_is_enabled,
            event_logging_retention_period=self.event_logging_retention_period,
            developer_logging_ends_at=self.developer_logging_ends_at,
            # An explicit null ends developer logging
            clear_developer_logging=(
                "developer_logging_ends_at" in self.model_fields_set
                and self.developer_logging_ends_at is None
            ),
        )


class MarkDeleteAppRequest(_CamelModel):
    app_id: str = Field(..., alias="appId", min_length=1)
    deleted_by: Optional[str] = Field(None, alias="deletedBy")


class AppDeletionResponse(_CamelModel):
    message: str
    is_deleted: bool = Field(..., alias="isDeleted")
    delete_at: datetime = Field(..., alias="deleteAt")
    admin_emails: List[str] = Field(default_factory=list, alias="adminEmails")
    cancel_link: Optional[str] = Field(None, alias="cancelLink")

    @classmethod
    def from_result(cls, result: AppDeletionResult) -> "AppDeletionResponse":
        return cls(
            message=result.message,
            is_deleted=result.is_deleted,
            delete_at=result.delete_at,
            admin_emails=list(result.admin_emails),
            cancel_link=result.cancel_link,
        )

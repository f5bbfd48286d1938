from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from keyward.api.schemas import (
    AccountKeysCreationResponse,
    AppCreateRequest,
    AppDeletionResponse,
    AuthenticationConfigurationDto,
    ManageFeaturesRequest,
    ProblemDetails,
    SetAuthenticationConfigurationRequest,
    SigninTokenRequest,
    format_timespan,
    parse_timespan,
)
from keyward.service.errors import expired_token
from keyward.service.tenants import AccountKeysCreation, AppDeletionResult
from keyward.storage.models import AuthPolicy, UserVerificationRequirement


class TestTimespan:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (120, timedelta(seconds=120)),
            (1.5, timedelta(seconds=1.5)),
            ("90", timedelta(seconds=90)),
            ("00:02:00", timedelta(minutes=2)),
            ("1.02:00:00", timedelta(days=1, hours=2)),
            ("00:00:01.5", timedelta(seconds=1.5)),
            (timedelta(minutes=3), timedelta(minutes=3)),
        ],
    )
    def test_parse(self, raw, expected):
        assert parse_timespan(raw) == expected

    @pytest.mark.parametrize("raw", [True, "two minutes", "1:2:3:4", None, [120]])
    def test_parse_rejects(self, raw):
        with pytest.raises(ValueError):
            parse_timespan(raw)

    def test_format(self):
        assert format_timespan(timedelta(minutes=2)) == "00:02:00"
        assert format_timespan(timedelta(days=7)) == "7.00:00:00"


class TestRequests:
    def test_app_create_uses_camel_case(self):
        request = AppCreateRequest.model_validate(
            {"adminEmail": " admin@example.com ", "eventLoggingIsEnabled": True}
        )
        options = request.to_options()
        assert options.admin_email == "admin@example.com"
        assert options.event_logging_is_enabled
        assert options.event_logging_retention_period == 365

    def test_app_create_rejects_bad_email(self):
        with pytest.raises(ValidationError):
            AppCreateRequest.model_validate({"adminEmail": "not-an-email"})

    def test_app_create_rejects_zero_retention(self):
        with pytest.raises(ValidationError):
            AppCreateRequest.model_validate(
                {"adminEmail": "a@example.com", "eventLoggingRetentionPeriod": 0}
            )

    def test_signin_token_defaults(self):
        request = SigninTokenRequest.model_validate({"userId": "user-1"})
        assert request.purpose == "sign-in"
        assert request.time_to_live == timedelta(seconds=120)

    @pytest.mark.parametrize("ttl", [0, 604801])
    def test_signin_token_ttl_bounds(self, ttl):
        with pytest.raises(ValidationError):
            SigninTokenRequest.model_validate({"userId": "user-1", "timeToLive": ttl})

    def test_signin_token_requires_user(self):
        with pytest.raises(ValidationError):
            SigninTokenRequest.model_validate({"userId": ""})

    def test_auth_configuration_accepts_timespan(self):
        request = SetAuthenticationConfigurationRequest.model_validate(
            {"purpose": "purpose1", "timeToLive": "00:10:00", "userVerificationRequirement": "Required"}
        )
        assert request.time_to_live == timedelta(minutes=10)
        assert request.user_verification_requirement is UserVerificationRequirement.REQUIRED

    def test_auth_configuration_rejects_unknown_requirement(self):
        with pytest.raises(ValidationError):
            SetAuthenticationConfigurationRequest.model_validate(
                {"purpose": "purpose1", "timeToLive": 60, "userVerificationRequirement": "sometimes"}
            )

    def test_manage_features_partial(self):
        update = ManageFeaturesRequest.model_validate({"eventLoggingIsEnabled": True}).to_update()
        assert update.event_logging_is_enabled is True
        assert update.event_logging_retention_period is None
        assert not update.clear_developer_logging

    def test_manage_features_explicit_null_clears_developer_logging(self):
        update = ManageFeaturesRequest.model_validate({"developerLoggingEndsAt": None}).to_update()
        assert update.clear_developer_logging
        assert update.developer_logging_ends_at is None


class TestResponses:
    def test_keys_response_serializes_aliases(self):
        created = AccountKeysCreation("pk1", "pk2", "sk1", "sk2", "stored")
        dumped = AccountKeysCreationResponse.from_result(created).model_dump()
        assert dumped == {
            "apiKey1": "pk1",
            "apiKey2": "pk2",
            "apiSecret1": "sk1",
            "apiSecret2": "sk2",
            "message": "stored",
        }

    def test_auth_configuration_dto(self):
        policy = AuthPolicy(
            purpose="sign-in",
            time_to_live=timedelta(minutes=2),
            user_verification=UserVerificationRequirement.PREFERRED,
            tenant_id="testapp123",
            is_preset=True,
        )
        dumped = AuthenticationConfigurationDto.from_policy(policy).model_dump()
        assert dumped["timeToLive"] == "00:02:00"
        assert dumped["userVerificationRequirement"] == "preferred"
        assert dumped["isPreset"] is True

    def test_deletion_response(self):
        at = datetime(2024, 2, 19, 12, 0, tzinfo=timezone.utc)
        result = AppDeletionResult(
            message="The app 'testapp123' will be deleted at '2024-02-19T12:00:00+00:00'.",
            is_deleted=False,
            delete_at=at,
            admin_emails=("admin@example.com",),
            cancel_link="https://x/apps/delete/cancel/testapp123",
        )
        dumped = AppDeletionResponse.from_result(result).model_dump()
        assert dumped["isDeleted"] is False
        assert dumped["adminEmails"] == ["admin@example.com"]
        assert dumped["cancelLink"].endswith("/testapp123")

    def test_problem_details_keeps_extensions(self):
        body = expired_token(10).to_dict()
        problem = ProblemDetails.model_validate(body)
        assert problem.error_code == "expired_token"
        assert problem.model_dump()["expiredSeconds"] == 10

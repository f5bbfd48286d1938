from datetime import timedelta

import pytest

from keyward.service.auth_config import AuthConfigRegistry
from keyward.storage.models import TenantUser, UserVerificationRequirement


class TestPresets:
    def test_sign_in_defaults(self, registry):
        policy = registry.get("sign-in").value
        assert policy.time_to_live == timedelta(minutes=2)
        assert policy.user_verification is UserVerificationRequirement.PREFERRED
        assert policy.is_preset

    def test_step_up_defaults(self, registry):
        policy = registry.get("step-up").value
        assert policy.time_to_live == timedelta(minutes=3)
        assert policy.user_verification is UserVerificationRequirement.REQUIRED

    def test_configured_sign_in_ttl(self, store, clock, make_app):
        make_app()
        registry = AuthConfigRegistry(
            store.for_tenant("testapp123"), clock=clock, default_signin_ttl=timedelta(minutes=5)
        )
        assert registry.get("sign-in").value.time_to_live == timedelta(minutes=5)

    def test_override_preset(self, registry):
        registry.set("sign-in", timedelta(seconds=30), "required")
        policy = registry.get("sign-in").value
        assert policy.time_to_live == timedelta(seconds=30)
        assert policy.user_verification is UserVerificationRequirement.REQUIRED
        assert policy.is_preset

    def test_preset_cannot_be_deleted(self, registry):
        result = registry.delete("sign-in")
        assert result.error_code == "preset_purpose"
        assert result.problem.status == 400


class TestCustomPolicies:
    def test_round_trip(self, registry, clock):
        saved = registry.set("purpose1", timedelta(minutes=10), "discouraged")
        assert saved.is_ok

        policy = registry.get("purpose1").value
        assert policy.purpose == "purpose1"
        assert policy.time_to_live == timedelta(minutes=10)
        assert policy.user_verification is UserVerificationRequirement.DISCOURAGED
        assert policy.created_at == clock.now()
        assert policy.edited_at is None
        assert not policy.is_preset

    def test_update_keeps_created_at(self, registry, clock):
        registry.set("purpose1", timedelta(minutes=10), "preferred")
        created = clock.now()
        clock.advance(timedelta(hours=1))

        policy = registry.set("purpose1", timedelta(minutes=20), "required").value

        assert policy.created_at == created
        assert policy.edited_at == clock.now()
        assert registry.get("purpose1").value.time_to_live == timedelta(minutes=20)

    def test_unknown_purpose(self, registry):
        result = registry.get("nope")
        assert result.error_code == "purpose_not_found"
        assert result.problem.status == 404

    def test_delete(self, registry):
        registry.set("purpose1", timedelta(minutes=10), "preferred")
        assert registry.delete("purpose1").value == "purpose1"
        assert registry.get("purpose1").error_code == "purpose_not_found"

    def test_delete_missing(self, registry):
        assert registry.delete("purpose1").error_code == "purpose_not_found"

    def test_list_puts_presets_first(self, registry):
        registry.set("zeta", timedelta(minutes=1), "preferred")
        registry.set("alpha", timedelta(minutes=1), "preferred")
        assert [p.purpose for p in registry.list()] == ["sign-in", "step-up", "alpha", "zeta"]

    def test_policies_are_per_tenant(self, registry, store, clock, make_app):
        make_app("otherapp")
        registry.set("purpose1", timedelta(minutes=10), "preferred")
        other = AuthConfigRegistry(store.for_tenant("otherapp"), clock=clock)
        assert other.get("purpose1").error_code == "purpose_not_found"


class TestValidation:
    @pytest.mark.parametrize("ttl", [timedelta(0), timedelta(days=7, seconds=1)])
    def test_ttl_out_of_range(self, registry, ttl):
        result = registry.set("purpose1", ttl, "preferred")
        assert result.error_code == "invalid_ttl"
        assert result.problem.status == 400

    @pytest.mark.parametrize("purpose", ["", "   ", "has space", "-leading"])
    def test_invalid_purpose(self, registry, purpose):
        assert registry.set(purpose, timedelta(minutes=1), "preferred").error_code == "validation_error"

    def test_invalid_user_verification(self, registry):
        assert registry.set("purpose1", timedelta(minutes=1), "sometimes").error_code == "validation_error"

    def test_user_verification_is_case_insensitive(self, registry):
        policy = registry.set("purpose1", timedelta(minutes=1), "Required").value
        assert policy.user_verification is UserVerificationRequirement.REQUIRED


class TestPendingDeletion:
    def test_set_is_rejected(self, registry, pending_app):
        result = registry.set("purpose1", timedelta(minutes=10), "preferred")
        assert result.error_code == "app_pending_deletion"
        assert registry.get("purpose1").error_code == "purpose_not_found"

    def test_delete_is_rejected(self, registry, manager, store, clock):
        registry.set("purpose1", timedelta(minutes=10), "preferred")
        store.for_tenant("testapp123").add_user(
            TenantUser(user_id="user-1", tenant_id="testapp123", created_at=clock.now())
        )
        clock.advance(timedelta(days=5))
        manager.mark_for_deletion("testapp123", None, "https://x")

        assert registry.delete("purpose1").error_code == "app_pending_deletion"
        assert registry.get("purpose1").is_ok

    def test_reads_still_work(self, registry, pending_app):
        assert registry.get("sign-in").is_ok
        assert [p.purpose for p in registry.list()] == ["sign-in", "step-up"]

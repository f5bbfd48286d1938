from datetime import timedelta

import pytest

from keyward.service.features import FeatureContext, FeatureUpdate


@pytest.fixture
def features(store, clock):
    return FeatureContext(store, clock=clock)


class TestFeatureContext:
    def test_get_defaults_from_create(self, make_app, features):
        make_app()
        flags = features.get("testapp123").value
        assert not flags.event_logging_is_enabled
        assert flags.event_logging_retention_period == 365
        assert flags.developer_logging_ends_at is None

    def test_set_merges_partial_update(self, make_app, features):
        make_app(event_logging_retention_period=30)
        updated = features.set("testapp123", FeatureUpdate(event_logging_is_enabled=True)).value
        assert updated.event_logging_is_enabled
        assert updated.event_logging_retention_period == 30
        assert features.get("testapp123").value == updated

    def test_zero_retention_is_rejected(self, make_app, features):
        make_app()
        result = features.set("testapp123", FeatureUpdate(event_logging_retention_period=0))
        assert result.error_code == "validation_error"
        assert features.get("testapp123").value.event_logging_retention_period == 365

    def test_unknown_app(self, features):
        assert features.get("nosuchapp").error_code == "app_not_found"
        result = features.set("nosuchapp", FeatureUpdate(event_logging_is_enabled=True))
        assert result.error_code == "app_not_found"

    def test_retention_cutoff(self, make_app, features, clock):
        make_app(event_logging_is_enabled=True, event_logging_retention_period=30)
        assert features.retention_cutoff("testapp123") == clock.now() - timedelta(days=30)

    def test_no_cutoff_when_logging_disabled(self, make_app, features):
        make_app()
        assert features.retention_cutoff("testapp123") is None

    def test_developer_logging_window(self, make_app, features, clock):
        make_app()
        assert not features.is_developer_logging_active("testapp123")

        features.set(
            "testapp123",
            FeatureUpdate(developer_logging_ends_at=clock.now() + timedelta(hours=12)),
        )
        assert features.is_developer_logging_active("testapp123")

        clock.advance(timedelta(hours=12))
        assert not features.is_developer_logging_active("testapp123")

    def test_clear_developer_logging(self, make_app, features, clock):
        make_app()
        features.set(
            "testapp123",
            FeatureUpdate(developer_logging_ends_at=clock.now() + timedelta(hours=12)),
        )

        updated = features.set("testapp123", FeatureUpdate(clear_developer_logging=True)).value

        assert updated.developer_logging_ends_at is None
        assert not features.is_developer_logging_active("testapp123")

    def test_set_and_clear_together_is_rejected(self, make_app, features, clock):
        make_app()
        update = FeatureUpdate(
            developer_logging_ends_at=clock.now() + timedelta(hours=1),
            clear_developer_logging=True,
        )
        assert features.set("testapp123", update).error_code == "validation_error"

    def test_pending_deletion_app_is_read_only(self, pending_app, features):
        result = features.set(pending_app, FeatureUpdate(event_logging_is_enabled=True))
        assert result.error_code == "app_pending_deletion"
        assert not features.get(pending_app).value.event_logging_is_enabled

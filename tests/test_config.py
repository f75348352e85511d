"""
Tests for app.core.config and the environment-driven backend factories.
"""

import pytest
from pydantic import ValidationError as SettingsValidationError

from app.core.config import EnvironmentMode, LoyaltyRefreshMode, Settings, get_settings
from app.core.exceptions import (
    ConflictError,
    DuplicateTokenError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    ValidationError,
)
from app.services.notifications import InMemoryChannelBroker, get_channel_broker
from app.services.store import InMemoryOrderStore, get_order_store


class TestSettings:
    def test_defaults(self):
        settings = Settings(env_mode="development")
        assert settings.qr_token_prefix == "ALAN"
        assert settings.notification_history_limit == 50
        assert settings.loyalty_refresh_mode == LoyaltyRefreshMode.SYNC
        assert settings.loyalty_cache_ttl_seconds is None
        assert settings.is_development
        assert not settings.use_real_services

    def test_env_mode_is_case_insensitive(self):
        assert Settings(env_mode="PRODUCTION").env_mode == EnvironmentMode.PRODUCTION

    def test_unknown_env_mode(self):
        with pytest.raises(SettingsValidationError):
            Settings(env_mode="qa")

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LOYALTY_REFRESH_MODE", "deferred")
        monkeypatch.setenv("TRANSITION_MAX_ATTEMPTS", "7")
        settings = Settings()
        assert settings.loyalty_refresh_mode == LoyaltyRefreshMode.DEFERRED
        assert settings.transition_max_attempts == 7

    def test_production_validation(self):
        settings = Settings(env_mode="production", database_url="sqlite:///x.db", debug=True)
        assert set(settings.validate_production_config()) == {"DATABASE_URL", "DEBUG"}
        assert Settings(env_mode="development", debug=True).validate_production_config() == []

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestFactories:
    def test_development_uses_in_memory_backends(self):
        assert isinstance(get_order_store(), InMemoryOrderStore)
        assert isinstance(get_channel_broker(), InMemoryChannelBroker)
        assert get_order_store() is get_order_store()

    def test_staging_uses_real_backends(self, monkeypatch):
        from app.services.notifications.real import RedisChannelBroker
        from app.services.store.sql import SQLAlchemyOrderStore

        monkeypatch.setenv("ENV_MODE", "staging")
        get_settings.cache_clear()
        assert isinstance(get_order_store(), SQLAlchemyOrderStore)
        assert isinstance(get_channel_broker(), RedisChannelBroker)


class TestErrors:
    @pytest.mark.parametrize(
        "error,status,code",
        [
            (ValidationError, 400, "validation_error"),
            (NotFoundError, 404, "not_found"),
            (ConflictError, 409, "conflict"),
            (DuplicateTokenError, 409, "duplicate_qr_token"),
            (PermissionDeniedError, 403, "permission_denied"),
            (TransientError, 503, "transient_error"),
        ],
    )
    def test_http_mapping(self, error, status, code):
        exc = error("boom")
        assert exc.status_code == status
        assert exc.to_dict() == {"success": False, "error": code, "detail": "boom"}

    def test_duplicate_token_is_a_conflict(self):
        assert issubclass(DuplicateTokenError, ConflictError)

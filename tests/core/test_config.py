"""
Tests for Settings configuration validation in config.py.
"""
import pytest
from pydantic import ValidationError

from psychometrics.core.config import DEFAULT_DATABASE_URL, Settings
from psychometrics.core.config import settings as config_settings
from psychometrics.models import base
from psychometrics.models.base import engine_options


class TestSettingsDefaults:
    """Tests for default engine thresholds."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.PSYCHOMETRICS_ENABLED is True
        assert settings.PSYCHOMETRICS_MIN_RESPONSES == 50
        assert settings.IRT_MIN_RESPONDENTS == 50
        assert settings.IRT_MIN_ITEMS == 1
        assert settings.IRT_RECALIBRATION_INTERVAL_DAYS == 7
        assert settings.RELIABILITY_COMPLETENESS_THRESHOLD == pytest.approx(0.9)
        assert settings.OPTIMISTIC_LOCK_MAX_RETRIES == 3
        assert settings.AUDIT_INTERVAL_HOURS == 24


class TestSettingsValidation:
    """Tests for field bounds and the production database check."""

    @pytest.mark.parametrize(
        "field,value",
        [
            pytest.param("PSYCHOMETRICS_MIN_RESPONSES", 1, id="min_responses"),
            pytest.param("IRT_MIN_ITEMS", 0, id="min_items"),
            pytest.param("RELIABILITY_COMPLETENESS_THRESHOLD", 1.5, id="completeness"),
            pytest.param("OPTIMISTIC_LOCK_MAX_RETRIES", 0, id="retries"),
            pytest.param("AUDIT_INTERVAL_HOURS", 0, id="interval"),
        ],
    )
    def test_out_of_range_rejected(self, field, value):
        with pytest.raises(ValidationError) as exc_info:
            Settings(_env_file=None, **{field: value})

        assert exc_info.value.errors()[0]["loc"] == (field,)

    def test_sqlite_rejected_in_production(self):
        with pytest.raises(ValidationError, match="server database"):
            Settings(_env_file=None, ENV="production", DATABASE_URL="sqlite:///./prod.db")

    def test_postgres_accepted_in_production(self):
        settings = Settings(
            _env_file=None,
            ENV="production",
            DATABASE_URL="postgresql://engine@db/psychometrics",
        )
        assert settings.ENV == "production"

    def test_sqlite_allowed_in_development(self):
        settings = Settings(_env_file=None, ENV="development")
        assert settings.DATABASE_URL.startswith("sqlite")

    def test_empty_database_url_falls_back_in_development(self):
        settings = Settings(_env_file=None, ENV="development", DATABASE_URL="")
        assert settings.DATABASE_URL == DEFAULT_DATABASE_URL

    def test_empty_database_url_rejected_in_production(self):
        with pytest.raises(ValidationError, match="not set or is empty"):
            Settings(_env_file=None, ENV="production", DATABASE_URL="  ")

    def test_unused_application_fields_removed(self):
        settings = Settings(_env_file=None)
        for name in ("APP_NAME", "APP_VERSION", "DEBUG"):
            assert not hasattr(settings, name)


class TestEngineOptions:
    """Tests for the engine options built from Settings in models.base."""

    def test_engine_uses_settings_url(self):
        assert base.DATABASE_URL == config_settings.DATABASE_URL
        rendered = base.engine.url.render_as_string(hide_password=False)
        assert rendered == config_settings.DATABASE_URL

    def test_sqlite_options_skip_pool_sizing(self):
        options = engine_options(
            Settings(_env_file=None, DATABASE_URL=DEFAULT_DATABASE_URL, SQL_ECHO=True)
        )

        assert options["echo"] is True
        assert options["connect_args"] == {"check_same_thread": False}
        assert "pool_size" not in options

    def test_server_options_use_pool_settings(self):
        settings = Settings(
            _env_file=None,
            DATABASE_URL="postgresql://engine@db/psychometrics",
            DB_POOL_SIZE=12,
            DB_POOL_MAX_OVERFLOW=4,
            DB_POOL_PRE_PING=False,
        )
        options = engine_options(settings)

        assert options["pool_size"] == 12
        assert options["max_overflow"] == 4
        assert options["pool_timeout"] == 30
        assert options["pool_recycle"] == 3600
        assert options["pool_pre_ping"] is False
        assert "connect_args" not in options

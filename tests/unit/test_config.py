# =============================================================================
# tests/unit/test_config.py
# Unit Tests for Engine Settings
# =============================================================================

import pytest
from datetime import timedelta
from pathlib import Path


SETTINGS_TOML = """
[engine]
data_dir = "/var/lib/mymeds"
prescriptions_ttl_hours = 12
fetch_timeout_seconds = 20

[engine.fetch_timeouts]
reminders = 5

[supabase]
url = "https://demo.supabase.co"
key = "anon-key"
"""


class TestDefaults:
    """Test built-in defaults"""

    def test_defaults(self):
        from mymeds_core.config import load_settings

        settings = load_settings(env={})

        assert settings.prescriptions_ttl == timedelta(hours=24)
        assert settings.reminders_ttl == timedelta(hours=24)
        assert settings.fetch_timeout == timedelta(seconds=15)
        assert settings.max_drafts == 10
        assert settings.draft_expiry == timedelta(days=7)
        assert settings.max_mutation_retries == 3
        assert settings.supabase_configured is False

    def test_derived_paths(self):
        from mymeds_core.config import EngineSettings

        settings = EngineSettings(data_dir=Path("/tmp/meds"))

        assert settings.db_path == Path("/tmp/meds/mymeds.db")
        assert settings.drafts_dir == Path("/tmp/meds/prescription_drafts")

    def test_ttl_for(self):
        from mymeds_core.config import EngineSettings
        from mymeds_core.errors import ConfigurationError

        settings = EngineSettings(reminders_ttl=timedelta(hours=2))

        assert settings.ttl_for("reminders") == timedelta(hours=2)
        with pytest.raises(ConfigurationError):
            settings.ttl_for("appointments")


class TestSources:
    """Test TOML, .env and environment precedence"""

    def test_toml_file(self, tmp_path):
        from mymeds_core.config import load_settings

        path = tmp_path / "mymeds.toml"
        path.write_text(SETTINGS_TOML)

        settings = load_settings(path, env={})

        assert settings.data_dir == Path("/var/lib/mymeds")
        assert settings.prescriptions_ttl == timedelta(hours=12)
        assert settings.timeout_for("prescriptions") == timedelta(seconds=20)
        assert settings.timeout_for("reminders") == timedelta(seconds=5)
        assert settings.supabase_configured is True

    def test_missing_toml_uses_defaults(self, tmp_path):
        from mymeds_core.config import load_settings

        settings = load_settings(tmp_path / "absent.toml", env={})

        assert settings.max_drafts == 10

    def test_malformed_toml(self, tmp_path):
        from mymeds_core.config import load_settings
        from mymeds_core.errors import ConfigurationError

        path = tmp_path / "broken.toml"
        path.write_text("[engine\nmax_drafts = ")

        with pytest.raises(ConfigurationError):
            load_settings(path, env={})

    def test_environment_beats_dotenv_beats_toml(self, tmp_path):
        from mymeds_core.config import load_settings

        path = tmp_path / "mymeds.toml"
        path.write_text(SETTINGS_TOML)
        dotenv = tmp_path / ".env"
        dotenv.write_text("MYMEDS_PRESCRIPTIONS_TTL_HOURS=6\nMYMEDS_MAX_DRAFTS=4\n")

        settings = load_settings(path, env={"MYMEDS_MAX_DRAFTS": "2"}, dotenv_path=dotenv)

        assert settings.prescriptions_ttl == timedelta(hours=6)
        assert settings.max_drafts == 2

    def test_overrides_applied_last(self):
        from mymeds_core.config import load_settings

        settings = load_settings(env={"MYMEDS_MAX_DRAFTS": "2"}, max_drafts=5)

        assert settings.max_drafts == 5


class TestValidation:
    """Test rejected settings"""

    def test_unknown_override(self):
        from mymeds_core.config import load_settings
        from mymeds_core.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            load_settings(env={}, max_draft=5)

    def test_bad_env_value(self):
        from mymeds_core.config import load_settings
        from mymeds_core.errors import ConfigurationError

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(env={"MYMEDS_MAX_DRAFTS": "ten"})

        assert exc_info.value.details["config_key"] == "MYMEDS_MAX_DRAFTS"

    @pytest.mark.parametrize("overrides", [
        {"reminders_ttl": timedelta(0)},
        {"max_drafts": 0},
        {"max_mutation_retries": 0},
        {"inflight_cap": timedelta(seconds=10)},
        {"fetch_timeouts": {"reminders": timedelta(seconds=-1)}},
    ])
    def test_invalid_values(self, overrides):
        from mymeds_core.config import EngineSettings
        from mymeds_core.errors import ConfigurationError

        with pytest.raises(ConfigurationError) as exc_info:
            EngineSettings(**overrides)

        assert exc_info.value.recoverable is False

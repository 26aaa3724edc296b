"""
Unit tests for environment configuration.
"""

from unittest.mock import patch

import pytest

from lensroom.errors import ConfigurationError
from lensroom.settings import Settings

from conftest import USER

_ENV_KEYS = (
    "INFER_SUPABASE_OPTIONAL",
    "INFER_DEGRADED_MODE",
    "USE_MOCK_INFERENCE",
    "ALLOW_ANON_INFER",
    "TEST_USER_ID",
    "KIE_API_KEY",
    "BATCH_CONCURRENCY",
    "REQUEST_TIMEOUT_SECONDS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    with patch("lensroom.settings.load_dotenv"):
        yield monkeypatch


class TestFromEnv:

    def test_defaults(self, clean_env):
        settings = Settings.from_env()
        assert settings.degraded_mode is False
        assert settings.use_mock_inference is False
        assert settings.batch_concurrency == 3
        assert settings.request_timeout_seconds == 300.0

    @pytest.mark.parametrize("flag", ["INFER_SUPABASE_OPTIONAL", "INFER_DEGRADED_MODE"])
    def test_either_flag_enables_degraded_mode(self, clean_env, flag):
        clean_env.setenv(flag, "true")
        assert Settings.from_env().degraded_mode is True

    def test_numbers(self, clean_env):
        clean_env.setenv("BATCH_CONCURRENCY", "5")
        clean_env.setenv("REQUEST_TIMEOUT_SECONDS", "12.5")
        settings = Settings.from_env()
        assert settings.batch_concurrency == 5
        assert settings.request_timeout_seconds == 12.5

    def test_malformed_number(self, clean_env):
        clean_env.setenv("BATCH_CONCURRENCY", "three")
        with pytest.raises(ConfigurationError):
            Settings.from_env()


class TestAnonymousFallback:

    def test_disabled_by_default(self):
        assert Settings(test_user_id=USER).anonymous_fallback_identity() is None

    def test_enabled(self):
        assert Settings(allow_anon_infer=True, test_user_id=USER).anonymous_fallback_identity() == USER

    def test_malformed_uuid(self):
        with pytest.raises(ConfigurationError):
            Settings(allow_anon_infer=True, test_user_id="user-123").anonymous_fallback_identity()

"""
Tests for environment-driven settings and the chat error sanitizer.
"""

import sys
from pathlib import Path

import pytest

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from spark_engine.config import Settings
from spark_engine.errors import (
    CodeExecutionError,
    ConfigError,
    ProviderError,
    SparkError,
    format_error_for_chat,
    get_suggestions,
)

_ENV_VARS = [
    "SPARK_VAULT_PATH",
    "GEMINI_API_KEY",
    "SPARK_MODEL",
    "SPARK_QUEUE_POLL_INTERVAL",
    "SPARK_CODE_TIMEOUT_SECONDS",
    "SPARK_CODE_MEMORY_MB",
    "SPARK_MAX_REPAIR_ATTEMPTS",
    "SPARK_LOG_LEVEL",
    "SPARK_ENABLE_POLLER",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env, tmp_path):
        clean_env.chdir(tmp_path)
        settings = Settings()
        assert settings.vault_path == tmp_path.resolve()
        assert settings.model == "gemini-2.5-flash"
        assert settings.poll_interval == 2.0
        assert settings.code_timeout_seconds == 5.0
        assert settings.code_memory_mb == 512
        assert settings.max_repair_attempts == 4
        assert settings.log_level == "INFO"
        assert settings.enable_poller is True

    def test_environment_overrides(self, clean_env, tmp_path):
        clean_env.setenv("SPARK_VAULT_PATH", str(tmp_path))
        clean_env.setenv("SPARK_MODEL", "gemini-2.5-pro")
        clean_env.setenv("SPARK_QUEUE_POLL_INTERVAL", "0.5")
        clean_env.setenv("SPARK_MAX_REPAIR_ATTEMPTS", "2")
        clean_env.setenv("SPARK_LOG_LEVEL", "debug")
        clean_env.setenv("SPARK_ENABLE_POLLER", "off")

        settings = Settings()

        assert settings.vault_path == tmp_path.resolve()
        assert settings.model == "gemini-2.5-pro"
        assert settings.poll_interval == 0.5
        assert settings.max_repair_attempts == 2
        assert settings.log_level == "DEBUG"
        assert settings.enable_poller is False

    def test_explicit_arguments_win(self, clean_env, tmp_path):
        clean_env.setenv("SPARK_MODEL", "from-env")
        settings = Settings(vault_path=str(tmp_path), model="from-arg", enable_poller=False)
        assert settings.model == "from-arg"
        assert settings.enable_poller is False

    def test_bad_number_raises_config_error(self, clean_env):
        clean_env.setenv("SPARK_CODE_TIMEOUT_SECONDS", "soon")
        with pytest.raises(ConfigError, match="SPARK_CODE_TIMEOUT_SECONDS") as exc_info:
            Settings()
        assert exc_info.value.code == "INVALID_CONFIG"

    def test_missing_api_key(self, clean_env, tmp_path):
        settings = Settings(vault_path=str(tmp_path))
        with pytest.raises(ConfigError) as exc_info:
            settings.get_api_key()
        assert exc_info.value.code == "PROVIDER_NOT_CONFIGURED"
        assert Settings(vault_path=str(tmp_path), gemini_api_key="k").get_api_key() == "k"


class TestChatErrorFormatting:
    def test_embedded_message_is_extracted(self):
        error = ProviderError('Gemini API error: 503 {"error": {"code": 503, "message": "The model is overloaded"}}')
        formatted = format_error_for_chat(error)
        assert formatted.startswith("The model is overloaded\n\n")
        assert "1. Check your network connection" in formatted
        assert "3. Try again in a moment" in formatted

    def test_provider_prefix_is_stripped(self):
        assert format_error_for_chat("Claude API error: 429 rate limited") == "rate limited"
        assert format_error_for_chat("Gemini Agent SDK error: boom") == "boom"

    def test_plain_errors_have_no_suggestions(self):
        assert format_error_for_chat(ValueError("bad queue file")) == "bad queue file"

    def test_empty_message_fallback(self):
        assert format_error_for_chat(RuntimeError()) == "An unexpected error occurred"

    def test_suggestions_by_code(self):
        assert get_suggestions(None) == []
        assert get_suggestions("NOT_A_CODE") == []
        assert get_suggestions("CONDITION_EVALUATION_FAILED")[0] == "Check the condition expression syntax"

    def test_execution_errors_carry_node_and_code(self):
        error = CodeExecutionError("k1", "Code execution failed: timed out")
        assert isinstance(error, SparkError)
        assert error.node_id == "k1"
        assert error.code == "CODE_EXECUTION_FAILED"
        assert "Check the code node for syntax errors" in format_error_for_chat(error)

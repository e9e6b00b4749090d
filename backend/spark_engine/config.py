"""
Engine configuration.

Values come from the process environment, after loading a local .env file.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from spark_engine.errors import ConfigError

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


class Settings:
    """Configuration for the queue handlers, executor and API"""

    DEFAULT_MODEL: str = "gemini-2.5-flash"

    def __init__(
        self,
        vault_path: Optional[str] = None,
        gemini_api_key: Optional[str] = None,
        model: Optional[str] = None,
        poll_interval: Optional[float] = None,
        code_timeout_seconds: Optional[float] = None,
        code_memory_mb: Optional[int] = None,
        max_repair_attempts: Optional[int] = None,
        log_level: Optional[str] = None,
        enable_poller: Optional[bool] = None,
    ):
        self.vault_path = Path(vault_path or os.getenv("SPARK_VAULT_PATH") or os.getcwd()).resolve()
        self.gemini_api_key = gemini_api_key or os.getenv("GEMINI_API_KEY")
        self.model = model or os.getenv("SPARK_MODEL") or self.DEFAULT_MODEL

        # Queue polling
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else _env_float("SPARK_QUEUE_POLL_INTERVAL", 2.0)
        )
        self.enable_poller = (
            enable_poller if enable_poller is not None
            else _env_bool("SPARK_ENABLE_POLLER", True)
        )

        # Code node sandbox limits
        self.code_timeout_seconds = (
            code_timeout_seconds if code_timeout_seconds is not None
            else _env_float("SPARK_CODE_TIMEOUT_SECONDS", 5.0)
        )
        self.code_memory_mb = (
            code_memory_mb if code_memory_mb is not None
            else _env_int("SPARK_CODE_MEMORY_MB", 512)
        )

        self.max_repair_attempts = (
            max_repair_attempts if max_repair_attempts is not None
            else _env_int("SPARK_MAX_REPAIR_ATTEMPTS", 4)
        )
        self.log_level = (log_level or os.getenv("SPARK_LOG_LEVEL") or "INFO").upper()

    def get_api_key(self) -> str:
        """
        Get the Gemini API key.

        Raises:
            ConfigError: If the key is not set
        """
        if not self.gemini_api_key:
            raise ConfigError(
                "GEMINI_API_KEY not found. "
                "Please set it in your environment or .env file.",
                code="PROVIDER_NOT_CONFIGURED",
            )
        return self.gemini_api_key


def get_settings() -> Settings:
    return Settings()

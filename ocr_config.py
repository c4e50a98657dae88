import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MiB
DEFAULT_MODEL_NAME = "gemini-1.5-flash"
# Names both the logging module and uvicorn accept
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class ConfigurationError(RuntimeError):
    """Raised when the process cannot be configured to serve OCR requests."""


@dataclass(frozen=True)
class Settings:
    gemini_api_key: Optional[str]
    model_name: str = DEFAULT_MODEL_NAME
    request_timeout: float = 60.0
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    def require_api_key(self) -> str:
        if not self.gemini_api_key:
            raise ConfigurationError(
                "GEMINI_API_KEY is not set. Please set it in your .env file."
            )
        return self.gemini_api_key


def _number(env, name, default, cast):
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _log_level(env):
    level = (env.get("LOG_LEVEL") or "INFO").upper()
    if level not in LOG_LEVELS:
        raise ConfigurationError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {level!r}")
    return level


def load_settings(env=None, dotenv: bool = True) -> Settings:
    """
    Read settings from the environment.
    - **env**: mapping to read from, defaults to ``os.environ``
    - **dotenv**: load a local ``.env`` file into ``os.environ`` first
    """
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ
    return Settings(
        gemini_api_key=env.get("GEMINI_API_KEY") or None,
        model_name=env.get("GEMINI_MODEL_NAME") or DEFAULT_MODEL_NAME,
        request_timeout=_number(env, "GEMINI_REQUEST_TIMEOUT", 60.0, float),
        host=env.get("HOST") or "0.0.0.0",
        port=_number(env, "PORT", 3000, int),
        log_level=_log_level(env),
    )

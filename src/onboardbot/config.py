"""Configuration helpers for the onboarding assistant."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Final, TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

load_dotenv()

_DEFAULT_DATABASE_PATH: Final[str] = "data/onboarding.sqlite"
_DEFAULT_CHAT_BACKEND: Final[str] = "openai"
_DEFAULT_OPENAI_CHAT_MODEL: Final[str] = "gpt-4o-mini"
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_MODEL: Final[str] = "llama3.1:8b"
_DEFAULT_LLM_TIMEOUT: Final[float] = 30.0
_DEFAULT_CHAT_TEMPERATURE: Final[float] = 0.7
_DEFAULT_CHAT_MAX_TOKENS: Final[int] = 1024
_DEFAULT_RETRIEVAL_LIMIT: Final[int] = 7
_DEFAULT_CONTEXT_CHAR_LIMIT: Final[int] = 1000
_DEFAULT_MAX_MESSAGE_LENGTH: Final[int] = 1000
_DEFAULT_HISTORY_LIMIT: Final[int] = 20
_DEFAULT_JWT_SECRET: Final[str] = "change-me-in-production"
_DEFAULT_JWT_ALGORITHM: Final[str] = "HS256"
_DEFAULT_AUTH_MAX_ATTEMPTS: Final[int] = 5
_DEFAULT_AUTH_LOCK_SECONDS: Final[int] = 15 * 60


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_bool(name: str, default: bool) -> bool:
    value = _env_optional_bool(name)
    return default if value is None else value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    database_path: str = _DEFAULT_DATABASE_PATH
    chat_backend: str = _DEFAULT_CHAT_BACKEND
    openai_api_key: str | None = None
    openai_chat_model: str = _DEFAULT_OPENAI_CHAT_MODEL
    ollama_base_url: str = _DEFAULT_OLLAMA_URL
    ollama_model: str = _DEFAULT_OLLAMA_MODEL
    llm_request_timeout: float = _DEFAULT_LLM_TIMEOUT
    chat_temperature: float = _DEFAULT_CHAT_TEMPERATURE
    chat_max_tokens: int | None = _DEFAULT_CHAT_MAX_TOKENS
    retrieval_limit: int = _DEFAULT_RETRIEVAL_LIMIT
    context_char_limit: int = _DEFAULT_CONTEXT_CHAR_LIMIT
    max_message_length: int = _DEFAULT_MAX_MESSAGE_LENGTH
    history_limit: int = _DEFAULT_HISTORY_LIMIT
    jwt_secret: str = _DEFAULT_JWT_SECRET
    jwt_algorithm: str = _DEFAULT_JWT_ALGORITHM
    auth_max_attempts: int = _DEFAULT_AUTH_MAX_ATTEMPTS
    auth_lock_seconds: int = _DEFAULT_AUTH_LOCK_SECONDS
    observability_metrics_enabled: bool = True
    observability_namespace: str = "onboardbot"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        max_tokens = _env_int("CHAT_MAX_TOKENS", _DEFAULT_CHAT_MAX_TOKENS)
        return cls(
            database_path=os.getenv("DATABASE_PATH", _DEFAULT_DATABASE_PATH),
            chat_backend=os.getenv("CHAT_BACKEND", _DEFAULT_CHAT_BACKEND),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_chat_model=os.getenv("OPENAI_CHAT_MODEL", _DEFAULT_OPENAI_CHAT_MODEL),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", _DEFAULT_OLLAMA_URL),
            ollama_model=os.getenv("OLLAMA_MODEL", _DEFAULT_OLLAMA_MODEL),
            llm_request_timeout=_env_float("LLM_REQUEST_TIMEOUT", _DEFAULT_LLM_TIMEOUT),
            chat_temperature=_env_float("CHAT_TEMPERATURE", _DEFAULT_CHAT_TEMPERATURE),
            chat_max_tokens=max_tokens if max_tokens > 0 else None,
            retrieval_limit=max(1, _env_int("RETRIEVAL_LIMIT", _DEFAULT_RETRIEVAL_LIMIT)),
            context_char_limit=max(1, _env_int("CONTEXT_CHAR_LIMIT", _DEFAULT_CONTEXT_CHAR_LIMIT)),
            max_message_length=max(1, _env_int("MAX_MESSAGE_LENGTH", _DEFAULT_MAX_MESSAGE_LENGTH)),
            history_limit=max(1, _env_int("HISTORY_LIMIT", _DEFAULT_HISTORY_LIMIT)),
            jwt_secret=os.getenv("JWT_SECRET", _DEFAULT_JWT_SECRET),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", _DEFAULT_JWT_ALGORITHM),
            auth_max_attempts=max(1, _env_int("AUTH_MAX_ATTEMPTS", _DEFAULT_AUTH_MAX_ATTEMPTS)),
            auth_lock_seconds=max(0, _env_int("AUTH_LOCK_SECONDS", _DEFAULT_AUTH_LOCK_SECONDS)),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "onboardbot"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_openai_chat_backend(self) -> bool:
        """Return True when using the OpenAI Responses API for chat."""

        return self.chat_backend.strip().lower() == "openai"

    @property
    def is_ollama_chat_backend(self) -> bool:
        """Return True when the chat backend is an Ollama-hosted model."""

        return self.chat_backend.strip().lower() == "ollama"

    def resolved_database_path(self) -> Path:
        return Path(self.database_path).expanduser().resolve()

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )

"""
Command pipeline configuration.

Loads backend, retry and connectivity settings from environment variables.
"""
import os
from dataclasses import dataclass
from typing import Optional


def _strip_env(key: str) -> Optional[str]:
    """
    Read an environment variable, dropping inline comments and whitespace.

    "30  # seconds" -> "30"
    """
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _strip_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _strip_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class PipelineConfig:
    """Command pipeline configuration."""

    # AI backend: "ollama" (streaming /api/generate) or "chat" (chat completions)
    ai_backend: str = "ollama"
    ai_backend_url: str = "http://localhost:11434"
    ai_model: str = "llama3"
    ai_request_timeout_seconds: float = 30.0

    # Request-level retry policy (AI client)
    ai_max_retries: int = 3
    ai_retry_initial_ms: int = 1000
    ai_retry_max_ms: int = 15000

    # Recognition-level reconnect policy (coordinator)
    recognition_max_attempts: int = 5
    recognition_backoff_max_ms: int = 30000
    recognition_language: str = "fr-FR"

    # Connectivity monitor
    connectivity_poll_seconds: float = 30.0
    connectivity_probe_url: Optional[str] = None  # defaults to ai_backend_url

    # Site context
    site_catalog_path: Optional[str] = None  # defaults to the bundled catalog.yaml

    # Service
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @property
    def probe_url(self) -> str:
        return self.connectivity_probe_url or self.ai_backend_url

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables."""
        backend = os.environ.get("AI_BACKEND", "ollama").lower()
        if backend not in ("ollama", "chat"):
            raise ValueError(f"AI_BACKEND must be 'ollama' or 'chat', got {backend!r}")

        return cls(
            ai_backend=backend,
            ai_backend_url=os.environ.get("AI_BACKEND_URL", "http://localhost:11434").rstrip("/"),
            ai_model=os.environ.get("AI_MODEL", "llama3"),
            ai_request_timeout_seconds=_parse_float_env("AI_REQUEST_TIMEOUT_SECONDS", 30.0),
            ai_max_retries=_parse_int_env("AI_MAX_RETRIES", 3),
            ai_retry_initial_ms=_parse_int_env("AI_RETRY_INITIAL_MS", 1000),
            ai_retry_max_ms=_parse_int_env("AI_RETRY_MAX_MS", 15000),
            recognition_max_attempts=_parse_int_env("RECOGNITION_MAX_ATTEMPTS", 5),
            recognition_backoff_max_ms=_parse_int_env("RECOGNITION_BACKOFF_MAX_MS", 30000),
            recognition_language=os.environ.get("RECOGNITION_LANGUAGE", "fr-FR"),
            connectivity_poll_seconds=_parse_float_env("CONNECTIVITY_POLL_SECONDS", 30.0),
            connectivity_probe_url=os.environ.get("CONNECTIVITY_PROBE_URL") or None,
            site_catalog_path=os.environ.get("SITE_CATALOG_PATH") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            api_host=os.environ.get("API_HOST", "0.0.0.0"),
            api_port=_parse_int_env("API_PORT", 8000),
        )


def get_config() -> PipelineConfig:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = PipelineConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached config (tests, reload after env changes)."""
    global _config
    _config = None


_config: Optional[PipelineConfig] = None

"""Centralized configuration management for the generation engine."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file BEFORE any settings are read
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    """Application settings read from the environment."""

    # =================================================================
    # APPLICATION
    # =================================================================
    APP_NAME: str = "CellForge Generation API"
    APP_VERSION: str = "0.4.0"
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DEBUG: bool = _env_bool("DEBUG", "false")
    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost:3000"]
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "8000"))

    # =================================================================
    # STORAGE
    # =================================================================
    DATA_DIR: Path = Path(os.getenv("DATA_DIR", "data"))
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///data/cellforge.db")

    # =================================================================
    # CACHE
    # =================================================================
    CACHE_FILE_NAME: str = os.getenv("CACHE_FILE_NAME", "prompt-cache.jsonl")
    MEMORY_CACHE_MAX_ENTRIES: int = int(os.getenv("MEMORY_CACHE_MAX_ENTRIES", "50000"))
    MEMORY_CACHE_TTL_SECONDS: float = float(
        os.getenv("MEMORY_CACHE_TTL_SECONDS", "3600")
    )
    PERSISTENT_CACHE_MAX_ENTRIES: int = int(
        os.getenv("PERSISTENT_CACHE_MAX_ENTRIES", "50000")
    )
    PERSISTENT_CACHE_TTL_SECONDS: float = float(
        os.getenv("PERSISTENT_CACHE_TTL_SECONDS", str(7 * 24 * 3600))
    )
    # Up to FLUSH_EVERY - 1 writes can be lost on an unclean exit
    PERSISTENT_CACHE_FLUSH_EVERY: int = int(
        os.getenv("PERSISTENT_CACHE_FLUSH_EVERY", "100")
    )
    CACHE_SWEEP_INTERVAL_SECONDS: float = float(
        os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", "300")
    )
    CACHE_SCOPE: str = os.getenv("CACHE_SCOPE", "content")  # content | process

    # =================================================================
    # GENERATION
    # =================================================================
    GENERATION_CONCURRENCY: int = int(os.getenv("GENERATION_CONCURRENCY", "5"))
    GENERATION_MAX_CONCURRENCY: int = int(
        os.getenv("GENERATION_MAX_CONCURRENCY", "10")
    )
    GENERATION_MAX_RETRIES: int = int(os.getenv("GENERATION_MAX_RETRIES", "0"))
    FEW_SHOT_WINDOW: int = int(os.getenv("FEW_SHOT_WINDOW", "10"))

    # =================================================================
    # INFERENCE PROVIDERS
    # =================================================================
    INFERENCE_BASE_URL: str = os.getenv(
        "INFERENCE_BASE_URL", "https://router.huggingface.co/v1"
    )
    TEXT_TO_IMAGE_BASE_URL: str = os.getenv(
        "TEXT_TO_IMAGE_BASE_URL", "https://router.huggingface.co/hf-inference/models"
    )
    INFERENCE_TIMEOUT_SECONDS: float = float(
        os.getenv("INFERENCE_TIMEOUT_SECONDS", "90")
    )
    HF_TOKEN: str | None = os.getenv("HF_TOKEN")
    BILL_TO: str | None = os.getenv("BILL_TO")
    OLLAMA_BASE_URL: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")

    # =================================================================
    # WEB SEARCH
    # =================================================================
    WEBSEARCH_URL: str = os.getenv("WEBSEARCH_URL", "https://google.serper.dev/search")
    SERPER_API_KEY: str | None = os.getenv("SERPER_API_KEY")
    WEBSEARCH_MAX_SOURCES: int = int(os.getenv("WEBSEARCH_MAX_SOURCES", "5"))

    # =================================================================
    # LOGGING
    # =================================================================
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "pretty")  # json | pretty
    LOG_FILE: str | None = os.getenv("LOG_FILE") or None

    def __init__(self):
        origins_env = os.getenv("CORS_ORIGINS")
        if origins_env:
            parsed = [o.strip() for o in origins_env.split(",") if o.strip()]
            if parsed:
                self.CORS_ORIGINS = parsed

    @property
    def CACHE_DIR(self) -> Path:
        return Path(os.getenv("CACHE_DIR", str(self.DATA_DIR / "cache")))

    @property
    def cache_file_path(self) -> Path:
        return self.CACHE_DIR / self.CACHE_FILE_NAME

    def validate_required(self) -> list[str]:
        """
        Validate configuration at startup.
        Returns list of warnings/errors.
        """
        issues: list[str] = []
        logger = logging.getLogger(__name__)

        if not self.HF_TOKEN:
            issues.append(
                "WARNING: HF_TOKEN not set; hosted inference needs a per-request token"
            )
        if self.GENERATION_CONCURRENCY < 1:
            issues.append("ERROR: GENERATION_CONCURRENCY must be at least 1")
        if self.GENERATION_CONCURRENCY > self.GENERATION_MAX_CONCURRENCY:
            issues.append(
                f"WARNING: GENERATION_CONCURRENCY={self.GENERATION_CONCURRENCY} "
                f"exceeds cap {self.GENERATION_MAX_CONCURRENCY}; it will be clamped"
            )
        if self.CACHE_SCOPE not in ("content", "process"):
            issues.append(
                f"ERROR: CACHE_SCOPE must be 'content' or 'process', got {self.CACHE_SCOPE!r}"
            )
        if self.PERSISTENT_CACHE_FLUSH_EVERY < 1:
            issues.append("ERROR: PERSISTENT_CACHE_FLUSH_EVERY must be at least 1")

        for issue in issues:
            log_method = logger.error if issue.startswith("ERROR") else logger.warning
            log_method(issue)

        return issues


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings

import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables."""

    # API Keys
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

    # LLM
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./counsellor.db")

    # Server
    PORT: int = int(os.getenv("PORT", "8000"))
    HOST: str = os.getenv("HOST", "0.0.0.0")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Chat
    HISTORY_WINDOW: int = int(os.getenv("HISTORY_WINDOW", "12"))
    SERIALIZE_USER_TURNS: bool = _env_bool("SERIALIZE_USER_TURNS", "true")

    # Recommendations
    RECOMMENDATION_CACHE_HOURS: int = int(os.getenv("RECOMMENDATION_CACHE_HOURS", "24"))

    # CORS
    ALLOWED_ORIGINS: list = [
        "https://ai-counsellor-frontend.vercel.app",
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    @classmethod
    def validate(cls):
        """Validate required environment variables."""
        if not cls.GEMINI_API_KEY:
            raise ValueError("GEMINI_API_KEY environment variable is required")
        if cls.DATABASE_URL.startswith("sqlite"):
            logger.warning("DATABASE_URL points at SQLite. Use PostgreSQL in production.")

settings = Settings()

"""
Expertverse Configuration

Loads configuration from environment variables with sensible defaults.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


class Config:
    """Application configuration loaded from environment variables."""

    # LLM Provider Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "google")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gemini-2.5-flash")

    # API Keys
    GOOGLE_API_KEY: str | None = os.getenv("GOOGLE_API_KEY")
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")

    # Upper bound for a single LLM invocation. The scheduler itself has no
    # timeout primitive, so handlers enforce this and surface a failure.
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "120"))

    # Scheduler Configuration
    QUEUE_POLL_INTERVAL_SECONDS: float = float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "0.5"))
    # 0 disables priority aging (strict bands, LOW work may starve)
    QUEUE_AGING_SECONDS: float = float(os.getenv("QUEUE_AGING_SECONDS", "0"))
    ACTIVITY_LOG_LIMIT: int = int(os.getenv("ACTIVITY_LOG_LIMIT", "200"))
    # Chat/collaboration replies kept for reply_for(), oldest dropped first
    REPLY_LIMIT: int = int(os.getenv("REPLY_LIMIT", "100"))

    # Persistence
    STATE_DIR: Path = Path(os.getenv("STATE_DIR", "expertverse_state"))

    # Project Paths
    PROJECT_ROOT: Path = Path(__file__).parent.parent
    ROSTERS_DIR: Path = Path(os.getenv("ROSTERS_DIR", str(PROJECT_ROOT / "examples" / "rosters")))

    _PROVIDER_KEYS = {
        "google": "GOOGLE_API_KEY",
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
    }

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if required values are missing."""
        key_name = cls._PROVIDER_KEYS.get(cls.LLM_PROVIDER)
        if key_name is None:
            raise ValueError(
                f"Unsupported LLM_PROVIDER '{cls.LLM_PROVIDER}'. "
                f"Choose one of: {', '.join(sorted(cls._PROVIDER_KEYS))}"
            )

        if not getattr(cls, key_name):
            raise ValueError(
                f"{key_name} is required when using the '{cls.LLM_PROVIDER}' provider"
            )

        if cls.QUEUE_POLL_INTERVAL_SECONDS <= 0:
            raise ValueError("QUEUE_POLL_INTERVAL_SECONDS must be positive")

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Expertverse Configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  LLM Model: {cls.LLM_MODEL}",
            f"  Queue Poll Interval: {cls.QUEUE_POLL_INTERVAL_SECONDS}s",
            f"  Priority Aging: {cls.QUEUE_AGING_SECONDS or 'off'}",
            f"  State Directory: {cls.STATE_DIR}",
        ]
        return "\n".join(lines)

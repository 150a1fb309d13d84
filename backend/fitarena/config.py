"""
backend/fitarena/config.py

Purpose:
    Central settings loading for the battle engine backend.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "fitarena"
    JWT_SECRET: str = "change-me"
    JWT_SECRET_OLD: str = ""  # Set during rotation; cleared after 7 days
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"

    # XP rewards granted through the rewards ledger
    BATTLE_ACCEPT_XP: int = 100
    BATTLE_PROGRESS_XP: int = 25
    BATTLE_WIN_XP: int = 500

    # Lifecycle policy
    BATTLE_PENDING_EXPIRY_DAYS: int = 7  # Unaccepted battles expire after this

    # Background sweeper (auto-complete / expire untouched battles)
    BATTLE_SWEEPER_ENABLED: bool = True
    BATTLE_SWEEP_INTERVAL_MINUTES: int = 15
    BATTLE_SWEEP_BATCH_SIZE: int = 500

    # Listing
    BATTLE_PAGE_MAX_LIMIT: int = 100

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


settings = Settings()

"""
Runtime configuration for the notes backend.

Every setting comes from an environment variable so the same code runs in
development, tests and production without edits.
"""

import os
from dataclasses import dataclass
from typing import Optional

TRUTHY = ("1", "true", "yes", "on")


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY


@dataclass
class Settings:
    """Complete application configuration."""
    users_db_path: str = "users.db"
    notes_db_path: str = "notes.db"
    debug: bool = False
    allow_email_register: bool = True
    # Per-user locking of history writes; off means last write wins
    history_serialize_writes: bool = False
    website_dir: Optional[str] = None


def load_settings() -> Settings:
    """Build Settings from NOTES_* environment variables."""
    return Settings(
        users_db_path=os.environ.get("NOTES_USERS_DB", "users.db"),
        notes_db_path=os.environ.get("NOTES_NOTES_DB", "notes.db"),
        debug=_env_flag("NOTES_DEBUG", False),
        allow_email_register=_env_flag("NOTES_ALLOW_EMAIL_REGISTER", True),
        history_serialize_writes=_env_flag("NOTES_HISTORY_SERIALIZE_WRITES", False),
        website_dir=os.environ.get("NOTES_WEBSITE_DIR"),
    )

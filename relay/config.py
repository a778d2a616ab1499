import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

from .errors import ConfigError
from .inference import DEFAULT_MODEL


class Settings(BaseModel):
    """Runtime configuration read once at startup."""

    openrouter_api_key: str
    openrouter_model: str = DEFAULT_MODEL
    openrouter_timeout: float = 120.0
    context_store: str = "memory"
    message_window_seconds: int = 180
    poll_notifications: bool = True
    db_path: str = "storage/app.db"
    admin_password: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8080

    @field_validator("context_store")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        v = (v or "memory").strip().lower()
        if v not in ("memory", "sqlite"):
            raise ValueError("CONTEXT_STORE must be 'memory' or 'sqlite'")
        return v


def load_settings(dotenv: bool = True) -> Settings:
    """
    Build Settings from the current environment (and .env when present).

    A missing OPENROUTER_API_KEY is fatal: callers exit before serving anything.
    """
    if dotenv:
        load_dotenv()

    api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if not api_key:
        raise ConfigError("OPENROUTER_API_KEY not found in environment variables")

    values = {
        "openrouter_api_key": api_key,
        "openrouter_model": os.getenv("OPENROUTER_MODEL") or None,
        "openrouter_timeout": os.getenv("OPENROUTER_TIMEOUT") or None,
        "context_store": os.getenv("CONTEXT_STORE") or None,
        "message_window_seconds": os.getenv("MESSAGE_WINDOW_SECONDS") or None,
        "poll_notifications": os.getenv("POLL_NOTIFICATIONS") or None,
        "db_path": os.getenv("DB_PATH") or None,
        "admin_password": os.getenv("ADMIN_PASSWORD") or None,
        "host": os.getenv("HOST") or None,
        "port": os.getenv("PORT") or None,
    }
    try:
        return Settings(**{k: v for k, v in values.items() if v is not None})
    except ValidationError as e:
        raise ConfigError(str(e)) from e

"""
Session store configuration using Pydantic Settings.

Configuration values can be set via SESSION_* environment variables or a .env file.
Only the options declared here are accepted; anything else fails validation.
"""

import re
from functools import lru_cache
from typing import Literal, Optional

from cryptography.fernet import Fernet
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# RFC 6265 cookie-name token characters
_COOKIE_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class SessionSettings(BaseSettings):
    """Session store settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="SESSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid",
    )

    # Cookie settings
    name: str = "my-session"
    path: str = "/"
    domain: Optional[str] = None
    secure: bool = False
    same_site: Literal["lax", "strict", "none"] = "lax"
    # 0 keeps the cookie alive only until the browser closes
    cookie_max_age: int = Field(default=0, ge=0)

    # Expiration
    timeout: int = Field(default=60 * 24, gt=0)  # minutes
    lifetime: Optional[int] = Field(default=None, gt=0)  # seconds, overrides timeout
    gc_probability: float = Field(default=1.0, ge=0.0, le=1.0)

    # Storage
    table: str = "sessions"
    database_url: str = "sqlite:///./data/sessions.db"
    encryption_key: Optional[str] = None

    # Global accessor alias registered by the middleware, if any
    global_alias: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    @field_validator("name")
    @classmethod
    def validate_cookie_name(cls, v: str) -> str:
        if not _COOKIE_NAME_RE.match(v):
            raise ValueError(f"invalid cookie name: {v!r}")
        return v

    @field_validator("table")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        if not _TABLE_NAME_RE.match(v):
            raise ValueError(f"invalid table name: {v!r}")
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("cookie path must start with '/'")
        return v

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            Fernet(v.encode("ascii"))
        except (ValueError, UnicodeEncodeError) as e:
            raise ValueError("encryption_key must be a urlsafe base64 32-byte Fernet key") from e
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log level: {v!r}")
        return level

    @property
    def gc_max_age(self) -> int:
        """Seconds of inactivity after which a record may be collected."""
        if self.lifetime is not None:
            return self.lifetime
        return self.timeout * 60


@lru_cache()
def get_settings() -> SessionSettings:
    """Return the process-wide settings instance."""
    return SessionSettings()

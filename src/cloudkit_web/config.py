"""Application configuration management using Pydantic Settings.

This module defines the `Settings` class, which loads configuration parameters
from environment variables and a `.env` file: service host, container
identity, database scope, the server-to-server signing key, and transport /
logging behavior.

The `get_settings` function provides a cached, singleton instance of the
configuration, ensuring consistent settings throughout the application.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict as _SettingsConfigDict

_SCOPES = {"public", "private", "shared"}
_ENVIRONMENTS = {"development", "production"}


class Settings(BaseSettings):
    """Defines all client configuration parameters.

    Values come from environment variables or a `.env` file. A validator reads
    the PEM private key from `CLOUDKIT_PRIVATE_KEY_PATH` when no inline key is
    given, so the rest of the package only ever sees `CLOUDKIT_PRIVATE_KEY`.
    """

    model_config = _SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Service / container identity
    CLOUDKIT_HOST: str = Field(
        default="https://api.apple-cloudkit.com", description="Base URL of the record service"
    )
    CLOUDKIT_CONTAINER: str = Field(default="", description="Container identifier, e.g. iCloud.com.example.app")
    CLOUDKIT_ENVIRONMENT: str = Field(default="development", description="development | production")
    CLOUDKIT_SCOPE: str = Field(default="public", description="public | private | shared")

    # Server-to-server signing
    CLOUDKIT_KEY_ID: str = Field(default="", description="Key identifier sent with every request")
    CLOUDKIT_PRIVATE_KEY: str = Field(default="", description="Inline PEM EC private key")
    CLOUDKIT_PRIVATE_KEY_PATH: Optional[str] = Field(
        default=None, description="Path to a PEM EC private key (used when the inline key is empty)"
    )
    # Off by default: a configured key that cannot sign is an error. Enabling
    # this restores the lenient behavior of sending the request unsigned.
    ALLOW_UNSIGNED_ON_SIGNING_ERROR: bool = Field(
        default=False,
        description="Send requests unsigned (with a warning) when signing fails",
    )

    # Transport
    HTTP_TIMEOUT: float = Field(default=30.0, description="Transport timeout in seconds")
    QUERY_PAGE_SIZE: int = Field(default=200, description="Results per query page (max 200)")

    # Logging & runtime behavior
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    DEBUG: bool = Field(
        default=False,
        description="Log full request and response bodies at DEBUG level",
    )

    @field_validator("CLOUDKIT_SCOPE", "CLOUDKIT_ENVIRONMENT", mode="before")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("CLOUDKIT_SCOPE")
    @classmethod
    def _check_scope(cls, value: str) -> str:
        if value not in _SCOPES:
            raise ValueError(f"CLOUDKIT_SCOPE must be one of {sorted(_SCOPES)}")
        return value

    @field_validator("CLOUDKIT_ENVIRONMENT")
    @classmethod
    def _check_environment(cls, value: str) -> str:
        if value not in _ENVIRONMENTS:
            raise ValueError(f"CLOUDKIT_ENVIRONMENT must be one of {sorted(_ENVIRONMENTS)}")
        return value

    @field_validator("QUERY_PAGE_SIZE")
    @classmethod
    def _clamp_page_size(cls, value: int) -> int:
        return max(1, min(value, 200))

    @model_validator(mode="after")
    def load_key_file_if_needed(self) -> "Settings":
        """Read the private key file when no inline key was provided.

        Returns:
            The validated `Settings` instance, with `CLOUDKIT_PRIVATE_KEY`
            potentially populated.
        """
        if not self.CLOUDKIT_PRIVATE_KEY and self.CLOUDKIT_PRIVATE_KEY_PATH:
            path = Path(self.CLOUDKIT_PRIVATE_KEY_PATH).expanduser()
            try:
                self.CLOUDKIT_PRIVATE_KEY = path.read_text(encoding="utf-8")
            except OSError as e:
                raise ValueError(f"cannot read CLOUDKIT_PRIVATE_KEY_PATH {path}: {e}") from e
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:  # pragma: no cover - trivial
    """Return a cached, singleton instance of the application settings.

    Provides a clearer error when the key file cannot be read.
    """
    try:
        return Settings()
    except ValidationError as e:
        key_file_error = any(
            err.get("loc") in [(), ("CLOUDKIT_PRIVATE_KEY_PATH",)] and "PRIVATE_KEY_PATH" in str(err.get("msg"))
            for err in e.errors()
        )
        if key_file_error:
            raise RuntimeError(
                "CLOUDKIT_PRIVATE_KEY_PATH is set but unreadable. Fix the path or set "
                "CLOUDKIT_PRIVATE_KEY to the PEM contents."
            ) from e
        raise

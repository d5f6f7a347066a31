"""Application configuration objects."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_SUPPORTED_KV_SCHEMES = ("memory", "redis", "rediss", "sqlite", "postgresql", "mysql")


class Settings(BaseSettings):
    """Pydantic settings used to configure the application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(
        default="Emergency Supply Service",
        description="Human friendly name for the API.",
    )
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Deployment environment flag used for logging.",
    )
    api_prefix: str = Field(default="/api", description="Prefix for resource routes.")
    kv_url: str = Field(
        default="memory://",
        description="Key-value backend: memory://, redis://, or a SQLAlchemy async URL.",
    )
    kv_prefix: str = Field(
        default="",
        description="Prefix prepended to every collection key in the backend.",
    )
    echo_sql: bool = Field(
        default=False,
        description="Enable SQL echo logging for the SQL backend.",
    )
    access_control_allow_origin: str = Field(
        default="*",
        description="Allowed CORS origins for the API.",
    )
    store_max_retries: int = Field(
        default=5,
        ge=1,
        description="Attempts per mutation before a version conflict is reported as failure.",
    )
    backup_retention: int = Field(
        default=10,
        ge=0,
        description="Number of pre-migration snapshots kept in the backups collection.",
    )
    log_level: str = Field(default="INFO", description="Root logging level.")

    @field_validator("kv_url")
    @classmethod
    def _validate_kv_url(cls, value: str) -> str:
        scheme = value.split("://", 1)[0].split("+", 1)[0].lower()
        if "://" not in value or scheme not in _SUPPORTED_KV_SCHEMES:
            raise ValueError(f"Unsupported key-value backend URL: {value!r}")
        if scheme == "sqlite" and ":memory:" not in value and "///" not in value:
            raise ValueError(
                "SQLite database URLs should be in the form sqlite+aiosqlite:///path/to/db"
            )
        return value

    @property
    def kv_backend(self) -> str:
        """Short name of the configured backend family."""

        scheme = self.kv_url.split("://", 1)[0].split("+", 1)[0].lower()
        if scheme == "memory":
            return "memory"
        if scheme in {"redis", "rediss"}:
            return "redis"
        return "sql"


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


__all__ = ["Settings", "get_settings"]

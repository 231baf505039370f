"""Environment-driven settings for allotment.

``AllotmentSettings`` is the construction-time configuration surface of an
engine: backend selector, connection target, open mode and busy-retry
interval.  Values come from ``ALLOTMENT_*`` environment variables or a
``.env`` file and are validated by pydantic at startup.

Examples:
    >>> from allotment.core.settings import AllotmentSettings
    >>> settings = AllotmentSettings(db_filename="/tmp/jobs.sqlite3", busy_wait=0.25)
    >>> settings.to_database_config().path
    '/tmp/jobs.sqlite3'

Environment::

    ALLOTMENT_DB_TYPE=postgresql
    ALLOTMENT_PG_HOST=db.internal
    ALLOTMENT_PG_DATABASE=allotment
    ALLOTMENT_BUSY_WAIT=1.0
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from allotment.core.adapters.types import DatabaseConfig, DatabaseType
from allotment.core.errors import InvalidConfigError

SQLITE_MODES = ("ro", "rw", "rwc", "memory")


class AllotmentSettings(BaseSettings):
    """Settings shared by the engine and the CLI.

    Fields
    ──────
    db_type      : Backend selector (``sqlite`` or ``postgresql``)
    db_filename  : SQLite database file
    db_mode      : SQLite open mode (``ro``, ``rw``, ``rwc``, ``memory``)
    busy_wait    : Seconds to wait before retrying on a busy/locked store
    pg_*         : PostgreSQL connection parameters
    log_level    : Structlog log level
    log_json     : Force JSON (True) or console (False) log rendering
    """

    model_config = SettingsConfigDict(
        env_prefix="ALLOTMENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    db_type: str = "sqlite"
    db_filename: str = "allotment.sqlite3"
    db_mode: str = "rwc"
    busy_wait: float = Field(default=1.0, ge=0.0)

    # ── PostgreSQL ───────────────────────────────────────────────
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_database: str = "allotment"
    pg_user: str | None = None
    pg_password: str | None = None
    pg_connect_timeout: int = 10

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator("db_mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        if value not in SQLITE_MODES:
            raise ValueError(f"db_mode must be one of {', '.join(SQLITE_MODES)}")
        return value

    def to_database_config(self) -> DatabaseConfig:
        """Build the adapter configuration for the selected backend."""
        try:
            db_type = DatabaseType.from_name(self.db_type)
        except ValueError:
            raise InvalidConfigError("db_type", self.db_type) from None

        if db_type is DatabaseType.SQLITE:
            return DatabaseConfig(
                db_type=db_type,
                path=self.db_filename,
                mode=self.db_mode,
            )
        return DatabaseConfig(
            db_type=db_type,
            host=self.pg_host,
            port=self.pg_port,
            database=self.pg_database,
            username=self.pg_user,
            password=self.pg_password,
            connect_timeout=self.pg_connect_timeout,
        )


@lru_cache(maxsize=1)
def get_settings() -> AllotmentSettings:
    """Process-wide settings loaded from the environment."""
    return AllotmentSettings()


__all__ = [
    "AllotmentSettings",
    "get_settings",
    "SQLITE_MODES",
]

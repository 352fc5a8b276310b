"""
Server configuration.

All environment-driven options are read once at startup into a Settings
instance. Invalid settings fail at construction, before the app is built.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

from errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001
DEFAULT_DB_PORT = 3306

# Well-known default from older deployments; refused at startup
INSECURE_ADMIN_KEYS = frozenset({"admin123"})


def _default_sqlite_url() -> str:
    """SQLite file next to the db package (or /data when running in Docker)."""
    if Path("/app").exists():
        data_dir = Path("/data")
    else:
        data_dir = Path(__file__).parent / "db" / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{data_dir}/analytics.db"


class Settings(BaseSettings):
    """
    Process-wide configuration for the analytics server.

    Each field is read from the environment variable of the same name
    (DATABASE_URL, DB_HOST, ADMIN_KEY, PORT, ...), case-insensitively.
    Empty variables count as unset.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = None
    db_host: Optional[str] = None
    db_user: Optional[str] = None
    db_password: Optional[str] = None
    db_name: Optional[str] = None
    db_port: int = DEFAULT_DB_PORT
    sql_debug: bool = False

    # Security
    admin_key: Optional[str] = None

    # Server
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    debug: bool = False

    # Rate limiting
    rate_limit_max_requests: int = Field(default=100, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_block_seconds: float = Field(default=300.0, ge=0)

    # Outbound public IP lookups
    public_ip_timeout: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def check_required(self) -> "Settings":
        """Refuse a missing or default admin key and incomplete MySQL settings."""
        if not self.admin_key or not self.admin_key.strip():
            raise ValueError("ADMIN_KEY must be set")
        if self.admin_key in INSECURE_ADMIN_KEYS:
            raise ValueError("ADMIN_KEY must not be a default value")

        if not self.database_url and self.db_host and not self.db_name:
            raise ValueError("DB_NAME must be set when DB_HOST is set")
        return self

    def resolved_database_url(self) -> str:
        """
        Get the SQLAlchemy URL for the configured database.

        Priority:
        1. DATABASE_URL (Heroku-style postgres:// is rewritten)
        2. MySQL built from DB_HOST/DB_USER/DB_PASSWORD/DB_NAME/DB_PORT
        3. Local SQLite file
        """
        if self.database_url:
            url = self.database_url
            if url.startswith("postgres://"):
                url = url.replace("postgres://", "postgresql://", 1)
            return url

        if self.db_host:
            return URL.create(
                "mysql+pymysql",
                username=self.db_user,
                password=self.db_password,
                host=self.db_host,
                port=self.db_port,
                database=self.db_name,
            ).render_as_string(hide_password=False)

        return _default_sqlite_url()


def load_settings(**overrides) -> Settings:
    """
    Read settings from the environment.

    Raises:
        ConfigError: if a value is malformed or a required value is missing
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(messages) from e

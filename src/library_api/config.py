"""Configuration management for the Library Circulation API.

Settings are loaded from the environment (prefix ``LIBRARY_API_``) and an
optional ``.env`` file:
1. Application metadata - name and version reported by the HTTP layer
2. Persistence - database URL and SQLite locking behaviour
3. Security - JWT signing secret and token lifetimes
4. Circulation rules - loan period and conflict retry budget
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseSettings):
    """Application configuration.

    Every field can be overridden with an environment variable, e.g.
    ``LIBRARY_API_DATABASE_URL=postgresql+psycopg://...``.
    """

    model_config = SettingsConfigDict(
        env_prefix="LIBRARY_API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Application Metadata ===

    app_name: str = Field(
        default="library-api",
        description="Service name reported by the health check and OpenAPI docs",
        pattern=r"^[a-z0-9-]+$",
    )

    app_version: str = Field(
        default="0.1.0",
        description="Service version",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$",
    )

    # === Database Configuration ===

    database_url: str = Field(
        default="sqlite:///data/library.db",
        description="SQLAlchemy database URL (SQLite or PostgreSQL)",
    )

    sqlite_busy_timeout: float = Field(
        default=30.0,
        description="Seconds a SQLite connection waits for a write lock",
        gt=0,
    )

    # === Security Configuration ===

    jwt_secret: str = Field(
        default="change-me-in-production",
        description="Secret used to sign access and refresh tokens",
        min_length=8,
        repr=False,
    )

    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm",
        pattern=r"^HS(256|384|512)$",
    )

    access_token_ttl_hours: int = Field(
        default=24,
        description="Lifetime of access tokens in hours",
        ge=1,
    )

    refresh_token_ttl_days: int = Field(
        default=7,
        description="Lifetime of refresh tokens in days",
        ge=1,
    )

    bcrypt_rounds: int = Field(
        default=12,
        description="bcrypt work factor for password hashes",
        ge=4,
        le=31,
    )

    # === Circulation Rules ===

    loan_period_days: int = Field(
        default=14,
        description="Days between borrowed_at and due_at for a new borrowing",
        ge=1,
        le=365,
    )

    max_conflict_retries: int = Field(
        default=5,
        description="Attempts before a contended ledger operation gives up",
        ge=1,
        le=50,
    )

    conflict_backoff_seconds: float = Field(
        default=0.05,
        description="Base delay between conflict retries (grows linearly)",
        ge=0,
    )

    overdue_sweep_interval_seconds: float = Field(
        default=0,
        description="Seconds between background overdue sweeps (0 disables the periodic task)",
        ge=0,
    )

    # === HTTP Configuration ===

    http_host: str = Field(default="127.0.0.1", description="Bind address for `serve`")

    http_port: int = Field(default=8000, description="Bind port for `serve`", ge=1024, le=65535)

    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3001"],
        description="Origins allowed to call the API from a browser",
    )

    # === Development Configuration ===

    debug: bool = Field(default=False, description="Enable debug logging")

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR)$",
    )

    # === Observability ===

    logfire_token: str | None = Field(
        default=None,
        description="Logfire write token; spans are only exported when set",
        repr=False,
    )

    environment: str = Field(default="development", description="Deployment environment name")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Ensure the parent directory of a file-backed SQLite database exists."""
        prefix = "sqlite:///"
        if v.startswith(prefix) and ":memory:" not in v:
            db_path = Path(v[len(prefix) :])
            db_path.absolute().parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    # === Computed Properties ===

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_development(self) -> bool:
        """Debug flag or DEBUG log level."""
        return self.debug or self.log_level == "DEBUG"


class _ConfigStore:
    """Internal storage for configuration singleton."""

    _instance: ServerConfig | None = None


def get_config() -> ServerConfig:
    """Get or create the global configuration instance."""
    if _ConfigStore._instance is None:  # type: ignore[reportPrivateUsage]
        _ConfigStore._instance = ServerConfig()  # type: ignore[reportPrivateUsage]
    return _ConfigStore._instance  # type: ignore[reportPrivateUsage]


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    _ConfigStore._instance = None  # type: ignore[reportPrivateUsage]

"""
Configuration Management

Uses Pydantic BaseSettings to load configuration from environment variables.
All settings can be overridden via .env file or environment variables.

Environment Variables:
    LOG_DIR: Directory holding channel log files and chain state sidecars
    ARCHIVE_DIR: Directory for archived channel files (default: LOG_DIR/archive)
    PHI_HASH_SALT: Secret used to hash patient identifiers before logging
    REDIS_URL: Redis connection string (failed-login counters)
    APP_ENV: Environment name (development/staging/production)
    DEBUG: Enable debug mode (default: False)
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Audit log storage
    log_dir: str = "./logs"
    """Directory where each channel writes `{channel}.log` and `.{channel}_hash`."""

    archive_dir: Optional[str] = None
    """Directory for archived channel files.

    Defaults to `{log_dir}/archive` when unset.
    """

    fsync_writes: bool = True
    """Call os.fsync after every appended record.

    Disable only for throwaway environments; without it a power loss can
    drop records that were already reported as written.
    """

    # PHI handling
    phi_hash_salt: str = "dev-phi-salt-change-in-production"
    """Secret for hashing patient identifiers, phone numbers and emails.

    WARNING: Must be changed in production!
    Generate with: python -c "import secrets; print(secrets.token_urlsafe(32))"
    """

    # Redis Configuration
    redis_url: str = "redis://localhost:6379/0"
    """Redis connection URL.

    Format: redis://host:port/db

    Used for failed-login counters shared across application instances.
    """

    # Brute force detection
    brute_force_threshold: int = 5
    """Failed logins per username+IP inside one window before alerting."""

    brute_force_window_seconds: int = 900
    """Length of the failed-login counting window in seconds."""

    # Statistics
    slow_operation_ms: int = 100
    """Records with duration_ms above this count as slow operations."""

    # Application Environment
    app_env: Literal["development", "staging", "production"] = "development"
    """Current application environment."""

    debug: bool = False
    """Enable debug mode (verbose logging, detailed error responses)."""

    # Application Configuration
    app_name: str = "ehr-audit"
    """Application name."""

    host: str = "0.0.0.0"
    """Host to bind the application server."""

    port: int = 8000
    """Port to bind the application server."""

    # CORS Configuration
    cors_origins: str = "http://localhost:3000"
    """Comma-separated list of allowed CORS origins."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def cors_origins_list(self) -> list[str]:
        """Split cors_origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def log_dir_path(self) -> Path:
        return Path(self.log_dir)

    @property
    def archive_dir_path(self) -> Path:
        if self.archive_dir:
            return Path(self.archive_dir)
        return self.log_dir_path / "archive"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Cached settings instance

    Example:
        >>> from ehr_audit.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.log_dir)
        ./logs
    """
    return Settings()


# Module-level settings instance for easy imports
settings = get_settings()

# src/icalimport/config.py
"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ImportConfiguration


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Configuration
    app_name: str = Field(default="icalimport", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".icalimport",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        validate_default=True,
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Feed Fetch Configuration
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="HTTP request timeout"
    )
    verify_ssl: bool = Field(
        default=True,
        description="Verify TLS certificates (disabling trades security for reachability)"
    )
    user_agent: str = Field(
        default="icalimport/1.0 (+https://example.invalid/icalimport)",
        description="User-Agent sent with feed requests"
    )
    fetch_retry_attempts: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Attempts on the primary transport before falling back"
    )
    run_lock_ttl_seconds: int = Field(
        default=900,
        ge=1,
        description="Expiry of the run lock taken by the CLI"
    )

    # Import Configuration
    import_config: ImportConfiguration = Field(
        default_factory=ImportConfiguration,
        description="Import settings"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/icalimport.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    def ensure_directories(self):
        """Create the data directory (owner only)."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def validate_required_settings(self):
        """Return a list of problems that prevent an import run."""
        problems = []
        if not self.database_url:
            problems.append('DATABASE_URL')
        if not self.verify_ssl:
            problems.append('VERIFY_SSL is disabled (TLS certificates are not checked)')
        return problems


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# icalimport configuration
# Copy this file to .env and adjust it

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Storage Configuration (optional)
# DATA_DIR=~/.icalimport
# DATABASE_URL=sqlite:///~/.icalimport/icalimport.db

# Feed Fetch Configuration
REQUEST_TIMEOUT_SECONDS=30
FETCH_RETRY_ATTEMPTS=2
# Disabling certificate checks makes feeds with broken TLS reachable,
# at the cost of accepting forged certificates.
VERIFY_SSL=true

# Import Configuration
IMPORT_CONFIG__FEED_URL=https://example.com/calendar.ics
IMPORT_CONFIG__CALENDAR_ID=1
IMPORT_CONFIG__BOARD_ID=0
IMPORT_CONFIG__CONVERT_TIMEZONE=true
IMPORT_CONFIG__TARGET_TIMEZONE=Europe/Berlin
IMPORT_CONFIG__CREATE_THREADS=false
IMPORT_CONFIG__AUTO_MARK_PAST_READ=true
IMPORT_CONFIG__MARK_UPDATED_UNREAD=true
IMPORT_CONFIG__MAX_EVENTS_PER_RUN=100
# One of: error, warning, info, debug
IMPORT_CONFIG__LOG_LEVEL=info
IMPORT_CONFIG__MATCH_WINDOW_MINUTES=30
IMPORT_CONFIG__TITLE_SIMILARITY_THRESHOLD=0.7
# Registration closes this many hours before an event (1-168)
# IMPORT_CONFIG__PARTICIPATION_HOURS_BEFORE=24
IMPORT_CONFIG__DAEMON_INTERVAL_MINUTES=60
'''

    with open(path, 'w') as f:
        f.write(example_content)

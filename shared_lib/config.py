"""
Configuration management system with environment variable validation.
Provides centralized configuration for the claim monitor worker and its collaborators.
"""

import os
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from enum import Enum
from dotenv import load_dotenv


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseConfig(BaseModel):
    """Database connection configuration."""
    url: Optional[str] = None
    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, ge=1, le=65535, description="Database port")
    database: str = Field("claim_monitor", description="Database name")
    username: str = Field("postgres", description="Database username")
    password: str = Field("", description="Database password")
    pool_size: int = Field(10, ge=1, le=100, description="Connection pool size")
    max_overflow: int = Field(20, ge=0, le=100, description="Max pool overflow")
    echo: bool = Field(False, description="Echo SQL statements")

    def get_url(self) -> str:
        """Get PostgreSQL connection URL."""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"


class RedisConfig(BaseModel):
    """Redis connection configuration."""
    host: str = Field("localhost", description="Redis host")
    port: int = Field(6379, ge=1, le=65535, description="Redis port")
    password: Optional[str] = Field(None, description="Redis password")
    db: int = Field(0, ge=0, le=15, description="Redis database number")
    max_connections: int = Field(20, ge=1, le=100, description="Max connections")

    @property
    def url(self) -> str:
        """Get Redis connection URL."""
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class YouTubeConfig(BaseModel):
    """YouTube Data, Partner and OAuth endpoint configuration."""
    client_id: str = Field("", description="Google OAuth client ID")
    client_secret: str = Field("", description="Google OAuth client secret")
    token_url: str = Field("https://oauth2.googleapis.com/token", description="OAuth token endpoint")
    data_api_url: str = Field("https://www.googleapis.com/youtube/v3", description="YouTube Data API base URL")
    partner_api_url: str = Field(
        "https://www.googleapis.com/youtube/partner/v1",
        description="YouTube Partner (Content ID) API base URL"
    )
    request_timeout: float = Field(30.0, gt=0, description="HTTP request timeout in seconds")
    page_size: int = Field(50, ge=1, le=50, description="Videos per listing page")


class SecurityConfig(BaseModel):
    """Security and encryption configuration."""
    encryption_key: str = Field(..., description="Hex-encoded AES-256 key (64 characters)")

    @field_validator('encryption_key')
    @classmethod
    def validate_encryption_key(cls, v):
        """Validate encryption key format."""
        try:
            decoded = bytes.fromhex(v)
        except ValueError:
            raise ValueError("Invalid hex encryption key")
        if len(decoded) != 32:
            raise ValueError("Encryption key must decode to 32 bytes")
        return v


class WorkerConfig(BaseModel):
    """Job orchestrator configuration."""
    concurrency: int = Field(5, ge=1, le=100, description="Concurrent jobs per job kind")
    channel_sync_attempts: int = Field(3, ge=1, description="Attempts for channel sync jobs")
    claim_sync_attempts: int = Field(2, ge=1, description="Attempts for claim sync jobs")
    claim_detect_attempts: int = Field(3, ge=1, description="Attempts for claim detection jobs")
    notification_attempts: int = Field(5, ge=1, description="Attempts for notification jobs")
    backoff_base_seconds: float = Field(1.0, gt=0, description="Exponential backoff base delay")
    video_page_delay: float = Field(0.5, ge=0, description="Delay between video pages in seconds")
    claim_page_delay: float = Field(0.3, ge=0, description="Delay between claim pages in seconds")
    claim_lookback_days: int = Field(30, ge=1, description="Claim search window when never synced")
    job_retention_seconds: int = Field(86400, ge=60, description="How long job records are kept")
    poll_timeout: int = Field(1, ge=1, le=30, description="Blocking pop timeout in seconds")


class SchedulerConfig(BaseModel):
    """Periodic sync scheduler configuration."""
    enabled: bool = Field(True, description="Run the periodic scheduler")
    sync_interval_hours: float = Field(4.0, gt=0, description="Hours between full syncs")
    stagger_seconds: float = Field(5.0, ge=0, description="Delay between consecutive channel syncs")


class EmailConfig(BaseModel):
    """SMTP configuration for notification emails."""
    smtp_server: Optional[str] = Field(None, description="SMTP server host")
    smtp_port: int = Field(587, ge=1, le=65535, description="SMTP server port")
    smtp_username: Optional[str] = Field(None, description="SMTP username")
    smtp_password: Optional[str] = Field(None, description="SMTP password")
    from_email: str = Field("alerts@claim-monitor.local", description="Sender address")
    use_tls: bool = Field(True, description="Use STARTTLS")
    dashboard_url: str = Field("http://localhost:3000", description="Dashboard link in emails")

    @property
    def enabled(self) -> bool:
        return bool(self.smtp_server)


class SystemConfig(BaseSettings):
    """
    Main system configuration with environment variable validation.

    Environment variables are automatically loaded and validated.
    Supports .env files and system environment variables.
    """

    # Environment and logging
    environment: str = Field("development", description="Environment name")
    log_level: LogLevel = Field(LogLevel.INFO, description="Logging level")
    log_json: bool = Field(True, description="Emit JSON structured logs")
    log_dir: Optional[str] = Field(None, description="Directory for rotating log files")
    debug: bool = Field(False, description="Enable debug mode")

    # Component configurations
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    youtube: YouTubeConfig = Field(default_factory=YouTubeConfig)
    security: SecurityConfig
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    @classmethod
    def from_env(cls) -> 'SystemConfig':
        """Load configuration from environment variables."""
        try:
            return cls()
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'SystemConfig':
        """Load configuration from dictionary."""
        try:
            return cls(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return self.model_dump()

    def validate_required_env_vars(self) -> List[str]:
        """
        Validate that all required environment variables are set.

        Returns:
            List of missing environment variable names
        """
        missing_vars = []

        required_vars = [
            "DATABASE__HOST",
            "DATABASE__DATABASE",
            "DATABASE__USERNAME",
            "DATABASE__PASSWORD",
            "YOUTUBE__CLIENT_ID",
            "YOUTUBE__CLIENT_SECRET",
            "SECURITY__ENCRYPTION_KEY",
        ]

        # A full DATABASE__URL replaces the individual connection settings
        if os.getenv("DATABASE__URL"):
            required_vars = [v for v in required_vars if not v.startswith("DATABASE__")]

        for var in required_vars:
            if not os.getenv(var):
                missing_vars.append(var)

        return missing_vars


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""
    pass


def load_config() -> SystemConfig:
    """
    Load and validate system configuration.

    Returns:
        Validated SystemConfig instance

    Raises:
        ConfigurationError: If configuration is invalid or missing required values
    """
    load_dotenv()
    try:
        config = SystemConfig.from_env()

        missing_vars = config.validate_required_env_vars()
        if missing_vars:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing_vars)}"
            )

        return config

    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}")


def create_sample_env_file(filepath: str = ".env.example") -> None:
    """
    Create a sample .env file with all configuration options.

    Args:
        filepath: Path to create the sample file
    """
    sample_content = '''# Copyright Claim Monitor Configuration

# Environment
ENVIRONMENT=development
LOG_LEVEL=INFO
LOG_JSON=true
DEBUG=false

# Database Configuration
DATABASE__HOST=localhost
DATABASE__PORT=5432
DATABASE__DATABASE=claim_monitor
DATABASE__USERNAME=postgres
DATABASE__PASSWORD=your_password_here
DATABASE__POOL_SIZE=10
DATABASE__MAX_OVERFLOW=20

# Redis Configuration
REDIS__HOST=localhost
REDIS__PORT=6379
REDIS__PASSWORD=
REDIS__DB=0

# YouTube / Google OAuth
YOUTUBE__CLIENT_ID=your_client_id_here
YOUTUBE__CLIENT_SECRET=your_client_secret_here
YOUTUBE__REQUEST_TIMEOUT=30

# Security Configuration
SECURITY__ENCRYPTION_KEY=your_64_hex_character_key_here

# Job Workers
WORKER__CONCURRENCY=5
WORKER__CHANNEL_SYNC_ATTEMPTS=3
WORKER__CLAIM_SYNC_ATTEMPTS=2
WORKER__CLAIM_DETECT_ATTEMPTS=3
WORKER__NOTIFICATION_ATTEMPTS=5
WORKER__BACKOFF_BASE_SECONDS=1
WORKER__VIDEO_PAGE_DELAY=0.5
WORKER__CLAIM_PAGE_DELAY=0.3

# Scheduler
SCHEDULER__ENABLED=true
SCHEDULER__SYNC_INTERVAL_HOURS=4
SCHEDULER__STAGGER_SECONDS=5

# Email Notifications
EMAIL__SMTP_SERVER=
EMAIL__SMTP_PORT=587
EMAIL__SMTP_USERNAME=
EMAIL__SMTP_PASSWORD=
EMAIL__FROM_EMAIL=alerts@example.com
EMAIL__DASHBOARD_URL=http://localhost:3000
'''

    with open(filepath, 'w') as f:
        f.write(sample_content)


# Global configuration instance
_config: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """
    Get the global configuration instance.

    Returns:
        SystemConfig instance
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> SystemConfig:
    """
    Reload configuration from environment.

    Returns:
        New SystemConfig instance
    """
    global _config
    _config = load_config()
    return _config

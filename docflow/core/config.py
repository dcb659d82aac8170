"""
Configuration Management Module

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables and .env files.
"""

from pathlib import Path
from typing import Annotated, Dict, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# Polling frequencies offered to operators (minutes)
SCAN_FREQUENCIES = (5, 10, 15, 30, 60, 120, 240, 360, 720, 1440)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have sensible defaults for development,
    but should be overridden in production via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars not defined here
        populate_by_name=True,
    )

    # =========================================================================
    # Source Folders
    # =========================================================================
    inbound_path: Path = Field(
        default=Path("/mnt/data/ftp-inbound"),
        description="Folder scanned for new documents",
        alias="FTP_INBOUND_PATH"
    )
    processed_path: Path = Field(
        default=Path("/mnt/data/ftp-processed"),
        description="Destination for successfully parsed documents",
        alias="FTP_PROCESSED_PATH"
    )
    failed_path: Path = Field(
        default=Path("/mnt/data/ftp-failed"),
        description="Destination for documents that failed processing",
        alias="FTP_FAILED_PATH"
    )

    # =========================================================================
    # Scanning Configuration
    # =========================================================================
    scan_enabled: bool = Field(
        default=True,
        description="Enable scheduled folder scanning",
        alias="SCAN_ENABLED"
    )
    scan_frequency_minutes: int = Field(
        default=60,
        description="Polling frequency in minutes",
        alias="SCAN_FREQUENCY_MINUTES"
    )
    scan_min_file_age_seconds: int = Field(
        default=30,
        description="Files younger than this are assumed to be still uploading",
        alias="SCAN_MIN_FILE_AGE_SECONDS"
    )
    scan_recent_window_seconds: int = Field(
        default=3600,
        description="Skip files whose name was processed within this window",
        alias="SCAN_RECENT_WINDOW_SECONDS"
    )
    supported_extensions: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [".pdf", ".xlsx", ".xls"],
        description="File extensions accepted by the scanner",
        alias="SUPPORTED_EXTENSIONS"
    )

    # =========================================================================
    # Remote Source Configuration
    # =========================================================================
    remote_protocol: Optional[str] = Field(
        default=None,
        description="Remote source protocol: ftp or sftp (unset = local only)",
        alias="REMOTE_PROTOCOL"
    )
    remote_host: Optional[str] = Field(
        default=None,
        description="Remote source host",
        alias="REMOTE_HOST"
    )
    remote_port: Optional[int] = Field(
        default=None,
        description="Remote source port (defaults per protocol)",
        alias="REMOTE_PORT"
    )
    remote_username: Optional[str] = Field(
        default=None,
        description="Remote source user",
        alias="REMOTE_USERNAME"
    )
    remote_password: Optional[str] = Field(
        default=None,
        description="Remote source password",
        alias="REMOTE_PASSWORD"
    )
    remote_folder: str = Field(
        default="/",
        description="Remote folder to list",
        alias="REMOTE_FOLDER"
    )
    remote_secure: bool = Field(
        default=False,
        description="Use explicit TLS for FTP",
        alias="REMOTE_SECURE"
    )

    # =========================================================================
    # Retention Configuration
    # =========================================================================
    document_retention_days: Optional[int] = Field(
        default=None,
        description="Days a deleted document blocks re-upload (unset = forever)",
        alias="DOCUMENT_RETENTION_DAYS"
    )
    retention_start: str = Field(
        default="upload_date",
        description="Retention clock start: upload_date or invoice_date",
        alias="RETENTION_START"
    )
    file_retention_days: Optional[int] = Field(
        default=None,
        description="Days before stored files are removed by file cleanup",
        alias="FILE_RETENTION_DAYS"
    )

    # =========================================================================
    # Storage Configuration
    # =========================================================================
    data_dir: Path = Field(
        default=Path("./data"),
        description="Base directory for data storage",
        alias="DATA_DIR"
    )
    database_path: Path = Field(
        default=Path("./data/docflow.db"),
        description="SQLite database path",
        alias="DATABASE_PATH"
    )
    dlq_storage_path: Path = Field(
        default=Path("./data/dlq"),
        description="Dead letter queue storage directory",
        alias="DLQ_STORAGE_PATH"
    )
    run_stats_path: Path = Field(
        default=Path("./data/run_stats.json"),
        description="Scan run statistics file",
        alias="RUN_STATS_PATH"
    )
    download_dir: Path = Field(
        default=Path("./data/downloads"),
        description="Temporary directory for remote downloads",
        alias="DOWNLOAD_DIR"
    )

    # =========================================================================
    # Orchestration Configuration
    # =========================================================================
    queue_alert_threshold: int = Field(
        default=100,
        description="Waiting jobs above this raise a health alert",
        alias="QUEUE_ALERT_THRESHOLD"
    )
    failed_alert_threshold: int = Field(
        default=10,
        description="Failed-count increase between samples that raises an alert",
        alias="FAILED_ALERT_THRESHOLD"
    )
    health_check_interval_seconds: float = Field(
        default=60.0,
        description="Health monitor sampling interval",
        alias="HEALTH_CHECK_INTERVAL_SECONDS"
    )
    heartbeat_interval_seconds: float = Field(
        default=30.0,
        description="Heartbeat write interval",
        alias="HEARTBEAT_INTERVAL_SECONDS"
    )
    heartbeat_ttl_seconds: float = Field(
        default=60.0,
        description="Heartbeat validity window",
        alias="HEARTBEAT_TTL_SECONDS"
    )
    stats_log_interval_seconds: float = Field(
        default=60.0,
        description="Queue statistics log interval",
        alias="STATS_LOG_INTERVAL_SECONDS"
    )
    stalled_interval_seconds: float = Field(
        default=30.0,
        description="How often workers look for stalled jobs",
        alias="STALLED_INTERVAL_SECONDS"
    )
    max_stalled_count: int = Field(
        default=2,
        description="Stalls tolerated before a job fails",
        alias="MAX_STALLED_COUNT"
    )
    file_import_concurrency: int = Field(default=1, ge=1, alias="FILE_IMPORT_CONCURRENCY")
    invoice_import_concurrency: int = Field(default=2, ge=1, alias="INVOICE_IMPORT_CONCURRENCY")
    bulk_parsing_concurrency: int = Field(default=2, ge=1, alias="BULK_PARSING_CONCURRENCY")
    email_worker_concurrency: int = Field(default=1, ge=1, alias="EMAIL_WORKER_CONCURRENCY")
    import_batch_ttl_hours: int = Field(
        default=24,
        description="Import batch sessions older than this are discarded",
        alias="IMPORT_BATCH_TTL_HOURS"
    )

    # =========================================================================
    # Email Configuration
    # =========================================================================
    email_provider: str = Field(
        default="smtp",
        description="Active delivery provider",
        alias="EMAIL_PROVIDER"
    )
    smtp_host: Optional[str] = Field(
        default=None,
        description="SMTP server host",
        alias="SMTP_HOST"
    )
    smtp_port: int = Field(
        default=587,
        description="SMTP server port",
        alias="SMTP_PORT"
    )
    smtp_username: Optional[str] = Field(
        default=None,
        description="SMTP user",
        alias="SMTP_USERNAME"
    )
    smtp_password: Optional[str] = Field(
        default=None,
        description="SMTP password",
        alias="SMTP_PASSWORD"
    )
    smtp_use_tls: bool = Field(
        default=True,
        description="Use STARTTLS",
        alias="SMTP_USE_TLS"
    )
    email_from: str = Field(
        default="noreply@localhost",
        description="Sender address",
        alias="EMAIL_FROM"
    )
    admin_emails: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Recipients of scan summaries",
        alias="ADMIN_EMAILS"
    )
    email_max_attempts: int = Field(
        default=10,
        description="Delivery attempts before an email is dead-lettered",
        alias="EMAIL_MAX_ATTEMPTS"
    )
    notify_on_import: bool = Field(
        default=False,
        description="Email the matched company when a document is parsed",
        alias="NOTIFY_ON_IMPORT"
    )
    email_rate_max_office365: int = Field(default=2, alias="EMAIL_RATE_MAX_OFFICE365")
    email_rate_duration_ms_office365: int = Field(default=4000, alias="EMAIL_RATE_DURATION_MS_OFFICE365")
    email_rate_max_smtp2go: int = Field(default=40, alias="EMAIL_RATE_MAX_SMTP2GO")
    email_rate_duration_ms_smtp2go: int = Field(default=1000, alias="EMAIL_RATE_DURATION_MS_SMTP2GO")
    email_rate_max_smtp: int = Field(default=3, alias="EMAIL_RATE_MAX_SMTP")
    email_rate_duration_ms_smtp: int = Field(default=4000, alias="EMAIL_RATE_DURATION_MS_SMTP")
    email_rate_max_resend: int = Field(default=10, alias="EMAIL_RATE_MAX_RESEND")
    email_rate_duration_ms_resend: int = Field(default=1000, alias="EMAIL_RATE_DURATION_MS_RESEND")
    email_global_rate_max: int = Field(default=10, alias="EMAIL_GLOBAL_RATE_MAX")
    email_global_rate_duration_ms: int = Field(default=10000, alias="EMAIL_GLOBAL_RATE_DURATION_MS")

    # =========================================================================
    # Logging Configuration
    # =========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level",
        alias="LOG_LEVEL"
    )
    log_dir: Path = Field(
        default=Path("./data/logs"),
        description="Log directory",
        alias="LOG_DIR"
    )
    enable_file_logging: bool = Field(
        default=False,
        description="Enable file logging",
        alias="ENABLE_FILE_LOGGING"
    )
    enable_console_logging: bool = Field(
        default=True,
        description="Enable console logging",
        alias="ENABLE_CONSOLE_LOGGING"
    )
    test_mode: bool = Field(
        default=False,
        description="Enable test mode",
        alias="TEST_MODE"
    )

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("supported_extensions", mode="before")
    @classmethod
    def parse_extensions(cls, v: str | List[str]) -> List[str]:
        """Parse comma-separated extensions, forcing a leading dot."""
        if isinstance(v, str):
            v = [x.strip() for x in v.split(",") if x.strip()]
        return [x.lower() if x.startswith(".") else f".{x.lower()}" for x in (v or [])]

    @field_validator("admin_emails", mode="before")
    @classmethod
    def parse_emails(cls, v: str | List[str]) -> List[str]:
        """Parse comma-separated admin emails into list."""
        if isinstance(v, str):
            return [x.strip() for x in v.split(",") if x.strip()]
        return v or []

    @field_validator("document_retention_days", "file_retention_days", "remote_port", mode="before")
    @classmethod
    def parse_optional_int(cls, v):
        """Treat empty strings as unset."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v

    @field_validator("scan_frequency_minutes")
    @classmethod
    def validate_frequency(cls, v: int) -> int:
        if v not in SCAN_FREQUENCIES:
            raise ValueError(f"scan frequency must be one of {SCAN_FREQUENCIES}")
        return v

    @field_validator("retention_start")
    @classmethod
    def validate_retention_start(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("upload_date", "invoice_date"):
            raise ValueError("retention start must be upload_date or invoice_date")
        return v

    @field_validator("remote_protocol", mode="before")
    @classmethod
    def normalize_protocol(cls, v):
        if v is None or not str(v).strip():
            return None
        v = str(v).strip().lower()
        if v not in ("ftp", "sftp"):
            raise ValueError("remote protocol must be ftp or sftp")
        return v

    @field_validator("inbound_path", "processed_path", "failed_path", "data_dir",
                     "database_path", "dlq_storage_path", "run_stats_path",
                     "download_dir", "log_dir", mode="before")
    @classmethod
    def parse_paths(cls, v: str | Path) -> Path:
        """Parse string paths into Path objects."""
        if isinstance(v, str):
            return Path(v)
        return v

    # =========================================================================
    # Properties
    # =========================================================================
    @property
    def retention_enabled(self) -> bool:
        """Return True when deleted documents expire from the dedup window."""
        return self.document_retention_days is not None and self.document_retention_days > 0

    @property
    def provider_rate_limits(self) -> Dict[str, Dict[str, int]]:
        """Return reservoir settings per delivery provider."""
        smtp = {"capacity": self.email_rate_max_smtp,
                "interval_ms": self.email_rate_duration_ms_smtp}
        return {
            "office365": {"capacity": self.email_rate_max_office365,
                          "interval_ms": self.email_rate_duration_ms_office365},
            "smtp2go": {"capacity": self.email_rate_max_smtp2go,
                        "interval_ms": self.email_rate_duration_ms_smtp2go},
            "smtp": smtp,
            "resend": {"capacity": self.email_rate_max_resend,
                       "interval_ms": self.email_rate_duration_ms_resend},
            "mailtrap": dict(smtp),
        }

    @property
    def heartbeat_path(self) -> Path:
        """Liveness file written by the worker process."""
        return self.data_dir / "heartbeat.json"

    @property
    def remote_configured(self) -> bool:
        """Check if a remote source is configured."""
        return bool(self.remote_protocol and self.remote_host)

    def ensure_directories(self) -> None:
        """Create local working directories if they don't exist."""
        directories = [
            self.data_dir,
            self.database_path.parent,
            self.dlq_storage_path,
            self.run_stats_path.parent,
            self.download_dir,
            self.log_dir,
        ]
        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)


# Global settings instance (lazy-loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance.

    Returns:
        Settings: Application settings singleton
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.ensure_directories()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment (useful for testing).

    Returns:
        Settings: Fresh settings instance
    """
    global _settings
    _settings = Settings()
    _settings.ensure_directories()
    return _settings

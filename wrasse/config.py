"""Configuration management using Pydantic Settings."""

import socket
from datetime import timedelta
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Daemon settings loaded from environment variables (WRASSE_*)."""

    model_config = SettingsConfigDict(
        env_prefix="WRASSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Instance identity
    instance_id: str = Field(
        default_factory=socket.gethostname,
        description="Identity written into job claims (defaults to hostname)",
    )
    job_owner: Optional[str] = Field(
        default=None, description="Only archive jobs belonging to this account uuid"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log renderer: json for services, console for terminals"
    )

    # Poll loops
    poll_interval_s: float = Field(
        default=10.0, gt=0, description="Seconds between finder/takeover/cleanup sweeps"
    )
    takeover_time_s: float = Field(
        default=1800.0,
        ge=0,
        description="Seconds without a heartbeat before a claim may be taken over",
    )
    linger_time_s: float = Field(
        default=4 * 60 * 60,
        ge=0,
        description="Seconds an archived job is kept before its record is deleted",
    )
    queue_limit: int = Field(
        default=10, ge=1, description="Maximum jobs archived (or purged) concurrently"
    )
    list_page_limit: int = Field(
        default=1000, ge=1, description="Page size for job directory listings"
    )
    shutdown_timeout_s: float = Field(
        default=30.0, description="Seconds to wait for in-flight archives on shutdown"
    )

    # Heartbeat
    heartbeat_interval_s: float = Field(
        default=0.5, gt=0, description="Seconds between claim renewals"
    )
    heartbeat_retries: int = Field(
        default=3, ge=0, description="Retries per renewal before the heartbeat gives up"
    )

    # Archival
    scratch_dir: str = Field(
        default="/var/tmp/wrasse", description="Local staging root for export files"
    )
    admin_archive_root: str = Field(
        default="/poseidon/stor/job_archives",
        description="Object store root for the administrative manifest copies",
    )
    export_max_stalled_pages: int = Field(
        default=3,
        ge=1,
        description="Consecutive empty pages tolerated before an export is declared incomplete",
    )

    # Claims
    claim_mode: Literal["embedded", "store"] = Field(
        default="embedded",
        description="embedded: claim lives on the job record; store: separate claim store",
    )

    # Remote services
    directory_url: str = Field(
        default="http://localhost:2020", description="Job directory base URL"
    )
    directory_token: Optional[str] = Field(default=None, description="Job directory token")
    object_store_url: str = Field(
        default="http://localhost:8080", description="Object store base URL"
    )
    object_store_token: Optional[str] = Field(
        default=None, description="Operator token for administrative object store writes"
    )
    claim_store_url: str = Field(
        default="http://localhost:2021", description="Claim store base URL"
    )
    claim_store_token: Optional[str] = Field(default=None, description="Claim store token")
    identity_url: str = Field(
        default="http://localhost:8081", description="Identity lookup service base URL"
    )
    http_timeout_s: float = Field(default=30.0, description="HTTP request timeout in seconds")
    http_retries: int = Field(
        default=3, ge=1, description="Attempts per HTTP request on transient failures"
    )

    # Observability
    metrics_port: int = Field(
        default=0, ge=0, description="Port for the Prometheus exporter (0 disables it)"
    )
    sentry_dsn: Optional[str] = Field(
        default=None, description="Sentry DSN for error tracking"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)",
    )

    @property
    def takeover_time(self) -> timedelta:
        """Takeover threshold as a timedelta."""
        return timedelta(seconds=self.takeover_time_s)

    @property
    def linger_time(self) -> timedelta:
        """Linger window as a timedelta."""
        return timedelta(seconds=self.linger_time_s)

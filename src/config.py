"""
Application Configuration Module.

Manages application settings and environment variables using Pydantic for validation.
Provides centralized configuration management with type safety and validation.

Features:
- Environment variable loading and validation
- Secure credential management
- Platform API endpoints and rate limit policy
- Scan defaults (time window, result caps, page size, concurrency)
"""

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
import os
from logger import LogManager


class Settings(BaseSettings):
    """
    Application configuration settings with validation.

    Manages and validates all application settings including:
    - Application identification and logging
    - Platform API base URLs
    - Rate limit thresholds and cooldown policy
    - Scan defaults
    - Repositories scanned by the command line entry point

    Attributes:
        app_name (str): Name of the application
        dev (bool): Debug mode flag
        log_dir (str): Directory for log files
        log_level (int): Logging level (default: info)
        data_dir (str): Directory used by the JSON persistence service
        rate_limit_threshold (float): Usage fraction at which scans back off
        scm_tool_type (str): Tool name used for the configured repositories
        scm_repo_urls (str): Comma-separated repository URLs to scan
        scm_token (SecretStr): API token for the configured repositories
    """

    # Application settings
    app_name: str = Field(default="SCMScanner", description="Application name")
    dev: bool = Field(default=False, description="Debug mode")
    log_dir: str = Field(default="logs", description="Logging directory")
    log_level: int = Field(default=20, description="Logging level, default info")
    data_dir: str = Field(default="data", description="Data output directory")

    # Platform API endpoints
    github_api_url: str = Field(
        default="https://api.github.com", description="GitHub API base URL"
    )
    gitlab_api_url: str = Field(
        default="https://gitlab.com", description="GitLab instance base URL"
    )
    bitbucket_api_url: str = Field(
        default="https://api.bitbucket.org/2.0",
        description="Bitbucket Cloud API base URL",
    )
    azure_devops_api_url: str = Field(
        default="https://dev.azure.com", description="Azure DevOps base URL"
    )

    # Rate limit configuration
    rate_limit_enabled: bool = Field(default=True, description="Check rate limits")
    rate_limit_threshold: float = Field(
        default=0.8, description="Usage fraction at which scans back off"
    )
    rate_limit_max_cooldown_hours: float = Field(
        default=24, description="Longest wait accepted before giving up"
    )
    rate_limit_fail_on_excessive_cooldown: bool = Field(
        default=False, description="Abort scans when the wait is too long"
    )
    rate_limit_cooldown_buffer_seconds: int = Field(
        default=30, description="Extra seconds slept past the reset time"
    )
    github_rate_limit_threshold: float = Field(default=0.8)
    gitlab_rate_limit_threshold: float = Field(default=0.8)
    bitbucket_rate_limit_threshold: float = Field(default=0.8)
    azure_rate_limit_threshold: float = Field(default=0.8)

    # Scan defaults
    first_scan_from_months: int = Field(
        default=6, description="Months scanned when no start date is known"
    )
    default_commit_limit: int = Field(default=1000)
    default_merge_request_limit: int = Field(default=500)
    max_merge_requests_per_scan: int = Field(default=5000)
    page_size: int = Field(default=100, description="Records requested per page")
    max_concurrent_scans: int = Field(default=5)
    http_timeout_seconds: float = Field(default=30)
    http_retry_attempts: int = Field(default=3)

    # Repositories scanned by app.py
    scm_tool_type: str = Field(default="GITHUB", description="Tool name")
    scm_repo_urls: str = Field(
        default="", description="Comma-separated repository URLs to scan"
    )
    scm_branch: str = Field(default="main", description="Branch to scan")
    scm_username: Optional[str] = Field(default=None)
    scm_token: SecretStr = Field(default=SecretStr(""), description="API token")
    tool_config_id: str = Field(default="default", description="Tool config id")

    @property
    def repository_urls(self) -> List[str]:
        """
        Get list of repository URLs from configuration.

        Splits and cleans the comma-separated repository URLs string.

        Returns:
            List[str]: List of cleaned repository URLs
        """
        return [url.strip() for url in self.scm_repo_urls.split(",") if url.strip()]

    @field_validator(
        "rate_limit_threshold",
        "github_rate_limit_threshold",
        "gitlab_rate_limit_threshold",
        "bitbucket_rate_limit_threshold",
        "azure_rate_limit_threshold",
    )
    def check_threshold(cls, v: float) -> float:
        """Reject thresholds above 1.0; zero or below means use the monitor default."""
        if v > 1.0:
            raise ValueError("rate limit threshold must be <= 1.0")
        return v

    @field_validator("data_dir")
    def ensure_absolute_path(cls, v: str) -> str:
        """
        Ensure data directory path is absolute.

        Args:
            v (str): Directory path to validate

        Returns:
            str: Absolute path to data directory
        """
        if not os.path.isabs(v):
            return os.path.abspath(v)
        return v

    # Configure env file loading
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields in .env file
    )


# Create global settings instance
settings = Settings()

# Initialize logging configuration
logger = LogManager(
    app_name=settings.app_name.lower(),
    log_dir=settings.log_dir,
    development=settings.dev,
    level=settings.log_level,
).logger

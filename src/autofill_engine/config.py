"""Configuration management for the autofill engine."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOFILL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application Configuration
    debug: bool = Field(False, description="Enable debug mode")
    log_level: str = Field("INFO", description="Logging level")

    # Execution Defaults
    max_concurrency: Optional[int] = Field(
        None, ge=1, description="Concurrency override (scanner recommendation when unset)"
    )
    job_timeout: float = Field(30.0, gt=0, description="Per-attempt job timeout in seconds")
    retry_attempts: int = Field(3, ge=0, description="Extra attempts for retryable failures")
    retry_backoff: str = Field("fixed", description="Retry backoff strategy (fixed/exponential)")
    retry_base_delay: float = Field(1.0, ge=0, description="Base retry delay in seconds")
    delay_between_jobs: float = Field(1.0, ge=0, description="Minimum delay between job dispatches")
    pool_acquire_timeout: float = Field(120.0, gt=0, description="Ceiling on waiting for a browser slot")
    cancel_grace_period: float = Field(5.0, ge=0, description="Seconds in-flight jobs get after cancel")
    auto_adjust_limits: bool = Field(False, description="Lower concurrency under CPU/memory pressure")
    fail_on_url_failure: bool = Field(False, description="Mark the session failed if any URL fails")

    # Browser Configuration
    browser_headless: bool = Field(True, description="Run browser in headless mode")
    browser_viewport_width: int = Field(1920, description="Browser viewport width")
    browser_viewport_height: int = Field(1080, description="Browser viewport height")
    browser_user_agent: str = Field(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        description="User agent for browser contexts"
    )
    browser_wait_until: str = Field("domcontentloaded", description="Navigation wait state")
    settle_delay: float = Field(1.0, ge=0, description="Seconds to wait after submit before verifying")
    take_screenshots: bool = Field(False, description="Capture a screenshot after each job")
    screenshot_dir: str = Field("./data/screenshots", description="Screenshot output directory")

    # Capability Scanner
    scanner_cpu_factor: float = Field(1.5, gt=0, description="Browser instances per CPU core")
    scanner_instance_memory_mb: int = Field(300, gt=0, description="Memory budget per browser instance")
    scanner_concurrency_cap: int = Field(16, ge=1, description="Hard cap on recommended concurrency")

    # Resource Monitor
    monitor_max_cpu_percent: float = Field(80.0, description="CPU threshold for adaptive limits")
    monitor_max_memory_percent: float = Field(75.0, description="Memory threshold for adaptive limits")

    # Notifications
    webhook_url: Optional[str] = Field(None, description="Session event webhook URL")
    webhook_timeout: float = Field(5.0, description="Webhook request timeout in seconds")

    # Storage
    profiles_path: str = Field("./data/profiles.json", description="Profiles JSON file")
    captcha_solver_enabled: bool = Field(False, description="Whether a CAPTCHA solver is wired in")


# Global settings instance
settings = Settings()

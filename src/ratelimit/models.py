"""
Rate Limit Data Models.

RateLimitStatus is the snapshot a monitor returns after probing a platform;
RateLimitConfig is the policy handed to RateLimitService at construction.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field


class RateLimitStatus(BaseModel):
    """Quota snapshot for one platform and token."""

    platform: str
    used: int = Field(ge=0)
    limit: int = Field(ge=0)
    remaining: int = Field(ge=0)
    reset_time: datetime

    @property
    def usage_fraction(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.used / self.limit

    def exceeds_threshold(self, threshold: float) -> bool:
        return self.usage_fraction >= threshold

    def seconds_until_reset(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        reset_time = self.reset_time
        if reset_time.tzinfo is None:
            reset_time = reset_time.replace(tzinfo=timezone.utc)
        return (reset_time - now).total_seconds()

    @classmethod
    def from_counts(
        cls, platform: str, limit: int, remaining: int, reset_in: timedelta
    ) -> "RateLimitStatus":
        """Build a status from a limit, remaining count and time to reset."""
        remaining = max(0, min(remaining, limit))
        return cls(
            platform=platform,
            used=limit - remaining,
            limit=limit,
            remaining=remaining,
            reset_time=datetime.now(timezone.utc) + reset_in,
        )


class RateLimitConfig(BaseModel):
    """Policy applied by RateLimitService."""

    enabled: bool = True
    threshold: float = 0.8
    max_cooldown_hours: float = 24
    fail_on_excessive_cooldown: bool = False
    cooldown_buffer_seconds: int = 30
    platform_thresholds: Dict[str, float] = Field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings) -> "RateLimitConfig":
        """Build the policy from application settings."""
        return cls(
            enabled=settings.rate_limit_enabled,
            threshold=settings.rate_limit_threshold,
            max_cooldown_hours=settings.rate_limit_max_cooldown_hours,
            fail_on_excessive_cooldown=settings.rate_limit_fail_on_excessive_cooldown,
            cooldown_buffer_seconds=settings.rate_limit_cooldown_buffer_seconds,
            platform_thresholds={
                "github": settings.github_rate_limit_threshold,
                "gitlab": settings.gitlab_rate_limit_threshold,
                "bitbucket": settings.bitbucket_rate_limit_threshold,
                "azure devops": settings.azure_rate_limit_threshold,
            },
        )

    def effective_threshold(self, monitor_default: float) -> float:
        """The global threshold when positive, else the monitor's own default."""
        if self.threshold > 0:
            return self.threshold
        return monitor_default

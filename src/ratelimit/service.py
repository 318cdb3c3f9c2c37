"""
Rate Limit Service.

Platform agnostic guard called before every page fetched from a platform.
Dispatches to the registered monitor, compares usage against the configured
threshold and either returns, sleeps until the quota resets, or aborts the
scan with RateLimitExceededException when the wait is longer than allowed.
A cooldown ends early with ScanCancelledException when the scan is cancelled.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

import httpx
from github import GithubException

from config import logger
from ratelimit.models import RateLimitConfig, RateLimitStatus
from ratelimit.monitors import RateLimitMonitor
from scanner.exceptions import (
    PlatformApiException,
    RateLimitExceededException,
    ScanCancelledException,
)

# Probe failures that must never block a scan
MONITOR_ERRORS = (httpx.HTTPError, GithubException, PlatformApiException, OSError)


class RateLimitService:
    """
    Applies the rate limit policy for every platform.

    Attributes:
        config (RateLimitConfig): Threshold and cooldown policy
        monitors (Dict[str, RateLimitMonitor]): Monitors keyed by lowercase platform name
    """

    def __init__(self, config: RateLimitConfig, monitors: Iterable[RateLimitMonitor]):
        self.config = config
        self.monitors: Dict[str, RateLimitMonitor] = {
            monitor.platform_name.lower(): monitor for monitor in monitors
        }

    def get_monitor(self, platform: Optional[str]) -> Optional[RateLimitMonitor]:
        if not platform:
            return None
        return self.monitors.get(platform.strip().lower())

    async def check_rate_limit(
        self,
        platform: str,
        token: Optional[str],
        repository_name: Optional[str] = None,
        base_url: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Check the platform quota and back off when the threshold is reached.

        Args:
            platform (str): Platform name as declared by the monitor
            token (Optional[str]): API token whose quota is checked
            repository_name (Optional[str]): Repository being scanned, for logging
            base_url (Optional[str]): Platform API base URL
            cancel_event (Optional[asyncio.Event]): Event that interrupts the
                cooldown wait when set

        Raises:
            RateLimitExceededException: If the threshold is reached, the reset is
                further away than the maximum cooldown and
                fail_on_excessive_cooldown is enabled
            ScanCancelledException: If cancel_event is set during the cooldown
        """
        if not self.config.enabled:
            return
        if token is None or not token.strip():
            return
        monitor = self.get_monitor(platform)
        if monitor is None:
            return

        try:
            status = await monitor.check_rate_limit(token, base_url)
        except MONITOR_ERRORS as e:
            logger.warning(
                {
                    "message": "Rate limit check failed, continuing scan",
                    "platform": platform,
                    "repository": repository_name,
                    "error": str(e),
                }
            )
            return

        threshold = self.config.effective_threshold(monitor.default_threshold)
        logger.debug(
            {
                "message": "Rate limit status",
                "platform": status.platform,
                "repository": repository_name,
                "used": status.used,
                "limit": status.limit,
                "usage_fraction": round(status.usage_fraction, 4),
                "threshold": threshold,
            }
        )
        if not status.exceeds_threshold(threshold):
            return

        await self._handle_threshold_exceeded(
            status, threshold, repository_name, cancel_event
        )

    async def _handle_threshold_exceeded(
        self,
        status: RateLimitStatus,
        threshold: float,
        repository_name: Optional[str],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        wait_seconds = status.seconds_until_reset(datetime.now(timezone.utc))
        context = {
            "platform": status.platform,
            "repository": repository_name,
            "used": status.used,
            "limit": status.limit,
            "threshold": threshold,
            "reset_time": status.reset_time.isoformat(),
            "wait_seconds": wait_seconds,
        }

        if wait_seconds <= 0:
            logger.info(
                {
                    "message": "Rate limit threshold reached but quota already reset",
                    **context,
                }
            )
            return

        max_cooldown_seconds = self.config.max_cooldown_hours * 3600
        if wait_seconds > max_cooldown_seconds:
            if self.config.fail_on_excessive_cooldown:
                logger.error(
                    {"message": "Rate limit cooldown too long, aborting scan", **context}
                )
                raise RateLimitExceededException(
                    status.platform,
                    status.used,
                    status.limit,
                    threshold,
                    status.reset_time,
                )
            logger.warning(
                {"message": "Rate limit cooldown too long, continuing scan", **context}
            )
            return

        sleep_seconds = wait_seconds + self.config.cooldown_buffer_seconds
        logger.warning(
            {
                "message": "Rate limit threshold reached, waiting for reset",
                "sleep_seconds": sleep_seconds,
                **context,
            }
        )
        if cancel_event is None:
            await asyncio.sleep(sleep_seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=sleep_seconds)
        except asyncio.TimeoutError:
            return
        logger.warning({"message": "Rate limit cooldown cancelled", **context})
        raise ScanCancelledException(
            f"Scan of {repository_name} cancelled during rate limit cooldown",
            repository_name=repository_name,
        )

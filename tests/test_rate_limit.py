"""
Tests for the platform rate limit guard.

Covers RateLimitService policy decisions (no-op cases, waiting, aborting,
cancelling a cooldown)
and the header based platform monitors against mocked HTTP transports.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from ratelimit.models import RateLimitConfig, RateLimitStatus
from ratelimit.monitors import (
    AzureDevOpsRateLimitMonitor,
    BitbucketRateLimitMonitor,
    GitLabRateLimitMonitor,
    default_monitors,
)
from ratelimit.service import RateLimitService
from scanner.exceptions import RateLimitExceededException, ScanCancelledException


def make_status(used, limit, reset_in=timedelta(minutes=10)):
    return RateLimitStatus(
        platform="GitHub",
        used=used,
        limit=limit,
        remaining=limit - used,
        reset_time=datetime.now(timezone.utc) + reset_in,
    )


def make_monitor(status=None, error=None):
    monitor = Mock()
    monitor.platform_name = "GitHub"
    monitor.default_threshold = 0.8
    monitor.check_rate_limit = AsyncMock(return_value=status, side_effect=error)
    return monitor


@pytest.fixture
def config():
    """Default rate limit policy."""
    return RateLimitConfig(threshold=0.8, max_cooldown_hours=24)


@pytest.mark.asyncio
async def test_disabled_service_never_queries(config):
    """A disabled guard does not touch the monitor."""
    monitor = make_monitor(make_status(4900, 5000))
    service = RateLimitService(config.model_copy(update={"enabled": False}), [monitor])

    await service.check_rate_limit("GitHub", "token")

    monitor.check_rate_limit.assert_not_called()


@pytest.mark.asyncio
async def test_blank_token_never_queries(config):
    """Missing or blank tokens skip the check."""
    monitor = make_monitor(make_status(4900, 5000))
    service = RateLimitService(config, [monitor])

    await service.check_rate_limit("GitHub", None)
    await service.check_rate_limit("GitHub", "   ")

    monitor.check_rate_limit.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_platform_is_noop(config):
    """Platforms without a monitor are not checked."""
    monitor = make_monitor(make_status(4900, 5000))
    service = RateLimitService(config, [monitor])

    await service.check_rate_limit("Gitea", "token")

    monitor.check_rate_limit.assert_not_called()


@pytest.mark.asyncio
async def test_platform_match_is_case_insensitive(config):
    """Monitor lookup ignores case."""
    monitor = make_monitor(make_status(10, 5000))
    service = RateLimitService(config, [monitor])

    await service.check_rate_limit("github", "token", "acme/api", "https://api.github.com")

    monitor.check_rate_limit.assert_awaited_once_with("token", "https://api.github.com")


@pytest.mark.asyncio
async def test_below_threshold_does_not_wait(config):
    """Usage below the threshold returns immediately."""
    service = RateLimitService(config, [make_monitor(make_status(1000, 5000))])

    with patch("ratelimit.service.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await service.check_rate_limit("GitHub", "token")

    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_threshold_reached_waits_for_reset(config):
    """4500 of 5000 at threshold 0.8 sleeps until reset plus the buffer."""
    service = RateLimitService(config, [make_monitor(make_status(4500, 5000))])

    with patch("ratelimit.service.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await service.check_rate_limit("GitHub", "token", "acme/api")

    sleep.assert_awaited_once()
    slept = sleep.await_args.args[0]
    assert 600 < slept <= 600 + config.cooldown_buffer_seconds


@pytest.mark.asyncio
async def test_threshold_is_inclusive(config):
    """Usage exactly at the threshold counts as exceeded."""
    service = RateLimitService(config, [make_monitor(make_status(4000, 5000))])

    with patch("ratelimit.service.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await service.check_rate_limit("GitHub", "token")

    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_past_reset_does_not_wait(config):
    """A reset time already in the past returns without sleeping."""
    status = make_status(4900, 5000, reset_in=timedelta(seconds=-5))
    service = RateLimitService(config, [make_monitor(status)])

    with patch("ratelimit.service.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await service.check_rate_limit("GitHub", "token")

    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_excessive_cooldown_raises_when_configured(config):
    """A reset beyond the maximum cooldown aborts when the fail flag is set."""
    strict = config.model_copy(
        update={"max_cooldown_hours": 1, "fail_on_excessive_cooldown": True}
    )
    status = make_status(4900, 5000, reset_in=timedelta(hours=3))
    service = RateLimitService(strict, [make_monitor(status)])

    with pytest.raises(RateLimitExceededException) as exc_info:
        await service.check_rate_limit("GitHub", "token")

    assert exc_info.value.current_usage == 4900
    assert exc_info.value.total_limit == 5000
    assert exc_info.value.error_code == "RATE_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_excessive_cooldown_continues_by_default(config):
    """Without the fail flag an excessive cooldown is logged and skipped."""
    lenient = config.model_copy(update={"max_cooldown_hours": 1})
    status = make_status(4900, 5000, reset_in=timedelta(hours=3))
    service = RateLimitService(lenient, [make_monitor(status)])

    with patch("ratelimit.service.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await service.check_rate_limit("GitHub", "token")

    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_cancel_interrupts_cooldown(config):
    """Setting the cancel event ends a ten minute cooldown right away."""
    service = RateLimitService(config, [make_monitor(make_status(4500, 5000))])
    cancel_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, cancel_event.set)

    with pytest.raises(ScanCancelledException) as exc_info:
        await asyncio.wait_for(
            service.check_rate_limit(
                "GitHub", "token", "acme/api", cancel_event=cancel_event
            ),
            timeout=5,
        )

    assert exc_info.value.repository_name == "acme/api"
    assert exc_info.value.error_code == "SCAN_CANCELLED"


@pytest.mark.asyncio
async def test_cooldown_with_cancel_event_waits_for_reset(config):
    """An event that is never set waits for reset plus the buffer, then returns."""
    service = RateLimitService(config, [make_monitor(make_status(4500, 5000))])

    def expire(awaitable, timeout):
        awaitable.close()
        raise asyncio.TimeoutError

    with patch(
        "ratelimit.service.asyncio.wait_for", new_callable=AsyncMock, side_effect=expire
    ) as wait_for:
        await service.check_rate_limit(
            "GitHub", "token", cancel_event=asyncio.Event()
        )

    wait_for.assert_awaited_once()
    waited = wait_for.await_args.kwargs["timeout"]
    assert 600 < waited <= 600 + config.cooldown_buffer_seconds


@pytest.mark.asyncio
async def test_monitor_failure_is_swallowed(config):
    """Probe errors never block the scan."""
    monitor = make_monitor(error=httpx.ConnectError("boom"))
    service = RateLimitService(config, [monitor])

    await service.check_rate_limit("GitHub", "token")

    monitor.check_rate_limit.assert_awaited_once()


def test_effective_threshold_falls_back_to_monitor_default():
    """A non-positive global threshold defers to the monitor."""
    assert RateLimitConfig(threshold=0).effective_threshold(0.6) == 0.6
    assert RateLimitConfig(threshold=0.9).effective_threshold(0.6) == 0.9


def test_zero_limit_usage_fraction():
    """A zero limit never divides by zero."""
    status = RateLimitStatus(
        platform="GitLab", used=0, limit=0, remaining=0, reset_time=datetime.now(timezone.utc)
    )
    assert status.usage_fraction == 0.0


def test_default_monitors_cover_every_platform():
    """One monitor per supported platform."""
    names = {monitor.platform_name for monitor in default_monitors()}
    assert names == {"GitHub", "GitLab", "Bitbucket", "Azure DevOps"}


@pytest.mark.asyncio
async def test_gitlab_monitor_reads_headers():
    """GitLab RateLimit-* headers produce the status."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["token"] = request.headers.get("PRIVATE-TOKEN")
        return httpx.Response(
            200,
            headers={
                "RateLimit-Limit": "2000",
                "RateLimit-Remaining": "500",
                "RateLimit-Reset": "30",
            },
            json={},
        )

    monitor = GitLabRateLimitMonitor(transport=httpx.MockTransport(handler))
    status = await monitor.check_rate_limit("glpat", "https://gitlab.example.com")

    assert seen["url"] == "https://gitlab.example.com/api/v4/user"
    assert seen["token"] == "glpat"
    assert status.limit == 2000
    assert status.used == 1500
    assert status.platform == "GitLab"


@pytest.mark.asyncio
async def test_gitlab_monitor_defaults_without_headers():
    """Missing headers give the conservative default."""
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))

    status = await GitLabRateLimitMonitor(transport=transport).check_rate_limit("t")

    assert (status.limit, status.remaining) == (2000, 1900)


@pytest.mark.asyncio
async def test_gitlab_monitor_forbidden_is_nearly_exhausted():
    """403 is treated as almost exhausted for five minutes."""
    transport = httpx.MockTransport(lambda request: httpx.Response(403))

    status = await GitLabRateLimitMonitor(transport=transport).check_rate_limit("t")

    assert status.remaining == 10
    assert 200 < status.seconds_until_reset() <= 300


@pytest.mark.asyncio
async def test_bitbucket_server_monitor_uses_basic_auth():
    """`user:password` tokens use basic auth against the server users endpoint."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization", "")
        return httpx.Response(200, json={})

    monitor = BitbucketRateLimitMonitor(transport=httpx.MockTransport(handler))
    status = await monitor.check_rate_limit("alice:secret", "https://git.example.com")

    assert seen["path"] == "/rest/api/1.0/users"
    assert seen["auth"].startswith("Basic ")
    assert (status.limit, status.remaining) == (1000, 800)


@pytest.mark.asyncio
async def test_bitbucket_cloud_monitor_throttled():
    """429 reports zero remaining until Retry-After."""
    transport = httpx.MockTransport(
        lambda request: httpx.Response(429, headers={"Retry-After": "120"})
    )

    status = await BitbucketRateLimitMonitor(transport=transport).check_rate_limit("tok")

    assert status.remaining == 0
    assert status.limit == 5000
    assert status.exceeds_threshold(0.8)


def test_azure_organization_from_url():
    """Organization is taken from dev.azure.com and visualstudio.com URLs."""
    parse = AzureDevOpsRateLimitMonitor.organization_from_url
    assert parse("https://dev.azure.com/contoso/project/_git/repo") == "contoso"
    assert parse("https://fabrikam.visualstudio.com/project/_git/repo") == "fabrikam"
    assert parse("https://example.com/repo") is None

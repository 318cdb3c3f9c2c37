"""
Platform Rate Limit Monitors.

Each monitor performs one live round trip to its platform and reports the
current quota as a RateLimitStatus. Monitors hold no counters of their own, so
they can be shared by concurrent scans.

Features:
- GitHub quota via PyGithub's core rate limit
- GitLab, Bitbucket and Azure DevOps quota via response headers (httpx)
- Conservative fallback statuses when a platform does not publish its quota
"""

import asyncio
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from github import Auth, Github

from config import settings
from ratelimit.models import RateLimitStatus
from scanner.exceptions import PlatformApiException


def _int_header(headers: httpx.Headers, *names: str) -> Optional[int]:
    for name in names:
        value = headers.get(name)
        if value is not None:
            try:
                return int(float(value))
            except ValueError:
                continue
    return None


def basic_auth_from_token(token: str) -> httpx.BasicAuth:
    """Split a `username:password` token into basic auth credentials."""
    username, _, password = token.partition(":")
    return httpx.BasicAuth(username, password)


class RateLimitMonitor(ABC):
    """Base class for per-platform quota probes."""

    platform_name: str = ""

    def __init__(
        self,
        default_threshold: float = 0.8,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            default_threshold (float): Threshold used when the service has none;
                values outside (0, 1] fall back to 0.8.
            timeout (Optional[float]): HTTP timeout in seconds.
            transport (Optional[httpx.AsyncBaseTransport]): Custom transport.
        """
        self.default_threshold = (
            default_threshold if 0 < default_threshold <= 1 else 0.8
        )
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def supports(self, platform: Optional[str]) -> bool:
        return bool(platform) and platform.strip().lower() == self.platform_name.lower()

    @abstractmethod
    async def check_rate_limit(
        self, token: str, base_url: Optional[str] = None
    ) -> RateLimitStatus:
        """
        Query the platform for the current quota of a token.

        Args:
            token (str): API token
            base_url (Optional[str]): Platform API base URL

        Returns:
            RateLimitStatus: Current usage snapshot
        """
        pass

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport, **kwargs)

    def _from_headers(
        self,
        response: httpx.Response,
        default_limit: int,
        default_remaining: int,
        default_reset: timedelta,
        limit_header: str = "X-RateLimit-Limit",
        remaining_header: str = "X-RateLimit-Remaining",
        reset_header: str = "X-RateLimit-Reset",
    ) -> RateLimitStatus:
        limit = _int_header(response.headers, limit_header)
        remaining = _int_header(response.headers, remaining_header)
        if limit is None or remaining is None:
            return RateLimitStatus.from_counts(
                self.platform_name, default_limit, default_remaining, default_reset
            )

        reset = _int_header(response.headers, reset_header)
        if reset is None:
            reset_in = default_reset
        elif reset > 10**9:  # epoch seconds
            reset_in = datetime.fromtimestamp(reset, timezone.utc) - datetime.now(
                timezone.utc
            )
        else:
            reset_in = timedelta(seconds=reset)
        return RateLimitStatus.from_counts(self.platform_name, limit, remaining, reset_in)

    def _exhausted(self, response: httpx.Response, limit: int) -> RateLimitStatus:
        retry_after = _int_header(response.headers, "Retry-After") or 60
        return RateLimitStatus.from_counts(
            self.platform_name, limit, 0, timedelta(seconds=retry_after)
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise PlatformApiException(
                self.platform_name,
                f"Rate limit probe failed: {response.reason_phrase}",
                response.status_code,
            )


class GitHubRateLimitMonitor(RateLimitMonitor):
    """Reads the core quota through PyGithub."""

    platform_name = "GitHub"

    async def check_rate_limit(
        self, token: str, base_url: Optional[str] = None
    ) -> RateLimitStatus:
        def probe() -> RateLimitStatus:
            github = Github(
                auth=Auth.Token(token),
                base_url=base_url or settings.github_api_url,
                timeout=int(self.timeout),
            )
            try:
                remaining, limit = github.rate_limiting
                reset_time = datetime.fromtimestamp(
                    github.rate_limiting_resettime, timezone.utc
                )
            finally:
                github.close()
            return RateLimitStatus(
                platform=self.platform_name,
                used=max(0, limit - remaining),
                limit=limit,
                remaining=max(0, remaining),
                reset_time=reset_time,
            )

        return await asyncio.to_thread(probe)


class GitLabRateLimitMonitor(RateLimitMonitor):
    """Probes GET /api/v4/user and reads the RateLimit-* headers."""

    platform_name = "GitLab"

    async def check_rate_limit(
        self, token: str, base_url: Optional[str] = None
    ) -> RateLimitStatus:
        api = (base_url or settings.gitlab_api_url).rstrip("/")
        if not api.endswith("/api/v4"):
            api = f"{api}/api/v4"

        async with self._client(headers={"PRIVATE-TOKEN": token}) as client:
            response = await client.get(f"{api}/user")

        if response.status_code == 429:
            return self._exhausted(response, 2000)
        if response.status_code == 403:
            return RateLimitStatus.from_counts(
                self.platform_name, 2000, 10, timedelta(minutes=5)
            )
        self._raise_for_status(response)
        return self._from_headers(
            response,
            default_limit=2000,
            default_remaining=1900,
            default_reset=timedelta(minutes=1),
            limit_header="RateLimit-Limit",
            remaining_header="RateLimit-Remaining",
            reset_header="RateLimit-Reset",
        )


class BitbucketRateLimitMonitor(RateLimitMonitor):
    """
    Probes the authenticated user endpoint of Bitbucket Cloud or Server.

    Tokens in `username:appPassword` form use basic auth, anything else is
    sent as a bearer token.
    """

    platform_name = "Bitbucket"

    @staticmethod
    def is_cloud(base_url: Optional[str]) -> bool:
        return not base_url or "bitbucket.org" in base_url

    async def check_rate_limit(
        self, token: str, base_url: Optional[str] = None
    ) -> RateLimitStatus:
        cloud = self.is_cloud(base_url)
        if cloud:
            url = f"{(base_url or settings.bitbucket_api_url).rstrip('/')}/user"
        else:
            url = f"{base_url.rstrip('/')}/rest/api/1.0/users?limit=1"

        if ":" in token:
            client = self._client(auth=basic_auth_from_token(token))
        else:
            client = self._client(headers={"Authorization": f"Bearer {token}"})
        async with client:
            response = await client.get(url)

        limit = 5000 if cloud else 1000
        if response.status_code in (403, 429):
            return self._exhausted(response, limit)
        self._raise_for_status(response)
        return self._from_headers(
            response,
            default_limit=limit,
            default_remaining=4000 if cloud else 800,
            default_reset=timedelta(hours=1),
        )


class AzureDevOpsRateLimitMonitor(RateLimitMonitor):
    """
    Probes connectionData of the organization.

    Azure DevOps only publishes X-RateLimit-* headers once a caller is being
    throttled, so a quiet response yields the conservative estimate.
    """

    platform_name = "Azure DevOps"

    _ORG_PATTERNS = (
        re.compile(r"dev\.azure\.com/([^/?#]+)"),
        re.compile(r"https?://([^./]+)\.visualstudio\.com"),
    )

    @classmethod
    def organization_from_url(cls, url: Optional[str]) -> Optional[str]:
        if not url:
            return None
        for pattern in cls._ORG_PATTERNS:
            match = pattern.search(url)
            if match:
                return match.group(1)
        return None

    async def check_rate_limit(
        self, token: str, base_url: Optional[str] = None
    ) -> RateLimitStatus:
        organization = self.organization_from_url(base_url)
        if not organization:
            raise PlatformApiException(
                self.platform_name,
                f"Cannot determine organization from '{base_url}'",
            )

        base = settings.azure_devops_api_url.rstrip("/")
        url = f"{base}/{organization}/_apis/connectionData"
        async with self._client(auth=httpx.BasicAuth("", token)) as client:
            response = await client.get(url)

        if response.status_code == 429:
            return self._exhausted(response, 300)
        self._raise_for_status(response)
        return self._from_headers(
            response,
            default_limit=300,
            default_remaining=250,
            default_reset=timedelta(minutes=1),
        )


def default_monitors(config=None) -> list:
    """Build one monitor per supported platform using configured thresholds."""
    thresholds = config.platform_thresholds if config else {}
    return [
        GitHubRateLimitMonitor(thresholds.get("github", 0.8)),
        GitLabRateLimitMonitor(thresholds.get("gitlab", 0.8)),
        BitbucketRateLimitMonitor(thresholds.get("bitbucket", 0.8)),
        AzureDevOpsRateLimitMonitor(thresholds.get("azure devops", 0.8)),
    ]

"""
Shared httpx plumbing for REST based platform adapters.

Provides one AsyncClient per adapter, per-request credentials taken from the
ScanRequest, retries on transient failures and status code translation.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from adapters.base import PlatformAdapter, raise_for_platform_status
from config import settings, logger
from scanner.exceptions import PlatformApiException
from scanner.models import ScanRequest


def is_transient_error(error: BaseException) -> bool:
    """Transport failures and 5xx responses are worth retrying."""
    if isinstance(error, httpx.TransportError):
        return True
    return isinstance(error, PlatformApiException) and error.status_code >= 500


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO 8601 strings and epoch milliseconds into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def credentials_for(request: ScanRequest, scheme: str = "Bearer") -> Dict[str, Any]:
    """
    Build httpx request credentials from a ScanRequest.

    `username:password` tokens become basic auth, other tokens are sent with
    the given Authorization scheme.
    """
    token = request.token_value
    if not token:
        return {}
    if ":" in token:
        username, _, password = token.partition(":")
        return {"auth": httpx.BasicAuth(username, password)}
    if request.username and scheme == "Basic":
        return {"auth": httpx.BasicAuth(request.username, token)}
    return {"headers": {"Authorization": f"{scheme} {token}"}}


class HttpPlatformAdapter(PlatformAdapter):
    """
    Base class for adapters talking to a REST API through httpx.

    Attributes:
        page_size (int): Records requested per page
        client (httpx.AsyncClient): Shared client, closed by close()
    """

    def __init__(
        self,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.page_size = page_size or settings.page_size
        self.client = httpx.AsyncClient(
            timeout=timeout or settings.http_timeout_seconds,
            transport=transport,
            follow_redirects=True,
        )

    def request_credentials(self, request: ScanRequest) -> Dict[str, Any]:
        return credentials_for(request)

    @retry(
        stop=stop_after_attempt(settings.http_retry_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(is_transient_error),
        reraise=True,
    )
    async def _get(
        self,
        request: ScanRequest,
        url: str,
        params: Optional[Any] = None,
        accept: Optional[str] = None,
    ) -> httpx.Response:
        kwargs = self.request_credentials(request)
        headers = dict(kwargs.pop("headers", {}))
        if accept:
            headers["Accept"] = accept
        response = await self.client.get(url, params=params, headers=headers, **kwargs)
        if response.status_code >= 400:
            logger.warning(
                {
                    "message": "Platform request failed",
                    "platform": self.platform_name,
                    "url": str(response.request.url),
                    "status_code": response.status_code,
                }
            )
        raise_for_platform_status(self.platform_name, response)
        return response

    async def get_json(
        self, request: ScanRequest, url: str, params: Optional[Any] = None
    ) -> Any:
        response = await self._get(request, url, params)
        return response.json()

    async def get_text(
        self,
        request: ScanRequest,
        url: str,
        params: Optional[Any] = None,
        accept: Optional[str] = None,
    ) -> str:
        response = await self._get(request, url, params, accept)
        return response.text

    async def close(self) -> None:
        await self.client.aclose()

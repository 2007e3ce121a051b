"""
HTTP transport shared by all adapters.
Wraps an aiohttp session and turns failures into backend exceptions.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from .exceptions import BackendConnectionError, BackendResponseError

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """Status, headers and body of one HTTP exchange."""
    status: int
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    set_cookies: List[str] = field(default_factory=list)
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def json(self) -> Any:
        """
        Decode the body as JSON.

        Raises:
            BackendResponseError: if the body is not valid JSON
        """
        try:
            return json.loads(self.text)
        except (TypeError, ValueError) as e:
            raise BackendResponseError(
                "Malformed JSON response", str(e), status=self.status
            ) from e


class HttpTransport:
    """
    Thin async HTTP client.

    Never raises on HTTP status codes; adapters decide what a status means.
    Network failures and timeouts raise BackendConnectionError.
    """

    def __init__(self, timeout_s: float = 5.0, verify_ssl: bool = True):
        self.timeout_s = timeout_s
        self.verify_ssl = verify_ssl
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self.verify_ssl)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                # Cookies are managed per adapter session, never by aiohttp.
                cookie_jar=aiohttp.DummyCookieJar(),
            )
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        data: Any = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
    ) -> TransportResponse:
        """Send one request and read the whole body."""
        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                params=params,
                data=data,
                json=json_body,
                headers=headers,
                auth=auth,
            ) as response:
                text = await response.text(errors="replace")
                return TransportResponse(
                    status=response.status,
                    text=text,
                    headers=dict(response.headers),
                    set_cookies=list(response.headers.getall("Set-Cookie", [])),
                    reason=response.reason or "",
                )
        except asyncio.TimeoutError as e:
            logger.warning(f"{method} {url} timed out after {self.timeout_s}s")
            raise BackendConnectionError(f"Request timed out: {url}") from e
        except aiohttp.ClientError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise BackendConnectionError(f"Request failed: {url}", str(e)) from e

    async def close(self) -> None:
        """Close the underlying session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

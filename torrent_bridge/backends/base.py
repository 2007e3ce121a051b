"""
Common backend adapter functionality.

Defines the operation set every daemon adapter implements and the bounded
session/re-authentication loop they share.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import aiohttp

from ..exceptions import (
    BackendAuthenticationError,
    BackendResponseError,
    ConfigurationError,
    SessionExpiredError,
)
from ..models import Torrent, TorrentFile
from ..session import MAX_AUTH_ATTEMPTS, SessionState
from ..transport import HttpTransport
from ..utils import (
    ensure_url_protocol,
    extract_version_number,
    is_valid_url,
    join_url_paths,
    version_compare,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BackendConfig:
    """Connection settings for one daemon."""
    base_url: str
    api_path: str = ""
    username: str = ""
    password: str = ""
    timeout_s: float = 5.0
    verify_ssl: bool = True

    def __post_init__(self):
        if isinstance(self.base_url, str):
            self.base_url = ensure_url_protocol(self.base_url.strip())
        if not is_valid_url(self.base_url):
            raise ConfigurationError("Invalid daemon URL", repr(self.base_url))
        if (
            not isinstance(self.timeout_s, (int, float))
            or isinstance(self.timeout_s, bool)
            or self.timeout_s < 1
        ):
            raise ConfigurationError("timeout_s must be at least 1 second", repr(self.timeout_s))
        self.username = self.username if isinstance(self.username, str) else ""
        self.password = self.password if isinstance(self.password, str) else ""

    def url(self, default_api_path: str) -> str:
        return join_url_paths(self.base_url, self.api_path or default_api_path)

    @property
    def basic_auth(self) -> Optional[aiohttp.BasicAuth]:
        if not self.username:
            return None
        return aiohttp.BasicAuth(self.username, self.password)


@dataclass
class VersionInfo:
    """Version strings reported by a daemon."""
    version: str = ""
    api_version: str = ""

    @property
    def version_number(self) -> str:
        return extract_version_number(self.version)

    @property
    def api_version_number(self) -> str:
        return extract_version_number(self.api_version)


class BackendAdapter(ABC):
    """
    Abstract base class for torrent daemon adapters.

    Subclasses implement the daemon protocol. Raw records returned by
    get_torrents()/get_torrent_files() are daemon-specific; normalize_torrents()
    and normalize_torrent_files() map them to the canonical model.
    """

    # Default API path appended to the base URL
    default_api_path = ""
    # Whether rename_file() is implemented for this daemon
    supports_rename = True

    def __init__(self, config: BackendConfig, transport: Optional[HttpTransport] = None):
        self.config = config
        self.url = config.url(self.default_api_path)
        self.transport = transport or HttpTransport(
            timeout_s=config.timeout_s, verify_ssl=config.verify_ssl
        )
        self.session = SessionState()
        self._versions: Optional[VersionInfo] = None

    # region Abstract Operations

    @abstractmethod
    async def login(self) -> bool:
        """Authenticate and establish self.session.

        Raises:
            BackendAuthenticationError: if the daemon rejects the credentials
        """

    @abstractmethod
    async def _fetch_versions(self) -> VersionInfo:
        """Ask the daemon for its application and API versions."""

    @abstractmethod
    async def get_preferences(self) -> Any:
        """Get daemon preferences in the daemon's own format."""

    @abstractmethod
    async def set_preferences(self, preferences: Any) -> bool:
        """Apply preferences previously returned by get_preferences()."""

    @abstractmethod
    async def get_torrents(self) -> List[Any]:
        """Get raw torrent records."""

    @abstractmethod
    async def get_torrent_files(self, torrent_hash: str) -> List[Any]:
        """Get raw file records of one torrent."""

    @abstractmethod
    async def start_torrents(self, hashes) -> bool:
        """Start torrents; empty hashes means all torrents."""

    @abstractmethod
    async def stop_torrents(self, hashes) -> bool:
        """Stop torrents; empty hashes means all torrents."""

    @abstractmethod
    async def set_torrent_upload_speed(self, hashes: List[str], limit_kbps: int) -> bool:
        """Limit upload speed in KB/s; 0 removes the limit."""

    @abstractmethod
    async def rename_file(
        self, torrent_hash: str, old_path: str, new_path: str, is_file: bool
    ) -> bool:
        """Rename a file or folder inside a torrent.

        Returns:
            False if the daemon cannot rename
        """

    @abstractmethod
    def normalize_torrents(self, torrents: List[Any]) -> List[Torrent]:
        """Map raw torrent records to Torrent objects."""

    @abstractmethod
    def normalize_torrent_files(self, files: List[Any]) -> List[TorrentFile]:
        """Map raw file records to TorrentFile objects."""

    # endregion

    # region Versions

    async def check_version(self) -> VersionInfo:
        """Fetch and cache the daemon versions on first use."""
        if self._versions is None:
            self._versions = await self._fetch_versions()
            logger.debug(
                f"{type(self).__name__} version {self._versions.version!r}, "
                f"API {self._versions.api_version!r}"
            )
        return self._versions

    async def get_app_version(self) -> str:
        return str((await self.check_version()).version)

    async def get_api_version(self) -> str:
        return str((await self.check_version()).api_version)

    async def is_version_or_up(self, needed_version) -> bool:
        versions = await self.check_version()
        return version_compare(versions.version_number, needed_version) >= 0

    async def is_api_version_or_up(self, needed_version) -> bool:
        versions = await self.check_version()
        return version_compare(versions.api_version_number, needed_version) >= 0

    # endregion

    # region Session

    async def _with_session(self, send: Callable[[], Awaitable[T]]) -> T:
        """
        Run an authenticated call, logging in when needed.

        A rejected session is re-established once. The per-instance failure
        counter stops repeated rejections across calls.

        Raises:
            BackendAuthenticationError: if the call is rejected on every attempt
            ReauthLimitExceededError: once consecutive failures exceed the bound
        """
        last_error: Optional[SessionExpiredError] = None
        for attempt in range(1, MAX_AUTH_ATTEMPTS + 1):
            if not self.session.is_valid():
                await self.login()
            try:
                result = await send()
            except SessionExpiredError as e:
                last_error = e
                self._handle_session_rejected(e)
                self.session.record_failure(e)
                logger.warning(
                    f"{type(self).__name__} session rejected "
                    f"(attempt {attempt}/{MAX_AUTH_ATTEMPTS}): {e}"
                )
                continue
            except BackendResponseError:
                # The daemon answered, so the credential itself was accepted.
                self.session.record_success()
                raise
            self.session.record_success()
            return result

        raise BackendAuthenticationError(
            f"{type(self).__name__} rejected the session {MAX_AUTH_ATTEMPTS} times",
            str(last_error) if last_error else None,
        )

    def _handle_session_rejected(self, error: SessionExpiredError) -> None:
        """Drop the rejected credential."""
        self.session.invalidate()

    async def close(self) -> None:
        """Forget the session and close the HTTP connection."""
        self.session.teardown()
        await self.transport.close()

    # endregion

"""
TorrentBridge: one normalized async API over every supported torrent daemon.

Reads go through a two-tier cache (memory, then disk snapshot, then the
daemon). An idle timer persists and drops the memory tier after
mem_cache_timeout_s seconds without calls.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional, Union
from urllib.parse import urlsplit

from .backends import BackendAdapter, BackendConfig, create_adapter
from .cache import CacheState, DiskCache, IdleTimer
from .exceptions import BackendTransportError, ConfigurationError, InvalidHashError, ValidationError
from .logging_config import LogContext
from .models import ClientType, FileListing, TorrentFilter, TorrentPage
from .query import apply_query, paginate
from .rename import DEFAULT_SETTLE_DELAY_S, RenameReconciler
from .tree import paths_to_tree
from .utils import hashes_to_list, sanitize_filename, unix_timestamp

logger = logging.getLogger(__name__)

DEFAULT_MEM_CACHE_TIMEOUT_S = 60
DEFAULT_FILE_CACHE_LIMIT = 10
DEFAULT_FILE_CACHE_KEEP = 5


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TorrentBridge:
    """
    Normalized client for one torrent daemon.

    Usage:
        async with TorrentBridge("qbittorrent", "localhost:8080", "/var/cache/tb",
                                 username="admin", password="secret") as bridge:
            page = await bridge.get_torrents(filter="seeding", sort="ratio")
    """

    def __init__(
        self,
        client_type: Union[ClientType, str, int],
        base_url: str,
        cache_dir: Union[str, Path],
        *,
        api_path: Optional[str] = None,
        username: str = "",
        password: str = "",
        timeout_s: float = 5,
        mem_cache_timeout_s: float = DEFAULT_MEM_CACHE_TIMEOUT_S,
        verify_ssl: bool = True,
        file_cache_limit: int = DEFAULT_FILE_CACHE_LIMIT,
        file_cache_keep: int = DEFAULT_FILE_CACHE_KEEP,
        rename_settle_delay_s: float = DEFAULT_SETTLE_DELAY_S,
    ):
        """
        Validate settings and build the adapter.

        Raises:
            ConfigurationError: on an unknown client type, invalid URL,
                timeout below 1 s, relative cache dir or bad eviction limits
        """
        self._client_type = ClientType.parse(client_type)
        if not _is_number(mem_cache_timeout_s) or mem_cache_timeout_s < 1:
            raise ConfigurationError(
                "mem_cache_timeout_s must be at least 1 second", repr(mem_cache_timeout_s)
            )
        if not isinstance(cache_dir, (str, Path)) or not str(cache_dir) or not Path(cache_dir).is_absolute():
            raise ConfigurationError("cache_dir must be an absolute path", repr(cache_dir))
        if not isinstance(file_cache_limit, int) or file_cache_limit < 1:
            raise ConfigurationError("file_cache_limit must be at least 1", repr(file_cache_limit))
        if not isinstance(file_cache_keep, int) or not 1 <= file_cache_keep <= file_cache_limit:
            raise ConfigurationError(
                "file_cache_keep must be between 1 and file_cache_limit", repr(file_cache_keep)
            )
        if not _is_number(rename_settle_delay_s) or rename_settle_delay_s < 0:
            raise ConfigurationError(
                "rename_settle_delay_s must not be negative", repr(rename_settle_delay_s)
            )

        config = BackendConfig(
            base_url=base_url,
            api_path=api_path or "",
            username=username,
            password=password,
            timeout_s=timeout_s,
            verify_ssl=verify_ssl,
        )
        self._adapter: BackendAdapter = create_adapter(self._client_type, config)
        self._host = urlsplit(config.base_url).netloc

        self.cache_dir = Path(cache_dir)
        self.file_cache_limit = file_cache_limit
        self.file_cache_keep = file_cache_keep
        self.rename_settle_delay_s = rename_settle_delay_s
        self._list_path = self.cache_dir / (
            sanitize_filename(f"{self._host}-{self._client_type.label}", "-") + ".json"
        )
        self._disk = DiskCache(self.cache_dir)
        self._cache = CacheState()
        self._timer = IdleTimer(mem_cache_timeout_s, self._clear_mem_cache)

    @classmethod
    def from_settings(cls, settings) -> "TorrentBridge":
        """Create a bridge from BridgeSettings."""
        return cls(
            settings.client_type,
            settings.base_url,
            settings.cache_dir,
            api_path=settings.api_path,
            username=settings.username,
            password=settings.password,
            timeout_s=settings.timeout_s,
            mem_cache_timeout_s=settings.mem_cache_timeout_s,
            verify_ssl=settings.verify_ssl,
            file_cache_limit=settings.file_cache_limit,
            file_cache_keep=settings.file_cache_keep,
            rename_settle_delay_s=settings.rename_settle_delay_s,
        )

    async def __aenter__(self) -> "TorrentBridge":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def client_type(self) -> ClientType:
        return self._client_type

    @property
    def host(self) -> str:
        return self._host or ""

    def _context(self, operation: str, **extra) -> LogContext:
        return LogContext(
            client_type=self._client_type.label,
            host=self._host,
            operation=operation,
            **extra,
        )

    def _files_path(self, torrent_hash: str) -> Path:
        return self.cache_dir / (
            sanitize_filename(f"{torrent_hash}-{self._client_type.label}", "-") + ".json"
        )

    # =========================================================================
    # Versions and preferences
    # =========================================================================

    async def get_app_version(self) -> str:
        with self._context("get_app_version"):
            return str(await self._adapter.get_app_version())

    async def get_api_version(self) -> str:
        with self._context("get_api_version"):
            return str(await self._adapter.get_api_version())

    async def get_preferences(self, only_keys: bool = False) -> Any:
        """
        Get daemon preferences.

        Args:
            only_keys: Return only the preference names

        Returns:
            A dict, or [name, type, value] rows for uTorrent
        """
        with self._context("get_preferences"):
            preferences = await self._adapter.get_preferences()
            if not only_keys:
                return preferences
            if self._client_type == ClientType.UTORRENT:
                return [row[0] for row in preferences]
            return list(preferences)

    async def set_preferences(self, preferences: Any) -> bool:
        with self._context("set_preferences"):
            return await self._adapter.set_preferences(preferences)

    # =========================================================================
    # Torrent list
    # =========================================================================

    async def get_torrents(
        self,
        hashes=None,
        filter: Union[TorrentFilter, str, None] = None,
        sort: Optional[str] = None,
        reverse: bool = False,
        search_term: Optional[str] = None,
        raw: bool = False,
        per_page: Optional[int] = None,
        current_page: Optional[int] = None,
        fresh: bool = False,
    ) -> TorrentPage:
        """
        List torrents.

        Args:
            hashes: Only these torrents (list or "h1|h2")
            filter: TorrentFilter or its value
            sort: Canonical field name (snake_case or camelCase); unknown
                names sort by position
            reverse: Descending order
            search_term: Whitespace-separated terms that must all match
                name or hash
            raw: Return the daemon's own records, uncached and unfiltered
            per_page: Page size; pagination is off below 1
            current_page: 1-based page number
            fresh: Bypass the cache and fetch from the daemon

        Returns:
            TorrentPage; in raw mode only torrents, per_page, current_page
            and timestamp_s are set

        Raises:
            ValidationError: on an unknown filter
            BackendAuthenticationError: if the daemon rejects the credentials
        """
        with self._context("get_torrents"):
            if raw:
                try:
                    torrents = await self._adapter.get_torrents()
                except BackendTransportError as e:
                    logger.warning(f"Raw torrent list unavailable: {e}")
                    torrents = []
                page, page_number = paginate(torrents, per_page, current_page)
                return TorrentPage(
                    torrents=page,
                    timestamp_s=unix_timestamp(),
                    per_page=per_page,
                    current_page=page_number,
                )

            torrent_filter = self._parse_filter(filter)
            await self._fill_torrents(fresh)
            result = apply_query(
                self._cache.torrents or [],
                hashes=hashes,
                torrent_filter=torrent_filter,
                sort=sort,
                reverse=reverse,
                search_term=search_term,
                per_page=per_page,
                current_page=current_page,
            )
            return TorrentPage(
                torrents=result["torrents"],
                timestamp_s=self._cache.timestamp_s,
                total=result["total"],
                hashes=hashes_to_list(hashes) or None,
                filter=torrent_filter,
                sort=result["sort"],
                reverse=bool(reverse),
                search_term=search_term,
                fresh=bool(fresh),
                per_page=per_page,
                current_page=result["current_page"],
            )

    @staticmethod
    def _parse_filter(torrent_filter) -> Optional[TorrentFilter]:
        if not torrent_filter:
            return None
        try:
            return TorrentFilter(torrent_filter)
        except ValueError as e:
            raise ValidationError("Unknown torrent filter", repr(torrent_filter)) from e

    async def _fill_torrents(self, fresh: bool) -> None:
        """Make sure the memory tier holds a torrent list."""
        self._timer.cancel()
        try:
            if not fresh and not self._cache.has_torrents:
                restored = await self._disk.load_torrents(self._list_path)
                if restored is not None:
                    torrents, timestamp_s = restored
                    self._cache.store_torrents(torrents, timestamp_s, live=False)
                    logger.debug(f"Restored {len(torrents)} torrents from {self._list_path}")

            if fresh or not self._cache.has_torrents:
                try:
                    torrents = self._adapter.normalize_torrents(await self._adapter.get_torrents())
                except BackendTransportError as e:
                    logger.warning(f"Torrent list unavailable, serving cached data: {e}")
                    if not self._cache.has_torrents:
                        self._cache.store_torrents([], unix_timestamp(), live=False)
                else:
                    self._cache.store_torrents(torrents, unix_timestamp(), live=True)
                    # The snapshot on disk is stale now
                    await self._disk.delete(self._list_path)
                    logger.debug(f"Fetched {len(torrents)} torrents")
        finally:
            self._timer.rearm()

    # =========================================================================
    # File listings
    # =========================================================================

    async def get_torrent_files(
        self,
        torrent_hash: str,
        as_tree: bool = False,
        raw: bool = False,
        fresh: bool = False,
    ) -> FileListing:
        """
        List the files of one torrent.

        Args:
            torrent_hash: Torrent infohash
            as_tree: Return nested tree nodes instead of TorrentFile objects
            raw: Return the daemon's own records, uncached
            fresh: Bypass the cache and fetch from the daemon

        Raises:
            InvalidHashError: if torrent_hash is empty
        """
        if not isinstance(torrent_hash, str) or not torrent_hash.strip():
            raise InvalidHashError(torrent_hash)

        with self._context("get_torrent_files", torrent_hash=torrent_hash):
            if raw:
                try:
                    files = await self._adapter.get_torrent_files(torrent_hash)
                except BackendTransportError as e:
                    logger.warning(f"Raw file listing unavailable: {e}")
                    files = []
                return FileListing(hash=torrent_hash, files=files, timestamp_s=unix_timestamp())

            listing = await self._fill_files(torrent_hash, fresh)
            files = paths_to_tree(listing.files) if as_tree else list(listing.files)
            return FileListing(hash=torrent_hash, files=files, timestamp_s=listing.timestamp_s)

    async def _fill_files(self, torrent_hash: str, fresh: bool) -> FileListing:
        """Make sure the memory tier holds the file listing of one torrent."""
        self._timer.cancel()
        try:
            path = self._files_path(torrent_hash)
            if not fresh and torrent_hash not in self._cache.files:
                restored = await self._disk.load_files(path, torrent_hash)
                if restored is not None:
                    self._cache.store_files(restored, live=False)

            listing = self._cache.files.get(torrent_hash)
            if fresh or listing is None:
                try:
                    files = self._adapter.normalize_torrent_files(
                        await self._adapter.get_torrent_files(torrent_hash)
                    )
                except BackendTransportError as e:
                    logger.warning(f"File listing unavailable, serving cached data: {e}")
                    if listing is None:
                        listing = FileListing(hash=torrent_hash, files=[], timestamp_s=unix_timestamp())
                        self._cache.store_files(listing, live=False)
                else:
                    listing = FileListing(hash=torrent_hash, files=files, timestamp_s=unix_timestamp())
                    self._cache.store_files(listing, live=True)
                    await self._disk.delete(path)

            await self._evict_file_listings()
            return listing
        finally:
            self._timer.rearm()

    async def _evict_file_listings(self) -> None:
        evicted = self._cache.eviction_candidates(self.file_cache_limit, self.file_cache_keep)
        if not evicted:
            return
        await self._save_pending_files(evicted)
        self._cache.evict(evicted)
        logger.debug(f"Evicted {len(evicted)} file listings from memory")

    async def _save_pending_files(self, hashes: Optional[List[str]] = None) -> None:
        pending = [
            h for h in self._cache.pending_file_saves
            if hashes is None or h in hashes
        ]
        for torrent_hash in pending:
            listing = self._cache.files.get(torrent_hash)
            if listing is not None:
                await self._disk.save_files(self._files_path(torrent_hash), listing)
            self._cache.pending_file_saves.remove(torrent_hash)

    # =========================================================================
    # Actions
    # =========================================================================

    async def start_torrents(self, hashes=None) -> bool:
        """Start torrents; no hashes starts every torrent."""
        with self._context("start_torrents"):
            return await self._adapter.start_torrents(hashes_to_list(hashes))

    async def stop_torrents(self, hashes=None) -> bool:
        """Stop torrents; no hashes stops every torrent."""
        with self._context("stop_torrents"):
            return await self._adapter.stop_torrents(hashes_to_list(hashes))

    async def set_torrent_upload_speed(self, hashes, limit_kbps) -> bool:
        """
        Limit upload speed of the given torrents.

        Returns:
            False when no hashes are given; limits below 1 KB/s remove the limit
        """
        hashes = hashes_to_list(hashes)
        if not hashes:
            return False
        if not _is_number(limit_kbps) or limit_kbps < 1:
            limit_kbps = 0
        with self._context("set_torrent_upload_speed"):
            return await self._adapter.set_torrent_upload_speed(hashes, int(limit_kbps))

    async def rename_file(self, torrent_hash: str, old_path: str, new_path: str) -> Union[FileListing, bool]:
        """
        Rename a file or folder inside a torrent.

        Returns:
            The fresh FileListing, or False if the request was rejected
        """
        with self._context("rename_file", torrent_hash=torrent_hash):
            reconciler = RenameReconciler(
                self._adapter,
                lambda h: self.get_torrent_files(h, fresh=True),
                settle_delay_s=self.rename_settle_delay_s,
            )
            return await reconciler.reconcile(torrent_hash, old_path, new_path)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _clear_mem_cache(self) -> None:
        """Persist what changed and drop the memory tier."""
        if self._cache.save_to_disk and self._cache.has_torrents:
            if await self._disk.save_torrents(self._list_path, self._cache.torrents, self._cache.timestamp_s):
                logger.debug(f"Saved {len(self._cache.torrents)} torrents to {self._list_path}")
        await self._save_pending_files()
        self._cache.teardown()

    def clear_timers(self) -> None:
        """Stop the idle timer so nothing keeps the event loop busy."""
        self._timer.cancel()

    async def close(self) -> None:
        """Persist pending cache data, stop timers and close the HTTP session."""
        self.clear_timers()
        await self._timer.wait()
        await self._clear_mem_cache()
        await self._adapter.close()
        logger.debug(f"Closed {self._client_type.label} bridge for {self._host}")

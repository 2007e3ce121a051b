"""
Two-tier cache for torrent lists and file listings.

Memory entries live until the idle timer fires; disk snapshots let a new
process answer without contacting the daemon. The disk format is a compact
positional encoding versioned by CACHE_SCHEMA_VERSION.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiofiles

from .exceptions import CacheError
from .models import (
    CACHE_SCHEMA_VERSION,
    TORRENT_FIELDS,
    TORRENT_FILE_FIELDS,
    FileListing,
    Torrent,
    TorrentFile,
    TorrentStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Disk codec
# =============================================================================

# Declared type of every field, used to reject corrupt snapshot rows.
TORRENT_FIELD_TYPES = {f.name: f.type for f in fields(Torrent)}
TORRENT_FILE_FIELD_TYPES = {f.name: f.type for f in fields(TorrentFile)}


def _encode_value(value: Any) -> Any:
    if isinstance(value, TorrentStatus):
        return value.value
    return value


def encode_torrents(torrents: List[Torrent], timestamp_s: int) -> dict:
    """Encode a torrent list as rows in TORRENT_FIELDS order."""
    return {
        "version": CACHE_SCHEMA_VERSION,
        "timestamp_s": int(timestamp_s),
        "torrents": [
            [_encode_value(getattr(t, name)) for name in TORRENT_FIELDS]
            for t in torrents
        ],
    }


def _check_row_values(values: Dict[str, Any], types: Dict[str, type]) -> None:
    """
    Check decoded row values against the declared field types.

    Integers are accepted for float fields and converted in place.

    Raises:
        CacheError: on the first value of the wrong type
    """
    for name, expected in types.items():
        value = values[name]
        if expected is float:
            valid = isinstance(value, (int, float)) and not isinstance(value, bool)
            if valid:
                values[name] = float(value)
        elif expected is int:
            valid = isinstance(value, int) and not isinstance(value, bool)
        else:
            valid = isinstance(value, expected)
        if not valid:
            raise CacheError("Snapshot value has the wrong type", details=f"{name}={value!r}")


def _check_envelope(payload: Any, key: str) -> Tuple[int, list]:
    if not isinstance(payload, dict):
        raise CacheError("Snapshot is not an object")
    if payload.get("version") != CACHE_SCHEMA_VERSION:
        raise CacheError(f"Unsupported snapshot version {payload.get('version')!r}")
    timestamp_s = payload.get("timestamp_s")
    if not isinstance(timestamp_s, (int, float)) or isinstance(timestamp_s, bool):
        raise CacheError("Snapshot timestamp is not numeric")
    rows = payload.get(key)
    if not isinstance(rows, list):
        raise CacheError(f"Snapshot has no {key} list")
    return int(timestamp_s), rows


def decode_torrents(payload: Any) -> Tuple[List[Torrent], int]:
    """
    Decode a snapshot written by encode_torrents().

    Raises:
        CacheError: if the snapshot is malformed or from another schema version
    """
    timestamp_s, rows = _check_envelope(payload, "torrents")
    torrents = []
    for row in rows:
        if not isinstance(row, list) or len(row) != len(TORRENT_FIELDS):
            raise CacheError("Torrent row has the wrong width")
        values = dict(zip(TORRENT_FIELDS, row))
        try:
            values["status"] = TorrentStatus(values["status"])
        except ValueError as e:
            raise CacheError("Unknown torrent status in snapshot", details=str(e)) from e
        _check_row_values(values, TORRENT_FIELD_TYPES)
        torrents.append(Torrent(**values))
    return torrents, timestamp_s


def encode_files(listing: FileListing) -> dict:
    """Encode a file listing as [path, size, progress] rows."""
    return {
        "version": CACHE_SCHEMA_VERSION,
        "hash": listing.hash,
        "timestamp_s": int(listing.timestamp_s),
        "files": [
            [getattr(f, name) for name in TORRENT_FILE_FIELDS]
            for f in listing.files
        ],
    }


def decode_files(payload: Any, torrent_hash: str) -> FileListing:
    """
    Decode a snapshot written by encode_files().

    Raises:
        CacheError: if the snapshot is malformed or belongs to another torrent
    """
    timestamp_s, rows = _check_envelope(payload, "files")
    if payload.get("hash") != torrent_hash:
        raise CacheError("Snapshot belongs to another torrent", details=payload.get("hash"))
    files = []
    for row in rows:
        if not isinstance(row, list) or len(row) != len(TORRENT_FILE_FIELDS):
            raise CacheError("File row has the wrong width")
        values = dict(zip(TORRENT_FILE_FIELDS, row))
        _check_row_values(values, TORRENT_FILE_FIELD_TYPES)
        files.append(TorrentFile(**values))
    return FileListing(hash=torrent_hash, files=files, timestamp_s=timestamp_s)


# =============================================================================
# Disk tier
# =============================================================================

class DiskCache:
    """
    Best-effort JSON snapshot store.

    Never raises: failures are logged at warning level and reported as
    None/False.
    """

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)

    async def read_json(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read cache file {path}: {e}")
            return None

    async def write_json(self, path: Path, payload: Any) -> bool:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(payload, separators=(",", ":")))
            os.replace(tmp_path, path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Could not write cache file {path}: {e}")
            return False

    async def delete(self, path: Path) -> bool:
        try:
            path.unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.warning(f"Could not delete cache file {path}: {e}")
            return False

    async def load_torrents(self, path: Path) -> Optional[Tuple[List[Torrent], int]]:
        payload = await self.read_json(path)
        if payload is None:
            return None
        try:
            return decode_torrents(payload)
        except CacheError as e:
            logger.warning(f"Ignoring cache file {path}: {e}")
            return None

    async def save_torrents(self, path: Path, torrents: List[Torrent], timestamp_s: int) -> bool:
        return await self.write_json(path, encode_torrents(torrents, timestamp_s))

    async def load_files(self, path: Path, torrent_hash: str) -> Optional[FileListing]:
        payload = await self.read_json(path)
        if payload is None:
            return None
        try:
            return decode_files(payload, torrent_hash)
        except CacheError as e:
            logger.warning(f"Ignoring cache file {path}: {e}")
            return None

    async def save_files(self, path: Path, listing: FileListing) -> bool:
        return await self.write_json(path, encode_files(listing))


# =============================================================================
# Memory tier
# =============================================================================

@dataclass
class CacheState:
    """
    In-memory cache owned by one bridge.

    save_to_disk marks a list fetched live and not yet persisted;
    pending_file_saves lists hashes whose file listings await persisting.
    """
    torrents: Optional[List[Torrent]] = None
    timestamp_s: int = 0
    save_to_disk: bool = False
    files: Dict[str, FileListing] = field(default_factory=dict)
    pending_file_saves: List[str] = field(default_factory=list)

    @property
    def has_torrents(self) -> bool:
        return self.torrents is not None

    def store_torrents(self, torrents: List[Torrent], timestamp_s: int, live: bool) -> None:
        self.torrents = torrents
        self.timestamp_s = timestamp_s
        if live:
            self.save_to_disk = True

    def store_files(self, listing: FileListing, live: bool) -> None:
        # Re-insert so dict order tracks recency
        self.files.pop(listing.hash, None)
        self.files[listing.hash] = listing
        if live and listing.hash not in self.pending_file_saves:
            self.pending_file_saves.append(listing.hash)

    def eviction_candidates(self, limit: int, keep: int) -> List[str]:
        """Hashes to drop once more than `limit` listings are cached."""
        if len(self.files) <= limit:
            return []
        hashes = list(self.files)
        return hashes[:len(hashes) - keep] if keep > 0 else hashes

    def evict(self, hashes: List[str]) -> None:
        for torrent_hash in hashes:
            self.files.pop(torrent_hash, None)
            if torrent_hash in self.pending_file_saves:
                self.pending_file_saves.remove(torrent_hash)

    def invalidate(self) -> None:
        """Forget the torrent list so the next read fetches or restores it."""
        self.torrents = None
        self.timestamp_s = 0
        self.save_to_disk = False

    def teardown(self) -> None:
        """Drop everything held in memory."""
        self.invalidate()
        self.files.clear()
        self.pending_file_saves.clear()


# =============================================================================
# Idle timer
# =============================================================================

class IdleTimer:
    """
    One-shot timer that runs an async callback after a period of inactivity.

    rearm() restarts the countdown; cancel() stops it. Must be armed from a
    running event loop.
    """

    def __init__(self, timeout_s: float, callback: Callable[[], Awaitable[None]]):
        self.timeout_s = timeout_s
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def rearm(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout_s, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        try:
            await self._callback()
        except Exception as e:
            logger.error(f"Idle cache clear failed: {e}", exc_info=True)

    async def wait(self) -> None:
        """Wait for a callback that already started."""
        if self._task is not None and not self._task.done():
            await self._task

"""
Canonical data model shared by every backend.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, List, Optional, Union

from .exceptions import ConfigurationError

# Bump whenever TORRENT_FIELDS or TORRENT_FILE_FIELDS change order or content.
CACHE_SCHEMA_VERSION = 1


class ClientType(Enum):
    """Supported torrent daemons."""
    DELUGE = 1
    RTORRENT = 2
    QBITTORRENT = 3
    UTORRENT = 4
    TRANSMISSION = 5

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union["ClientType", str, int]) -> "ClientType":
        """Accept an enum member, its name (any case) or its numeric value."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
            if key.isdigit():
                value = int(key)
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        raise ConfigurationError("Unsupported torrent client type", repr(value))


class TorrentStatus(Enum):
    """Canonical torrent status. Exactly one applies to every torrent."""
    STOPPED = "stopped"
    DOWNLOADING = "downloading"
    SEEDING = "seeding"
    ERROR = "error"
    CHECKING = "checking"


class TorrentFilter(Enum):
    """Status/category filters understood by the query engine."""
    STOPPED = "stopped"
    RUNNING = "running"
    DOWNLOADING = "downloading"
    SEEDING = "seeding"
    COMPLETED = "completed"
    ERROR = "error"
    CHECKING = "checking"
    INCOMPLETE = "incomplete"


@dataclass
class Torrent:
    """A torrent in canonical form, regardless of the backend it came from."""
    added_at: int = 0
    completed_at: int = 0
    downloaded: int = 0
    downloading_time: int = 0
    download_limit_kbps: int = 0  # 0 = unlimited
    download_rate: int = 0
    error: bool = False
    file_count: int = 0
    hash: str = ""
    hash_v2: str = ""
    is_finished: bool = False
    is_private: bool = False
    magnet_link: str = ""
    message: str = ""
    mime_type: str = ""
    name: str = ""
    peers: int = 0
    percent_done: int = 0
    piece_count: int = 0
    piece_size: int = 0
    position: int = 0
    ratio: float = 0.0
    recheck_progress: float = 0.0
    save_path: str = ""
    seeding_time: int = 0
    size: int = 0
    status: TorrentStatus = TorrentStatus.STOPPED
    total_size: int = 0
    uploaded: int = 0
    upload_limit_kbps: int = 0  # 0 = unlimited
    upload_rate: int = 0

    def __post_init__(self):
        if self.peers < 0:
            self.peers = 0


@dataclass
class TorrentFile:
    """A single file inside a torrent."""
    path: str
    size: int = 0
    progress: int = 0  # 0-100


# Fixed column order of the disk encoding.
TORRENT_FIELDS = tuple(f.name for f in fields(Torrent))
TORRENT_FILE_FIELDS = tuple(f.name for f in fields(TorrentFile))

# camelCase names used by the daemons' web UIs and older callers.
FIELD_ALIASES = {
    "addedAt": "added_at",
    "completedAt": "completed_at",
    "downloadingTime": "downloading_time",
    "downloadLimitKBps": "download_limit_kbps",
    "downloadRate": "download_rate",
    "fileCount": "file_count",
    "hashV2": "hash_v2",
    "isFinished": "is_finished",
    "isPrivate": "is_private",
    "magnetLink": "magnet_link",
    "mimeType": "mime_type",
    "percentDone": "percent_done",
    "pieceCount": "piece_count",
    "pieceSize": "piece_size",
    "recheckProgress": "recheck_progress",
    "savePath": "save_path",
    "seedingTime": "seeding_time",
    "totalSize": "total_size",
    "uploadLimitKBps": "upload_limit_kbps",
    "uploadRate": "upload_rate",
}


def resolve_field_name(name: Optional[str]) -> Optional[str]:
    """Map a snake_case or camelCase field name to a canonical field, or None."""
    if not isinstance(name, str):
        return None
    name = FIELD_ALIASES.get(name, name)
    return name if name in TORRENT_FIELDS else None


@dataclass
class TorrentPage:
    """Result of a torrent list query."""
    torrents: List[Any]
    timestamp_s: int
    total: int = 0
    hashes: Optional[List[str]] = None
    filter: Optional[TorrentFilter] = None
    sort: Optional[str] = None
    reverse: bool = False
    search_term: Optional[str] = None
    fresh: bool = False
    per_page: Optional[int] = None
    current_page: Optional[int] = None


@dataclass
class FileListing:
    """Files of one torrent, flat or as a tree."""
    hash: str
    files: List[Any] = field(default_factory=list)
    timestamp_s: int = 0

    @property
    def count(self) -> int:
        return len(self.files)

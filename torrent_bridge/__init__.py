"""torrent-bridge: one normalized async API over several torrent daemons."""

from .bridge import TorrentBridge
from .config import BridgeSettings
from .exceptions import (
    BackendAuthenticationError,
    BackendError,
    BackendTransportError,
    ConfigurationError,
    InvalidHashError,
    TorrentBridgeError,
    ValidationError,
)
from .models import ClientType, FileListing, Torrent, TorrentFile, TorrentFilter, TorrentPage, TorrentStatus
from .preferences import match_preferences

__version__ = "0.1.0"

__all__ = [
    "BackendAuthenticationError",
    "BackendError",
    "BackendTransportError",
    "BridgeSettings",
    "ClientType",
    "ConfigurationError",
    "FileListing",
    "InvalidHashError",
    "Torrent",
    "TorrentBridge",
    "TorrentBridgeError",
    "TorrentFile",
    "TorrentFilter",
    "TorrentPage",
    "TorrentStatus",
    "ValidationError",
    "match_preferences",
]

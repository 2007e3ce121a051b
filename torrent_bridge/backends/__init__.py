"""Torrent daemon adapters."""

from typing import Optional

from ..models import ClientType
from ..transport import HttpTransport
from .base import BackendAdapter, BackendConfig, VersionInfo
from .deluge import DelugeAdapter
from .qbittorrent import QBittorrentAdapter
from .rtorrent import RTorrentAdapter
from .transmission import TransmissionAdapter
from .utorrent import UTorrentAdapter

# Adapter factory mapping
ADAPTER_MAPPING = {
    ClientType.DELUGE: DelugeAdapter,
    ClientType.RTORRENT: RTorrentAdapter,
    ClientType.QBITTORRENT: QBittorrentAdapter,
    ClientType.UTORRENT: UTorrentAdapter,
    ClientType.TRANSMISSION: TransmissionAdapter,
}


def create_adapter(
    client_type,
    config: BackendConfig,
    transport: Optional[HttpTransport] = None,
) -> BackendAdapter:
    """Create the adapter for a client type.

    Args:
        client_type: ClientType member, its name or numeric value
        config: Connection settings
        transport: Optional shared HTTP transport

    Returns:
        Configured adapter instance

    Raises:
        ConfigurationError: If the client type is not supported
    """
    return ADAPTER_MAPPING[ClientType.parse(client_type)](config, transport)


__all__ = [
    "ADAPTER_MAPPING",
    "BackendAdapter",
    "BackendConfig",
    "DelugeAdapter",
    "QBittorrentAdapter",
    "RTorrentAdapter",
    "TransmissionAdapter",
    "UTorrentAdapter",
    "VersionInfo",
    "create_adapter",
]

"""
rTorrent adapter.
XML-RPC over HTTP (/RPC2, usually proxied by a web server) with basic auth.
"""

import logging
import xmlrpc.client  # nosec B411
from typing import Any, Dict, List
from xml.parsers.expat import ExpatError

import defusedxml.xmlrpc

from ..exceptions import BackendAuthenticationError, BackendResponseError
from ..models import Torrent, TorrentFile
from ..normalize import (
    file_progress,
    positive_or_zero,
    resolve_status,
    save_path,
    to_int,
    to_str,
)
from ..utils import format_ratio, hashes_to_list, to_forward_slashes
from .base import BackendAdapter, VersionInfo

logger = logging.getLogger(__name__)

# Per-torrent upload limits are throttle groups named "<prefix><kbps>"
THROTTLE_PREFIX = "tb_up_"

# Order matters: rows of d.multicall2 follow it
RTORRENT_TORRENT_FIELDS = (
    "d.hash",
    "d.name",
    "d.state",
    "d.is_open",
    "d.is_active",
    "d.complete",
    "d.hashing",
    "d.message",
    "d.directory",
    "d.is_multi_file",
    "d.is_private",
    "d.size_bytes",
    "d.completed_bytes",
    "d.down.total",
    "d.up.total",
    "d.down.rate",
    "d.up.rate",
    "d.ratio",
    "d.peers_connected",
    "d.size_files",
    "d.size_chunks",
    "d.chunk_size",
    "d.load_date",
    "d.timestamp.finished",
    "d.throttle_name",
)

# Preference name -> (getter, setter)
RTORRENT_PREFERENCES = {
    "dl_limit": ("throttle.global_down.max_rate", "throttle.global_down.max_rate.set"),
    "ul_limit": ("throttle.global_up.max_rate", "throttle.global_up.max_rate.set"),
    "port_range": ("network.port_range", "network.port_range.set"),
    "dht_mode": ("dht.mode", "dht.mode.set"),
    "pex_enabled": ("protocol.pex", "protocol.pex.set"),
    "use_udp_trackers": ("trackers.use_udp", "trackers.use_udp.set"),
    "encryption": ("protocol.encryption", "protocol.encryption.set"),
    "proxy_address": ("network.proxy_address", "network.proxy_address.set"),
    "max_peers": ("throttle.max_peers.normal", "throttle.max_peers.normal.set"),
    "min_peers": ("throttle.min_peers.normal", "throttle.min_peers.normal.set"),
    "max_uploads": ("throttle.max_uploads", "throttle.max_uploads.set"),
    "directory_default": ("directory.default", "directory.default.set"),
    "check_hash": ("pieces.hash.on_completion", "pieces.hash.on_completion.set"),
}
BOOLEAN_PREFERENCES = {"pex_enabled", "use_udp_trackers", "check_hash"}


def throttle_limit_kbps(throttle_name) -> int:
    """Read the KB/s limit back out of a throttle group name."""
    name = to_str(throttle_name)
    if not name.startswith(THROTTLE_PREFIX):
        return 0
    return positive_or_zero(name[len(THROTTLE_PREFIX):])


class RTorrentAdapter(BackendAdapter):
    """rTorrent XML-RPC adapter."""

    default_api_path = "/RPC2"
    supports_rename = False

    def __init__(self, config, transport=None):
        super().__init__(config, transport)
        # Mitigate XML vulnerabilities in xmlrpc.client's parser
        defusedxml.xmlrpc.monkey_patch()

    async def login(self) -> bool:
        """rTorrent is stateless; basic auth is sent with every call."""
        self.session.establish()
        return True

    async def _call(self, method: str, *params) -> Any:
        """Invoke one XML-RPC method and return its result."""
        body = xmlrpc.client.dumps(tuple(params), methodname=method, allow_none=False)

        async def send():
            response = await self.transport.request(
                "POST",
                self.url,
                data=body.encode("utf-8"),
                headers={"Content-Type": "text/xml"},
                auth=self.config.basic_auth,
            )
            if response.status == 401:
                logger.error("rTorrent rejected the basic-auth credentials")
                raise BackendAuthenticationError(
                    "rTorrent rejected the credentials", f"HTTP {response.status}"
                )
            if not response.ok:
                raise BackendResponseError(
                    f"rTorrent {method} failed with HTTP {response.status}",
                    response.text[:200],
                    status=response.status,
                )
            try:
                result, _ = xmlrpc.client.loads(response.text)
            except xmlrpc.client.Fault as e:
                raise BackendResponseError(
                    f"rTorrent {method} fault {e.faultCode}", e.faultString
                ) from e
            except (ExpatError, ValueError) as e:
                raise BackendResponseError(
                    f"rTorrent {method} returned malformed XML", str(e)
                ) from e
            return result[0] if result else None

        return await self._with_session(send)

    async def _fetch_versions(self) -> VersionInfo:
        version = await self._call("system.client_version")
        api_version = await self._call("system.api_version")
        return VersionInfo(version=to_str(version), api_version=to_str(api_version))

    async def get_preferences(self) -> Dict[str, Any]:
        preferences = {}
        for key, (getter, _) in RTORRENT_PREFERENCES.items():
            try:
                preferences[key] = await self._call(getter)
            except BackendResponseError as e:
                # Older rTorrent builds lack some commands
                logger.debug(f"rTorrent preference {key} unavailable: {e}")
        return preferences

    async def set_preferences(self, preferences: Dict[str, Any]) -> bool:
        for key, value in (preferences or {}).items():
            if key not in RTORRENT_PREFERENCES or value is None:
                continue
            if key in BOOLEAN_PREFERENCES:
                value = 1 if value else 0
            await self._call(RTORRENT_PREFERENCES[key][1], "", value)
        return True

    async def get_torrents(self) -> List[dict]:
        rows = await self._call(
            "d.multicall2", "", "main", *[f"{f}=" for f in RTORRENT_TORRENT_FIELDS]
        )
        return [dict(zip(RTORRENT_TORRENT_FIELDS, row)) for row in rows or []]

    async def get_torrent_files(self, torrent_hash: str) -> List[dict]:
        fields = ("f.path", "f.size_bytes", "f.completed_chunks", "f.size_chunks")
        rows = await self._call("f.multicall", torrent_hash, "", *[f"{f}=" for f in fields])
        return [dict(zip(fields, row)) for row in rows or []]

    async def _all_hashes(self) -> List[str]:
        return list(await self._call("download_list", "", "main") or [])

    async def start_torrents(self, hashes) -> bool:
        for torrent_hash in hashes_to_list(hashes) or await self._all_hashes():
            await self._call("d.open", torrent_hash)
            await self._call("d.start", torrent_hash)
        return True

    async def stop_torrents(self, hashes) -> bool:
        for torrent_hash in hashes_to_list(hashes) or await self._all_hashes():
            await self._call("d.stop", torrent_hash)
            await self._call("d.close", torrent_hash)
        return True

    async def set_torrent_upload_speed(self, hashes: List[str], limit_kbps: int) -> bool:
        """
        Assign torrents to a throttle group.

        rTorrent applies a changed throttle group when the torrent is next
        started.
        """
        hashes = hashes_to_list(hashes)
        if not hashes:
            return False
        name = ""
        if limit_kbps > 0:
            name = f"{THROTTLE_PREFIX}{int(limit_kbps)}"
            await self._call("throttle.up", "", name, str(int(limit_kbps)))
        for torrent_hash in hashes:
            await self._call("d.throttle_name.set", torrent_hash, name)
        return True

    async def rename_file(
        self, torrent_hash: str, old_path: str, new_path: str, is_file: bool
    ) -> bool:
        logger.info("rTorrent does not support renaming files")
        return False

    @staticmethod
    def _status(t: dict, is_error: bool, is_finished: bool):
        return resolve_status(
            is_error=is_error,
            is_checking=bool(to_int(t.get("d.hashing"))),
            is_stopped=not to_int(t.get("d.is_open")) or not to_int(t.get("d.state")),
            is_active=bool(to_int(t.get("d.is_active"))),
            is_finished=is_finished,
        )

    def normalize_torrents(self, torrents: List[dict]) -> List[Torrent]:
        result = []
        for t in torrents:
            message = to_str(t.get("d.message"))
            is_finished = bool(to_int(t.get("d.complete")))
            name = to_str(t.get("d.name"))
            directory = to_str(t.get("d.directory"))
            size = to_int(t.get("d.size_bytes"))
            result.append(Torrent(
                added_at=to_int(t.get("d.load_date")),
                completed_at=positive_or_zero(t.get("d.timestamp.finished")),
                # d.ratio is per-mille
                ratio=format_ratio(to_int(t.get("d.ratio")) / 1000),
                size=size,
                total_size=size,
                uploaded=to_int(t.get("d.up.total")),
                upload_rate=to_int(t.get("d.up.rate")),
                upload_limit_kbps=throttle_limit_kbps(t.get("d.throttle_name")),
                downloaded=to_int(t.get("d.down.total")),
                download_rate=to_int(t.get("d.down.rate")),
                # d.directory already points inside multi-file torrents
                save_path=(
                    to_forward_slashes(directory) if to_int(t.get("d.is_multi_file"))
                    else save_path(directory, name)
                ),
                error=bool(message),
                message=message,
                file_count=to_int(t.get("d.size_files")),
                hash=to_str(t.get("d.hash")),
                is_finished=is_finished,
                is_private=bool(to_int(t.get("d.is_private"))),
                peers=max(0, to_int(t.get("d.peers_connected"))),
                name=name,
                percent_done=100 if is_finished else (
                    file_progress(t.get("d.completed_bytes"), size) if size > 0 else 0
                ),
                piece_count=to_int(t.get("d.size_chunks")),
                piece_size=to_int(t.get("d.chunk_size")),
                status=self._status(t, bool(message), is_finished),
            ))
        return result

    def normalize_torrent_files(self, files: List[dict]) -> List[TorrentFile]:
        return [
            TorrentFile(
                path=to_forward_slashes(f.get("f.path")),
                size=to_int(f.get("f.size_bytes")),
                progress=file_progress(f.get("f.completed_chunks"), f.get("f.size_chunks")),
            )
            for f in files
        ]

"""
uTorrent adapter.
GET-only Web UI API (/gui/) authenticated by a token scraped from token.html.
"""

import logging
import re
import time
from typing import Any, List, Optional, Tuple

from ..exceptions import (
    BackendAuthenticationError,
    BackendResponseError,
    ConfigurationError,
    SessionExpiredError,
)
from ..models import Torrent, TorrentFile
from ..normalize import (
    clamp_peers,
    clamp_percent,
    file_progress,
    limit_kbps,
    positive_or_zero,
    resolve_status,
    to_int,
    to_str,
)
from ..utils import chunked, format_ratio, hashes_to_list, join_url_paths, to_forward_slashes
from .base import BackendAdapter, VersionInfo

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r">([^<]+)</")

# Status bitfield of list=1 rows
STATUS_STARTED = 1
STATUS_CHECKING = 2
STATUS_START_AFTER_CHECK = 4
STATUS_CHECKED = 8
STATUS_ERROR = 16
STATUS_PAUSED = 32
STATUS_QUEUED = 64
STATUS_LOADED = 128

# Setting types reported by getsettings
SETTING_INTEGER = 0
SETTING_BOOLEAN = 1
SETTING_STRING = 2

SKIPPED_SETTING_PREFIXES = ("webui.", "gui.", "sys.")

PROPS_CHUNK_SIZE = 50
START_STOP_CHUNK_SIZE = 150
SET_PROPS_CHUNK_SIZE = 100
SET_SETTINGS_CHUNK_SIZE = 15

# Columns of a list=1 torrent row
TORRENT_ROW_COLUMNS = (
    "hash", "status", "name", "size", "progress", "downloaded", "uploaded",
    "ratio", "upload_speed", "download_speed", "eta", "label",
    "peers_connected", "peers_in_swarm", "seeds_connected", "seeds_in_swarm",
    "availability", "queue_order", "remaining", "download_url", "rss_feed_url",
    "status_message", "stream_id", "date_added", "date_completed",
    "app_update_url", "save_path",
)


def torrent_row_to_dict(row: list) -> dict:
    """Name the columns of a list=1 torrent row."""
    return {name: row[i] if i < len(row) else None for i, name in enumerate(TORRENT_ROW_COLUMNS)}


class UTorrentAdapter(BackendAdapter):
    """uTorrent / BitTorrent Web UI adapter."""

    default_api_path = "/gui/"
    supports_rename = False

    async def login(self) -> bool:
        """Fetch token.html and keep the token and GUID cookie."""
        response = await self.transport.request(
            "GET",
            join_url_paths(self.url, "token.html"),
            params={"t": str(int(time.time() * 1000))},
            auth=self.config.basic_auth,
        )
        if response.status == 401:
            logger.error("uTorrent rejected the basic-auth credentials")
            raise BackendAuthenticationError(
                "uTorrent rejected the credentials", f"HTTP {response.status}"
            )
        match = _TOKEN_PATTERN.search(response.text or "") if response.ok else None
        if not match:
            raise BackendAuthenticationError(
                "uTorrent token not found", f"HTTP {response.status}"
            )
        cookie = response.set_cookies[0].split(";")[0] if response.set_cookies else None
        self.session.establish(token=match.group(1), cookie=cookie)
        logger.info(f"uTorrent token acquired at {self.config.base_url}")
        return True

    async def _request(
        self, action: str = "", params: Optional[List[Tuple[str, Any]]] = None
    ) -> dict:
        """Send a GET to /gui/ and decode the JSON body."""
        params = list(params or [])

        async def send():
            query = [(k, str(v)) for k, v in params if k not in ("action", "token")]
            if action:
                query.append(("action", action))
            query.append(("token", self.session.token or ""))
            headers = {"Cookie": self.session.cookie} if self.session.cookie else None
            response = await self.transport.request(
                "GET",
                self.url + "/",
                params=query,
                headers=headers,
                auth=self.config.basic_auth,
            )
            if response.status in (400, 401):
                raise SessionExpiredError("uTorrent rejected the token", action or "list")
            if not response.ok:
                raise BackendResponseError(
                    f"uTorrent {action or 'list'} failed with HTTP {response.status}",
                    response.text[:200],
                    status=response.status,
                )
            data = response.json()
            if not isinstance(data, dict):
                raise BackendResponseError(f"uTorrent {action or 'list'} returned an unexpected body")
            if "error" in data:
                raise BackendResponseError(f"uTorrent {action or 'list'} failed", to_str(data["error"]))
            return data

        return await self._with_session(send)

    async def _fetch_versions(self) -> VersionInfo:
        data = await self._request("getversion")
        build = data.get("build")
        if build is None and isinstance(data.get("version"), dict):
            build = data["version"].get("build")
        if build is None:
            raise BackendResponseError("uTorrent getversion returned no build", repr(data)[:200])
        return VersionInfo(version=to_str(build), api_version="")

    async def get_api_version(self) -> str:
        return ""

    async def get_preferences(self) -> List[list]:
        data = await self._request("getsettings")
        settings = data.get("settings")
        if not isinstance(settings, list):
            raise BackendResponseError("uTorrent getsettings returned no settings")
        # Drop the trailing "extra" element of each row
        return [list(s[:-1]) for s in settings]

    async def set_preferences(self, preferences: List[list]) -> bool:
        """Apply settings given as [[name, type, value], ...]."""
        for chunk in chunked(list(preferences or []), SET_SETTINGS_CHUNK_SIZE):
            params = []
            for setting in chunk:
                if not isinstance(setting, (list, tuple)) or len(setting) < 3:
                    raise ConfigurationError("Malformed uTorrent setting", repr(setting))
                name, setting_type, value = setting[0], setting[1], setting[2]
                if not name or setting_type not in (SETTING_INTEGER, SETTING_BOOLEAN, SETTING_STRING):
                    raise ConfigurationError("Malformed uTorrent setting", repr(setting))
                if name.startswith(SKIPPED_SETTING_PREFIXES):
                    continue
                if setting_type == SETTING_BOOLEAN:
                    value = "1" if value in (True, "true", "1", 1) else "0"
                elif setting_type == SETTING_INTEGER:
                    try:
                        float(value)
                    except (TypeError, ValueError):
                        value = ""
                params.append(("s", name))
                params.append(("v", to_str(value)))
            if params:
                await self._request("setsetting", params)
        return True

    async def get_torrents(self) -> List[dict]:
        data = await self._request(params=[("list", "1")])
        rows = data.get("torrents")
        if not isinstance(rows, list):
            raise BackendResponseError("uTorrent list returned no torrents")
        torrents = [torrent_row_to_dict(r) if isinstance(r, list) else dict(r) for r in rows]

        for chunk in chunked(torrents, PROPS_CHUNK_SIZE):
            props = await self._request("getprops", [("hash", t["hash"]) for t in chunk])
            by_hash = {to_str(t["hash"]).lower(): t for t in chunk}
            for p in props.get("props") or []:
                found = by_hash.get(to_str(p.get("hash")).lower())
                if found is None:
                    raise BackendResponseError("uTorrent getprops returned an unknown hash", repr(p)[:200])
                found.update(p)
        return torrents

    async def get_torrent_files(self, torrent_hash: str) -> List[dict]:
        data = await self._request("getfiles", [("hash", torrent_hash)])
        files = data.get("files")
        if not isinstance(files, list) or len(files) < 2:
            raise BackendResponseError("uTorrent getfiles returned no files")
        return [
            {"name": f[0], "size": f[1], "downloaded": f[2], "priority": f[3] if len(f) > 3 else 0}
            for f in files[1]
        ]

    async def _all_hashes(self) -> List[str]:
        return [t["hash"] for t in await self.get_torrents()]

    async def _start_stop(self, action: str, hashes) -> bool:
        hashes = hashes_to_list(hashes) or await self._all_hashes()
        for chunk in chunked(hashes, START_STOP_CHUNK_SIZE):
            await self._request(action, [("hash", h) for h in chunk])
        return True

    async def start_torrents(self, hashes) -> bool:
        return await self._start_stop("start", hashes)

    async def stop_torrents(self, hashes) -> bool:
        return await self._start_stop("stop", hashes)

    async def set_torrent_upload_speed(self, hashes: List[str], limit_kbps: int) -> bool:
        hashes = hashes_to_list(hashes)
        if not hashes:
            return False
        limit = int(limit_kbps) * 1024 if limit_kbps > 0 else 0
        for chunk in chunked(hashes, SET_PROPS_CHUNK_SIZE):
            params = []
            for h in chunk:
                params.extend([("hash", h), ("s", "ulrate"), ("v", limit)])
            await self._request("setprops", params)
        return True

    async def rename_file(
        self, torrent_hash: str, old_path: str, new_path: str, is_file: bool
    ) -> bool:
        logger.info("uTorrent does not support renaming files")
        return False

    @staticmethod
    def _status(bits: int, is_finished: bool):
        return resolve_status(
            is_error=bool(bits & STATUS_ERROR),
            is_checking=bool(bits & STATUS_CHECKING),
            is_stopped=bool(bits & STATUS_PAUSED) or not bits & (STATUS_STARTED | STATUS_QUEUED),
            is_active=bool(bits & (STATUS_STARTED | STATUS_QUEUED)),
            is_finished=is_finished,
        )

    def normalize_torrents(self, torrents: List[dict]) -> List[Torrent]:
        result = []
        for t in torrents:
            bits = to_int(t.get("status"))
            is_error = bool(bits & STATUS_ERROR)
            is_finished = to_int(t.get("date_completed")) > 0 or t.get("remaining") == 0
            size = to_int(t.get("size"))
            result.append(Torrent(
                added_at=to_int(t.get("date_added")),
                completed_at=positive_or_zero(t.get("date_completed")),
                # uTorrent reports the ratio in per-mille
                ratio=format_ratio(to_int(t.get("ratio")) / 1000),
                size=size,
                total_size=size,
                uploaded=to_int(t.get("uploaded")),
                upload_rate=to_int(t.get("upload_speed")),
                upload_limit_kbps=limit_kbps(t.get("ulrate"), unit_bytes=True),
                downloaded=to_int(t.get("downloaded")),
                download_rate=to_int(t.get("download_speed")),
                download_limit_kbps=limit_kbps(t.get("dlrate"), unit_bytes=True),
                save_path=to_forward_slashes(t.get("save_path")),
                position=to_int(t.get("queue_order")),
                error=is_error,
                message=to_str(t.get("status_message")),
                hash=to_str(t.get("hash")),
                is_finished=is_finished,
                peers=clamp_peers(t.get("peers_connected"), t.get("seeds_connected")),
                name=to_str(t.get("name")),
                percent_done=clamp_percent(to_int(t.get("progress")) // 10),
                status=self._status(bits, is_finished),
            ))
        return result

    def normalize_torrent_files(self, files: List[dict]) -> List[TorrentFile]:
        return [
            TorrentFile(
                path=to_forward_slashes(f.get("name")),
                size=to_int(f.get("size")),
                progress=file_progress(f.get("downloaded"), f.get("size")),
            )
            for f in files
        ]


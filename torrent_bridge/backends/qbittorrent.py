"""
qBittorrent adapter.
Cookie-session REST API under /api/v2.
"""

import json
import logging
import time
from email.utils import parsedate_to_datetime
from http.cookies import CookieError, SimpleCookie
from typing import Any, List, Optional

from ..exceptions import (
    BackendAuthenticationError,
    BackendResponseError,
    SessionExpiredError,
)
from ..models import Torrent, TorrentFile
from ..normalize import (
    clamp_peers,
    fraction_to_percent,
    limit_kbps,
    positive_or_zero,
    resolve_status,
    to_float,
    to_int,
    to_str,
)
from ..session import DEFAULT_SESSION_LIFETIME
from ..utils import format_ratio, hashes_to_string, join_url_paths, to_forward_slashes
from .base import BackendAdapter, VersionInfo

logger = logging.getLogger(__name__)

# API version that renamed resume/pause to start/stop
START_STOP_API_VERSION = "2.11"

QBITTORRENT_ERROR_STATES = {"error", "missingfiles"}
QBITTORRENT_CHECKING_STATES = {
    "checkingdl", "checkingup", "checkingresumedata", "allocating", "moving",
}
QBITTORRENT_STOPPED_STATES = {
    "paused", "pausedup", "pauseddl", "stopped", "stoppedup", "stoppeddl",
}
QBITTORRENT_ACTIVE_STATES = {
    "downloading", "metadl", "forcedmetadl", "queueddl", "stalleddl", "forceddl",
    "uploading", "queuedup", "stalledup", "forcedup",
}


def parse_sid_cookie(set_cookies: List[str]) -> tuple[Optional[str], Optional[float]]:
    """
    Extract the SID value and its expiry (unix time) from Set-Cookie headers.

    Returns:
        (sid, expires_at); expires_at is None when the cookie carries neither
        Expires nor Max-Age
    """
    for header in set_cookies:
        cookie = SimpleCookie()
        try:
            cookie.load(header)
        except CookieError:
            continue
        morsel = cookie.get("SID")
        if morsel is None or not morsel.value:
            continue
        expires_at = None
        if morsel["max-age"]:
            try:
                expires_at = time.time() + float(morsel["max-age"])
            except ValueError:
                expires_at = None
        elif morsel["expires"]:
            try:
                expires_at = parsedate_to_datetime(morsel["expires"]).timestamp()
            except (TypeError, ValueError):
                expires_at = None
        return morsel.value, expires_at
    return None, None


class QBittorrentAdapter(BackendAdapter):
    """qBittorrent Web API adapter."""

    default_api_path = "/api/v2"

    async def login(self) -> bool:
        """Authenticate and store the SID cookie."""
        response = await self.transport.request(
            "POST",
            join_url_paths(self.url, "/auth/login"),
            data={"username": self.config.username, "password": self.config.password},
        )
        sid, expires_at = parse_sid_cookie(response.set_cookies)
        if not response.ok or not sid:
            logger.error(f"qBittorrent login failed: HTTP {response.status} {response.text[:100]}")
            raise BackendAuthenticationError(
                "qBittorrent rejected the credentials",
                f"HTTP {response.status}",
            )
        if expires_at is None:
            self.session.establish(token=sid, lifetime=DEFAULT_SESSION_LIFETIME)
        else:
            self.session.establish(token=sid, expires_at=expires_at)
        logger.info(f"qBittorrent authenticated at {self.config.base_url}")
        return True

    async def _request(
        self,
        path: str,
        method: str = "GET",
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        is_json: bool = True,
    ) -> Any:
        """Make an authenticated request to the Web API."""
        url = join_url_paths(self.url, path)

        async def send():
            response = await self.transport.request(
                method,
                url,
                params=params,
                data=data,
                headers={"Cookie": f"SID={self.session.token or ''}"},
            )
            if response.status == 403:
                raise SessionExpiredError("qBittorrent rejected the session", path)
            if not response.ok:
                raise BackendResponseError(
                    f"qBittorrent {path} failed with HTTP {response.status}",
                    response.text[:200],
                    status=response.status,
                )
            return response.json() if is_json else response.text

        return await self._with_session(send)

    async def _fetch_versions(self) -> VersionInfo:
        version = await self._request("/app/version", is_json=False)
        api_version = await self._request("/app/webapiVersion", is_json=False)
        return VersionInfo(version=version.strip(), api_version=api_version.strip())

    async def get_preferences(self) -> dict:
        return await self._request("/app/preferences")

    async def set_preferences(self, preferences: dict) -> bool:
        await self._request(
            "/app/setPreferences",
            "POST",
            data={"json": json.dumps(preferences)},
            is_json=False,
        )
        return True

    async def get_torrents(self) -> List[dict]:
        return await self._request("/torrents/info")

    async def get_torrent_files(self, torrent_hash: str) -> List[dict]:
        return await self._request("/torrents/files", params={"hash": torrent_hash})

    async def _start_stop(self, hashes, start: bool) -> bool:
        hashes = hashes_to_string(hashes) or "all"
        if await self.is_api_version_or_up(START_STOP_API_VERSION):
            endpoint = "/torrents/start" if start else "/torrents/stop"
        else:
            endpoint = "/torrents/resume" if start else "/torrents/pause"
        await self._request(endpoint, "POST", data={"hashes": hashes}, is_json=False)
        return True

    async def start_torrents(self, hashes) -> bool:
        return await self._start_stop(hashes, start=True)

    async def stop_torrents(self, hashes) -> bool:
        return await self._start_stop(hashes, start=False)

    async def set_torrent_upload_speed(self, hashes: List[str], limit_kbps: int) -> bool:
        hashes = hashes_to_string(hashes)
        if not hashes:
            return False
        await self._request(
            "/torrents/setUploadLimit",
            "POST",
            data={"hashes": hashes, "limit": str(int(limit_kbps) * 1024)},
            is_json=False,
        )
        return True

    async def rename_file(
        self, torrent_hash: str, old_path: str, new_path: str, is_file: bool
    ) -> bool:
        endpoint = "/torrents/renameFile" if is_file else "/torrents/renameFolder"
        await self._request(
            endpoint,
            "POST",
            data={"hash": torrent_hash, "oldPath": old_path, "newPath": new_path},
            is_json=False,
        )
        return True

    @staticmethod
    def _status(state: str, is_finished: bool):
        state = (state or "").lower()
        return resolve_status(
            is_error=state in QBITTORRENT_ERROR_STATES,
            is_checking=state in QBITTORRENT_CHECKING_STATES,
            is_stopped=state in QBITTORRENT_STOPPED_STATES,
            is_active=state in QBITTORRENT_ACTIVE_STATES,
            is_finished=is_finished,
        )

    def normalize_torrents(self, torrents: List[dict]) -> List[Torrent]:
        result = []
        for t in torrents:
            state = to_str(t.get("state"))
            is_error = state.lower() in QBITTORRENT_ERROR_STATES
            is_finished = t.get("amount_left") == 0 or to_float(t.get("progress")) >= 1
            result.append(Torrent(
                added_at=to_int(t.get("added_on")),
                completed_at=positive_or_zero(t.get("completion_on")),
                ratio=format_ratio(t.get("ratio")),
                seeding_time=to_int(t.get("seeding_time")),
                size=to_int(t.get("size")),
                total_size=to_int(t.get("total_size")),
                uploaded=to_int(t.get("uploaded")),
                upload_rate=to_int(t.get("upspeed")),
                upload_limit_kbps=limit_kbps(t.get("up_limit"), unit_bytes=True),
                downloaded=to_int(t.get("downloaded")),
                download_rate=to_int(t.get("dlspeed")),
                download_limit_kbps=limit_kbps(t.get("dl_limit"), unit_bytes=True),
                save_path=to_forward_slashes(t.get("content_path") or t.get("save_path")),
                position=to_int(t.get("priority")),
                error=is_error,
                message=state if is_error else "",
                hash=to_str(t.get("infohash_v1") or t.get("hash")),
                hash_v2=to_str(t.get("infohash_v2")),
                is_finished=is_finished,
                is_private=bool(t.get("private")),
                magnet_link=to_str(t.get("magnet_uri")),
                peers=clamp_peers(
                    t.get("num_complete"),
                    t.get("num_incomplete"),
                    t.get("num_leechs"),
                    t.get("num_seeds"),
                ),
                name=to_str(t.get("name")),
                percent_done=fraction_to_percent(t.get("progress")),
                status=self._status(state, is_finished),
            ))
        return result

    def normalize_torrent_files(self, files: List[dict]) -> List[TorrentFile]:
        return [
            TorrentFile(
                path=to_forward_slashes(f.get("name")),
                size=to_int(f.get("size")),
                progress=fraction_to_percent(f.get("progress")),
            )
            for f in files
        ]

"""
Deluge adapter.
JSON-RPC over the Deluge Web UI (/json) with a session_id cookie.
"""

import logging
from typing import Any, List, Optional

from ..exceptions import (
    BackendAuthenticationError,
    BackendResponseError,
    MissingCredentialsError,
    SessionExpiredError,
)
from ..models import Torrent, TorrentFile
from ..normalize import (
    clamp_peers,
    clamp_percent,
    fraction_to_percent,
    limit_kbps,
    positive_or_zero,
    resolve_status,
    save_path,
    to_int,
    to_str,
)
from ..utils import format_ratio, hashes_to_list, paths_equal, to_forward_slashes
from .base import BackendAdapter, VersionInfo

logger = logging.getLogger(__name__)

# JSON-RPC message ids wrap around at this value
MAX_MESSAGE_ID = 1024

DELUGE_TORRENT_FIELDS = [
    "hash",
    "name",
    "state",
    "message",
    "progress",
    "is_finished",
    "private",
    "time_added",
    "completed_time",
    "seeding_time",
    "time_since_download",
    "time_since_upload",
    "total_wanted",
    "total_size",
    "total_uploaded",
    "all_time_download",
    "upload_payload_rate",
    "download_payload_rate",
    "max_upload_speed",
    "max_download_speed",
    "save_path",
    "queue",
    "num_seeds",
    "num_peers",
    "num_files",
    "num_pieces",
    "piece_length",
    "ratio",
]


class DelugeAdapter(BackendAdapter):
    """Deluge Web UI JSON-RPC adapter."""

    default_api_path = "/json"

    def __init__(self, config, transport=None):
        if not config.password:
            raise MissingCredentialsError("Deluge Web UI requires a password")
        super().__init__(config, transport)
        self._message_id = 0

    def _next_message_id(self) -> int:
        if self._message_id >= MAX_MESSAGE_ID:
            self._message_id = 0
        message_id = self._message_id
        self._message_id += 1
        return message_id

    async def _post(self, method: str, params: List[Any]):
        body = {"method": method, "params": params, "id": self._next_message_id()}
        headers = {"Content-Type": "application/json"}
        if self.session.cookie:
            headers["Cookie"] = self.session.cookie
        return await self.transport.request("POST", self.url, json_body=body, headers=headers)

    async def login(self) -> bool:
        """Authenticate with the Web UI password and keep the session_id cookie."""
        self._message_id = 0
        response = await self._post("auth.login", [self.config.password])
        try:
            result = response.json().get("result") if response.ok else None
        except (BackendResponseError, AttributeError):
            result = None
        cookie = next((c for c in response.set_cookies if "session_id" in c), None)
        if not result or not cookie:
            logger.error(f"Deluge login failed: HTTP {response.status}")
            raise BackendAuthenticationError(
                "Deluge rejected the password", f"HTTP {response.status}"
            )
        self.session.establish(cookie=cookie.split(";")[0])
        logger.info(f"Deluge authenticated at {self.config.base_url}")
        return True

    async def _request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Call a JSON-RPC method and return its result."""
        if params is None:
            params = []
        elif not isinstance(params, list):
            params = [params]

        async def send():
            response = await self._post(method, params)
            if not response.ok:
                raise BackendResponseError(
                    f"Deluge {method} failed with HTTP {response.status}",
                    response.text[:200],
                    status=response.status,
                )
            data = response.json()
            if not isinstance(data, dict):
                raise BackendResponseError(f"Deluge {method} returned an unexpected body")
            error = data.get("error")
            if error:
                message = error.get("message", "") if isinstance(error, dict) else str(error)
                if "not authenticated" in message.lower():
                    raise SessionExpiredError("Deluge session is not authenticated", method)
                raise BackendResponseError(f"Deluge {method} failed", message)
            return data.get("result")

        return await self._with_session(send)

    async def _fetch_versions(self) -> VersionInfo:
        version = await self._request("daemon.get_version")
        return VersionInfo(version=to_str(version), api_version="")

    async def get_api_version(self) -> str:
        # The Deluge Web UI exposes no API version.
        return ""

    async def get_preferences(self) -> dict:
        return await self._request("core.get_config")

    async def set_preferences(self, preferences: dict) -> bool:
        await self._request("core.set_config", [preferences])
        return True

    async def get_torrents(self) -> List[dict]:
        result = await self._request("core.get_torrents_status", [{}, DELUGE_TORRENT_FIELDS])
        return list((result or {}).values())

    async def get_torrent_files(self, torrent_hash: str) -> List[dict]:
        torrent = await self._request(
            "core.get_torrent_status", [torrent_hash, ["files", "file_progress"]]
        )
        torrent = torrent or {}
        file_progress = torrent.get("file_progress") or []
        files = []
        for f in torrent.get("files") or []:
            f = dict(f)
            index = to_int(f.get("index"))
            f["progress"] = file_progress[index] if 0 <= index < len(file_progress) else 0
            files.append(f)
        return files

    async def start_torrents(self, hashes) -> bool:
        await self._request("core.resume_torrent", [hashes_to_list(hashes)])
        return True

    async def stop_torrents(self, hashes) -> bool:
        await self._request("core.pause_torrent", [hashes_to_list(hashes)])
        return True

    async def set_torrent_upload_speed(self, hashes: List[str], limit_kbps: int) -> bool:
        hashes = hashes_to_list(hashes)
        if not hashes:
            return False
        # Deluge uses -1 for "unlimited"
        speed = limit_kbps if limit_kbps >= 1 else -1
        await self._request("core.set_torrent_options", [hashes, {"max_upload_speed": speed}])
        return True

    async def rename_file(
        self, torrent_hash: str, old_path: str, new_path: str, is_file: bool
    ) -> bool:
        if not is_file:
            await self._request("core.rename_folder", [torrent_hash, old_path, new_path])
            return True
        files = await self.get_torrent_files(torrent_hash)
        found = next((f for f in files if paths_equal(f.get("path"), old_path)), None)
        if found is None:
            logger.warning(f"Deluge rename: {old_path!r} not found in {torrent_hash}")
            return False
        await self._request(
            "core.rename_files", [torrent_hash, [[to_int(found.get("index")), new_path]]]
        )
        return True

    @staticmethod
    def _status(state: str, is_finished: bool):
        state = (state or "").lower()
        return resolve_status(
            is_error=state == "error",
            is_checking=state in ("checking", "allocating", "moving"),
            is_stopped=state == "paused",
            is_active=state in ("downloading", "seeding", "queued"),
            is_finished=is_finished,
        )

    def normalize_torrents(self, torrents: List[dict]) -> List[Torrent]:
        result = []
        for t in torrents:
            state = to_str(t.get("state"))
            is_finished = bool(t.get("is_finished"))
            name = to_str(t.get("name"))
            result.append(Torrent(
                added_at=to_int(t.get("time_added")),
                completed_at=positive_or_zero(t.get("completed_time")),
                ratio=format_ratio(t.get("ratio")),
                seeding_time=to_int(t.get("seeding_time")),
                downloading_time=max(
                    0, to_int(t.get("time_since_download")) - to_int(t.get("time_since_upload"))
                ),
                size=to_int(t.get("total_wanted")),
                total_size=to_int(t.get("total_size")),
                uploaded=to_int(t.get("total_uploaded")),
                upload_rate=to_int(t.get("upload_payload_rate")),
                upload_limit_kbps=limit_kbps(t.get("max_upload_speed")),
                downloaded=to_int(t.get("all_time_download")),
                download_rate=to_int(t.get("download_payload_rate")),
                download_limit_kbps=limit_kbps(t.get("max_download_speed")),
                save_path=save_path(t.get("save_path"), name),
                position=to_int(t.get("queue")),
                error=state.lower() == "error",
                message=to_str(t.get("message")) or state,
                file_count=to_int(t.get("num_files")),
                hash=to_str(t.get("hash")),
                is_finished=is_finished,
                is_private=bool(t.get("private")),
                peers=clamp_peers(t.get("num_seeds"), t.get("num_peers")),
                name=name,
                percent_done=clamp_percent(t.get("progress")),
                piece_count=to_int(t.get("num_pieces")),
                piece_size=to_int(t.get("piece_length")),
                status=self._status(state, is_finished),
            ))
        return result

    def normalize_torrent_files(self, files: List[dict]) -> List[TorrentFile]:
        return [
            TorrentFile(
                path=to_forward_slashes(f.get("path")),
                size=to_int(f.get("size")),
                progress=fraction_to_percent(f.get("progress")),
            )
            for f in files
        ]

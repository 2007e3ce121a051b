"""
Transmission adapter.
JSON-RPC with HTTP basic auth and the rotating X-Transmission-Session-Id header.
"""

import logging
from typing import Any, List, Optional

from ..exceptions import (
    BackendAuthenticationError,
    BackendResponseError,
    SessionExpiredError,
)
from ..models import Torrent, TorrentFile
from ..normalize import (
    file_progress,
    fraction_to_percent,
    limit_kbps,
    positive_or_zero,
    resolve_status,
    save_path,
    to_float,
    to_int,
    to_str,
)
from ..utils import basename, format_ratio, hashes_to_list, to_forward_slashes
from .base import BackendAdapter, VersionInfo

logger = logging.getLogger(__name__)

SESSION_ID_HEADER = "X-Transmission-Session-Id"

# torrent-get status codes
STATUS_STOPPED = 0
STATUS_CHECK_WAIT = 1
STATUS_CHECK = 2
STATUS_ACTIVE = (3, 4, 5, 6)

TRANSMISSION_TORRENT_FIELDS = [
    "addedDate",
    "doneDate",
    "downloadDir",
    "downloadedEver",
    "downloadLimit",
    "downloadLimited",
    "error",
    "errorString",
    "file-count",
    "hashString",
    "isFinished",
    "isPrivate",
    "leftUntilDone",
    "magnetLink",
    "name",
    "peersConnected",
    "percentDone",
    "pieceCount",
    "pieceSize",
    "primary-mime-type",
    "queuePosition",
    "rateDownload",
    "rateUpload",
    "recheckProgress",
    "secondsDownloading",
    "secondsSeeding",
    "sizeWhenDone",
    "status",
    "totalSize",
    "uploadedEver",
    "uploadLimit",
    "uploadLimited",
    "uploadRatio",
]

# session-get fields that session-set refuses
NON_MUTABLE_SESSION_FIELDS = [
    "blocklist-size",
    "config-dir",
    "rpc-version-minimum",
    "rpc-version-semver",
    "rpc-version",
    "session-id",
    "units",
    "version",
]

MUTABLE_SESSION_FIELDS = [
    "alt-speed-down",
    "alt-speed-enabled",
    "alt-speed-time-begin",
    "alt-speed-time-day",
    "alt-speed-time-enabled",
    "alt-speed-time-end",
    "alt-speed-up",
    "blocklist-enabled",
    "blocklist-url",
    "cache-size-mb",
    "default-trackers",
    "dht-enabled",
    "download-dir",
    "download-queue-enabled",
    "download-queue-size",
    "encryption",
    "idle-seeding-limit-enabled",
    "idle-seeding-limit",
    "incomplete-dir-enabled",
    "incomplete-dir",
    "lpd-enabled",
    "peer-limit-global",
    "peer-limit-per-torrent",
    "peer-port-random-on-start",
    "peer-port",
    "pex-enabled",
    "port-forwarding-enabled",
    "queue-stalled-enabled",
    "queue-stalled-minutes",
    "rename-partial-files",
    "script-torrent-added-enabled",
    "script-torrent-added-filename",
    "script-torrent-done-enabled",
    "script-torrent-done-filename",
    "seed-queue-enabled",
    "seed-queue-size",
    "seedRatioLimit",
    "seedRatioLimited",
    "speed-limit-down-enabled",
    "speed-limit-down",
    "speed-limit-up-enabled",
    "speed-limit-up",
    "start-added-torrents",
    "trash-original-torrent-files",
    "utp-enabled",
]


class TransmissionAdapter(BackendAdapter):
    """Transmission RPC adapter."""

    default_api_path = "/transmission/rpc"

    async def _post(self, method: str, arguments: dict):
        headers = {
            SESSION_ID_HEADER: self.session.token or "",
            "Content-Type": "application/json",
        }
        return await self.transport.request(
            "POST",
            self.url,
            json_body={"method": method, "arguments": arguments},
            headers=headers,
            auth=self.config.basic_auth,
        )

    async def login(self) -> bool:
        """
        Obtain a session id.

        Transmission answers the first request of a session with 409 and the
        id to use; a 401 means the basic-auth credentials are wrong.
        """
        response = await self._post("session-get", {"fields": ["version"]})
        if response.status == 401:
            logger.error("Transmission rejected the basic-auth credentials")
            raise BackendAuthenticationError(
                "Transmission rejected the credentials", f"HTTP {response.status}"
            )
        session_id = response.header(SESSION_ID_HEADER)
        if response.status == 409 and not session_id:
            raise BackendAuthenticationError(
                "Transmission did not provide a session id", f"HTTP {response.status}"
            )
        if response.status != 409 and not response.ok:
            raise BackendResponseError(
                f"Transmission handshake failed with HTTP {response.status}",
                response.text[:200],
                status=response.status,
            )
        self.session.establish(token=session_id or "")
        logger.debug(f"Transmission session id acquired at {self.config.base_url}")
        return True

    async def _request(self, method: str, arguments: Optional[dict] = None) -> dict:
        """Call an RPC method and return the whole response body."""
        arguments = arguments or {}

        async def send():
            response = await self._post(method, arguments)
            if response.status == 409:
                raise SessionExpiredError(
                    "Transmission session id expired",
                    method,
                    token=response.header(SESSION_ID_HEADER),
                )
            if response.status == 401:
                raise BackendAuthenticationError(
                    "Transmission rejected the credentials", f"HTTP {response.status}"
                )
            if not response.ok:
                raise BackendResponseError(
                    f"Transmission {method} failed with HTTP {response.status}",
                    response.text[:200],
                    status=response.status,
                )
            data = response.json()
            if not isinstance(data, dict):
                raise BackendResponseError(f"Transmission {method} returned an unexpected body")
            result = data.get("result", "success")
            if result != "success":
                raise BackendResponseError(f"Transmission {method} failed", to_str(result))
            return data

        return await self._with_session(send)

    def _handle_session_rejected(self, error: SessionExpiredError) -> None:
        """Adopt the replacement session id sent with the 409."""
        if error.token:
            self.session.establish(token=error.token)
        else:
            self.session.invalidate()

    async def _arguments(self, method: str, arguments: Optional[dict] = None) -> Any:
        data = await self._request(method, arguments)
        result = data.get("arguments")
        if not isinstance(result, dict):
            raise BackendResponseError(f"Transmission {method} returned no arguments")
        return result

    async def _fetch_versions(self) -> VersionInfo:
        arguments = await self._arguments(
            "session-get",
            {"fields": ["version", "rpc-version", "rpc-version-minimum", "rpc-version-semver"]},
        )
        return VersionInfo(
            version=to_str(arguments.get("version")),
            api_version=to_str(arguments.get("rpc-version")),
        )

    async def get_preferences(self) -> dict:
        return await self._arguments(
            "session-get", {"fields": NON_MUTABLE_SESSION_FIELDS + MUTABLE_SESSION_FIELDS}
        )

    async def set_preferences(self, preferences: dict) -> bool:
        preferences = {
            k: v for k, v in (preferences or {}).items()
            if k not in NON_MUTABLE_SESSION_FIELDS
        }
        await self._request("session-set", preferences)
        return True

    async def get_torrents(self) -> List[dict]:
        arguments = await self._arguments("torrent-get", {"fields": TRANSMISSION_TORRENT_FIELDS})
        return arguments.get("torrents") or []

    async def get_torrent_files(self, torrent_hash: str) -> List[dict]:
        arguments = await self._arguments(
            "torrent-get", {"ids": hashes_to_list(torrent_hash), "fields": ["files"]}
        )
        torrents = arguments.get("torrents") or []
        if not torrents:
            return []
        return torrents[0].get("files") or []

    async def _start_stop(self, method: str, hashes) -> bool:
        hashes = hashes_to_list(hashes)
        arguments = {"ids": hashes} if hashes else {}
        await self._request(method, arguments)
        return True

    async def start_torrents(self, hashes) -> bool:
        return await self._start_stop("torrent-start", hashes)

    async def stop_torrents(self, hashes) -> bool:
        return await self._start_stop("torrent-stop", hashes)

    async def set_torrent_upload_speed(self, hashes: List[str], limit_kbps: int) -> bool:
        hashes = hashes_to_list(hashes)
        if not hashes:
            return False
        limited = limit_kbps > 0
        await self._request("torrent-set", {
            "ids": hashes,
            "uploadLimit": int(limit_kbps) if limited else 0,
            "uploadLimited": limited,
        })
        return True

    async def rename_file(
        self, torrent_hash: str, old_path: str, new_path: str, is_file: bool
    ) -> bool:
        # torrent-rename-path only takes the new last segment
        await self._request("torrent-rename-path", {
            "ids": hashes_to_list(torrent_hash),
            "path": old_path,
            "name": basename(new_path),
        })
        return True

    @staticmethod
    def _status(status: int, error: int, is_finished: bool):
        return resolve_status(
            is_error=error != 0,
            is_checking=status in (STATUS_CHECK_WAIT, STATUS_CHECK),
            is_stopped=status == STATUS_STOPPED,
            is_active=status in STATUS_ACTIVE,
            is_finished=is_finished,
        )

    def normalize_torrents(self, torrents: List[dict]) -> List[Torrent]:
        result = []
        for t in torrents:
            error = to_int(t.get("error"))
            is_finished = bool(t.get("isFinished")) or (
                t.get("leftUntilDone") == 0 and to_float(t.get("percentDone")) >= 1
            )
            name = to_str(t.get("name"))
            result.append(Torrent(
                added_at=to_int(t.get("addedDate")),
                completed_at=positive_or_zero(t.get("doneDate")),
                ratio=format_ratio(t.get("uploadRatio")),
                seeding_time=to_int(t.get("secondsSeeding")),
                downloading_time=to_int(t.get("secondsDownloading")),
                size=to_int(t.get("sizeWhenDone")),
                total_size=to_int(t.get("totalSize")),
                uploaded=to_int(t.get("uploadedEver")),
                upload_rate=to_int(t.get("rateUpload")),
                upload_limit_kbps=(
                    limit_kbps(t.get("uploadLimit")) if t.get("uploadLimited", True) else 0
                ),
                downloaded=to_int(t.get("downloadedEver")),
                download_rate=to_int(t.get("rateDownload")),
                download_limit_kbps=(
                    limit_kbps(t.get("downloadLimit")) if t.get("downloadLimited", True) else 0
                ),
                save_path=save_path(t.get("downloadDir"), name),
                position=to_int(t.get("queuePosition")),
                error=error > 0,
                message=to_str(t.get("errorString")),
                file_count=to_int(t.get("file-count")),
                hash=to_str(t.get("hashString")),
                is_finished=is_finished,
                is_private=bool(t.get("isPrivate")),
                magnet_link=to_str(t.get("magnetLink")),
                peers=max(0, to_int(t.get("peersConnected"))),
                name=name,
                percent_done=fraction_to_percent(t.get("percentDone")),
                piece_count=to_int(t.get("pieceCount")),
                piece_size=to_int(t.get("pieceSize")),
                mime_type=to_str(t.get("primary-mime-type")),
                recheck_progress=to_float(t.get("recheckProgress")),
                status=self._status(to_int(t.get("status"), -1), error, is_finished),
            ))
        return result

    def normalize_torrent_files(self, files: List[dict]) -> List[TorrentFile]:
        return [
            TorrentFile(
                path=to_forward_slashes(f.get("name")),
                size=to_int(f.get("length")),
                progress=file_progress(f.get("bytesCompleted"), f.get("length")),
            )
            for f in files
        ]

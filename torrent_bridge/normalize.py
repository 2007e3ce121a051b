"""
Normalization rules shared by every backend.

Each adapter translates its own vocabulary into a few booleans and numbers;
the functions here turn those into canonical Torrent/TorrentFile values.
"""

import math

from .models import TorrentStatus
from .utils import join_path


def resolve_status(
    *,
    is_error: bool = False,
    is_checking: bool = False,
    is_stopped: bool = False,
    is_active: bool = False,
    is_finished: bool = False,
) -> TorrentStatus:
    """
    Pick the single canonical status for a torrent.

    Precedence: error, checking, stopped, active. Active torrents seed when
    finished and download otherwise. A torrent matching none of the flags
    counts as stopped.
    """
    if is_error:
        return TorrentStatus.ERROR
    if is_checking:
        return TorrentStatus.CHECKING
    if is_stopped:
        return TorrentStatus.STOPPED
    if is_active:
        return TorrentStatus.SEEDING if is_finished else TorrentStatus.DOWNLOADING
    return TorrentStatus.STOPPED


def to_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_float(value, default: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return default if math.isnan(result) else result


def to_str(value) -> str:
    return "" if value is None else str(value)


def limit_kbps(value, unit_bytes: bool = False) -> int:
    """Convert a daemon speed limit to KB/s, mapping "unlimited" markers to 0."""
    limit = to_float(value)
    if unit_bytes:
        limit = limit / 1024
    limit = int(limit)
    return limit if limit >= 1 else 0


def clamp_peers(*counts) -> int:
    return max(0, sum(to_int(c) for c in counts))


def clamp_percent(value) -> int:
    """Truncate to an integer percentage in [0, 100]."""
    return min(100, max(0, int(to_float(value))))


def fraction_to_percent(fraction) -> int:
    return clamp_percent(math.floor(to_float(fraction) * 100 + 1e-9))


def file_progress(completed_bytes, size_bytes) -> int:
    """floor(completed / size * 100) clamped to [0, 100]; empty files count as done."""
    size = to_int(size_bytes)
    if size <= 0:
        return 100
    return clamp_percent(to_int(completed_bytes) * 100 // size)


def positive_or_zero(value) -> int:
    value = to_int(value)
    return value if value > 0 else 0


def save_path(directory, name="") -> str:
    """Forward-slash save path of a torrent's content."""
    return join_path(to_str(directory), to_str(name))

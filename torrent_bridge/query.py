"""
Query engine over normalized torrent lists.
Filtering, text search, sorting and pagination.
"""

import locale
from enum import Enum
from functools import cmp_to_key
from typing import Iterable, List, Optional, Tuple

from .exceptions import ValidationError
from .models import Torrent, TorrentFilter, TorrentStatus, resolve_field_name
from .utils import hashes_to_list

DEFAULT_SORT_FIELD = "position"


def filter_by_hashes(torrents: List[Torrent], hashes: Optional[Iterable[str]]) -> List[Torrent]:
    """Keep torrents whose hash or v2 hash is in `hashes` (case-insensitive)."""
    wanted = {h.lower() for h in hashes_to_list(hashes)}
    if not wanted:
        return list(torrents)
    return [
        t for t in torrents
        if (t.hash and t.hash.lower() in wanted)
        or (t.hash_v2 and t.hash_v2.lower() in wanted)
    ]


def search_torrents(torrents: List[Torrent], search_term: Optional[str]) -> List[Torrent]:
    """Keep torrents containing every whitespace-separated term in name or hashes."""
    terms = (search_term or "").lower().split()
    if not terms:
        return list(torrents)
    result = []
    for t in torrents:
        haystack = " ".join([t.name or "", t.hash or "", t.hash_v2 or ""]).lower()
        if all(term in haystack for term in terms):
            result.append(t)
    return result


def matches_filter(torrent: Torrent, torrent_filter: TorrentFilter) -> bool:
    status = torrent.status
    if torrent_filter == TorrentFilter.RUNNING:
        return status in (TorrentStatus.DOWNLOADING, TorrentStatus.SEEDING)
    if torrent_filter == TorrentFilter.COMPLETED:
        return torrent.is_finished
    if torrent_filter == TorrentFilter.INCOMPLETE:
        return not torrent.is_finished
    return status.value == torrent_filter.value


def filter_by_status(torrents: List[Torrent], torrent_filter=None) -> List[Torrent]:
    """Apply a TorrentFilter (or its string value); None keeps everything."""
    if not torrent_filter:
        return list(torrents)
    try:
        torrent_filter = TorrentFilter(torrent_filter)
    except ValueError as e:
        raise ValidationError("Unknown torrent filter", repr(torrent_filter)) from e
    return [t for t in torrents if matches_filter(t, torrent_filter)]


def resolve_sort_field(sort: Optional[str]) -> str:
    """Canonical sort field; unknown names fall back to position."""
    return resolve_field_name(sort) or DEFAULT_SORT_FIELD


def _compare_values(a, b) -> int:
    if isinstance(a, Enum):
        a = a.value
    if isinstance(b, Enum):
        b = b.value
    if isinstance(a, str) and isinstance(b, str):
        return locale.strcoll(a, b)
    try:
        if a < b:
            return -1
        if a > b:
            return 1
    except TypeError:
        return locale.strcoll(str(a), str(b))
    return 0


def sort_torrents(torrents: List[Torrent], sort: Optional[str] = None, reverse: bool = False) -> List[Torrent]:
    """
    Stable sort by a canonical field.

    reverse flips the comparator rather than the result, so equal elements
    keep their original relative order in both directions.
    """
    field_name = resolve_sort_field(sort)
    sign = -1 if reverse else 1

    def compare(t1: Torrent, t2: Torrent) -> int:
        return sign * _compare_values(getattr(t1, field_name), getattr(t2, field_name))

    return sorted(torrents, key=cmp_to_key(compare))


def paginate(
    items: List, per_page: Optional[int] = None, current_page: Optional[int] = None
) -> Tuple[List, Optional[int]]:
    """
    Slice one page.

    Returns:
        (page items, effective current page); without a valid per_page the
        items are returned whole and current_page is passed through
    """
    if not isinstance(per_page, int) or isinstance(per_page, bool) or per_page < 1:
        return list(items), current_page
    if not isinstance(current_page, int) or isinstance(current_page, bool) or current_page < 1:
        current_page = 1
    offset = (current_page - 1) * per_page
    return list(items[offset:offset + per_page]), current_page


def apply_query(
    torrents: List[Torrent],
    hashes=None,
    torrent_filter=None,
    sort: Optional[str] = None,
    reverse: bool = False,
    search_term: Optional[str] = None,
    per_page: Optional[int] = None,
    current_page: Optional[int] = None,
) -> dict:
    """
    Run the whole pipeline: hashes, search, status filter, sort, paginate.

    Returns:
        dict with torrents, total (before pagination), sort, current_page
    """
    result = filter_by_hashes(torrents, hashes)
    result = search_torrents(result, search_term)
    result = filter_by_status(result, torrent_filter)
    sort_field = resolve_sort_field(sort)
    result = sort_torrents(result, sort_field, reverse)
    total = len(result)
    page, current_page = paginate(result, per_page, current_page)
    return {
        "torrents": page,
        "total": total,
        "sort": sort_field,
        "current_page": current_page,
    }

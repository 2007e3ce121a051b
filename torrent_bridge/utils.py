"""
Small string, path and version helpers shared by the adapters and the bridge.
"""

import re
import time
from typing import Iterable, Iterator, List, Optional, Sequence, TypeVar, Union
from urllib.parse import urlsplit

T = TypeVar("T")

_NATURAL_CHUNK = re.compile(r"(\d+)")
_VERSION_NUMBER = re.compile(r"[\d.]+")
_FORBIDDEN_FILENAME_CHARS = '<>:"/\\|?*'


def unix_timestamp() -> int:
    """Current unix time in whole seconds."""
    return int(time.time())


def _natural_key(value: str) -> List[tuple]:
    return [
        (0, int(chunk), "") if chunk.isdigit() else (1, 0, chunk)
        for chunk in _NATURAL_CHUNK.split(value)
        if chunk != ""
    ]


def version_compare(a, b) -> int:
    """
    Compare two version strings naturally ("2.8.3" < "2.11").

    A version with a "-suffix" sorts before the same version without one
    ("4.0-rc1" < "4.0").

    Returns:
        -1, 0 or 1
    """
    a = str(a)
    b = str(b)
    if a.startswith(b + "-"):
        return -1
    if b.startswith(a + "-"):
        return 1
    key_a = _natural_key(a)
    key_b = _natural_key(b)
    if key_a == key_b:
        return 0
    return -1 if key_a < key_b else 1


def extract_version_number(version) -> str:
    """Pull the dotted numeric part out of a version banner ("v4.6.2" -> "4.6.2")."""
    match = _VERSION_NUMBER.search(str(version or ""))
    return match.group(0).strip(".") if match else "0"


def format_ratio(ratio) -> float:
    """Round a share ratio to 3 decimals; unparseable values become 0."""
    try:
        return round(float(ratio), 3)
    except (TypeError, ValueError):
        return 0.0


def hashes_to_list(hashes: Union[str, Iterable[str], None]) -> List[str]:
    """Accept "h1|h2", a list of hashes or None."""
    if not hashes:
        return []
    if isinstance(hashes, str):
        return [h for h in hashes.split("|") if h]
    return [h for h in hashes if isinstance(h, str) and h]


def hashes_to_string(hashes: Union[str, Iterable[str], None]) -> str:
    return "|".join(hashes_to_list(hashes))


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most `size` items."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


def sanitize_filename(value: str, replace_with: str = " ") -> str:
    """Replace characters that are invalid in file names on any OS."""
    parts = re.split("[" + re.escape(_FORBIDDEN_FILENAME_CHARS) + "]", value or "")
    result = replace_with.join(p for p in parts if p != "")
    return re.sub(r"\s\s+", " ", result).strip()


def ensure_url_protocol(url: str, protocol: str = "http://") -> str:
    if re.match(r"^https?://", url, re.IGNORECASE):
        return url
    return protocol + url.lstrip(".")


def is_valid_url(url) -> bool:
    if not isinstance(url, str) or not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def join_url_paths(base: str, *paths: str) -> str:
    """Join URL path segments with exactly one slash between them."""
    url = base.rstrip("/")
    for path in paths:
        if path:
            url = f"{url}/{path.strip('/')}"
    return url


# -------------------------------------------------------------------------
# Torrent-relative paths (always forward slashes)
# -------------------------------------------------------------------------

def to_forward_slashes(path: Optional[str]) -> str:
    return (path or "").replace("\\", "/")


def strip_path_separators(path: Optional[str]) -> str:
    """Normalize to forward slashes without leading or trailing separators."""
    return to_forward_slashes(path).strip("/")


def split_path(path: Optional[str]) -> List[str]:
    return [segment for segment in to_forward_slashes(path).split("/") if segment]


def path_depth(path: Optional[str]) -> int:
    return len(split_path(path))


def join_path(*segments: Optional[str]) -> str:
    """Join path segments with forward slashes, collapsing duplicates."""
    parts: List[str] = []
    for index, segment in enumerate(segments):
        segment = to_forward_slashes(segment)
        if not segment:
            continue
        if index == 0 and segment.startswith("/"):
            parts.append("")
        parts.extend(s for s in segment.split("/") if s)
    return "/".join(parts) or ""


def paths_equal(path_a: Optional[str], path_b: Optional[str]) -> bool:
    """Relative path equality, ignoring separator style and trailing separators."""
    if not path_a or not path_b:
        return False
    return split_path(path_a) == split_path(path_b)


def is_child_path(parent: Optional[str], child: Optional[str]) -> bool:
    """True if `child` lies strictly below the directory `parent`."""
    parent_parts = split_path(parent)
    child_parts = split_path(child)
    if not parent_parts or len(child_parts) <= len(parent_parts):
        return False
    return child_parts[:len(parent_parts)] == parent_parts


def basename(path: Optional[str]) -> str:
    parts = split_path(path)
    return parts[-1] if parts else ""

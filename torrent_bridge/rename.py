"""
Rename reconciliation.

Validates a rename request against a fresh file listing before asking the
daemon to do it, then returns the listing as it looks afterwards.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, Tuple, Union

from .backends.base import BackendAdapter
from .exceptions import ReconciliationError
from .models import FileListing, TorrentFile
from .utils import is_child_path, path_depth, paths_equal, split_path, strip_path_separators

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY_S = 0.5

FileLister = Callable[[str], Awaitable[FileListing]]


def validate_rename_paths(torrent_hash, old_path, new_path) -> Tuple[str, str]:
    """
    Normalize and check a rename request.

    Only one path segment may change, and both paths must be equally deep.

    Returns:
        (old_path, new_path) without leading or trailing separators

    Raises:
        ReconciliationError: if the request can never be applied
    """
    if not all(isinstance(v, str) and v.strip() for v in (torrent_hash, old_path, new_path)):
        raise ReconciliationError("Hash, old path and new path are required")
    old_path = strip_path_separators(old_path)
    new_path = strip_path_separators(new_path)
    if not old_path or not new_path:
        raise ReconciliationError("Paths must name something inside the torrent", old_path, new_path)
    if path_depth(old_path) != path_depth(new_path):
        raise ReconciliationError("Old and new paths differ in depth", old_path, new_path)
    differing = sum(1 for a, b in zip(split_path(old_path), split_path(new_path)) if a != b)
    if differing > 1:
        raise ReconciliationError("Only one path segment may change", old_path, new_path)
    return old_path, new_path


def find_rename_target(files: Iterable[TorrentFile], old_path: str) -> Optional[TorrentFile]:
    """First file that is old_path itself or lies under it."""
    for f in files:
        if paths_equal(f.path, old_path) or is_child_path(old_path, f.path):
            return f
    return None


class RenameReconciler:
    """Apply renames through an adapter using fresh file listings."""

    def __init__(
        self,
        adapter: BackendAdapter,
        list_files: FileLister,
        settle_delay_s: float = DEFAULT_SETTLE_DELAY_S,
    ):
        self.adapter = adapter
        self.list_files = list_files
        self.settle_delay_s = settle_delay_s

    async def reconcile(self, torrent_hash, old_path, new_path) -> Union[FileListing, bool]:
        """
        Rename a file or folder.

        Returns:
            The fresh FileListing, or False if the request was rejected or the
            daemon cannot rename
        """
        try:
            old_path, new_path = validate_rename_paths(torrent_hash, old_path, new_path)
        except ReconciliationError as e:
            logger.info(f"Rename rejected: {e}")
            return False

        listing = await self.list_files(torrent_hash)
        found = find_rename_target(listing.files, old_path)
        if found is None:
            logger.info(f"Rename rejected: {old_path!r} not found in {torrent_hash}")
            return False
        is_file = paths_equal(found.path, old_path)

        renamed = await self.adapter.rename_file(torrent_hash, old_path, new_path, is_file)
        if renamed is False:
            logger.info(f"{type(self.adapter).__name__} did not rename {old_path!r}")
            return False
        logger.info(f"Renamed {'file' if is_file else 'folder'} {old_path!r} -> {new_path!r}")

        # Daemons apply renames asynchronously
        await asyncio.sleep(self.settle_delay_s)
        return await self.list_files(torrent_hash)

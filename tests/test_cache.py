"""
Tests for the two-tier cache (torrent_bridge/cache.py)
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock

from torrent_bridge.cache import (
    CacheState,
    DiskCache,
    IdleTimer,
    decode_files,
    decode_torrents,
    encode_files,
    encode_torrents,
)
from torrent_bridge.exceptions import CacheError
from torrent_bridge.models import CACHE_SCHEMA_VERSION, TORRENT_FIELDS, FileListing


# ============================================================================
# Codec Tests
# ============================================================================

class TestCodec:
    """Tests for the positional disk encoding."""

    def test_torrents_round_trip(self, sample_torrents):
        """Test every field survives encoding."""
        payload = json.loads(json.dumps(encode_torrents(sample_torrents, 1700000000)))
        torrents, timestamp_s = decode_torrents(payload)
        assert torrents == sample_torrents
        assert timestamp_s == 1700000000

    def test_rows_follow_field_order(self, make_torrent):
        """Test rows are positional in TORRENT_FIELDS order."""
        payload = encode_torrents([make_torrent(name="X")], 1)
        assert payload["version"] == CACHE_SCHEMA_VERSION
        row = payload["torrents"][0]
        assert len(row) == len(TORRENT_FIELDS)
        assert row[TORRENT_FIELDS.index("name")] == "X"
        assert row[TORRENT_FIELDS.index("status")] == "seeding"

    @pytest.mark.parametrize("payload", [
        [],
        {"version": CACHE_SCHEMA_VERSION + 1, "timestamp_s": 1, "torrents": []},
        {"version": CACHE_SCHEMA_VERSION, "timestamp_s": "yesterday", "torrents": []},
        {"version": CACHE_SCHEMA_VERSION, "timestamp_s": 1, "torrents": {}},
        {"version": CACHE_SCHEMA_VERSION, "timestamp_s": 1, "torrents": [["short"]]},
    ])
    def test_malformed_torrent_snapshots(self, payload):
        """Test malformed snapshots raise CacheError."""
        with pytest.raises(CacheError):
            decode_torrents(payload)

    def test_unknown_status(self, make_torrent):
        """Test an unknown status value raises CacheError."""
        payload = encode_torrents([make_torrent()], 1)
        payload["torrents"][0][TORRENT_FIELDS.index("status")] = "paused"
        with pytest.raises(CacheError):
            decode_torrents(payload)

    @pytest.mark.parametrize("field_name,value", [
        ("peers", "many"),
        ("name", 42),
        ("is_finished", "yes"),
        ("size", 1.5),
        ("uploaded", True),
        ("ratio", None),
    ])
    def test_wrong_value_types(self, make_torrent, field_name, value):
        """Test values of the wrong type raise CacheError."""
        payload = encode_torrents([make_torrent()], 1)
        payload["torrents"][0][TORRENT_FIELDS.index(field_name)] = value
        with pytest.raises(CacheError):
            decode_torrents(payload)

    def test_integer_ratio_accepted(self, make_torrent):
        """Test whole-number floats written as integers decode as floats."""
        payload = encode_torrents([make_torrent()], 1)
        payload["torrents"][0][TORRENT_FIELDS.index("ratio")] = 2
        torrents, _ = decode_torrents(payload)
        assert torrents[0].ratio == 2.0
        assert isinstance(torrents[0].ratio, float)

    @pytest.mark.parametrize("row", [
        [None, 10, 100],
        ["a/b.mkv", "10", 100],
        ["a/b.mkv", 10, False],
    ])
    def test_wrong_file_value_types(self, row):
        """Test file rows with values of the wrong type raise CacheError."""
        payload = encode_files(FileListing(hash="h1", files=[], timestamp_s=5))
        payload["files"] = [row]
        with pytest.raises(CacheError):
            decode_files(payload, "h1")

    def test_files_round_trip(self, sample_files):
        """Test file listings survive encoding."""
        listing = FileListing(hash="h1", files=sample_files, timestamp_s=5)
        decoded = decode_files(json.loads(json.dumps(encode_files(listing))), "h1")
        assert decoded == listing

    def test_files_of_other_torrent(self, sample_files):
        """Test a snapshot for another hash is rejected."""
        payload = encode_files(FileListing(hash="h1", files=sample_files, timestamp_s=5))
        with pytest.raises(CacheError):
            decode_files(payload, "h2")


# ============================================================================
# Disk Tier Tests
# ============================================================================

class TestDiskCache:
    """Tests for DiskCache."""

    @pytest.mark.asyncio
    async def test_save_and_load_torrents(self, tmp_path, sample_torrents):
        """Test a saved list can be loaded back."""
        disk = DiskCache(tmp_path)
        path = tmp_path / "nested" / "list.json"

        assert await disk.save_torrents(path, sample_torrents, 42) is True
        assert not path.with_name("list.json.tmp").exists()
        assert await disk.load_torrents(path) == (sample_torrents, 42)

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        """Test a missing snapshot loads as None."""
        assert await DiskCache(tmp_path).load_torrents(tmp_path / "none.json") is None

    @pytest.mark.asyncio
    async def test_corrupt_file_is_ignored(self, tmp_path, caplog):
        """Test invalid JSON is logged and ignored."""
        path = tmp_path / "list.json"
        path.write_text("{not json")

        assert await DiskCache(tmp_path).load_torrents(path) is None
        assert "Could not read cache file" in caplog.text

    @pytest.mark.asyncio
    async def test_wrong_schema_is_ignored(self, tmp_path):
        """Test snapshots from another schema version are ignored."""
        path = tmp_path / "list.json"
        path.write_text(json.dumps({"version": 0, "timestamp_s": 1, "torrents": []}))

        assert await DiskCache(tmp_path).load_torrents(path) is None

    @pytest.mark.asyncio
    async def test_write_failure_returns_false(self, tmp_path, sample_torrents):
        """Test write failures are reported, not raised."""
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        disk = DiskCache(tmp_path)

        assert await disk.save_torrents(blocker / "list.json", sample_torrents, 1) is False

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        """Test deleting existing and missing files."""
        path = tmp_path / "list.json"
        path.write_text("{}")
        disk = DiskCache(tmp_path)

        assert await disk.delete(path) is True
        assert not path.exists()
        assert await disk.delete(path) is True

    @pytest.mark.asyncio
    async def test_files(self, tmp_path, sample_files):
        """Test file listings save and load by hash."""
        disk = DiskCache(tmp_path)
        path = tmp_path / "h1-qbittorrent.json"
        listing = FileListing(hash="h1", files=sample_files, timestamp_s=9)

        assert await disk.save_files(path, listing) is True
        assert await disk.load_files(path, "h1") == listing
        assert await disk.load_files(path, "h2") is None


# ============================================================================
# Memory Tier Tests
# ============================================================================

class TestCacheState:
    """Tests for CacheState transitions."""

    def test_store_live_marks_for_save(self, sample_torrents):
        """Test live lists are marked for persisting."""
        state = CacheState()
        state.store_torrents(sample_torrents, 10, live=True)
        assert state.has_torrents
        assert state.save_to_disk is True

    def test_store_restored_not_marked(self, sample_torrents):
        """Test restored lists are not written back."""
        state = CacheState()
        state.store_torrents(sample_torrents, 10, live=False)
        assert state.save_to_disk is False

    def test_empty_list_counts_as_cached(self):
        """Test an empty list is still a cached list."""
        state = CacheState()
        state.store_torrents([], 10, live=False)
        assert state.has_torrents

    def test_files_track_recency(self):
        """Test re-storing a listing moves it to the end."""
        state = CacheState()
        for h in ("a", "b", "c"):
            state.store_files(FileListing(hash=h), live=True)
        state.store_files(FileListing(hash="a"), live=True)
        assert list(state.files) == ["b", "c", "a"]
        assert state.pending_file_saves == ["a", "b", "c"]

    def test_eviction_candidates(self):
        """Test only the most recent listings are kept past the limit."""
        state = CacheState()
        for i in range(11):
            state.store_files(FileListing(hash=f"h{i}"), live=False)
        assert state.eviction_candidates(limit=11, keep=5) == []
        assert state.eviction_candidates(limit=10, keep=5) == [f"h{i}" for i in range(6)]

    def test_evict_drops_pending(self):
        """Test evicted hashes leave the pending list."""
        state = CacheState()
        state.store_files(FileListing(hash="a"), live=True)
        state.store_files(FileListing(hash="b"), live=True)
        state.evict(["a"])
        assert list(state.files) == ["b"]
        assert state.pending_file_saves == ["b"]

    def test_teardown(self, sample_torrents):
        """Test teardown drops everything."""
        state = CacheState()
        state.store_torrents(sample_torrents, 10, live=True)
        state.store_files(FileListing(hash="a"), live=True)
        state.teardown()
        assert not state.has_torrents
        assert state.save_to_disk is False
        assert state.files == {}
        assert state.pending_file_saves == []


# ============================================================================
# Idle Timer Tests
# ============================================================================

class TestIdleTimer:
    """Tests for IdleTimer."""

    @pytest.mark.asyncio
    async def test_fires_after_timeout(self):
        """Test the callback runs once the timeout passes."""
        callback = AsyncMock()
        timer = IdleTimer(0.01, callback)
        timer.rearm()
        assert timer.armed

        await asyncio.sleep(0.05)
        await timer.wait()
        callback.assert_awaited_once()
        assert not timer.armed

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test a cancelled timer never fires."""
        callback = AsyncMock()
        timer = IdleTimer(0.01, callback)
        timer.rearm()
        timer.cancel()

        await asyncio.sleep(0.05)
        callback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rearm_restarts_countdown(self):
        """Test rearming replaces the pending callback."""
        callback = AsyncMock()
        timer = IdleTimer(0.2, callback)
        timer.rearm()
        await asyncio.sleep(0.12)
        timer.rearm()
        await asyncio.sleep(0.12)
        callback.assert_not_awaited()
        timer.cancel()

    @pytest.mark.asyncio
    async def test_callback_errors_are_logged(self, caplog):
        """Test a failing callback does not escape the event loop."""
        timer = IdleTimer(0.01, AsyncMock(side_effect=RuntimeError("disk gone")))
        timer.rearm()

        await asyncio.sleep(0.05)
        await timer.wait()
        assert "Idle cache clear failed" in caplog.text

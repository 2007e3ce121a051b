"""
Tests for the TorrentBridge orchestrator (torrent_bridge/bridge.py)
"""

import asyncio
import io
import json
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock

from torrent_bridge.backends.base import BackendAdapter
from torrent_bridge.bridge import TorrentBridge
from torrent_bridge.cache import encode_torrents
from torrent_bridge.config import BridgeSettings
from torrent_bridge.exceptions import (
    BackendAuthenticationError,
    BackendConnectionError,
    BackendResponseError,
    ConfigurationError,
    InvalidHashError,
    ValidationError,
)
from torrent_bridge.logging_config import ContextFilter, JSONFormatter
from torrent_bridge.models import TORRENT_FIELDS, ClientType, FileListing, TorrentFilter, TorrentPage


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_adapter(sample_torrents, sample_files):
    """Create a mock adapter whose raw records are already canonical."""
    adapter = MagicMock(spec=BackendAdapter)
    adapter.get_torrents = AsyncMock(return_value=sample_torrents)
    adapter.normalize_torrents = MagicMock(side_effect=lambda torrents: list(torrents))
    adapter.get_torrent_files = AsyncMock(return_value=sample_files)
    adapter.normalize_torrent_files = MagicMock(side_effect=lambda files: list(files))
    adapter.get_app_version = AsyncMock(return_value="v4.6.2")
    adapter.get_api_version = AsyncMock(return_value="2.9.3")
    adapter.get_preferences = AsyncMock(return_value={"up_limit": 0, "dht": True})
    adapter.set_preferences = AsyncMock(return_value=True)
    adapter.start_torrents = AsyncMock(return_value=True)
    adapter.stop_torrents = AsyncMock(return_value=True)
    adapter.set_torrent_upload_speed = AsyncMock(return_value=True)
    adapter.rename_file = AsyncMock(return_value=True)
    adapter.close = AsyncMock()
    return adapter


@pytest.fixture
def make_bridge(tmp_path, fake_adapter):
    """Create a factory for bridges backed by the fake adapter."""
    bridges = []

    def _create(adapter=None, client_type="qbittorrent", **kwargs):
        kwargs.setdefault("rename_settle_delay_s", 0)
        bridge = TorrentBridge(client_type, "localhost:8080", tmp_path, **kwargs)
        bridge._adapter = adapter or fake_adapter
        bridges.append(bridge)
        return bridge

    yield _create
    for bridge in bridges:
        bridge.clear_timers()


@pytest.fixture
def bridge(make_bridge):
    return make_bridge()


# ============================================================================
# Construction Tests
# ============================================================================

class TestConstruction:
    """Test constructor validation."""

    def test_valid(self, tmp_path):
        """Test a valid configuration."""
        bridge = TorrentBridge("qbittorrent", "localhost:8080", tmp_path)
        assert bridge.client_type == ClientType.QBITTORRENT
        assert bridge.host == "localhost:8080"
        assert bridge._list_path == tmp_path / "localhost-8080-qbittorrent.json"

    @pytest.mark.parametrize("kwargs", [
        {"client_type": "vuze"},
        {"base_url": ""},
        {"cache_dir": "relative/cache"},
        {"cache_dir": None},
        {"timeout_s": 0.5},
        {"mem_cache_timeout_s": 0},
        {"mem_cache_timeout_s": "60"},
        {"file_cache_limit": 0},
        {"file_cache_keep": 0},
        {"file_cache_limit": 3, "file_cache_keep": 4},
        {"rename_settle_delay_s": -1},
    ])
    def test_invalid(self, tmp_path, kwargs):
        """Test invalid settings raise ConfigurationError."""
        args = {
            "client_type": "qbittorrent",
            "base_url": "http://localhost:8080",
            "cache_dir": tmp_path,
        }
        args.update(kwargs)
        with pytest.raises(ConfigurationError):
            TorrentBridge(
                args.pop("client_type"), args.pop("base_url"), args.pop("cache_dir"), **args
            )

    def test_from_settings(self, tmp_path):
        """Test a bridge can be built from BridgeSettings."""
        settings = BridgeSettings(
            client_type="transmission",
            base_url="http://nas:9091",
            cache_dir=str(tmp_path),
            file_cache_limit=4,
            file_cache_keep=2,
        )
        bridge = TorrentBridge.from_settings(settings)
        assert bridge.client_type == ClientType.TRANSMISSION
        assert bridge.host == "nas:9091"
        assert bridge.file_cache_limit == 4
        assert bridge._adapter.url == "http://nas:9091/transmission/rpc"


# ============================================================================
# Torrent List Tests
# ============================================================================

class TestGetTorrents:
    """Test listing and caching torrents."""

    @pytest.mark.asyncio
    async def test_page(self, bridge):
        """Test the page echoes the query."""
        page = await bridge.get_torrents(hashes="1" * 40 + "|" + "2" * 40, filter="running")

        assert isinstance(page, TorrentPage)
        assert page.total == 2
        assert page.filter == TorrentFilter.RUNNING
        assert page.sort == "position"
        assert page.hashes == ["1" * 40, "2" * 40]
        assert page.timestamp_s > 0
        assert [t.position for t in page.torrents] == [1, 3]

    @pytest.mark.asyncio
    async def test_memory_hit(self, bridge, fake_adapter):
        """Test repeated reads are served from memory."""
        await bridge.get_torrents()
        await bridge.get_torrents(sort="ratio")
        fake_adapter.get_torrents.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fresh_forces_fetch(self, bridge, fake_adapter):
        """Test fresh=True always asks the daemon."""
        await bridge.get_torrents()
        page = await bridge.get_torrents(fresh=True)
        assert fake_adapter.get_torrents.await_count == 2
        assert page.fresh is True

    @pytest.mark.asyncio
    async def test_pagination(self, bridge):
        """Test paging reports the effective page."""
        page = await bridge.get_torrents(per_page=2, current_page=0)
        assert page.current_page == 1
        assert page.total == 5
        assert len(page.torrents) == 2

    @pytest.mark.asyncio
    async def test_unknown_filter(self, bridge, fake_adapter):
        """Test unknown filters are rejected before any fetch."""
        with pytest.raises(ValidationError):
            await bridge.get_torrents(filter="paused")
        fake_adapter.get_torrents.assert_not_called()

    @pytest.mark.asyncio
    async def test_transport_error_gives_empty_list(self, bridge, fake_adapter):
        """Test an unreachable daemon yields an empty list."""
        fake_adapter.get_torrents.side_effect = BackendConnectionError("refused")

        page = await bridge.get_torrents()
        assert page.torrents == []
        assert page.total == 0

    @pytest.mark.asyncio
    async def test_transport_error_keeps_cache(self, bridge, fake_adapter, sample_torrents):
        """Test a failed refresh keeps the previous list."""
        await bridge.get_torrents()
        fake_adapter.get_torrents.side_effect = BackendResponseError("HTTP 500")

        page = await bridge.get_torrents(fresh=True)
        assert page.total == len(sample_torrents)

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self, bridge, fake_adapter):
        """Test authentication errors are never swallowed."""
        fake_adapter.get_torrents.side_effect = BackendAuthenticationError("rejected")

        with pytest.raises(BackendAuthenticationError):
            await bridge.get_torrents()

    @pytest.mark.asyncio
    async def test_raw(self, bridge, fake_adapter):
        """Test raw mode skips normalization and caching."""
        fake_adapter.get_torrents.return_value = [{"hash": "a"}, {"hash": "b"}, {"hash": "c"}]

        page = await bridge.get_torrents(raw=True, per_page=2, current_page=2)
        assert page.torrents == [{"hash": "c"}]
        assert page.current_page == 2
        assert page.per_page == 2
        fake_adapter.normalize_torrents.assert_not_called()
        assert not bridge._cache.has_torrents

    @pytest.mark.asyncio
    async def test_raw_transport_error(self, bridge, fake_adapter):
        """Test raw mode returns an empty list when the daemon fails."""
        fake_adapter.get_torrents.side_effect = BackendConnectionError("refused")

        page = await bridge.get_torrents(raw=True)
        assert page.torrents == []


# ============================================================================
# Disk Tier Tests
# ============================================================================

class TestDiskSnapshots:
    """Test persisting and restoring the memory tier."""

    @pytest.mark.asyncio
    async def test_clear_persists_live_list(self, bridge, sample_torrents):
        """Test clearing memory writes the live list to disk."""
        page = await bridge.get_torrents()
        await bridge._clear_mem_cache()

        assert not bridge._cache.has_torrents
        payload = json.loads(bridge._list_path.read_text())
        assert len(payload["torrents"]) == len(sample_torrents)
        assert payload["timestamp_s"] == page.timestamp_s

    @pytest.mark.asyncio
    async def test_restore_without_daemon(self, make_bridge, fake_adapter, sample_torrents):
        """Test a new bridge answers from the snapshot."""
        first = make_bridge()
        page = await first.get_torrents()
        await first.close()

        other_adapter = MagicMock(spec=BackendAdapter)
        other_adapter.get_torrents = AsyncMock()
        second = make_bridge(adapter=other_adapter)
        restored = await second.get_torrents()

        other_adapter.get_torrents.assert_not_called()
        assert restored.torrents == page.torrents
        assert restored.timestamp_s == page.timestamp_s

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_uses_daemon(self, bridge, fake_adapter, sample_torrents):
        """Test a snapshot with values of the wrong type is ignored."""
        payload = encode_torrents(sample_torrents, 1)
        payload["torrents"][0][TORRENT_FIELDS.index("peers")] = "many"
        bridge._list_path.parent.mkdir(parents=True, exist_ok=True)
        bridge._list_path.write_text(json.dumps(payload))

        page = await bridge.get_torrents()

        fake_adapter.get_torrents.assert_awaited_once()
        assert page.total == len(sample_torrents)

    @pytest.mark.asyncio
    async def test_restored_list_not_rewritten(self, bridge):
        """Test restored data is not marked for saving."""
        await bridge.get_torrents()
        await bridge._clear_mem_cache()
        await bridge.get_torrents()
        assert bridge._cache.save_to_disk is False

    @pytest.mark.asyncio
    async def test_live_fetch_deletes_snapshot(self, bridge):
        """Test a live fetch removes the stale snapshot."""
        await bridge.get_torrents()
        await bridge._clear_mem_cache()
        assert bridge._list_path.exists()

        await bridge.get_torrents(fresh=True)
        assert not bridge._list_path.exists()

    @pytest.mark.asyncio
    async def test_idle_timer_clears_memory(self, bridge):
        """Test the idle timer persists and drops the memory tier."""
        bridge._timer.timeout_s = 0.01
        await bridge.get_torrents()
        assert bridge._timer.armed

        await asyncio.sleep(0.05)
        await bridge._timer.wait()
        assert not bridge._cache.has_torrents
        assert bridge._list_path.exists()

    @pytest.mark.asyncio
    async def test_clear_timers(self, bridge):
        """Test clear_timers disarms the idle timer."""
        await bridge.get_torrents()
        bridge.clear_timers()
        assert not bridge._timer.armed


# ============================================================================
# File Listing Tests
# ============================================================================

class TestGetTorrentFiles:
    """Test file listings."""

    @pytest.mark.parametrize("torrent_hash", ["", "   ", None])
    @pytest.mark.asyncio
    async def test_invalid_hash(self, bridge, torrent_hash):
        """Test empty hashes raise InvalidHashError."""
        with pytest.raises(InvalidHashError):
            await bridge.get_torrent_files(torrent_hash)

    @pytest.mark.asyncio
    async def test_cached_per_hash(self, bridge, fake_adapter, sample_files):
        """Test listings are cached per hash."""
        listing = await bridge.get_torrent_files("h1")
        await bridge.get_torrent_files("h1")

        assert isinstance(listing, FileListing)
        assert listing.files == sample_files
        assert listing.count == 3
        fake_adapter.get_torrent_files.assert_awaited_once_with("h1")

    @pytest.mark.asyncio
    async def test_tree(self, bridge):
        """Test as_tree nests the files."""
        listing = await bridge.get_torrent_files("h1", as_tree=True)
        assert listing.files[0]["path"] == "Show"
        assert listing.count == 1

    @pytest.mark.asyncio
    async def test_raw(self, bridge, fake_adapter):
        """Test raw mode returns daemon records."""
        fake_adapter.get_torrent_files.return_value = [{"name": "x", "size": 1}]

        listing = await bridge.get_torrent_files("h1", raw=True)
        assert listing.files == [{"name": "x", "size": 1}]
        fake_adapter.normalize_torrent_files.assert_not_called()

    @pytest.mark.asyncio
    async def test_transport_error(self, bridge, fake_adapter):
        """Test an unreachable daemon yields an empty listing."""
        fake_adapter.get_torrent_files.side_effect = BackendConnectionError("refused")

        listing = await bridge.get_torrent_files("h1")
        assert listing.files == []

    @pytest.mark.asyncio
    async def test_warning_carries_context(self, bridge, fake_adapter):
        """Test JSON log lines carry every context field set by the bridge."""
        fake_adapter.get_torrent_files.side_effect = BackendConnectionError("refused")
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.addFilter(ContextFilter())
        handler.setFormatter(JSONFormatter())
        bridge_logger = logging.getLogger("torrent_bridge")
        bridge_logger.addHandler(handler)
        try:
            await bridge.get_torrent_files("h1")
        finally:
            bridge_logger.removeHandler(handler)

        lines = [json.loads(line) for line in stream.getvalue().splitlines() if line]
        entry = next(line for line in lines if line["message"].startswith("File listing unavailable"))
        for name in JSONFormatter.CONTEXT_FIELDS:
            assert name in entry
        assert entry["client_type"] == "qbittorrent"
        assert entry["host"] == "localhost:8080"
        assert entry["operation"] == "get_torrent_files"
        assert entry["torrent_hash"] == "h1"

    @pytest.mark.asyncio
    async def test_eviction_flushes_to_disk(self, make_bridge, fake_adapter, tmp_path):
        """Test evicted listings are saved and can be restored."""
        bridge = make_bridge(file_cache_limit=2, file_cache_keep=1)
        for h in ("h1", "h2", "h3"):
            await bridge.get_torrent_files(h)

        assert list(bridge._cache.files) == ["h3"]
        assert (tmp_path / "h1-qbittorrent.json").exists()
        assert (tmp_path / "h2-qbittorrent.json").exists()

        await bridge.get_torrent_files("h1")
        assert fake_adapter.get_torrent_files.await_count == 3


# ============================================================================
# Action Tests
# ============================================================================

class TestActions:
    """Test pass-through operations."""

    @pytest.mark.asyncio
    async def test_versions(self, bridge):
        assert await bridge.get_app_version() == "v4.6.2"
        assert await bridge.get_api_version() == "2.9.3"

    @pytest.mark.asyncio
    async def test_start_stop_accept_pipe_strings(self, bridge, fake_adapter):
        """Test hashes may be given as a pipe-joined string."""
        assert await bridge.start_torrents("a|b") is True
        assert await bridge.stop_torrents(None) is True
        fake_adapter.start_torrents.assert_awaited_once_with(["a", "b"])
        fake_adapter.stop_torrents.assert_awaited_once_with([])

    @pytest.mark.asyncio
    async def test_upload_speed_without_hashes(self, bridge, fake_adapter):
        """Test no hashes returns False without a request."""
        assert await bridge.set_torrent_upload_speed([], 100) is False
        fake_adapter.set_torrent_upload_speed.assert_not_called()

    @pytest.mark.parametrize("limit,expected", [(100, 100), (0.5, 0), (-3, 0), ("fast", 0)])
    @pytest.mark.asyncio
    async def test_upload_speed_limits(self, bridge, fake_adapter, limit, expected):
        """Test limits below 1 KB/s remove the limit."""
        await bridge.set_torrent_upload_speed(["a"], limit)
        fake_adapter.set_torrent_upload_speed.assert_awaited_once_with(["a"], expected)

    @pytest.mark.asyncio
    async def test_preference_keys(self, bridge):
        """Test only_keys returns preference names."""
        assert await bridge.get_preferences(only_keys=True) == ["up_limit", "dht"]
        assert await bridge.get_preferences() == {"up_limit": 0, "dht": True}

    @pytest.mark.asyncio
    async def test_utorrent_preference_keys(self, make_bridge, fake_adapter):
        """Test uTorrent setting rows reduce to their names."""
        fake_adapter.get_preferences.return_value = [["max_ul_rate", 0, "10"], ["dht", 1, "true"]]
        bridge = make_bridge(client_type="utorrent")
        assert await bridge.get_preferences(only_keys=True) == ["max_ul_rate", "dht"]

    @pytest.mark.asyncio
    async def test_set_preferences(self, bridge, fake_adapter):
        assert await bridge.set_preferences({"dht": False}) is True
        fake_adapter.set_preferences.assert_awaited_once_with({"dht": False})

    @pytest.mark.asyncio
    async def test_rename(self, bridge, fake_adapter):
        """Test rename returns a fresh listing."""
        result = await bridge.rename_file("h1", "Show/info.nfo", "Show/show.nfo")

        assert isinstance(result, FileListing)
        fake_adapter.rename_file.assert_awaited_once_with("h1", "Show/info.nfo", "Show/show.nfo", True)
        assert fake_adapter.get_torrent_files.await_count == 2

    @pytest.mark.asyncio
    async def test_rename_rejected(self, bridge, fake_adapter):
        """Test invalid renames return False without a daemon call."""
        assert await bridge.rename_file("h1", "Show/info.nfo", "info.nfo") is False
        fake_adapter.rename_file.assert_not_called()


# ============================================================================
# Lifecycle Tests
# ============================================================================

class TestLifecycle:
    """Test closing the bridge."""

    @pytest.mark.asyncio
    async def test_close_persists_and_closes(self, bridge, fake_adapter, tmp_path):
        """Test close flushes pending data and closes the adapter."""
        await bridge.get_torrents()
        await bridge.get_torrent_files("h1")
        await bridge.close()

        fake_adapter.close.assert_awaited_once()
        assert not bridge._timer.armed
        assert bridge._list_path.exists()
        assert (tmp_path / "h1-qbittorrent.json").exists()

    @pytest.mark.asyncio
    async def test_context_manager(self, make_bridge, fake_adapter):
        """Test async with closes the bridge."""
        async with make_bridge() as bridge:
            await bridge.get_torrents()
        fake_adapter.close.assert_awaited_once()

"""
Pytest configuration and shared fixtures.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from torrent_bridge.backends.base import BackendConfig
from torrent_bridge.logging_config import ContextFilter
from torrent_bridge.models import Torrent, TorrentFile, TorrentStatus
from torrent_bridge.transport import HttpTransport, TransportResponse


# ============================================================================
# Transport Fixtures
# ============================================================================

@pytest.fixture
def make_response():
    """Create a factory for TransportResponse objects."""
    def _create_response(status=200, text="", headers=None, set_cookies=None):
        return TransportResponse(
            status=status,
            text=text,
            headers=headers or {},
            set_cookies=set_cookies or [],
        )
    return _create_response


@pytest.fixture
def transport():
    """Create a mock transport; tests queue responses on transport.request."""
    mock = MagicMock(spec=HttpTransport)
    mock.request = AsyncMock()
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def backend_config():
    """Create adapter connection settings for tests."""
    return BackendConfig(
        base_url="http://localhost:8080",
        username="admin",
        password="secret",
    )


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def make_torrent():
    """Create a factory for canonical torrents."""
    def _create_torrent(**overrides):
        values = {
            "hash": "a" * 40,
            "name": "Ubuntu 24.04 Desktop",
            "size": 4_000_000_000,
            "total_size": 4_000_000_000,
            "status": TorrentStatus.SEEDING,
            "is_finished": True,
            "percent_done": 100,
            "ratio": 1.5,
        }
        values.update(overrides)
        return Torrent(**values)
    return _create_torrent


@pytest.fixture
def sample_torrents(make_torrent):
    """A small mixed list covering every status."""
    return [
        make_torrent(hash="1" * 40, name="Alpha Linux ISO", position=3, ratio=0.5,
                     status=TorrentStatus.DOWNLOADING, is_finished=False, percent_done=40),
        make_torrent(hash="2" * 40, name="Beta Movie 1080p", position=1, ratio=2.0,
                     status=TorrentStatus.SEEDING),
        make_torrent(hash="3" * 40, name="Gamma Album", position=2, ratio=0.0,
                     status=TorrentStatus.STOPPED, is_finished=False, percent_done=10),
        make_torrent(hash="4" * 40, name="Delta Linux Docs", position=5, ratio=1.0,
                     status=TorrentStatus.ERROR, is_finished=True, error=True),
        make_torrent(hash="5" * 40, name="Epsilon Show", position=4, ratio=0.1,
                     status=TorrentStatus.CHECKING, is_finished=False, percent_done=70),
    ]


@pytest.fixture
def sample_files():
    """A file listing with nested folders."""
    return [
        TorrentFile(path="Show/Season 1/E01.mkv", size=1000, progress=100),
        TorrentFile(path="Show/Season 1/E02.mkv", size=2000, progress=50),
        TorrentFile(path="Show/info.nfo", size=10, progress=100),
    ]


# ============================================================================
# Logging Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def clear_log_context():
    """Keep log context from leaking between tests."""
    ContextFilter.clear_context()
    yield
    ContextFilter.clear_context()

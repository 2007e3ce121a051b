"""
Settings for torrent-bridge, loaded from the environment or a .env file.
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


def default_cache_dir() -> str:
    return str(Path.home() / ".cache" / "torrent-bridge")


class BridgeSettings(BaseSettings):
    """Bridge settings loaded from TORRENT_BRIDGE_* environment variables."""

    # Daemon connection
    client_type: str = "qbittorrent"
    base_url: str = "http://localhost:8080"
    api_path: Optional[str] = None
    username: str = ""
    password: str = ""
    timeout_s: float = 5.0
    verify_ssl: bool = True

    # Cache settings
    cache_dir: str = default_cache_dir()
    mem_cache_timeout_s: float = 60.0
    file_cache_limit: int = 10
    file_cache_keep: int = 5
    rename_settle_delay_s: float = 0.5

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # "text" or "json"
    log_max_size_mb: int = 10
    log_backup_count: int = 5

    class Config:
        env_prefix = "TORRENT_BRIDGE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

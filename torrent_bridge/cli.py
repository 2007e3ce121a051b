"""
Command Line Interface for torrent-bridge
Query and control a torrent daemon through the normalized bridge API.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .bridge import TorrentBridge
from .config import BridgeSettings
from .exceptions import TorrentBridgeError
from .logging_config import setup_logging
from .models import ClientType, TorrentFilter

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    # Connection flags shared by every command
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--client", "-c", choices=[c.label for c in ClientType],
        help="Client type (or use TORRENT_BRIDGE_CLIENT_TYPE env var)"
    )
    common.add_argument(
        "--url", help="Daemon base URL (or use TORRENT_BRIDGE_BASE_URL env var)"
    )
    common.add_argument("--api-path", help="Override the daemon API path")
    common.add_argument("--username", "-u", help="Daemon username")
    common.add_argument("--password", "-p", help="Daemon password")
    common.add_argument("--cache-dir", help="Absolute directory for cache snapshots")
    common.add_argument("--timeout", type=float, help="Request timeout in seconds")
    common.add_argument(
        "--log-level", "-l", help="Log level (default: WARNING for CLI output)"
    )
    common.add_argument(
        "--log-format", choices=["text", "json"], help="Log format: text or json"
    )

    parser = argparse.ArgumentParser(
        prog="torrent-bridge",
        description="torrent-bridge - one API for qBittorrent, Deluge, Transmission, rTorrent and uTorrent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show daemon versions
  torrent-bridge version --client qbittorrent --url localhost:8080 -u admin -p secret

  # List seeding torrents by ratio, highest first
  torrent-bridge list --filter seeding --sort ratio --reverse

  # Show files of a torrent as a tree
  torrent-bridge files 0123abcd... --tree

  # Limit upload speed to 100 KB/s
  torrent-bridge limit 100 0123abcd... 4567ef01...

Environment Variables:
  TORRENT_BRIDGE_CLIENT_TYPE    - deluge, rtorrent, qbittorrent, utorrent, transmission
  TORRENT_BRIDGE_BASE_URL       - Daemon base URL
  TORRENT_BRIDGE_USERNAME       - Daemon username
  TORRENT_BRIDGE_PASSWORD       - Daemon password
  TORRENT_BRIDGE_CACHE_DIR      - Cache directory (default: ~/.cache/torrent-bridge)
  TORRENT_BRIDGE_LOG_LEVEL      - Logging level
  TORRENT_BRIDGE_LOG_FORMAT     - Log format: text or json
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("version", parents=[common], help="Show daemon and API versions")

    # List command
    list_parser = subparsers.add_parser("list", parents=[common], help="List torrents")
    list_parser.add_argument(
        "--filter", "-f", choices=[f.value for f in TorrentFilter], help="Status filter"
    )
    list_parser.add_argument("--sort", "-s", help="Field to sort by (default: position)")
    list_parser.add_argument("--reverse", "-r", action="store_true", help="Sort descending")
    list_parser.add_argument("--search", help="Search terms for name or hash")
    list_parser.add_argument("--hashes", help="Only these hashes, separated by |")
    list_parser.add_argument("--per-page", type=int, help="Page size")
    list_parser.add_argument("--page", type=int, help="Page number")
    list_parser.add_argument("--fresh", action="store_true", help="Bypass the cache")
    list_parser.add_argument("--raw", action="store_true", help="Print daemon records as JSON")

    # Files command
    files_parser = subparsers.add_parser("files", parents=[common], help="List files of a torrent")
    files_parser.add_argument("hash", help="Torrent hash")
    files_parser.add_argument("--tree", action="store_true", help="Show as a tree")
    files_parser.add_argument("--fresh", action="store_true", help="Bypass the cache")
    files_parser.add_argument("--raw", action="store_true", help="Print daemon records as JSON")

    # Start/stop commands
    start_parser = subparsers.add_parser("start", parents=[common], help="Start torrents")
    start_parser.add_argument("hashes", nargs="*", help="Torrent hashes (default: all)")
    stop_parser = subparsers.add_parser("stop", parents=[common], help="Stop torrents")
    stop_parser.add_argument("hashes", nargs="*", help="Torrent hashes (default: all)")

    # Limit command
    limit_parser = subparsers.add_parser("limit", parents=[common], help="Limit upload speed")
    limit_parser.add_argument("kbps", type=int, help="Limit in KB/s (0 removes the limit)")
    limit_parser.add_argument("hashes", nargs="+", help="Torrent hashes")

    # Rename command
    rename_parser = subparsers.add_parser("rename", parents=[common], help="Rename a file or folder")
    rename_parser.add_argument("hash", help="Torrent hash")
    rename_parser.add_argument("old_path", help="Current path inside the torrent")
    rename_parser.add_argument("new_path", help="New path inside the torrent")

    # Prefs command
    prefs_parser = subparsers.add_parser("prefs", parents=[common], help="Show daemon preferences")
    prefs_parser.add_argument("--keys", action="store_true", help="Only show preference names")

    return parser


def build_settings(args) -> BridgeSettings:
    """Load settings from the environment, letting command line flags win."""
    overrides = {
        "client_type": args.client,
        "base_url": args.url,
        "api_path": args.api_path,
        "username": args.username,
        "password": args.password,
        "cache_dir": args.cache_dir,
        "timeout_s": args.timeout,
        "log_level": args.log_level,
        "log_format": args.log_format,
    }
    return BridgeSettings(**{k: v for k, v in overrides.items() if v is not None})


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = build_settings(args)
    setup_logging(
        log_level=args.log_level or "WARNING",
        log_file=settings.log_file,
        log_format=settings.log_format,
        max_file_size_mb=settings.log_max_size_mb,
        backup_count=settings.log_backup_count,
    )

    exit_code = asyncio.run(run_command(args, settings))
    if exit_code:
        sys.exit(exit_code)


async def run_command(args, settings: BridgeSettings) -> int:
    """Run one command against a bridge; always closes it."""
    try:
        bridge = TorrentBridge.from_settings(settings)
    except TorrentBridgeError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    handlers = {
        "version": run_version,
        "list": run_list,
        "files": run_files,
        "start": run_start,
        "stop": run_stop,
        "limit": run_limit,
        "rename": run_rename,
        "prefs": run_prefs,
    }
    try:
        async with bridge:
            return await handlers[args.command](bridge, args)
    except TorrentBridgeError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def format_size(size: int) -> str:
    """Human readable byte count."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.1f}{unit}" if unit != "B" else f"{int(value)}B"
        value /= 1024
    return f"{value:.1f}TB"


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_version(bridge: TorrentBridge, args) -> int:
    print(f"{bridge.client_type.label} {await bridge.get_app_version()}")
    api_version = await bridge.get_api_version()
    if api_version:
        print(f"API {api_version}")
    return 0


async def run_list(bridge: TorrentBridge, args) -> int:
    """List torrents as a table."""
    page = await bridge.get_torrents(
        hashes=args.hashes,
        filter=args.filter,
        sort=args.sort,
        reverse=args.reverse,
        search_term=args.search,
        raw=args.raw,
        per_page=args.per_page,
        current_page=args.page,
        fresh=args.fresh,
    )
    if args.raw:
        _print_json(page.torrents)
        return 0

    if not page.torrents:
        print("No torrents found.")
        return 0

    print(f"\nShowing {len(page.torrents)} of {page.total} torrent(s):\n")
    print(f"{'Hash':<12} {'Name':<40} {'Size':>10} {'Done':>5} {'Ratio':>6} {'Status':<12}")
    print("-" * 90)
    for t in page.torrents:
        name = t.name[:37] + "..." if len(t.name) > 40 else t.name
        print(
            f"{t.hash[:12]:<12} {name:<40} {format_size(t.size):>10} "
            f"{t.percent_done:>4}% {t.ratio:>6.2f} {t.status.value:<12}"
        )
    return 0


def _print_tree(nodes, depth: int = 0) -> None:
    for node in nodes:
        name = node["path"].rsplit("/", 1)[-1]
        if "children" in node:
            print(f"{'  ' * depth}{name}/")
            _print_tree(node["children"], depth + 1)
        else:
            print(f"{'  ' * depth}{name} ({format_size(node['size'])}, {node['progress']}%)")


async def run_files(bridge: TorrentBridge, args) -> int:
    """List files of one torrent."""
    listing = await bridge.get_torrent_files(
        args.hash, as_tree=args.tree, raw=args.raw, fresh=args.fresh
    )
    if args.raw:
        _print_json(listing.files)
    elif args.tree:
        _print_tree(listing.files)
    else:
        for f in listing.files:
            print(f"{f.progress:>4}% {format_size(f.size):>10}  {f.path}")
    return 0


async def run_start(bridge: TorrentBridge, args) -> int:
    ok = await bridge.start_torrents(args.hashes)
    print("Started." if ok else "Start request was not accepted.")
    return 0 if ok else 1


async def run_stop(bridge: TorrentBridge, args) -> int:
    ok = await bridge.stop_torrents(args.hashes)
    print("Stopped." if ok else "Stop request was not accepted.")
    return 0 if ok else 1


async def run_limit(bridge: TorrentBridge, args) -> int:
    ok = await bridge.set_torrent_upload_speed(args.hashes, args.kbps)
    if ok:
        print(f"Upload limit set to {args.kbps} KB/s." if args.kbps > 0 else "Upload limit removed.")
    else:
        print("Limit request was not accepted.")
    return 0 if ok else 1


async def run_rename(bridge: TorrentBridge, args) -> int:
    """Rename a file or folder and show the resulting listing."""
    listing = await bridge.rename_file(args.hash, args.old_path, args.new_path)
    if listing is False:
        print("Rename was rejected.")
        return 1
    print(f"Renamed. {listing.count} file(s):")
    for f in listing.files:
        print(f"  {f.path}")
    return 0


async def run_prefs(bridge: TorrentBridge, args) -> int:
    _print_json(await bridge.get_preferences(only_keys=args.keys))
    return 0


if __name__ == "__main__":
    main()

"""
Cross-client preference matching.

Copies selected preferences from one "master" bridge per client type to
every other bridge of that type, writing only the values that differ.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from .exceptions import ConfigurationError, TorrentBridgeError
from .models import ClientType

if TYPE_CHECKING:
    from .bridge import TorrentBridge

logger = logging.getLogger(__name__)

PORT_PROBE_TIMEOUT_S = 1.0


async def is_port_listening(host: str, port: Optional[int] = None, timeout: float = PORT_PROBE_TIMEOUT_S) -> bool:
    """
    Check whether a TCP port accepts connections.

    Args:
        host: Host name, optionally with ":port"
        port: Port to probe; taken from host when omitted, else 80
        timeout: Seconds to wait for the connection

    Returns:
        True if the connection was accepted
    """
    parts = urlsplit(f"//{host}")
    hostname = parts.hostname
    try:
        port = port or parts.port or 80
    except ValueError:
        return False
    if not hostname:
        return False
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(hostname, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def _keys_for(prefs_to_include: Dict, client_type: ClientType) -> List[str]:
    keys = prefs_to_include.get(client_type)
    if keys is None:
        keys = prefs_to_include.get(client_type.label)
    return list(keys or [])


def preference_difference(client_type: ClientType, master_prefs, client_prefs, keys: Iterable[str]):
    """
    Master values for `keys` that the client knows but holds differently.

    uTorrent preferences are [name, type, value] rows; the others are dicts.
    """
    keys = set(keys)
    if client_type == ClientType.UTORRENT:
        current = {row[0]: list(row) for row in client_prefs or []}
        return [
            list(row) for row in master_prefs or []
            if row[0] in keys and row[0] in current and current[row[0]] != list(row)
        ]
    return {
        k: v for k, v in (master_prefs or {}).items()
        if k in keys and k in (client_prefs or {}) and client_prefs[k] != v
    }


async def match_preferences(
    masters: List["TorrentBridge"],
    all_clients: List["TorrentBridge"],
    prefs_to_include: Dict,
) -> int:
    """
    Propagate preferences from master bridges.

    Args:
        masters: At most one bridge per client type
        all_clients: Bridges that may receive preferences
        prefs_to_include: Client type (member or label) -> preference names

    Returns:
        Number of bridges that were updated

    Raises:
        ConfigurationError: If two masters share a client type
    """
    seen = set()
    for master in masters:
        if master.client_type in seen:
            raise ConfigurationError(
                "Only one master per client type", master.client_type.label
            )
        seen.add(master.client_type)

    updated = 0
    for master in masters:
        client_type = master.client_type
        keys = _keys_for(prefs_to_include, client_type)
        if not keys:
            continue
        others = [
            c for c in all_clients
            if c.client_type == client_type and c.host != master.host
        ]
        if not others:
            continue
        if not await is_port_listening(master.host):
            logger.warning(f"Master {client_type.label} at {master.host} is not reachable")
            continue
        master_prefs = await master.get_preferences()

        for client in others:
            if not await is_port_listening(client.host):
                logger.info(f"Skipping unreachable {client_type.label} at {client.host}")
                continue
            try:
                client_prefs = await client.get_preferences()
            except TorrentBridgeError as e:
                logger.warning(f"Could not read preferences of {client.host}: {e}")
                continue
            difference = preference_difference(client_type, master_prefs, client_prefs, keys)
            if not difference:
                continue
            try:
                await client.set_preferences(difference)
            except TorrentBridgeError as e:
                logger.warning(f"Could not update preferences of {client.host}: {e}")
                continue
            updated += 1
            logger.info(f"Updated {len(difference)} preference(s) on {client.host}")
    return updated

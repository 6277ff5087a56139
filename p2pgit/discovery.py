"""LAN peer discovery: announcement datagrams and the directory of peers seen recently."""

from __future__ import annotations

import dataclasses
import ipaddress
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from p2pgit.datastream import IncompleteData, StreamReader, StreamWriter

DISCOVERY_MAGIC = "P2PGIT_DISCOVERY_V3"
DEFAULT_UDP_PORT = 45454
PEER_TIMEOUT_MS = 15000
BROADCAST_INTERVAL_MS = 5000


class Signal:
    """A list of callbacks invoked together with the same arguments."""

    def __init__(self) -> None:
        self._callbacks: list[Callable[..., Any]] = []

    def connect(self, callback: Callable[..., Any]) -> None:
        self._callbacks.append(callback)

    def emit(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            callback(*args)


@dataclass
class DiscoveredPeer:
    """A peer seen on the LAN, with the repositories it offers."""

    id: str = ""
    address: str = ""
    tcp_port: int = 0
    public_key_hex: str = ""
    public_repo_names: list[str] = field(default_factory=list)
    last_seen: int = 0

    def copy(self) -> "DiscoveredPeer":
        return dataclasses.replace(self, public_repo_names=list(self.public_repo_names))


def build_discovery_datagram(
    username: str, tcp_port: int, public_key_hex: str, repo_names: Iterable[str]
) -> bytes:
    """Serialise an announcement of this peer."""
    return (
        StreamWriter()
        .write_string(DISCOVERY_MAGIC)
        .write_string(username)
        .write_uint16(tcp_port)
        .write_string(public_key_hex)
        .write_string_list(repo_names)
        .getvalue()
    )


def parse_discovery_datagram(data: bytes) -> Optional[tuple[str, int, str, list[str]]]:
    """Return (username, tcp_port, public_key_hex, repo_names), or None if not a valid announcement."""
    reader = StreamReader(data)
    try:
        if reader.read_string() != DISCOVERY_MAGIC:
            return None
        username = reader.read_string()
        tcp_port = reader.read_uint16()
        public_key_hex = reader.read_string()
        repo_names = reader.read_string_list()
    except (IncompleteData, ValueError):
        return None
    return username, tcp_port, public_key_hex, repo_names


def _normalize_address(address: str) -> str:
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return address
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        return str(parsed.ipv4_mapped)
    return str(parsed)


class PeerDirectory:
    """Peers discovered through announcements, forgotten once they fall silent."""

    def __init__(self, my_username: str, repo_manager=None) -> None:
        self.my_username = my_username
        self.repo_manager = repo_manager
        self._peers: dict[str, DiscoveredPeer] = {}
        self.peer_updated = Signal()
        self.peer_lost = Signal()

    def handle_datagram(self, data: bytes, address: str, now_ms: int) -> Optional[DiscoveredPeer]:
        """Record an announcement; returns the updated peer, or None when it was ignored."""
        parsed = parse_discovery_datagram(data)
        if parsed is None:
            return None
        username, tcp_port, public_key_hex, repo_names = parsed
        if username == self.my_username:
            return None
        peer = DiscoveredPeer(username, address, tcp_port, public_key_hex, list(repo_names), now_ms)
        previous = self._peers.get(username)
        if previous is not None and self.repo_manager is not None:
            for repo in previous.public_repo_names:
                if repo in peer.public_repo_names:
                    continue
                info = self.repo_manager.repository_by_display_name(repo)
                if info is not None and info.app_id and not info.is_public:
                    peer.public_repo_names.append(repo)
        self._peers[username] = peer
        self.peer_updated.emit(peer.copy())
        return peer.copy()

    def cleanup(self, now_ms: int) -> list[str]:
        """Drop peers not heard from for longer than the timeout; returns their ids."""
        lost = [pid for pid in sorted(self._peers) if now_ms - self._peers[pid].last_seen > PEER_TIMEOUT_MS]
        for peer_id in lost:
            del self._peers[peer_id]
            self.peer_lost.emit(peer_id)
        return lost

    def get(self, peer_id: str) -> Optional[DiscoveredPeer]:
        peer = self._peers.get(peer_id)
        return peer.copy() if peer else None

    def peers(self) -> dict[str, DiscoveredPeer]:
        """All known peers, ordered by id."""
        return {pid: self._peers[pid].copy() for pid in sorted(self._peers)}

    def add_shared_repo(self, peer_id: str, repo_name: str) -> bool:
        """List a repository a peer has shared privately; False if unknown peer or already listed."""
        peer = self._peers.get(peer_id)
        if peer is None or repo_name in peer.public_repo_names:
            return False
        peer.public_repo_names.append(repo_name)
        self.peer_updated.emit(peer.copy())
        return True

    def find_username_for_address(self, address: str) -> Optional[str]:
        """Id of the peer announcing from address, treating IPv4-mapped IPv6 as IPv4."""
        wanted = _normalize_address(address)
        for pid in sorted(self._peers):
            if _normalize_address(self._peers[pid].address) == wanted:
                return pid
        return None

    def clear(self) -> None:
        self._peers.clear()
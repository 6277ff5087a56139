"""Peer-to-peer networking: TCP connections between peers, LAN discovery and bundle transfer."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import tempfile
import time
import uuid
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional

from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.utils import random as random_bytes

from p2pgit.datastream import IncompleteData, StreamReader, StreamWriter
from p2pgit.discovery import (
    BROADCAST_INTERVAL_MS,
    DEFAULT_UDP_PORT,
    PEER_TIMEOUT_MS,
    DiscoveredPeer,
    PeerDirectory,
    Signal,
    build_discovery_datagram,
)

_log = logging.getLogger(__name__)

PENDING_CONNECTION_TIMEOUT_MS = 30000
BROADCAST_ADDRESS = "255.255.255.255"
CHUNK_SIZE = 65536

AWAITING_ID_INCOMING = "AwaitingID_Incoming"
CONNECTING_PREFIX = "ConnectingTo:"
TRANSFER_PREFIX = "Transfer:"
_NON_PEER_PREFIXES = ("AwaitingID", "ConnectingTo", TRANSFER_PREFIX)

MSG_REQUEST_REPO_BUNDLE = "REQUEST_REPO_BUNDLE"
MSG_IDENTITY = "IDENTITY_HANDSHAKE_V2"
MSG_BUNDLE_START = "SEND_REPO_BUNDLE_START"
MSG_BUNDLE_END = "SEND_REPO_BUNDLE_END"
MSG_CHAT = "CHAT_MESSAGE"
MSG_ENCRYPTED = "ENCRYPTED_PAYLOAD"
MESSAGE_TYPE_KEY = "__messageType"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_peer_label(label: Optional[str]) -> bool:
    return bool(label) and not label.startswith(_NON_PEER_PREFIXES)


@dataclass
class _IncomingTransfer:
    repo_name: str
    temp_path: str
    file: BinaryIO
    total_size: int
    received: int = 0


class PeerConnection:
    """One TCP stream to another peer, with its unprocessed input."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, *, is_transfer: bool = False):
        self.reader = reader
        self.writer = writer
        self.is_transfer = is_transfer
        self.buffer = bytearray()
        self.handshake_sent = False
        self.transfer: Optional[_IncomingTransfer] = None

    @property
    def peer_address(self) -> str:
        info = self.writer.get_extra_info("peername")
        return str(info[0]) if info else ""

    @property
    def peer_port(self) -> int:
        info = self.writer.get_extra_info("peername")
        return int(info[1]) if info else 0

    def is_connected(self) -> bool:
        return not self.writer.is_closing()

    def write(self, data: bytes) -> None:
        if self.is_connected():
            self.writer.write(data)

    def close(self) -> None:
        self.writer.close()

    def __repr__(self) -> str:
        return f"PeerConnection({self.peer_address}:{self.peer_port})"


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self, manager: "NetworkManager") -> None:
        self._manager = manager

    def datagram_received(self, data: bytes, addr) -> None:
        self._manager._on_datagram(data, addr[0])

    def error_received(self, exc: Exception) -> None:
        _log.debug("Discovery socket error: %s", exc)


class NetworkManager:
    """TCP server and connections, UDP discovery and repository bundle exchange."""

    pending_connection_timeout = PENDING_CONNECTION_TIMEOUT_MS / 1000

    def __init__(self, username: str, public_key_hex: str, secret_key: bytes, repo_manager=None) -> None:
        self.username = username
        self.public_key_hex = public_key_hex
        self._secret_key = PrivateKey(bytes(secret_key))
        self.repo_manager = repo_manager

        self._server: Optional[asyncio.base_events.Server] = None
        self._connections: list[PeerConnection] = []
        self._labels: dict[PeerConnection, str] = {}
        self._pending: dict[PeerConnection, asyncio.TimerHandle] = {}
        self._peer_keys: dict[str, bytes] = {}
        self._tasks: set[asyncio.Task] = set()

        self._udp_port = DEFAULT_UDP_PORT
        self._udp_transport: Optional[asyncio.DatagramTransport] = None
        self._discovery_tasks: list[asyncio.Task] = []
        self._directory = PeerDirectory(username, repo_manager)

        self.incoming_tcp_connection_request = Signal()
        self.new_tcp_peer_connected = Signal()
        self.tcp_peer_disconnected = Signal()
        self.tcp_message_received = Signal()
        self.tcp_server_status_changed = Signal()
        self.lan_peer_discovered_or_updated = self._directory.peer_updated
        self.lan_peer_lost = self._directory.peer_lost
        self.repo_bundle_requested_by_peer = Signal()
        self.repo_bundle_chunk_received = Signal()
        self.repo_bundle_completed = Signal()
        self.repo_bundle_sent = Signal()
        self.secure_message_received = Signal()

    # ------------------------------------------------------------------ server

    async def start_tcp_server(self, port: int = 0) -> bool:
        if self._server is not None and self._server.is_serving():
            self.tcp_server_status_changed.emit(True, self.tcp_server_port(), "Already listening.")
            return True
        try:
            self._server = await asyncio.start_server(self._on_new_connection, "0.0.0.0", port)
        except OSError as exc:
            self._server = None
            self.tcp_server_status_changed.emit(False, port, str(exc))
            return False
        self.tcp_server_status_changed.emit(True, self.tcp_server_port(), "")
        return True

    def stop_tcp_server(self) -> None:
        if self._server is not None and self._server.is_serving():
            port = self.tcp_server_port()
            self._server.close()
            self._server = None
            self.tcp_server_status_changed.emit(False, port, "")

    def tcp_server_port(self) -> int:
        if self._server is None or not self._server.is_serving() or not self._server.sockets:
            return 0
        return self._server.sockets[0].getsockname()[1]

    async def _on_new_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = PeerConnection(reader, writer)
        self._connections.append(conn)
        self._labels[conn] = AWAITING_ID_INCOMING
        await self._read_loop(conn)

    # ------------------------------------------------------------- connecting

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def connect_to_tcp_peer(self, host: str, port: int, expected_username: str) -> bool:
        """Connect and exchange identities; True if already connected or the connection opened."""
        if self.socket_for_peer(expected_username) is not None:
            return True
        try:
            reader, writer = await asyncio.open_connection(str(host), port)
        except OSError as exc:
            _log.warning("Cannot connect to %s:%s: %s", host, port, exc)
            return False
        conn = PeerConnection(reader, writer)
        self._connections.append(conn)
        self._labels[conn] = expected_username
        self._send_identity(conn)
        self._spawn(self._read_loop(conn))
        return True

    async def connect_and_request_bundle(
        self, host: str, port: int, my_username: str, repo_name: str, local_path: str
    ) -> bool:
        """Open a short-lived connection that asks for a repository bundle."""
        try:
            reader, writer = await asyncio.open_connection(str(host), port)
        except OSError as exc:
            _log.warning("Cannot connect to %s:%s for bundle: %s", host, port, exc)
            return False
        conn = PeerConnection(reader, writer, is_transfer=True)
        self._labels[conn] = f"{TRANSFER_PREFIX}Cloning_{repo_name}"
        conn.write(
            StreamWriter()
            .write_string(MSG_REQUEST_REPO_BUNDLE)
            .write_string(my_username)
            .write_string(repo_name)
            .write_string(local_path)
            .getvalue()
        )
        self._spawn(self._read_loop(conn))
        return True

    def send_repo_bundle_request(self, connection: PeerConnection, repo_display_name: str, requester_local_path: str) -> None:
        if connection is None or not connection.is_connected():
            return
        connection.write(
            StreamWriter()
            .write_string(MSG_REQUEST_REPO_BUNDLE)
            .write_string(self.username)
            .write_string(repo_display_name)
            .write_string(requester_local_path)
            .getvalue()
        )

    def _send_identity(self, conn: PeerConnection) -> None:
        if not conn.is_connected() or not self.username:
            return
        conn.write(
            StreamWriter()
            .write_string(MSG_IDENTITY)
            .write_string(self.username)
            .write_string(self.public_key_hex)
            .getvalue()
        )
        conn.handshake_sent = True

    def disconnect_all_tcp_peers(self) -> None:
        for conn in list(self._connections):
            conn.close()

    def has_active_tcp_connections(self) -> bool:
        return any(_is_peer_label(label) for label in self._labels.values())

    def socket_for_peer(self, peer_username: str) -> Optional[PeerConnection]:
        for conn, label in self._labels.items():
            if label == peer_username:
                return conn
        return None

    def connected_peer_ids(self) -> list[str]:
        return [label for label in self._labels.values() if _is_peer_label(label)]

    def is_connection_pending(self, connection: PeerConnection) -> bool:
        return connection in self._pending

    def accept_pending_tcp_connection(self, connection: PeerConnection) -> None:
        timer = self._pending.pop(connection, None)
        if timer is None:
            return
        timer.cancel()
        self._process(connection)

    def reject_pending_tcp_connection(self, connection: PeerConnection) -> None:
        timer = self._pending.pop(connection, None)
        if timer is None:
            return
        timer.cancel()
        connection.close()

    def _expire_pending(self, connection: PeerConnection) -> None:
        if connection in self._pending:
            self.reject_pending_tcp_connection(connection)

    # ---------------------------------------------------------------- messages

    def _send_message_to_peer(self, conn: PeerConnection, message: str) -> None:
        if not conn.is_connected() or not _is_peer_label(self._labels.get(conn, "")):
            return
        conn.write(StreamWriter().write_string(MSG_CHAT).write_string(message).getvalue())

    def broadcast_tcp_message(self, message: str) -> None:
        for conn in list(self._connections):
            self._send_message_to_peer(conn, message)

    def send_encrypted_message(self, connection: PeerConnection, message_type: str, payload: dict[str, Any]) -> None:
        """Encrypt payload for the peer on connection and send it."""
        if connection is None:
            return
        peer_id = self._labels.get(connection, "")
        recipient = self._peer_keys.get(peer_id)
        if not peer_id or recipient is None:
            _log.warning("Cannot send encrypted message: Unknown peer or public key for socket.")
            return
        body = dict(payload)
        body[MESSAGE_TYPE_KEY] = message_type
        plaintext = json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")
        nonce = random_bytes(Box.NONCE_SIZE)
        try:
            ciphertext = Box(self._secret_key, PublicKey(recipient)).encrypt(plaintext, nonce).ciphertext
        except (CryptoError, ValueError, TypeError) as exc:
            _log.warning("Failed to encrypt message for %s: %s", peer_id, exc)
            return
        connection.write(
            StreamWriter().write_string(MSG_ENCRYPTED).write_bytes(nonce).write_bytes(ciphertext).getvalue()
        )

    def _handle_encrypted(self, conn: PeerConnection, nonce: bytes, ciphertext: bytes) -> None:
        peer_id = self._labels.get(conn, "")
        sender_key = self._peer_keys.get(peer_id)
        if sender_key is None:
            _log.warning("Encrypted message from unknown peer on %r", conn)
            return
        try:
            plaintext = Box(self._secret_key, PublicKey(sender_key)).decrypt(ciphertext, nonce)
            payload = json.loads(plaintext.decode("utf-8"))
        except (CryptoError, ValueError, TypeError) as exc:
            _log.warning("Cannot decrypt message from %s: %s", peer_id, exc)
            return
        if not isinstance(payload, dict):
            _log.warning("Encrypted message from %s is not an object", peer_id)
            return
        message_type = str(payload.pop(MESSAGE_TYPE_KEY, ""))
        self.secure_message_received.emit(peer_id, message_type, payload)

    def _handle_repo_request(self, conn: PeerConnection, requesting_peer: str, repo_name: str) -> None:
        if self.repo_manager is None:
            return
        info = self.repo_manager.repository_by_display_name(repo_name)
        if info is not None and info.app_id and (info.is_public or requesting_peer in info.collaborators):
            self.repo_bundle_requested_by_peer.emit(conn, requesting_peer, repo_name, "")
        else:
            _log.warning("Access denied for repo %s to peer %s", repo_name, requesting_peer)
            conn.close()

    # ---------------------------------------------------------------- receiving

    async def _read_loop(self, conn: PeerConnection) -> None:
        try:
            while True:
                try:
                    data = await conn.reader.read(CHUNK_SIZE)
                except OSError as exc:
                    _log.warning("Socket error on %r: %s", conn, exc)
                    break
                if not data:
                    break
                conn.buffer += data
                if conn not in self._pending:
                    self._process(conn)
        finally:
            conn.close()
            self._on_disconnected(conn)

    def _feed_transfer(self, conn: PeerConnection) -> bool:
        """Move buffered bytes into the open transfer; True once it has all its bytes."""
        transfer = conn.transfer
        count = min(len(conn.buffer), transfer.total_size - transfer.received)
        if count > 0:
            transfer.file.write(conn.buffer[:count])
            del conn.buffer[:count]
            transfer.received += count
            self.repo_bundle_chunk_received.emit(transfer.repo_name, transfer.received, transfer.total_size)
        return transfer.received >= transfer.total_size

    def _process(self, conn: PeerConnection) -> None:
        while True:
            if conn.transfer is not None and not self._feed_transfer(conn):
                return
            reader = StreamReader(conn.buffer)
            try:
                message_type = reader.read_string()
                if not self._dispatch(conn, message_type, reader):
                    return
            except (IncompleteData, ValueError):
                return
            del conn.buffer[: reader.position()]

    def _dispatch(self, conn: PeerConnection, message_type: str, reader: StreamReader) -> bool:
        """Handle one message; False when processing must stop and keep the buffer."""
        label = self._labels.get(conn)
        if label is None:
            return False
        if label == AWAITING_ID_INCOMING:
            if message_type == MSG_REQUEST_REPO_BUNDLE:
                requesting_peer = reader.read_string()
                repo_name = reader.read_string()
                reader.read_string()
                self._labels[conn] = TRANSFER_PREFIX + repo_name
                self._handle_repo_request(conn, requesting_peer, repo_name)
                return True
            self._labels[conn] = CONNECTING_PREFIX + conn.peer_address
            discovered = self._directory.find_username_for_address(conn.peer_address) or ""
            loop = asyncio.get_running_loop()
            self._pending[conn] = loop.call_later(self.pending_connection_timeout, self._expire_pending, conn)
            self.incoming_tcp_connection_request.emit(conn, conn.peer_address, conn.peer_port, discovered)
            return False
        if message_type == MSG_IDENTITY:
            peer_username = reader.read_string()
            peer_key_hex = reader.read_string()
            self._labels[conn] = peer_username
            try:
                self._peer_keys[peer_username] = bytes.fromhex(peer_key_hex)
            except ValueError:
                _log.warning("Peer %s sent a malformed public key", peer_username)
            if not conn.handshake_sent:
                self._send_identity(conn)
            self.new_tcp_peer_connected.emit(conn, peer_username, peer_key_hex)
            return True
        if message_type == MSG_BUNDLE_START:
            repo_name = reader.read_string()
            total_size = reader.read_int64()
            temp_path = os.path.join(tempfile.gettempdir(), f"{{{uuid.uuid4()}}}.bundle")
            try:
                handle = open(temp_path, "wb")
            except OSError as exc:
                _log.warning("Cannot open %s for bundle: %s", temp_path, exc)
            else:
                conn.transfer = _IncomingTransfer(repo_name, temp_path, handle, total_size)
            return True
        if message_type == MSG_BUNDLE_END:
            repo_name = reader.read_string()
            transfer = conn.transfer
            if transfer is not None:
                conn.transfer = None
                transfer.file.close()
                success = transfer.received == transfer.total_size
                message = "Transfer complete." if success else "Size mismatch."
                self.repo_bundle_completed.emit(repo_name, transfer.temp_path, success, message)
                conn.close()
            return True
        if message_type == MSG_CHAT:
            message = reader.read_string()
            self.tcp_message_received.emit(conn, label, message)
            return True
        if message_type == MSG_ENCRYPTED:
            nonce = reader.read_bytes()
            ciphertext = reader.read_bytes()
            self._handle_encrypted(conn, nonce, ciphertext)
            return True
        return False

    def _on_disconnected(self, conn: PeerConnection) -> None:
        if conn.transfer is not None:
            conn.transfer.file.close()
            conn.transfer = None
        if conn.is_transfer:
            self._labels.pop(conn, None)
            return
        if conn in self._connections:
            self._connections.remove(conn)
        timer = self._pending.pop(conn, None)
        if timer is not None:
            timer.cancel()
        label = self._labels.pop(conn, "")
        if _is_peer_label(label):
            self._peer_keys.pop(label, None)
            self.tcp_peer_disconnected.emit(conn, label)

    # ------------------------------------------------------------------ bundles

    async def start_sending_bundle(self, connection: PeerConnection, repo_display_name: str, bundle_file_path: str) -> None:
        """Stream a bundle file to a peer, then delete it."""
        if connection is None or not connection.is_connected():
            return
        try:
            handle = open(bundle_file_path, "rb")
        except OSError as exc:
            _log.warning("Cannot open bundle %s: %s", bundle_file_path, exc)
            return
        with handle:
            size = os.fstat(handle.fileno()).st_size
            connection.write(
                StreamWriter().write_string(MSG_BUNDLE_START).write_string(repo_display_name).write_int64(size).getvalue()
            )
            try:
                for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
                    connection.write(chunk)
                    await connection.writer.drain()
            except OSError as exc:
                _log.warning("Bundle transfer to %r failed: %s", connection, exc)
                return
        connection.write(StreamWriter().write_string(MSG_BUNDLE_END).write_string(repo_display_name).getvalue())
        self.repo_bundle_sent.emit(repo_display_name, self._labels.get(connection, "Unknown Peer"))
        try:
            os.remove(bundle_file_path)
        except OSError:
            pass

    # ---------------------------------------------------------------- discovery

    async def start_udp_discovery(self, udp_port: int = DEFAULT_UDP_PORT) -> bool:
        self._udp_port = udp_port
        if self.repo_manager is None:
            return False
        if self._udp_transport is not None:
            return True
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(("0.0.0.0", udp_port))
            sock.setblocking(False)
            loop = asyncio.get_running_loop()
            self._udp_transport, _ = await loop.create_datagram_endpoint(lambda: _DiscoveryProtocol(self), sock=sock)
        except OSError as exc:
            sock.close()
            _log.warning("Cannot start discovery on UDP port %s: %s", udp_port, exc)
            return False
        loop = asyncio.get_running_loop()
        self._discovery_tasks = [
            loop.create_task(self._repeat(BROADCAST_INTERVAL_MS, self.send_discovery_broadcast)),
            loop.create_task(self._repeat(PEER_TIMEOUT_MS // 2, lambda: self._directory.cleanup(_now_ms()))),
        ]
        self.send_discovery_broadcast()
        return True

    @staticmethod
    async def _repeat(interval_ms: int, action) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            action()

    def stop_udp_discovery(self) -> None:
        for task in self._discovery_tasks:
            task.cancel()
        self._discovery_tasks = []
        if self._udp_transport is not None:
            self._udp_transport.close()
            self._udp_transport = None
        self._directory.clear()

    def send_discovery_broadcast(self) -> None:
        port = self.tcp_server_port()
        if not port or not self.username or self.repo_manager is None or self._udp_transport is None:
            return
        names = [repo.display_name for repo in self.repo_manager.publicly_shared_repositories("")]
        datagram = build_discovery_datagram(self.username, port, self.public_key_hex, names)
        try:
            self._udp_transport.sendto(datagram, (BROADCAST_ADDRESS, self._udp_port))
        except OSError as exc:
            _log.debug("Discovery broadcast failed: %s", exc)

    def _on_datagram(self, data: bytes, address: str) -> None:
        self._directory.handle_datagram(data, address, _now_ms())

    def discovered_peer(self, peer_id: str) -> Optional[DiscoveredPeer]:
        return self._directory.get(peer_id)

    def discovered_peers(self) -> dict[str, DiscoveredPeer]:
        return self._directory.peers()

    def add_shared_repo_to_peer(self, peer_id: str, repo_name: str) -> bool:
        return self._directory.add_shared_repo(peer_id, repo_name)
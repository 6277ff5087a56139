import asyncio
import os
import socket

import pytest
from nacl.public import PrivateKey

from p2pgit.discovery import build_discovery_datagram
from p2pgit.network_manager import NetworkManager
from p2pgit.repository_manager import RepositoryManager


def make_manager(name, repo_manager=None):
    key = PrivateKey.generate()
    return NetworkManager(name, bytes(key.public_key).hex(), bytes(key), repo_manager)


async def wait_for(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return bool(predicate())


async def shutdown(*managers):
    for manager in managers:
        manager.stop_tcp_server()
        manager.disconnect_all_tcp_peers()
        manager.stop_udp_discovery()
    await asyncio.sleep(0.05)


def free_port(kind):
    with socket.socket(socket.AF_INET, kind) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def connect_pair(alice, bob):
    requests = []
    bob.incoming_tcp_connection_request.connect(lambda conn, addr, port, name: requests.append((conn, name)))
    connected_a, connected_b = [], []
    alice.new_tcp_peer_connected.connect(lambda conn, name, key: connected_a.append((name, key)))
    bob.new_tcp_peer_connected.connect(lambda conn, name, key: connected_b.append((name, key)))
    assert await bob.start_tcp_server(0)
    assert await alice.connect_to_tcp_peer("127.0.0.1", bob.tcp_server_port(), "bob")
    assert await wait_for(lambda: requests)
    conn, discovered = requests[0]
    assert bob.is_connection_pending(conn)
    bob.accept_pending_tcp_connection(conn)
    assert await wait_for(lambda: connected_a and connected_b)
    return connected_a, connected_b, discovered


@pytest.mark.asyncio
async def test_server_start_and_stop_report_status():
    manager = make_manager("alice")
    statuses = []
    manager.tcp_server_status_changed.connect(lambda *args: statuses.append(args))
    try:
        assert await manager.start_tcp_server(0)
        port = manager.tcp_server_port()
        assert port > 0
        assert statuses == [(True, port, "")]
        assert await manager.start_tcp_server(0)
        assert statuses[-1] == (True, port, "Already listening.")
        manager.stop_tcp_server()
        assert manager.tcp_server_port() == 0
        assert statuses[-1] == (False, port, "")
    finally:
        await shutdown(manager)


@pytest.mark.asyncio
async def test_handshake_exchanges_identities():
    alice, bob = make_manager("alice"), make_manager("bob")
    try:
        connected_a, connected_b, discovered = await connect_pair(alice, bob)
        assert discovered == ""
        assert connected_a == [("bob", bob.public_key_hex)]
        assert connected_b == [("alice", alice.public_key_hex)]
        assert alice.connected_peer_ids() == ["bob"]
        assert bob.connected_peer_ids() == ["alice"]
        assert alice.has_active_tcp_connections()
        assert alice.socket_for_peer("nobody") is None
    finally:
        await shutdown(alice, bob)


@pytest.mark.asyncio
async def test_chat_message_is_delivered():
    alice, bob = make_manager("alice"), make_manager("bob")
    received = []
    bob.tcp_message_received.connect(lambda conn, peer, msg: received.append((peer, msg)))
    try:
        await connect_pair(alice, bob)
        alice.broadcast_tcp_message("hello there")
        assert await wait_for(lambda: received)
        assert received == [("alice", "hello there")]
    finally:
        await shutdown(alice, bob)


@pytest.mark.asyncio
async def test_encrypted_message_round_trip():
    alice, bob = make_manager("alice"), make_manager("bob")
    messages = []
    bob.secure_message_received.connect(lambda *args: messages.append(args))
    try:
        await connect_pair(alice, bob)
        payload = {"appId": "id-1", "repoName": "demo"}
        alice.send_encrypted_message(alice.socket_for_peer("bob"), "SHARE_PRIVATE_REPO", payload)
        assert await wait_for(lambda: messages)
        assert messages == [("alice", "SHARE_PRIVATE_REPO", payload)]
    finally:
        await shutdown(alice, bob)


@pytest.mark.asyncio
async def test_rejected_connection_is_closed():
    alice, bob = make_manager("alice"), make_manager("bob")
    requests, lost = [], []
    bob.incoming_tcp_connection_request.connect(lambda conn, *rest: requests.append(conn))
    alice.tcp_peer_disconnected.connect(lambda conn, name: lost.append(name))
    try:
        assert await bob.start_tcp_server(0)
        assert await alice.connect_to_tcp_peer("127.0.0.1", bob.tcp_server_port(), "bob")
        assert await wait_for(lambda: requests)
        bob.reject_pending_tcp_connection(requests[0])
        assert not bob.is_connection_pending(requests[0])
        assert await wait_for(lambda: lost)
        assert lost == ["bob"]
        assert alice.connected_peer_ids() == []
    finally:
        await shutdown(alice, bob)


@pytest.mark.asyncio
async def test_pending_connection_times_out():
    alice, bob = make_manager("alice"), make_manager("bob")
    bob.pending_connection_timeout = 0.1
    requests, lost = [], []
    bob.incoming_tcp_connection_request.connect(lambda conn, *rest: requests.append(conn))
    alice.tcp_peer_disconnected.connect(lambda conn, name: lost.append(name))
    try:
        assert await bob.start_tcp_server(0)
        assert await alice.connect_to_tcp_peer("127.0.0.1", bob.tcp_server_port(), "bob")
        assert await wait_for(lambda: requests)
        assert await wait_for(lambda: lost)
        assert not bob.is_connection_pending(requests[0])
        assert bob.connected_peer_ids() == []
    finally:
        await shutdown(alice, bob)


@pytest.mark.asyncio
async def test_connect_to_closed_port_fails():
    alice = make_manager("alice")
    try:
        assert await alice.connect_to_tcp_peer("127.0.0.1", free_port(socket.SOCK_STREAM), "bob") is False
        assert alice.connected_peer_ids() == []
    finally:
        await shutdown(alice)


@pytest.mark.asyncio
async def test_public_bundle_transfer(tmp_path):
    (tmp_path / "demo").mkdir()
    repos = RepositoryManager(tmp_path / "bob.json")
    assert repos.add_managed_repository(tmp_path / "demo", "demo", True, "bob")
    alice, bob = make_manager("alice"), make_manager("bob", repos)
    content = os.urandom(200_000)
    bundle = tmp_path / "demo.bundle"
    bundle.write_bytes(content)

    requests, completed, chunks, sent = [], [], [], []
    bob.repo_bundle_requested_by_peer.connect(lambda *args: requests.append(args))
    bob.repo_bundle_sent.connect(lambda *args: sent.append(args))
    alice.repo_bundle_completed.connect(lambda *args: completed.append(args))
    alice.repo_bundle_chunk_received.connect(lambda *args: chunks.append(args))
    try:
        assert await bob.start_tcp_server(0)
        assert await alice.connect_and_request_bundle("127.0.0.1", bob.tcp_server_port(), "alice", "demo", "/clone/here")
        assert await wait_for(lambda: requests)
        conn, requester, repo_name, save_at = requests[0]
        assert (requester, repo_name, save_at) == ("alice", "demo", "")
        await bob.start_sending_bundle(conn, "demo", str(bundle))
        assert await wait_for(lambda: completed)
        name, path, success, message = completed[0]
        assert (name, success, message) == ("demo", True, "Transfer complete.")
        with open(path, "rb") as handle:
            assert handle.read() == content
        os.remove(path)
        assert chunks[-1] == ("demo", len(content), len(content))
        assert sent == [("demo", "Transfer:demo")]
        assert not bundle.exists()
        assert alice.connected_peer_ids() == []
        assert bob.connected_peer_ids() == []
    finally:
        await shutdown(alice, bob)


@pytest.mark.asyncio
async def test_private_bundle_request_is_refused(tmp_path):
    (tmp_path / "hidden").mkdir()
    repos = RepositoryManager(tmp_path / "bob.json")
    assert repos.add_managed_repository(tmp_path / "hidden", "hidden", False, "bob")
    alice, bob = make_manager("alice"), make_manager("bob", repos)
    requests, completed = [], []
    bob.repo_bundle_requested_by_peer.connect(lambda *args: requests.append(args))
    alice.repo_bundle_completed.connect(lambda *args: completed.append(args))
    try:
        assert await bob.start_tcp_server(0)
        assert await alice.connect_and_request_bundle("127.0.0.1", bob.tcp_server_port(), "alice", "hidden", "")
        await asyncio.sleep(0.3)
        assert requests == []
        assert completed == []
        assert not bob.has_active_tcp_connections()
    finally:
        await shutdown(alice, bob)


@pytest.mark.asyncio
async def test_udp_discovery_records_peer(tmp_path):
    repos = RepositoryManager(tmp_path / "repos.json")
    manager = make_manager("alice", repos)
    updates = []
    manager.lan_peer_discovered_or_updated.connect(updates.append)
    port = free_port(socket.SOCK_DGRAM)
    try:
        assert await manager.start_udp_discovery(port)
        datagram = build_discovery_datagram("carol", 9000, "ab", ["demo"])
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            sender.sendto(datagram, ("127.0.0.1", port))
        assert await wait_for(lambda: manager.discovered_peer("carol") is not None)
        peer = manager.discovered_peer("carol")
        assert (peer.address, peer.tcp_port, peer.public_key_hex) == ("127.0.0.1", 9000, "ab")
        assert peer.public_repo_names == ["demo"]
        assert [p.id for p in updates] == ["carol"]
        assert manager.add_shared_repo_to_peer("carol", "extra")
        assert manager.discovered_peer("carol").public_repo_names == ["demo", "extra"]
        assert manager.add_shared_repo_to_peer("dave", "extra") is False
        manager.stop_udp_discovery()
        assert manager.discovered_peers() == {}
    finally:
        await shutdown(manager)


@pytest.mark.asyncio
async def test_udp_discovery_needs_repository_manager():
    manager = make_manager("alice")
    try:
        assert await manager.start_udp_discovery(free_port(socket.SOCK_DGRAM)) is False
    finally:
        await shutdown(manager)
import pytest

from p2pgit.datastream import StreamReader, StreamWriter
from p2pgit.discovery import (
    DISCOVERY_MAGIC,
    PEER_TIMEOUT_MS,
    DiscoveredPeer,
    PeerDirectory,
    Signal,
    build_discovery_datagram,
    parse_discovery_datagram,
)
from p2pgit.repository_manager import RepositoryManager


@pytest.fixture
def repo_manager(tmp_path):
    return RepositoryManager(tmp_path / "store" / "repos.json")


def test_signal_calls_every_callback_with_args():
    signal = Signal()
    seen = []
    signal.connect(lambda *a: seen.append(("first", a)))
    signal.connect(lambda *a: seen.append(("second", a)))
    signal.emit("x", 2)
    assert seen == [("first", ("x", 2)), ("second", ("x", 2))]


def test_datagram_starts_with_magic():
    data = build_discovery_datagram("alice", 1234, "abcd", ["r1"])
    reader = StreamReader(data)
    assert reader.read_string() == "P2PGIT_DISCOVERY_V3"
    assert reader.read_string() == "alice"
    assert reader.read_uint16() == 1234
    assert reader.read_string() == "abcd"
    assert reader.read_string_list() == ["r1"]
    assert reader.position() == len(data)


def test_datagram_round_trip():
    data = build_discovery_datagram("bob", 5000, "ff00", ["one", "two"])
    assert parse_discovery_datagram(data) == ("bob", 5000, "ff00", ["one", "two"])


def test_parse_rejects_wrong_magic():
    data = StreamWriter().write_string("OTHER").write_string("bob").getvalue()
    assert parse_discovery_datagram(data) is None


def test_parse_rejects_truncated():
    data = build_discovery_datagram("bob", 5000, "ff00", ["one"])
    assert parse_discovery_datagram(data[:-3]) is None


def test_magic_constant_matches_builder():
    data = build_discovery_datagram("a", 1, "", [])
    assert StreamReader(data).read_string() == DISCOVERY_MAGIC


def test_handle_datagram_records_peer():
    directory = PeerDirectory("me")
    updates = []
    directory.peer_updated.connect(updates.append)
    data = build_discovery_datagram("bob", 4000, "aa", ["proj"])
    peer = directory.handle_datagram(data, "10.0.0.2", 100)
    assert peer == DiscoveredPeer("bob", "10.0.0.2", 4000, "aa", ["proj"], 100)
    assert directory.get("bob") == peer
    assert updates == [peer]


def test_handle_datagram_ignores_self_and_garbage():
    directory = PeerDirectory("me")
    assert directory.handle_datagram(build_discovery_datagram("me", 1, "", []), "10.0.0.1", 0) is None
    assert directory.handle_datagram(b"\x00\x01", "10.0.0.1", 0) is None
    assert directory.peers() == {}


def test_previously_shared_private_repo_is_kept(tmp_path, repo_manager):
    private_dir = tmp_path / "secret_repo"
    private_dir.mkdir()
    assert repo_manager.add_managed_repository(private_dir, "hidden", False, "me")
    directory = PeerDirectory("me", repo_manager)
    directory.handle_datagram(build_discovery_datagram("bob", 1, "", ["open", "hidden", "gone"]), "h", 0)
    peer = directory.handle_datagram(build_discovery_datagram("bob", 1, "", ["open"]), "h", 10)
    assert peer.public_repo_names == ["open", "hidden"]


def test_cleanup_removes_stale_peers():
    directory = PeerDirectory("me")
    lost = []
    directory.peer_lost.connect(lost.append)
    directory.handle_datagram(build_discovery_datagram("bob", 1, "", []), "h", 1000)
    assert directory.cleanup(1000 + PEER_TIMEOUT_MS) == []
    assert directory.get("bob") is not None
    assert directory.cleanup(1001 + PEER_TIMEOUT_MS) == ["bob"]
    assert lost == ["bob"]
    assert directory.get("bob") is None


def test_peers_sorted_and_copies():
    directory = PeerDirectory("me")
    directory.handle_datagram(build_discovery_datagram("zed", 1, "", []), "h1", 0)
    directory.handle_datagram(build_discovery_datagram("amy", 1, "", []), "h2", 0)
    peers = directory.peers()
    assert list(peers) == ["amy", "zed"]
    peers["amy"].public_repo_names.append("x")
    assert directory.get("amy").public_repo_names == []


def test_add_shared_repo():
    directory = PeerDirectory("me")
    updates = []
    directory.peer_updated.connect(updates.append)
    directory.handle_datagram(build_discovery_datagram("bob", 1, "", ["a"]), "h", 0)
    assert directory.add_shared_repo("bob", "b") is True
    assert directory.add_shared_repo("bob", "b") is False
    assert directory.add_shared_repo("nobody", "b") is False
    assert directory.get("bob").public_repo_names == ["a", "b"]
    assert len(updates) == 2


def test_find_username_for_mapped_address():
    directory = PeerDirectory("me")
    directory.handle_datagram(build_discovery_datagram("bob", 1, "", []), "192.168.1.5", 0)
    assert directory.find_username_for_address("::ffff:192.168.1.5") == "bob"
    assert directory.find_username_for_address("192.168.1.5") == "bob"
    assert directory.find_username_for_address("192.168.1.6") is None


def test_clear_forgets_everyone():
    directory = PeerDirectory("me")
    directory.handle_datagram(build_discovery_datagram("bob", 1, "", []), "h", 0)
    directory.clear()
    assert directory.peers() == {}
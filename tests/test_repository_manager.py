import json
from pathlib import Path

import pytest

from p2pgit.repository_manager import ManagedRepository, RepositoryManager


@pytest.fixture
def storage(tmp_path):
    return tmp_path / "config" / "managed_repositories.json"


@pytest.fixture
def repo_dir(tmp_path):
    path = tmp_path / "work" / "alpha"
    path.mkdir(parents=True)
    return path


def test_add_and_lookup(storage, repo_dir):
    manager = RepositoryManager(storage)
    assert manager.add_managed_repository(repo_dir, "Alpha", True, "alice")
    repos = manager.all_repositories()
    assert len(repos) == 1
    repo = repos[0]
    assert repo.display_name == "Alpha"
    assert repo.is_public is True
    assert repo.admin_peer_id == "alice"
    assert repo.origin_peer_id == ""
    assert repo.local_path == str(repo_dir.resolve())
    assert manager.repository(repo.app_id) == repo
    assert manager.repository_by_display_name("Alpha") == repo
    assert manager.repository_by_path(repo_dir) == repo


def test_missing_lookups_return_none(storage):
    manager = RepositoryManager(storage)
    assert manager.repository("nope") is None
    assert manager.repository_by_display_name("nope") is None
    assert manager.all_repositories() == []


def test_duplicate_path_rejected(storage, repo_dir):
    manager = RepositoryManager(storage)
    assert manager.add_managed_repository(repo_dir, "Alpha", False, "alice")
    assert not manager.add_managed_repository(repo_dir / ".." / "alpha", "Again", False, "bob")
    assert len(manager.all_repositories()) == 1


def test_persists_across_instances(storage, repo_dir):
    first = RepositoryManager(storage)
    first.add_managed_repository(repo_dir, "Alpha", False, "alice", "bob")
    app_id = first.all_repositories()[0].app_id
    first.add_collaborator(app_id, "carol")
    second = RepositoryManager(storage)
    assert second.all_repositories() == first.all_repositories()
    assert second.repository(app_id).collaborators == ["carol"]
    assert second.repository(app_id).origin_peer_id == "bob"


def test_saved_file_uses_json_keys(storage, repo_dir):
    manager = RepositoryManager(storage)
    manager.add_managed_repository(repo_dir, "Alpha", True, "alice")
    app_id = manager.all_repositories()[0].app_id
    document = json.loads(storage.read_text(encoding="utf-8"))
    entry = document[app_id]
    assert entry["displayName"] == "Alpha"
    assert entry["isPublic"] is True
    assert entry["adminPeerId"] == "alice"
    assert entry["collaborators"] == []
    assert entry["originPeerId"] == ""
    assert entry["localPath"] == str(repo_dir.resolve())


def test_on_change_called_for_each_change(storage, repo_dir):
    calls = []
    manager = RepositoryManager(storage, lambda: calls.append(1))
    assert calls == []
    manager.add_managed_repository(repo_dir, "Alpha", False, "alice")
    app_id = manager.all_repositories()[0].app_id
    manager.set_repository_visibility(app_id, True)
    manager.add_collaborator(app_id, "bob")
    manager.remove_managed_repository(app_id)
    assert len(calls) == 4


def test_visibility_and_remove_unknown(storage):
    manager = RepositoryManager(storage)
    assert manager.set_repository_visibility("missing", True) is False
    assert manager.remove_managed_repository("missing") is False
    assert manager.add_collaborator("missing", "bob") is False


def test_collaborator_added_once(storage, repo_dir):
    manager = RepositoryManager(storage)
    manager.add_managed_repository(repo_dir, "Alpha", False, "alice")
    app_id = manager.all_repositories()[0].app_id
    assert manager.add_collaborator(app_id, "bob") is True
    assert manager.add_collaborator(app_id, "bob") is False
    assert manager.repository(app_id).collaborators == ["bob"]


def test_returned_records_are_copies(storage, repo_dir):
    manager = RepositoryManager(storage)
    manager.add_managed_repository(repo_dir, "Alpha", False, "alice")
    repo = manager.all_repositories()[0]
    repo.collaborators.append("mallory")
    repo.is_public = True
    fresh = manager.repository(repo.app_id)
    assert fresh.collaborators == []
    assert fresh.is_public is False


def test_shared_and_private_filters(storage, tmp_path):
    dirs = []
    for name in ("pub", "priv", "other"):
        path = tmp_path / name
        path.mkdir()
        dirs.append(path)
    manager = RepositoryManager(storage)
    manager.add_managed_repository(dirs[0], "Pub", True, "alice")
    manager.add_managed_repository(dirs[1], "Priv", False, "alice")
    manager.add_managed_repository(dirs[2], "Other", False, "dave")
    priv_id = manager.repository_by_display_name("Priv").app_id
    manager.add_collaborator(priv_id, "bob")

    assert {r.display_name for r in manager.publicly_shared_repositories("")} == {"Pub"}
    assert {r.display_name for r in manager.publicly_shared_repositories("bob")} == {"Pub", "Priv"}
    assert [r.display_name for r in manager.private_repositories("alice")] == ["Priv"]
    assert [r.display_name for r in manager.private_repositories("dave")] == ["Other"]


def test_all_repositories_ordered_by_app_id(storage, tmp_path):
    manager = RepositoryManager(storage)
    for index in range(4):
        path = tmp_path / f"r{index}"
        path.mkdir()
        manager.add_managed_repository(path, f"R{index}", False, "alice")
    ids = [r.app_id for r in manager.all_repositories()]
    assert ids == sorted(ids)


def test_load_rejects_invalid_files(storage):
    storage.parent.mkdir(parents=True)
    storage.write_text("not json", encoding="utf-8")
    manager = RepositoryManager(storage)
    assert manager.load() is False
    storage.write_text("[1, 2]", encoding="utf-8")
    assert manager.load() is False
    assert manager.all_repositories() == []


def test_load_tolerates_wrong_field_types(storage):
    storage.parent.mkdir(parents=True)
    storage.write_text(
        json.dumps({"id-1": {"displayName": 5, "isPublic": "yes", "collaborators": "x"}}),
        encoding="utf-8",
    )
    manager = RepositoryManager(storage)
    assert manager.all_repositories() == [ManagedRepository(app_id="id-1")]


def test_save_fails_when_parent_is_a_file(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    manager = RepositoryManager(blocker / "store.json")
    assert manager.save() is False
    assert not Path(blocker / "store.json").exists()
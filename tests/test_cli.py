import json
from types import SimpleNamespace

import pytest

from p2pgit.cli import (
    NO_REPOSITORIES,
    format_commit_log,
    format_repository_list,
    main,
    visible_branches,
)
from p2pgit.repository_manager import ManagedRepository, RepositoryManager


def _commit(sha, summary):
    return SimpleNamespace(
        sha=sha,
        author_name="Alice",
        author_email="alice@example.com",
        date="2024-01-02 03:04:05",
        summary=summary,
    )


@pytest.fixture
def store(tmp_path):
    path = tmp_path / "repos.json"
    document = {
        "id-1": {
            "displayName": "alpha",
            "localPath": str(tmp_path),
            "isPublic": False,
            "adminPeerId": "me",
            "originPeerId": "",
            "collaborators": [],
        }
    }
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def test_visible_branches_drops_remote_heads():
    assert visible_branches(["main", "origin/HEAD", "origin/main", "dev"]) == ["main", "origin/main", "dev"]


def test_format_commit_log_contains_fields():
    text = format_commit_log([_commit("abc123", "First change")])
    assert "commit abc123" in text
    assert "Author: Alice <alice@example.com>" in text
    assert "Date:   2024-01-02 03:04:05" in text
    assert "    First change" in text


def test_format_commit_log_keeps_order_and_empty():
    text = format_commit_log([_commit("aaa", "one"), _commit("bbb", "two")])
    assert text.index("commit aaa") < text.index("commit bbb")
    assert format_commit_log([]) == ""


def test_format_repository_list_empty():
    assert format_repository_list([]) == NO_REPOSITORIES


def test_format_repository_list_labels():
    repos = [
        ManagedRepository(app_id="a", display_name="mine", local_path="/x", is_public=True),
        ManagedRepository(app_id="b", display_name="theirs", local_path="/y", origin_peer_id="bob"),
    ]
    text = format_repository_list(repos)
    assert "mine (Public)" in text
    assert "theirs (Private)" in text
    assert "Cloned from: bob" in text
    assert "Owner: You" in text


def test_main_repos_empty_store(tmp_path, capsys):
    code = main(["--store", str(tmp_path / "none.json"), "repos"])
    assert code == 0
    assert NO_REPOSITORIES in capsys.readouterr().out


def test_main_repos_lists_stored(store, capsys):
    assert main(["--store", str(store), "repos"]) == 0
    assert "alpha (Private)" in capsys.readouterr().out


def test_main_visibility_persists(store):
    assert main(["--store", str(store), "--user", "me", "visibility", "id-1", "public"]) == 0
    assert RepositoryManager(store).repository("id-1").is_public is True


def test_main_visibility_requires_owner(store):
    assert main(["--store", str(store), "--user", "someone", "visibility", "id-1", "public"]) == 1
    assert RepositoryManager(store).repository("id-1").is_public is False


def test_main_visibility_unknown_id(store):
    assert main(["--store", str(store), "--user", "me", "visibility", "nope", "public"]) == 1


def test_main_remove(store):
    assert main(["--store", str(store), "remove", "id-1"]) == 0
    assert RepositoryManager(store).all_repositories() == []
    assert main(["--store", str(store), "remove", "id-1"]) == 1


def test_main_add_missing_path_fails(tmp_path):
    target = tmp_path / "repos.json"
    assert main(["--store", str(target), "add", str(tmp_path / "missing")]) == 1
    assert RepositoryManager(target).all_repositories() == []


def test_main_log_missing_repository_fails(tmp_path):
    assert main(["--store", str(tmp_path / "r.json"), "log", str(tmp_path / "missing")]) == 1
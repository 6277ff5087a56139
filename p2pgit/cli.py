"""Command-line front end: manage the repository list and inspect managed repositories."""

from __future__ import annotations

import argparse
import os
import socket
import sys
from pathlib import Path
from typing import Iterable, Optional, Sequence

from p2pgit.git_backend import BranchType, GitBackend
from p2pgit.gitobjects import GitError
from p2pgit.repository_manager import ManagedRepository, RepositoryManager

DEFAULT_LOG_LIMIT = 100
APP_DIR_NAME = "P2PGitClient"
STORAGE_FILE_NAME = "managed_repositories.json"
NO_REPOSITORIES = "No repositories managed yet."

_BACKEND_ERRORS = (GitError, OSError, ValueError)


class _CommandError(Exception):
    """A command could not complete; the message is shown to the user."""


def format_commit_log(commits: Iterable) -> str:
    """Render commits as a plain-text history, newest first as given."""
    blocks = [
        f"commit {commit.sha}\n"
        f"Author: {commit.author_name} <{commit.author_email}>\n"
        f"Date:   {commit.date}\n"
        f"\n"
        f"    {commit.summary}\n"
        for commit in commits
    ]
    return "\n".join(blocks)


def format_repository_list(repositories: Iterable[ManagedRepository]) -> str:
    """Render managed repositories with their visibility, origin, id and path."""
    lines = []
    for repo in repositories:
        visibility = "Public" if repo.is_public else "Private"
        lines.append(f"{repo.display_name} ({visibility})")
        if repo.origin_peer_id:
            lines.append(f"  Cloned from: {repo.origin_peer_id}")
        else:
            lines.append("  Owner: You")
        lines.append(f"  Id: {repo.app_id}")
        lines.append(f"  Path: {repo.local_path}")
    return "\n".join(lines) if lines else NO_REPOSITORIES


def visible_branches(branches: Iterable[str]) -> list[str]:
    """Branch names worth offering for checkout: symbolic remote HEADs are left out."""
    return [name for name in branches if not name.endswith("/HEAD")]


def _default_username() -> str:
    return socket.gethostname() or "Peer"


def _default_store(username: str) -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / APP_DIR_NAME / username / STORAGE_FILE_NAME


def _open_backend(path: str) -> GitBackend:
    backend = GitBackend()
    try:
        result = backend.open_repository(path)
    except _BACKEND_ERRORS as exc:
        raise _CommandError(f"Could not open repository: {exc}") from exc
    if result is False:
        raise _CommandError(f"Could not open repository: {path}")
    return backend


def _resolve_repo_path(manager: RepositoryManager, target: str) -> str:
    """A managed repository's id or display name, or a plain path, to a directory path."""
    repo = manager.repository(target) or manager.repository_by_display_name(target)
    return repo.local_path if repo is not None else target


def _cmd_repos(args, manager: RepositoryManager) -> None:
    print(format_repository_list(manager.all_repositories()))


def _cmd_add(args, manager: RepositoryManager) -> None:
    _open_backend(args.path)
    display_name = args.name or Path(args.path).resolve().name
    if not display_name:
        raise _CommandError("A display name is required.")
    if not manager.add_managed_repository(args.path, display_name, args.public, args.user):
        raise _CommandError("Failed to add repository. It might already be managed.")
    print(f"Repository '{display_name}' added to management list.")


def _cmd_remove(args, manager: RepositoryManager) -> None:
    repo = manager.repository(args.app_id)
    if repo is None or not manager.remove_managed_repository(args.app_id):
        raise _CommandError(f"No managed repository with id '{args.app_id}'.")
    print(f"Removed '{repo.display_name}' from the managed list.")


def _cmd_visibility(args, manager: RepositoryManager) -> None:
    repo = manager.repository(args.app_id)
    if repo is None:
        raise _CommandError(f"No managed repository with id '{args.app_id}'.")
    if repo.admin_peer_id != args.user:
        raise _CommandError("Only the owner can modify access.")
    make_public = args.visibility == "public"
    if not manager.set_repository_visibility(args.app_id, make_public):
        raise _CommandError("Failed to change access.")
    print(f"Access for '{repo.display_name}' is now {'Public' if make_public else 'Private'}.")


def _cmd_status(args, manager: RepositoryManager) -> None:
    path = _resolve_repo_path(manager, args.repo)
    backend = _open_backend(path)
    try:
        branch = backend.get_current_branch()
    except _BACKEND_ERRORS as exc:
        raise _CommandError(str(exc)) from exc
    print(f"Path: {path}")
    print(f"Current Branch: {branch}")


def _print_log(backend: GitBackend, limit: int, ref: str) -> None:
    try:
        commits = list(backend.get_commit_log(limit, ref))
    except _BACKEND_ERRORS as exc:
        raise _CommandError(str(exc)) from exc
    if commits:
        print(format_commit_log(commits), end="")
    else:
        print("No commits found.")


def _cmd_log(args, manager: RepositoryManager) -> None:
    backend = _open_backend(_resolve_repo_path(manager, args.repo))
    _print_log(backend, args.max_count, args.ref)


def _cmd_branches(args, manager: RepositoryManager) -> None:
    backend = _open_backend(_resolve_repo_path(manager, args.repo))
    try:
        branches = visible_branches(backend.list_branches(BranchType.ALL))
        current = backend.get_current_branch()
    except _BACKEND_ERRORS as exc:
        raise _CommandError(str(exc)) from exc
    for name in branches:
        print(f"{'*' if name == current else ' '} {name}")


def _cmd_checkout(args, manager: RepositoryManager) -> None:
    backend = _open_backend(_resolve_repo_path(manager, args.repo))
    if "/" in args.branch:
        # Remote-tracking branches are only viewed, not checked out.
        _print_log(backend, DEFAULT_LOG_LIMIT, args.branch)
        return
    try:
        backend.checkout_branch(args.branch)
    except _BACKEND_ERRORS as exc:
        raise _CommandError(f"Checkout failed: {exc}") from exc
    print(f"Checked out branch: {args.branch}")


def _cmd_bundle(args, manager: RepositoryManager) -> None:
    path = _resolve_repo_path(manager, args.repo)
    backend = _open_backend(path)
    suggestion = args.name or Path(path).resolve().name
    try:
        bundle_path = backend.create_bundle(args.output_dir, suggestion)
    except _BACKEND_ERRORS as exc:
        raise _CommandError(f"Failed to create bundle: {exc}") from exc
    print(f"Bundle created: {bundle_path}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="p2pgit", description="Manage and inspect shared git repositories.")
    parser.add_argument("--user", default=None, help="peer name (default: host name)")
    parser.add_argument("--store", default=None, help="managed repository list file")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("repos", help="list managed repositories").set_defaults(func=_cmd_repos)

    add = commands.add_parser("add", help="manage a local repository")
    add.add_argument("path")
    add.add_argument("--name", default="")
    add.add_argument("--public", action="store_true")
    add.set_defaults(func=_cmd_add)

    remove = commands.add_parser("remove", help="remove a repository from the managed list")
    remove.add_argument("app_id")
    remove.set_defaults(func=_cmd_remove)

    visibility = commands.add_parser("visibility", help="make a repository public or private")
    visibility.add_argument("app_id")
    visibility.add_argument("visibility", choices=("public", "private"))
    visibility.set_defaults(func=_cmd_visibility)

    status = commands.add_parser("status", help="show path and current branch")
    status.add_argument("repo")
    status.set_defaults(func=_cmd_status)

    log = commands.add_parser("log", help="show commit history")
    log.add_argument("repo")
    log.add_argument("--ref", default="")
    log.add_argument("-n", "--max-count", type=int, default=DEFAULT_LOG_LIMIT)
    log.set_defaults(func=_cmd_log)

    branches = commands.add_parser("branches", help="list branches")
    branches.add_argument("repo")
    branches.set_defaults(func=_cmd_branches)

    checkout = commands.add_parser("checkout", help="check out a local branch")
    checkout.add_argument("repo")
    checkout.add_argument("branch")
    checkout.set_defaults(func=_cmd_checkout)

    bundle = commands.add_parser("bundle", help="write a bundle of all references")
    bundle.add_argument("repo")
    bundle.add_argument("output_dir")
    bundle.add_argument("--name", default="")
    bundle.set_defaults(func=_cmd_bundle)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    args.user = args.user or _default_username()
    store = Path(args.store) if args.store else _default_store(args.user)
    manager = RepositoryManager(store)
    try:
        args.func(args, manager)
    except _CommandError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
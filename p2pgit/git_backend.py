"""High-level operations on a single git repository: history, branches, checkout and bundles."""

from __future__ import annotations

import enum
import hashlib
import heapq
import os
import re
import stat
import struct
import time
import zlib
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from p2pgit.gitobjects import (
    SYMREF_PREFIX,
    Commit,
    GitError,
    ObjectStore,
    RefStore,
    parse_commit,
    parse_tree,
)

HEADS_PREFIX = "refs/heads/"
REMOTES_PREFIX = "refs/remotes/"
BUNDLE_SIGNATURE = b"# v2 git bundle\n"
UNBORN_HEAD = "[Detached HEAD / Unborn]"
NO_REPOSITORY = "No repository open."

_FULL_SHA = re.compile(r"[0-9a-fA-F]{40}")
_UNSAFE_BUNDLE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_PACK_CODES = {"commit": 1, "tree": 2, "blob": 3, "tag": 4}
_GITLINK = "160000"
_SYMLINK = "160000" if False else "120000"
_TREE_MODE = "40000"
_MAX_PEEL = 10
_MAX_SYMREF_DEPTH = 5
_DIRECTORY = object()

PathLike = Union[str, os.PathLike]


class BranchType(enum.IntFlag):
    """Which kinds of branches to list."""

    LOCAL = 1
    REMOTE = 2
    ALL = 3


@dataclass(frozen=True)
class CommitInfo:
    """One entry of a commit log."""

    sha: str
    author_name: str
    author_email: str
    date: str
    summary: str


def _format_date(when: int) -> str:
    try:
        return time.strftime(_DATE_FORMAT, time.localtime(when))
    except (OverflowError, OSError, ValueError):
        return "Invalid date"


def _commit_info(sha: str, commit: Commit) -> CommitInfo:
    author = commit.author
    if author is None:
        return CommitInfo(sha, "N/A", "N/A", "N/A", commit.summary)
    return CommitInfo(sha, author.name, author.email, _format_date(author.time), commit.summary)


def _commit_time(commit: Commit) -> int:
    signature = commit.committer or commit.author
    return signature.time if signature else 0


def _shorthand(ref_name: str) -> str:
    for prefix in (HEADS_PREFIX, REMOTES_PREFIX):
        if ref_name.startswith(prefix):
            return ref_name[len(prefix) :]
    return ref_name


def _tag_target(data: bytes) -> str:
    for line in bytes(data).split(b"\n"):
        if line.startswith(b"object "):
            return line[len(b"object ") :].decode("ascii", "replace").strip().lower()
        if not line:
            break
    raise GitError("tag object has no target")


def _pack_entry_header(code: int, size: int) -> bytes:
    out = bytearray()
    byte = (code << 4) | (size & 0x0F)
    size >>= 4
    while size:
        out.append(byte | 0x80)
        byte = size & 0x7F
        size >>= 7
    out.append(byte)
    return bytes(out)


def _bundle_file_name(suggestion: str) -> str:
    name = _UNSAFE_BUNDLE_CHARS.sub("", suggestion) or "repo"
    if not name.endswith(".bundle"):
        name += ".bundle"
    return name


class GitBackend:
    """Holds at most one open repository and performs git operations on it."""

    def __init__(self) -> None:
        self._path = ""
        self._git_dir: Optional[Path] = None
        self._work_dir: Optional[Path] = None
        self._objects: Optional[ObjectStore] = None
        self._refs: Optional[RefStore] = None

    # ----------------------------------------------------------------- opening

    def _attach(self, path: str, git_dir: Path, work_dir: Optional[Path]) -> None:
        self._path = path
        self._git_dir = git_dir
        self._work_dir = work_dir
        self._objects = ObjectStore(git_dir)
        self._refs = RefStore(git_dir)

    def initialize_repository(self, path: PathLike) -> None:
        """Create a repository with a working directory at path and open it."""
        self.close_repository()
        work_dir = Path(path)
        git_dir = work_dir / ".git"
        try:
            for sub in ("objects/info", "objects/pack", "refs/heads", "refs/tags"):
                (git_dir / sub).mkdir(parents=True, exist_ok=True)
            head = git_dir / "HEAD"
            if not head.exists():
                head.write_text(f"{SYMREF_PREFIX}{HEADS_PREFIX}master\n", encoding="utf-8")
            config = git_dir / "config"
            if not config.exists():
                config.write_text(
                    "[core]\n\trepositoryformatversion = 0\n\tfilemode = true\n"
                    "\tbare = false\n\tlogallrefupdates = true\n",
                    encoding="utf-8",
                )
        except OSError as exc:
            raise GitError(f"Error initializing repository: {exc}") from exc
        self._attach(str(path), git_dir, work_dir)

    def open_repository(self, path: PathLike) -> None:
        """Open an existing repository: a working directory with .git, or a bare repository."""
        location = Path(path)
        if not location.is_dir():
            raise GitError(f"Error: Path is not a valid directory or does not exist: {path}")
        self.close_repository()
        dot_git = location / ".git"
        if dot_git.is_dir():
            git_dir, work_dir = dot_git, location
        elif dot_git.is_file():
            text = dot_git.read_text(encoding="utf-8").strip()
            if not text.startswith("gitdir:"):
                raise GitError(f"Error opening repository: invalid gitfile at {dot_git}")
            git_dir = (location / text[len("gitdir:") :].strip()).resolve()
            work_dir = location
        elif (location / "HEAD").is_file() and (location / "objects").is_dir():
            git_dir, work_dir = location, None
        else:
            raise GitError(f"Error opening repository: could not find repository at '{path}'")
        if not (git_dir / "HEAD").is_file() or not (git_dir / "objects").is_dir():
            raise GitError(f"Error opening repository: '{git_dir}' is not a git directory")
        self._attach(str(path), git_dir, work_dir)

    def close_repository(self) -> None:
        """Forget the open repository, if any."""
        self._path = ""
        self._git_dir = self._work_dir = None
        self._objects = None
        self._refs = None

    def is_open(self) -> bool:
        return self._git_dir is not None

    def current_repository_path(self) -> str:
        return self._path

    def _require_open(self) -> tuple[ObjectStore, RefStore]:
        if self._objects is None or self._refs is None:
            raise GitError(NO_REPOSITORY)
        return self._objects, self._refs

    # ----------------------------------------------------------------- objects

    def _read_typed(self, sha: str, expected: str) -> bytes:
        objects, _ = self._require_open()
        kind, data = objects.read(sha)
        if kind != expected:
            raise GitError(f"object {sha} is a {kind}, not a {expected}")
        return data

    def _read_commit(self, sha: str) -> Commit:
        return parse_commit(self._read_typed(sha, "commit"))

    def _peel_to_commit(self, sha: str) -> str:
        objects, _ = self._require_open()
        current = sha.lower()
        for _ in range(_MAX_PEEL):
            kind, data = objects.read(current)
            if kind == "commit":
                return current
            if kind != "tag":
                raise GitError(f"object {current} is a {kind}, not a commit")
            current = _tag_target(data)
        raise GitError(f"too many nested tags from {sha}")

    # ----------------------------------------------------------------- history

    def _start_commit(self, ref: str) -> Optional[str]:
        _, refs = self._require_open()
        if not ref:
            head = refs.resolve("HEAD")
            if head is None:
                return None
            try:
                return self._peel_to_commit(head)
            except GitError as exc:
                raise GitError(f"Failed to push HEAD to revwalk: {exc}") from exc

        ref_to_push = ref
        if "/" in ref and not ref.startswith("refs/"):
            local = self.list_branches(BranchType.LOCAL)
            ref_to_push = (HEADS_PREFIX if ref in local else REMOTES_PREFIX) + ref
        elif "/" not in ref and ref != "HEAD":
            ref_to_push = HEADS_PREFIX + ref

        reason = "reference not found"
        try:
            sha = refs.resolve(ref_to_push)
            if sha is not None:
                return self._peel_to_commit(sha)
        except GitError as exc:
            reason = str(exc)

        if _FULL_SHA.fullmatch(ref):
            try:
                return self._peel_to_commit(ref)
            except GitError as exc:
                raise GitError(f"Failed to push specific OID '{ref}' to revwalk: {exc}") from exc
        raise GitError(
            f"Failed to push reference '{ref_to_push}' (derived from '{ref}') "
            f"to revwalk, and not a valid SHA: {reason}"
        )

    def _walk(self, start: str):
        """Yield (sha, commit) newest first, never a parent before any of its children."""
        commits: dict[str, Commit] = {}
        stack = [start]
        try:
            while stack:
                sha = stack.pop()
                if sha in commits:
                    continue
                commit = self._read_commit(sha)
                commits[sha] = commit
                stack.extend(p for p in commit.parents if p not in commits)
        except GitError as exc:
            raise GitError(f"Error during revwalk: {exc}") from exc

        waiting = Counter(p for commit in commits.values() for p in set(commit.parents))
        order = {sha: index for index, sha in enumerate(commits)}
        heap = [(-_commit_time(c), order[s], s) for s, c in commits.items() if not waiting[s]]
        heapq.heapify(heap)
        while heap:
            _, _, sha = heapq.heappop(heap)
            commit = commits[sha]
            yield sha, commit
            for parent in set(commit.parents):
                waiting[parent] -= 1
                if not waiting[parent]:
                    heapq.heappush(heap, (-_commit_time(commits[parent]), order[parent], parent))

    def get_commit_log(self, max_commits: int, ref: str = "") -> list[CommitInfo]:
        """Commits reachable from ref (HEAD when empty), at most max_commits unless it is <= 0."""
        start = self._start_commit(ref)
        if start is None:
            return []
        log: list[CommitInfo] = []
        for sha, commit in self._walk(start):
            if 0 < max_commits <= len(log):
                break
            log.append(_commit_info(sha, commit))
        return log

    # ---------------------------------------------------------------- branches

    def list_branches(self, branch_type: BranchType) -> list[str]:
        """Short names of branches of the given kind, ordered by full reference name."""
        _, refs = self._require_open()
        prefixes = []
        if branch_type & BranchType.LOCAL:
            prefixes.append(HEADS_PREFIX)
        if branch_type & BranchType.REMOTE:
            prefixes.append(REMOTES_PREFIX)
        try:
            names = refs.list("refs/")
        except (GitError, OSError) as exc:
            raise GitError(f"Error iterating branches: {exc}") from exc
        return [_shorthand(name) for name in names if name.startswith(tuple(prefixes))]

    def _head_target(self) -> tuple[Optional[str], Optional[str]]:
        """Final reference name HEAD points through (None when detached) and its object id."""
        _, refs = self._require_open()
        name = "HEAD"
        for _ in range(_MAX_SYMREF_DEPTH):
            value = refs.read(name)
            if value is None:
                return (name if name != "HEAD" else None), None
            if value.startswith(SYMREF_PREFIX):
                name = value[len(SYMREF_PREFIX) :].strip()
                continue
            return (name if name != "HEAD" else None), value.strip().lower()
        raise GitError("too many levels of symbolic references from HEAD")

    def get_current_branch(self) -> str:
        """Short name of the checked-out branch, or a bracketed description of HEAD."""
        self._require_open()
        try:
            ref_name, sha = self._head_target()
        except GitError as exc:
            raise GitError(f"Failed to get HEAD reference: {exc}") from exc
        if sha is None:
            return UNBORN_HEAD
        if ref_name and ref_name.startswith((HEADS_PREFIX, REMOTES_PREFIX)):
            return _shorthand(ref_name)
        return f"[Detached HEAD @ {sha[:9]}]"

    def _head_tree(self) -> Optional[str]:
        _, refs = self._require_open()
        head = refs.resolve("HEAD")
        if head is None:
            return None
        return self._read_commit(self._peel_to_commit(head)).tree

    def _set_upstream(self, local: str, remote_branch: str) -> None:
        remote, _, branch = remote_branch.partition("/")
        if not branch or self._git_dir is None:
            return
        section = f'[branch "{local}"]'
        config = self._git_dir / "config"
        try:
            text = config.read_text(encoding="utf-8") if config.exists() else ""
            if section in text:
                return
            if text and not text.endswith("\n"):
                text += "\n"
            text += f"{section}\n\tremote = {remote}\n\tmerge = {HEADS_PREFIX}{branch}\n"
            config.write_text(text, encoding="utf-8")
        except OSError:
            pass

    def _switch_to_remote(self, branch_name: str) -> str:
        _, refs = self._require_open()
        local = branch_name.rsplit("/", 1)[-1]
        if local == "HEAD":
            try:
                value = refs.read(REMOTES_PREFIX + branch_name)
            except GitError:
                value = None
            if value and value.startswith(SYMREF_PREFIX):
                local = value[len(SYMREF_PREFIX) :].strip().rsplit("/", 1)[-1]
            if local == "HEAD":
                raise GitError(
                    f"Cannot derive a valid local branch name from '{branch_name}'. "
                    "Please select a specific remote branch (e.g., origin/main)."
                )

        local_ref = HEADS_PREFIX + local
        try:
            existing = refs.resolve(local_ref)
        except GitError as exc:
            raise GitError(f"Error looking up local branch '{local}': {exc}") from exc

        if existing is not None:
            try:
                refs.set_symbolic("HEAD", local_ref)
            except GitError as exc:
                raise GitError(f"Failed to set HEAD to existing local branch '{local}': {exc}") from exc
            return f"Switched to existing local branch: {local}"

        try:
            target = refs.resolve(REMOTES_PREFIX + branch_name)
            if target is None:
                raise GitError("reference not found")
            self._read_typed(target, "commit")
        except GitError as exc:
            raise GitError(
                f"Remote branch '{branch_name}' could not be resolved to a commit: {exc}"
            ) from exc
        try:
            refs.set(local_ref, target)
        except GitError as exc:
            raise GitError(f"Failed to create local branch '{local}': {exc}") from exc
        self._set_upstream(local, branch_name)
        try:
            refs.set_symbolic("HEAD", local_ref)
        except GitError as exc:
            raise GitError(f"Failed to set HEAD to newly created branch '{local}': {exc}") from exc
        return f"Created and checked out local branch '{local}' tracking '{branch_name}'"

    def checkout_branch(self, branch_name: str) -> str:
        """Check out a local branch, or a local branch tracking the named remote branch."""
        _, refs = self._require_open()
        remote_branches = self.list_branches(BranchType.REMOTE)
        old_tree = self._head_tree()

        if branch_name in remote_branches:
            message = self._switch_to_remote(branch_name)
        else:
            local_ref = HEADS_PREFIX + branch_name
            try:
                sha = refs.resolve(local_ref)
            except GitError:
                sha = None
            if sha is None:
                raise GitError(
                    f"Failed to set HEAD to local branch '{branch_name}': "
                    "Reference not found or not a branch."
                )
            refs.set_symbolic("HEAD", local_ref)
            message = f"Successfully checked out local branch: {branch_name}"

        try:
            self._checkout_head(old_tree)
        except (GitError, OSError) as exc:
            raise GitError(f"{message}. Then, failed to update working directory: {exc}") from exc
        return message

    # ---------------------------------------------------------------- checkout

    def _flatten(self, tree_sha: Optional[str], prefix: str = "") -> dict[str, tuple[str, str]]:
        if tree_sha is None:
            return {}
        entries: dict[str, tuple[str, str]] = {}
        for entry in parse_tree(self._read_typed(tree_sha, "tree")):
            if entry.name in (".", "..", ".git") or "/" in entry.name:
                raise GitError(f"unsafe path in tree: {prefix}{entry.name!r}")
            path = prefix + entry.name
            if entry.mode == _TREE_MODE:
                entries.update(self._flatten(entry.sha, path + "/"))
            else:
                entries[path] = (entry.mode, entry.sha)
        return entries

    def _expected_state(self, entry: Optional[tuple[str, str]]):
        if entry is None:
            return None
        mode, sha = entry
        kind = "link" if mode == _SYMLINK else "file"
        return kind, self._read_typed(sha, "blob")

    def _worktree_state(self, full: Path):
        try:
            info = full.lstat()
        except (FileNotFoundError, NotADirectoryError):
            return None
        if stat.S_ISLNK(info.st_mode):
            return "link", os.fsencode(os.readlink(full))
        if stat.S_ISDIR(info.st_mode):
            return _DIRECTORY
        return "file", full.read_bytes()

    def _is_safe(self, path, old, new, old_entries) -> bool:
        if _GITLINK in ((old or ("",))[0], (new or ("",))[0]):
            return True
        current = self._worktree_state(self._work_dir / path)
        if current is None:
            return True
        if current is _DIRECTORY:
            return any(name.startswith(path + "/") for name in old_entries)
        return current in (self._expected_state(old), self._expected_state(new))

    def _remove_path(self, path: str) -> None:
        full = self._work_dir / path
        if full.is_symlink() or full.is_file():
            full.unlink()
        parent = full.parent
        while parent != self._work_dir:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def _write_path(self, path: str, entry: tuple[str, str]) -> None:
        mode, sha = entry
        full = self._work_dir / path
        if mode == _GITLINK:
            full.mkdir(parents=True, exist_ok=True)
            return
        if full.is_symlink() or full.is_file():
            full.unlink()
        full.parent.mkdir(parents=True, exist_ok=True)
        data = self._read_typed(sha, "blob")
        if mode == _SYMLINK:
            os.symlink(os.fsdecode(data), full)
            return
        full.write_bytes(data)
        current = full.stat().st_mode
        if mode == "100755":
            full.chmod(current | 0o111)
        else:
            full.chmod(current & ~0o111)

    def _checkout_head(self, old_tree: Optional[str]) -> None:
        if self._work_dir is None:
            raise GitError("cannot checkout in a bare repository")
        new_tree = self._head_tree()
        old_entries = self._flatten(old_tree)
        new_entries = self._flatten(new_tree)
        changes = sorted(
            path
            for path in old_entries.keys() | new_entries.keys()
            if old_entries.get(path) != new_entries.get(path)
        )
        conflicts = [
            path
            for path in changes
            if not self._is_safe(path, old_entries.get(path), new_entries.get(path), old_entries)
        ]
        if conflicts:
            raise GitError(
                f"{len(conflicts)} conflict(s) prevent checkout: {', '.join(conflicts)}"
            )
        for path in changes:
            if path not in new_entries:
                self._remove_path(path)
        for path in changes:
            if path in new_entries:
                self._write_path(path, new_entries[path])
        self._write_index(new_entries)

    def _write_index(self, entries: dict[str, tuple[str, str]]) -> None:
        body = bytearray(b"DIRC" + struct.pack(">II", 2, len(entries)))
        encoded = {path: path.encode("utf-8", "surrogateescape") for path in entries}
        for path in sorted(entries, key=encoded.__getitem__):
            mode, sha = entries[path]
            name = encoded[path]
            fields = [0] * 10
            fields[6] = int(mode, 8)
            if mode != _GITLINK:
                try:
                    info = os.lstat(self._work_dir / path)
                    fields = [
                        int(info.st_ctime),
                        info.st_ctime_ns % 1_000_000_000,
                        int(info.st_mtime),
                        info.st_mtime_ns % 1_000_000_000,
                        info.st_dev,
                        info.st_ino,
                        int(mode, 8),
                        info.st_uid,
                        info.st_gid,
                        info.st_size,
                    ]
                except OSError:
                    pass
            entry = struct.pack(">10I", *(value & 0xFFFFFFFF for value in fields))
            entry += bytes.fromhex(sha) + struct.pack(">H", min(len(name), 0xFFF)) + name
            entry += b"\0" * (8 - len(entry) % 8)
            body += entry
        body += hashlib.sha1(body).digest()
        (self._git_dir / "index").write_bytes(bytes(body))

    # ----------------------------------------------------------------- bundles

    def _bundle_refs(self) -> list[tuple[str, str]]:
        _, refs = self._require_open()
        found = []
        head = refs.resolve("HEAD")
        if head is not None:
            found.append(("HEAD", head))
        for name in refs.list("refs/"):
            sha = refs.resolve(name)
            if sha is not None:
                found.append((name, sha))
        return found

    def _reachable(self, tips: list[str]) -> list[tuple[str, str]]:
        objects, _ = self._require_open()
        seen: dict[str, str] = {}
        stack = list(tips)
        while stack:
            sha = stack.pop()
            if sha in seen:
                continue
            kind, data = objects.read(sha)
            seen[sha] = kind
            if kind == "commit":
                commit = parse_commit(data)
                stack.append(commit.tree)
                stack.extend(commit.parents)
            elif kind == "tree":
                stack.extend(e.sha for e in parse_tree(data) if e.mode != _GITLINK)
            elif kind == "tag":
                stack.append(_tag_target(data))
        return list(seen.items())

    def _write_bundle(self, path: Path, refs: list[tuple[str, str]]) -> None:
        objects, _ = self._require_open()
        reachable = self._reachable([sha for _, sha in refs])
        with open(path, "wb") as handle:
            handle.write(BUNDLE_SIGNATURE)
            for name, sha in refs:
                handle.write(f"{sha} {name}\n".encode("utf-8"))
            handle.write(b"\n")
            digest = hashlib.sha1()

            def emit(chunk: bytes) -> None:
                digest.update(chunk)
                handle.write(chunk)

            emit(b"PACK" + struct.pack(">II", 2, len(reachable)))
            for sha, kind in reachable:
                _, data = objects.read(sha)
                emit(_pack_entry_header(_PACK_CODES[kind], len(data)) + zlib.compress(data))
            handle.write(digest.digest())

    def create_bundle(self, output_dir: PathLike, bundle_name_suggestion: str) -> str:
        """Write a bundle holding every reference and return the bundle's path."""
        self._require_open()
        out = Path(output_dir)
        try:
            out.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise GitError(f"Could not create output directory for bundle: {output_dir}") from exc
        path = out / _bundle_file_name(bundle_name_suggestion)
        refs = self._bundle_refs()
        if not refs:
            raise GitError("Git bundle process failed: Refusing to create empty bundle.")
        try:
            self._write_bundle(path, refs)
        except (OSError, GitError) as exc:
            path.unlink(missing_ok=True)
            raise GitError(f"Git bundle process failed: {exc}") from exc
        return str(path)
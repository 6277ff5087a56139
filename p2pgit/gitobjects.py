"""Reading and writing git objects and references inside a repository directory."""

from __future__ import annotations

import bisect
import hashlib
import os
import re
import struct
import tempfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Optional

OBJECT_TYPES = ("commit", "tree", "blob", "tag")
SYMREF_PREFIX = "ref: "

_PACK_TYPES = {1: "commit", 2: "tree", 3: "blob", 4: "tag"}
_OFS_DELTA = 6
_REF_DELTA = 7
_MAX_SYMREF_DEPTH = 5
_SHA_RE = re.compile(r"[0-9a-f]{40}")
_TZ_RE = re.compile(r"([+-])(\d\d)(\d\d)")
_BAD_REF_CHARS = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]")


class GitError(Exception):
    """Raised when repository data is missing, malformed or cannot be written."""


class ObjectNotFoundError(GitError):
    """Raised when an object id is not present in the object database."""


def _normalize_sha(sha: str) -> str:
    text = sha.lower() if isinstance(sha, str) else ""
    if not _SHA_RE.fullmatch(text):
        raise ValueError(f"not a valid object id: {sha!r}")
    return text


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise GitError(f"cannot write {path}: {exc}") from exc


@dataclass(frozen=True)
class Signature:
    """Author or committer identity with a Unix timestamp and UTC offset in minutes."""

    name: str
    email: str
    time: int
    offset: int = 0


@dataclass(frozen=True)
class Commit:
    """A parsed commit object."""

    tree: str
    parents: tuple[str, ...]
    author: Optional[Signature]
    committer: Optional[Signature]
    message: str
    summary: str


@dataclass(frozen=True)
class TreeEntry:
    """One entry of a tree object."""

    mode: str
    name: str
    sha: str


def _parse_signature(text: str) -> Signature:
    lt = text.find("<")
    gt = text.find(">", lt + 1)
    if lt < 0 or gt < 0:
        raise GitError(f"malformed signature: {text!r}")
    name = text[:lt].strip()
    email = text[lt + 1 : gt]
    rest = text[gt + 1 :].split()
    try:
        when = int(rest[0]) if rest else 0
    except ValueError as exc:
        raise GitError(f"malformed signature time: {text!r}") from exc
    offset = 0
    if len(rest) > 1:
        match = _TZ_RE.fullmatch(rest[1])
        if match:
            sign, hours, minutes = match.groups()
            offset = int(hours) * 60 + int(minutes)
            if sign == "-":
                offset = -offset
    return Signature(name, email, when, offset)


def _summarize(message: str) -> str:
    """First paragraph of a message on one line, as git shows it."""
    paragraph = message.lstrip().split("\n\n", 1)[0]
    return paragraph.replace("\n", " ").rstrip()


def parse_commit(data: bytes) -> Commit:
    """Parse the body of a commit object."""
    header, _, raw_message = bytes(data).partition(b"\n\n")
    tree: Optional[str] = None
    parents: list[str] = []
    author: Optional[Signature] = None
    committer: Optional[Signature] = None
    for line in header.split(b"\n"):
        if not line or line.startswith(b" "):
            continue
        key, _, value = line.partition(b" ")
        text = value.decode("utf-8", "replace")
        if key == b"tree" and tree is None:
            tree = text.strip().lower()
        elif key == b"parent":
            parents.append(text.strip().lower())
        elif key == b"author" and author is None:
            author = _parse_signature(text)
        elif key == b"committer" and committer is None:
            committer = _parse_signature(text)
    if tree is None or not _SHA_RE.fullmatch(tree):
        raise GitError("commit has no valid tree header")
    for parent in parents:
        if not _SHA_RE.fullmatch(parent):
            raise GitError(f"commit has malformed parent {parent!r}")
    message = raw_message.decode("utf-8", "replace")
    return Commit(tree, tuple(parents), author, committer, message, _summarize(message))


def parse_tree(data: bytes) -> list[TreeEntry]:
    """Parse the body of a tree object into its entries, in stored order."""
    data = bytes(data)
    entries: list[TreeEntry] = []
    pos = 0
    while pos < len(data):
        space = data.find(b" ", pos)
        nul = data.find(b"\0", space + 1) if space >= 0 else -1
        if space < 0 or nul < 0 or nul + 21 > len(data):
            raise GitError("malformed tree object")
        mode = data[pos:space]
        if not mode.isdigit():
            raise GitError(f"malformed tree entry mode {mode!r}")
        name = data[space + 1 : nul].decode("utf-8", "surrogateescape")
        entries.append(TreeEntry(mode.decode("ascii"), name, data[nul + 1 : nul + 21].hex()))
        pos = nul + 21
    return entries


def _read_byte(handle: BinaryIO) -> int:
    chunk = handle.read(1)
    if not chunk:
        raise GitError("unexpected end of pack file")
    return chunk[0]


def _inflate(handle: BinaryIO) -> bytes:
    decompressor = zlib.decompressobj()
    parts = []
    try:
        while not decompressor.eof:
            chunk = handle.read(8192)
            if not chunk:
                raise GitError("truncated compressed data in pack file")
            parts.append(decompressor.decompress(chunk))
    except zlib.error as exc:
        raise GitError(f"corrupt compressed data in pack file: {exc}") from exc
    return b"".join(parts)


def _delta_varint(delta: bytes, pos: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while True:
        byte = delta[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        shift += 7
        if not byte & 0x80:
            return value, pos


def _apply_delta(base: bytes, delta: bytes) -> bytes:
    try:
        source_size, pos = _delta_varint(delta, 0)
        target_size, pos = _delta_varint(delta, pos)
        if source_size != len(base):
            raise GitError("delta base size mismatch")
        out = bytearray()
        while pos < len(delta):
            opcode = delta[pos]
            pos += 1
            if opcode & 0x80:
                offset = 0
                size = 0
                for bit, shift in ((0x01, 0), (0x02, 8), (0x04, 16), (0x08, 24)):
                    if opcode & bit:
                        offset |= delta[pos] << shift
                        pos += 1
                for bit, shift in ((0x10, 0), (0x20, 8), (0x40, 16)):
                    if opcode & bit:
                        size |= delta[pos] << shift
                        pos += 1
                size = size or 0x10000
                if offset + size > len(base):
                    raise GitError("delta copy runs past its base")
                out += base[offset : offset + size]
            elif opcode:
                if pos + opcode > len(delta):
                    raise GitError("delta insert runs past its end")
                out += delta[pos : pos + opcode]
                pos += opcode
            else:
                raise GitError("invalid delta opcode")
    except IndexError as exc:
        raise GitError("truncated delta") from exc
    if len(out) != target_size:
        raise GitError("delta result size mismatch")
    return bytes(out)


class _Pack:
    """A pack file together with its version 2 index."""

    def __init__(self, idx_path: Path) -> None:
        self.pack_path = idx_path.with_suffix(".pack")
        raw = idx_path.read_bytes()
        if len(raw) < 8 + 1024 or raw[:4] != b"\xfftOc" or raw[4:8] != struct.pack(">I", 2):
            raise GitError(f"unsupported pack index {idx_path}")
        count = struct.unpack_from(">256I", raw, 8)[-1]
        pos = 8 + 1024
        self._shas = [raw[p : p + 20] for p in range(pos, pos + 20 * count, 20)]
        pos += 24 * count  # object ids, then CRC32 values
        small = struct.unpack_from(f">{count}I", raw, pos)
        large_base = pos + 4 * count
        self._offsets = [
            struct.unpack_from(">Q", raw, large_base + 8 * (off & 0x7FFFFFFF))[0]
            if off & 0x80000000
            else off
            for off in small
        ]
        with open(self.pack_path, "rb") as handle:
            if handle.read(4) != b"PACK":
                raise GitError(f"not a pack file: {self.pack_path}")

    def find(self, sha: str) -> Optional[int]:
        key = bytes.fromhex(sha)
        index = bisect.bisect_left(self._shas, key)
        if index < len(self._shas) and self._shas[index] == key:
            return self._offsets[index]
        return None

    def read(self, offset: int, resolve: Callable[[str], tuple[str, bytes]]) -> tuple[str, bytes]:
        with open(self.pack_path, "rb") as handle:
            return self._read_at(handle, offset, resolve)

    def _read_at(self, handle: BinaryIO, offset: int, resolve) -> tuple[str, bytes]:
        handle.seek(offset)
        byte = _read_byte(handle)
        kind = (byte >> 4) & 0x07
        size = byte & 0x0F
        shift = 4
        while byte & 0x80:
            byte = _read_byte(handle)
            size |= (byte & 0x7F) << shift
            shift += 7
        if kind in _PACK_TYPES:
            data = _inflate(handle)
            if len(data) != size:
                raise GitError("pack entry size mismatch")
            return _PACK_TYPES[kind], data
        if kind == _OFS_DELTA:
            byte = _read_byte(handle)
            distance = byte & 0x7F
            while byte & 0x80:
                byte = _read_byte(handle)
                distance = ((distance + 1) << 7) | (byte & 0x7F)
            delta = _inflate(handle)
            if distance <= 0 or distance > offset:
                raise GitError("invalid delta base offset")
            base_type, base = self._read_at(handle, offset - distance, resolve)
            return base_type, _apply_delta(base, delta)
        if kind == _REF_DELTA:
            base_sha = handle.read(20)
            if len(base_sha) != 20:
                raise GitError("unexpected end of pack file")
            delta = _inflate(handle)
            base_type, base = resolve(base_sha.hex())
            return base_type, _apply_delta(base, delta)
        raise GitError(f"unknown pack entry type {kind}")


class ObjectStore:
    """The object database of a repository: loose objects and pack files."""

    def __init__(self, git_dir) -> None:
        self.git_dir = Path(git_dir)
        self.objects_dir = self.git_dir / "objects"
        self._packs: Optional[list[_Pack]] = None

    def _loose_path(self, sha: str) -> Path:
        return self.objects_dir / sha[:2] / sha[2:]

    def _load_packs(self) -> list[_Pack]:
        pack_dir = self.objects_dir / "pack"
        if not pack_dir.is_dir():
            return []
        return [_Pack(idx) for idx in sorted(pack_dir.glob("pack-*.idx"))]

    def _find_packed(self, sha: str) -> Optional[tuple[_Pack, int]]:
        for refresh in (False, True):
            if self._packs is None or refresh:
                self._packs = self._load_packs()
            for pack in self._packs:
                offset = pack.find(sha)
                if offset is not None:
                    return pack, offset
        return None

    def read(self, sha: str) -> tuple[str, bytes]:
        """Return the type name and body of an object."""
        sha = _normalize_sha(sha)
        path = self._loose_path(sha)
        if path.is_file():
            return self._parse_loose(path.read_bytes(), sha)
        found = self._find_packed(sha)
        if found is None:
            raise ObjectNotFoundError(f"object {sha} not found")
        pack, offset = found
        return pack.read(offset, self.read)

    @staticmethod
    def _parse_loose(compressed: bytes, sha: str) -> tuple[str, bytes]:
        try:
            raw = zlib.decompress(compressed)
        except zlib.error as exc:
            raise GitError(f"corrupt loose object {sha}: {exc}") from exc
        header, sep, body = raw.partition(b"\0")
        obj_type, _, size = header.partition(b" ")
        kind = obj_type.decode("ascii", "replace")
        if not sep or kind not in OBJECT_TYPES or not size.isdigit() or int(size) != len(body):
            raise GitError(f"malformed loose object {sha}")
        return kind, body

    def contains(self, sha: str) -> bool:
        """Whether the object is present."""
        sha = _normalize_sha(sha)
        return self._loose_path(sha).is_file() or self._find_packed(sha) is not None

    def write(self, obj_type: str, data: bytes) -> str:
        """Store an object as a loose object and return its id."""
        if obj_type not in OBJECT_TYPES:
            raise ValueError(f"unknown object type {obj_type!r}")
        raw = f"{obj_type} {len(data)}".encode("ascii") + b"\0" + bytes(data)
        sha = hashlib.sha1(raw).hexdigest()
        path = self._loose_path(sha)
        if not path.exists():
            _atomic_write(path, zlib.compress(raw))
        return sha


def _check_ref_name(name: str) -> None:
    if (
        not name
        or name.startswith("/")
        or name.endswith("/")
        or name.endswith(".")
        or name.endswith(".lock")
        or "//" in name
        or ".." in name
        or "@{" in name
        or name == "@"
        or _BAD_REF_CHARS.search(name)
        or any(part.startswith(".") for part in name.split("/"))
    ):
        raise GitError(f"invalid reference name {name!r}")


class RefStore:
    """Loose and packed references of a repository."""

    def __init__(self, git_dir) -> None:
        self.git_dir = Path(git_dir)

    def _path(self, name: str) -> Path:
        _check_ref_name(name)
        return self.git_dir.joinpath(*name.split("/"))

    def _packed(self) -> dict[str, str]:
        path = self.git_dir / "packed-refs"
        if not path.is_file():
            return {}
        refs = {}
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line or line.startswith(("#", "^")):
                continue
            sha, _, name = line.partition(" ")
            if name:
                refs[name.strip()] = sha.strip().lower()
        return refs

    def read(self, name: str) -> Optional[str]:
        """Raw value of a reference: an object id, or "ref: <target>" for a symbolic one."""
        path = self._path(name)
        if path.is_file():
            return path.read_text(encoding="utf-8").strip()
        return self._packed().get(name)

    def resolve(self, name: str) -> Optional[str]:
        """Follow symbolic references to an object id; None when the chain ends unborn."""
        current = name
        for _ in range(_MAX_SYMREF_DEPTH):
            value = self.read(current)
            if value is None:
                return None
            if value.startswith(SYMREF_PREFIX):
                current = value[len(SYMREF_PREFIX) :].strip()
                continue
            value = value.lower()
            if not _SHA_RE.fullmatch(value):
                raise GitError(f"reference {current} is malformed")
            return value
        raise GitError(f"too many levels of symbolic references from {name}")

    def set(self, name: str, sha: str) -> None:
        """Point a reference directly at an object id."""
        sha = _normalize_sha(sha)
        path = self._path(name)
        if path.is_dir():
            raise GitError(f"cannot write reference {name}: a directory is in the way")
        _atomic_write(path, (sha + "\n").encode("ascii"))

    def set_symbolic(self, name: str, target: str) -> None:
        """Make a reference point at another reference."""
        _check_ref_name(target)
        path = self._path(name)
        if path.is_dir():
            raise GitError(f"cannot write reference {name}: a directory is in the way")
        _atomic_write(path, f"{SYMREF_PREFIX}{target}\n".encode("utf-8"))

    def list(self, prefix: str = "refs/") -> list[str]:
        """Sorted names of all references under refs/ that start with prefix."""
        names = set(self._packed())
        refs_dir = self.git_dir / "refs"
        if refs_dir.is_dir():
            names.update(
                "refs/" + path.relative_to(refs_dir).as_posix()
                for path in refs_dir.rglob("*")
                if path.is_file() and not path.name.endswith(".lock") and not path.name.startswith(".")
            )
        return sorted(name for name in names if name.startswith(prefix))
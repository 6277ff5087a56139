"""The list of repositories this peer manages, persisted as a JSON file."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

_log = logging.getLogger(__name__)

KEY_DISPLAY_NAME = "displayName"
KEY_LOCAL_PATH = "localPath"
KEY_IS_PUBLIC = "isPublic"
KEY_ADMIN_PEER_ID = "adminPeerId"
KEY_COLLABORATORS = "collaborators"
KEY_ORIGIN_PEER_ID = "originPeerId"

PathLike = Union[str, os.PathLike]


@dataclass
class ManagedRepository:
    """A repository on disk together with its sharing settings."""

    app_id: str = ""
    display_name: str = ""
    local_path: str = ""
    is_public: bool = False
    admin_peer_id: str = ""
    collaborators: list[str] = field(default_factory=list)
    origin_peer_id: str = ""

    def copy(self) -> "ManagedRepository":
        return dataclasses.replace(self, collaborators=list(self.collaborators))


def _canonical(path: PathLike) -> str:
    """Absolute path with symlinks resolved, or "" when the path does not exist."""
    try:
        return str(Path(path).resolve(strict=True))
    except (OSError, RuntimeError):
        return ""


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


class RepositoryManager:
    """Keeps managed repositories keyed by application id and saves every change."""

    def __init__(self, storage_path: PathLike, on_change: Optional[Callable[[], None]] = None) -> None:
        self.storage_path = Path(storage_path)
        self._on_change = on_change
        self._repositories: dict[str, ManagedRepository] = {}
        self.load()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _ordered(self) -> Iterator[ManagedRepository]:
        for app_id in sorted(self._repositories):
            yield self._repositories[app_id]

    def add_managed_repository(
        self,
        local_path: PathLike,
        display_name: str,
        is_public: bool,
        admin_peer_id: str,
        origin_peer_id: str = "",
    ) -> bool:
        """Add a repository; False when its path is already managed or saving fails."""
        canonical = _canonical(local_path)
        if any(_canonical(repo.local_path) == canonical for repo in self._repositories.values()):
            _log.warning("Repository at path %s is already managed.", local_path)
            return False
        repo = ManagedRepository(
            app_id=str(uuid.uuid4()),
            display_name=display_name,
            local_path=canonical,
            is_public=is_public,
            admin_peer_id=admin_peer_id,
            origin_peer_id=origin_peer_id,
        )
        self._repositories[repo.app_id] = repo
        self._changed()
        return self.save()

    def remove_managed_repository(self, app_id: str) -> bool:
        if self._repositories.pop(app_id, None) is None:
            return False
        self._changed()
        return self.save()

    def set_repository_visibility(self, app_id: str, is_public: bool) -> bool:
        repo = self._repositories.get(app_id)
        if repo is None:
            return False
        repo.is_public = is_public
        self._changed()
        return self.save()

    def add_collaborator(self, app_id: str, peer_id: str) -> bool:
        repo = self._repositories.get(app_id)
        if repo is None or peer_id in repo.collaborators:
            return False
        repo.collaborators.append(peer_id)
        self._changed()
        return self.save()

    def repository(self, app_id: str) -> Optional[ManagedRepository]:
        repo = self._repositories.get(app_id)
        return repo.copy() if repo else None

    def repository_by_path(self, local_path: PathLike) -> Optional[ManagedRepository]:
        canonical = _canonical(local_path)
        for repo in self._ordered():
            if _canonical(repo.local_path) == canonical:
                return repo.copy()
        return None

    def repository_by_display_name(self, display_name: str) -> Optional[ManagedRepository]:
        for repo in self._ordered():
            if repo.display_name == display_name:
                return repo.copy()
        return None

    def all_repositories(self) -> list[ManagedRepository]:
        return [repo.copy() for repo in self._ordered()]

    def publicly_shared_repositories(self, requesting_peer: str) -> list[ManagedRepository]:
        """Public repositories and those shared with requesting_peer."""
        return [
            repo.copy()
            for repo in self._ordered()
            if repo.is_public or requesting_peer in repo.collaborators
        ]

    def private_repositories(self, my_peer_id: str) -> list[ManagedRepository]:
        """Private repositories owned by my_peer_id."""
        return [
            repo.copy()
            for repo in self._ordered()
            if not repo.is_public and repo.admin_peer_id == my_peer_id
        ]

    def load(self) -> bool:
        """Replace the list with the stored one; False when the file is missing or invalid."""
        try:
            document = json.loads(self.storage_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        if not isinstance(document, dict):
            return False
        self._repositories = {}
        for app_id, entry in document.items():
            if not isinstance(entry, dict):
                entry = {}
            is_public = entry.get(KEY_IS_PUBLIC)
            collaborators = entry.get(KEY_COLLABORATORS)
            self._repositories[app_id] = ManagedRepository(
                app_id=app_id,
                display_name=_as_str(entry.get(KEY_DISPLAY_NAME)),
                local_path=_as_str(entry.get(KEY_LOCAL_PATH)),
                is_public=is_public if isinstance(is_public, bool) else False,
                admin_peer_id=_as_str(entry.get(KEY_ADMIN_PEER_ID)),
                collaborators=[_as_str(v) for v in collaborators]
                if isinstance(collaborators, list)
                else [],
                origin_peer_id=_as_str(entry.get(KEY_ORIGIN_PEER_ID)),
            )
        self._changed()
        return True

    def save(self) -> bool:
        """Write the list to the storage file; False when it cannot be written."""
        document = {
            repo.app_id: {
                KEY_DISPLAY_NAME: repo.display_name,
                KEY_LOCAL_PATH: repo.local_path,
                KEY_IS_PUBLIC: repo.is_public,
                KEY_ADMIN_PEER_ID: repo.admin_peer_id,
                KEY_ORIGIN_PEER_ID: repo.origin_peer_id,
                KEY_COLLABORATORS: list(repo.collaborators),
            }
            for repo in self._ordered()
        }
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self.storage_path.write_text(
                json.dumps(document, indent=4, sort_keys=True) + "\n", encoding="utf-8"
            )
        except OSError as exc:
            _log.warning("Cannot save managed repositories to %s: %s", self.storage_path, exc)
            return False
        return True
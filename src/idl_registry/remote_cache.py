"""Local mirror clones of upstream remotes."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from idl_registry.config import Remote
from idl_registry.git import GitCommandError, GitRunner
from idl_registry.git import commands


@dataclass(slots=True)
class RemoteCache:
    """Keeps one working-tree mirror per remote under cache_location.

    A missing mirror is cloned; an existing one is fetched, hard reset to
    origin/<branch> and cleaned so it matches the remote exactly.
    """

    cache_location: Path
    runner: GitRunner
    shallow: bool = True
    _cache_dir_exists: bool = field(default=False, init=False)

    def mirror_path(self, remote: Remote) -> Path:
        return self.cache_location / remote.directory_name

    def update(self, remote: Remote) -> Path:
        """Bring the remote's mirror up to date and return its directory."""
        if not self._cache_dir_exists:
            self.cache_location.mkdir(parents=True, exist_ok=True)
            self._cache_dir_exists = True
        mirror = self.mirror_path(remote)
        if not mirror.exists():
            self._initial_load(remote, mirror)
        else:
            self._pull_and_update(remote, mirror)
        return mirror

    def _initial_load(self, remote: Remote, mirror: Path) -> None:
        mirror.parent.mkdir(parents=True, exist_ok=True)
        commands.clone(
            self.runner,
            _clone_source(remote.repository, self.shallow),
            mirror,
            branch=remote.branch,
            depth=1 if self.shallow else None,
        )

    def _pull_and_update(self, remote: Remote, mirror: Path) -> None:
        commands.fetch_all(self.runner, mirror)
        commands.reset_hard(self.runner, mirror, f"origin/{remote.branch}")
        commands.clean_untracked(self.runner, mirror)

    def show_file(self, remote: Remote, relative_path: str) -> str:
        """Return a file's content at HEAD of the mirror, or '' if absent."""
        try:
            return commands.show_file(self.runner, self.mirror_path(remote), relative_path)
        except GitCommandError:
            return ""


def _clone_source(repository: str, shallow: bool) -> str:
    # git ignores --depth for plain local paths
    if shallow and Path(repository).is_absolute() and "://" not in repository:
        return f"file://{repository}"
    return repository

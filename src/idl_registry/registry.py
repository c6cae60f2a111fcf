"""Registry synchronization: merge changed remote IDL trees into the registry."""

from __future__ import annotations

import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from idl_registry.config import DEFAULT_BRANCH, DEFAULT_IDL_DIRECTORY, Remote
from idl_registry.git import GitRunner
from idl_registry.git import commands
from idl_registry.hashing import copy_tree, hash_tree
from idl_registry.meta import META_FILENAME, MetaFile, MetaRecord, TimeInput, parse_time, utc_now
from idl_registry.remote_cache import RemoteCache
from idl_registry.service_name import service_name_from_checkout


@dataclass(slots=True, frozen=True)
class SyncResult:
    """Outcome of one synchronization pass, in processing order."""

    updated: tuple[str, ...]
    unchanged: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class PublishedUpdate:
    """A service update that was committed and pushed to the registry."""

    service: str
    record: MetaRecord
    files: tuple[str, ...]
    tag: str | None


def publish_subtree(
    runner: GitRunner,
    *,
    checkout: Path,
    meta: MetaFile,
    idl_directory: str,
    service: str,
    source: Path,
    shasums: dict[str, str],
    time: TimeInput,
    branch: str = DEFAULT_BRANCH,
    tag: bool = True,
    version: str | None = None,
) -> PublishedUpdate:
    """Copy source into the registry checkout, record it, commit, tag and push.

    Used by the synchronizer for remotes and by the client for one-off
    publishes; every step raises on failure.
    """
    destination = checkout / idl_directory / service
    copy_tree(source, destination, relative_to=source.parent)
    record = meta.update_record(service, shasums=shasums, time=meta.next_time(time))
    service_path = f"{idl_directory}/{service}"
    files = [META_FILENAME, service_path]
    created = commands.add_commit_tag_and_push(
        runner,
        checkout,
        files=files,
        service=service,
        timestamp=parse_time(record.time),
        branch=branch,
        version=version,
        tag=tag,
    )
    return PublishedUpdate(
        service=service,
        record=record,
        files=tuple(f"{service_path}/{name}" for name in sorted(shasums)),
        tag=created,
    )


@dataclass(slots=True)
class Registry:
    """The shared registry checkout plus the remotes feeding it."""

    remotes: Sequence[Remote]
    upstream: str
    repository_directory: Path
    cache_location: Path
    runner: GitRunner
    idl_directory: str = DEFAULT_IDL_DIRECTORY
    branch: str = DEFAULT_BRANCH
    service_name_source: str = "strategy"
    tag_updates: bool = True
    shallow_clone: bool = True
    meta: MetaFile = field(init=False)
    remote_cache: RemoteCache = field(init=False)

    def __post_init__(self) -> None:
        self.meta = MetaFile(self.repository_directory / META_FILENAME)
        self.remote_cache = RemoteCache(
            cache_location=self.cache_location,
            runner=self.runner,
            shallow=self.shallow_clone,
        )

    @property
    def idl_root(self) -> Path:
        return self.repository_directory / self.idl_directory

    def bootstrap(self, fetch_remotes: bool = True) -> SyncResult | None:
        """Destroy and re-clone the registry checkout, then optionally sync."""
        if self.repository_directory.exists():
            shutil.rmtree(self.repository_directory)
        self._clone_repo()
        if fetch_remotes:
            return self.fetch_remotes()
        return None

    def _clone_repo(self) -> None:
        self.repository_directory.parent.mkdir(parents=True, exist_ok=True)
        commands.clone(self.runner, self.upstream, self.repository_directory)
        self.meta.load()

    def fetch_remotes(self) -> SyncResult:
        """Process every remote in order; the first failure aborts the pass."""
        if not self.meta.loaded:
            self.meta.load()
        updated: list[str] = []
        unchanged: list[str] = []
        for remote in self.remotes:
            mirror = self.remote_cache.update(remote)
            service, changed = self._process_idl_files(remote, mirror)
            if service is None:
                continue
            if changed:
                updated.append(service)
            else:
                unchanged.append(service)
        return SyncResult(updated=tuple(updated), unchanged=tuple(unchanged))

    def service_name(self, remote: Remote, mirror: Path) -> str | None:
        if self.service_name_source == "origin":
            return service_name_from_checkout(self.runner, mirror)
        return remote.directory_name

    def should_sync(self, service: str, shasums: dict[str, str]) -> bool:
        return self.meta.get_shasums(service) != shasums

    def _process_idl_files(self, remote: Remote, mirror: Path) -> tuple[str | None, bool]:
        service = self.service_name(remote, mirror)
        if not service:
            return None, False
        source = mirror / self.idl_directory / service
        shasums = hash_tree(source, relative_to=mirror)
        if not self.should_sync(service, shasums):
            return service, False
        publish_subtree(
            self.runner,
            checkout=self.repository_directory,
            meta=self.meta,
            idl_directory=self.idl_directory,
            service=service,
            source=source,
            shasums=shasums,
            time=utc_now(),
            branch=self.branch,
            tag=self.tag_updates,
        )
        return service, True

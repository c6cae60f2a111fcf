"""Client-side operations against a local clone of the registry."""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TextIO

from idl_registry import __version__
from idl_registry.config import ClientConfig
from idl_registry.dependencies import THRIFT_SUFFIX, resolve
from idl_registry.git import GitRunner, PromptResponder
from idl_registry.git import commands
from idl_registry.hashing import copy_tree, hash_tree, list_tree, sha1_bytes
from idl_registry.logging import GitEvent, JsonlAuditLogger
from idl_registry.meta import META_FILENAME, MetaFile, MetaRecord, parse_time, utc_now
from idl_registry.registry import publish_subtree
from idl_registry.service_name import service_name_from_checkout

INIT_TEMPLATE = """typedef string UUID
typedef i64 Timestamp

service {name} {{
    UUID echo(
        1: UUID uuid
    )
}}
"""


class UnknownServiceError(Exception):
    """Raised when a requested service is not published in the registry."""

    def __init__(self, service: str) -> None:
        super().__init__(f"The service {service} is not published in the registry")
        self.service = service


class ServiceNameError(Exception):
    """Raised when a project's service name cannot be derived from git."""


def build_runner(config: ClientConfig, debug_stream: TextIO | None = None) -> GitRunner:
    """Create the git runner described by the client configuration."""
    audit = JsonlAuditLogger(config.audit_log)
    if config.debug_git and debug_stream is not None:
        audit.add_listener(_debug_printer(debug_stream))
    prompt = None
    if config.two_factor_prompt and config.two_factor:
        prompt = PromptResponder.from_strings(config.two_factor_prompt, config.two_factor)
    return GitRunner(
        audit=audit,
        timeout=config.git_timeout_ms / 1000,
        help_url=config.help_url,
        prompt=prompt,
    )


def _debug_printer(stream: TextIO) -> Callable[[GitEvent], None]:
    def emit(event: GitEvent) -> None:
        stream.write(f"[{event.level}] {' '.join(event.command)} (cwd={event.cwd})\n")
        if event.stdout:
            stream.write(event.stdout if event.stdout.endswith("\n") else event.stdout + "\n")
        if event.stderr:
            stream.write(event.stderr if event.stderr.endswith("\n") else event.stderr + "\n")

    return emit


@dataclass(slots=True, frozen=True)
class ListText:
    """Table of registry services with registry and local update ages."""

    registry: dict[str, MetaRecord]
    local: dict[str, MetaRecord]
    now: datetime

    def rows(self) -> list[tuple[str, str, str, str]]:
        output: list[tuple[str, str, str, str]] = []
        for name in sorted(self.registry):
            local = self.local.get(name)
            output.append(
                (
                    "-",
                    name,
                    time_ago(parse_time(self.registry[name].time), self.now),
                    time_ago(parse_time(local.time), self.now) if local is not None else "-",
                )
            )
        return output

    def __str__(self) -> str:
        table = [("", "SERVICE", "REGISTRY", "LOCAL"), *self.rows()]
        widths = [max(len(row[index]) for row in table) for index in range(4)]
        lines = [
            "  ".join(cell.ljust(widths[index]) for index, cell in enumerate(row)).rstrip()
            for row in table
        ]
        count = len(self.registry)
        lines.append(f"{count} service{'' if count == 1 else 's'} available")
        return "\n".join(lines)


def time_ago(then: datetime, now: datetime) -> str:
    seconds = int((now - then).total_seconds())
    if seconds < 0:
        return "in the future"
    if seconds < 60:
        return "just now"
    for unit, size in (("year", 31_536_000), ("month", 2_592_000), ("day", 86_400),
                       ("hour", 3_600), ("minute", 60)):
        if seconds >= size:
            amount = seconds // size
            return f"{amount} {unit}{'' if amount == 1 else 's'} ago"
    return "just now"


def service_identifier(service: str) -> str:
    """CamelCase identifier from the last segment of a service path."""
    last = service.rstrip("/").split("/")[-1]
    words = [word for word in re.split(r"[^0-9a-zA-Z]+", last) if word]
    return "".join(word[:1].upper() + word[1:] for word in words) or "Service"


class IdlClient:
    """Fetch, publish and inspect IDL services for one consumer project."""

    def __init__(self, config: ClientConfig, runner: GitRunner | None = None) -> None:
        self._config = config
        self._runner = runner or build_runner(config)
        self._cwd = config.cwd
        self._idl_directory = config.idl_directory
        self.repo_cache_location = config.cache_dir / sha1_bytes(config.repository.encode())
        self.meta: MetaFile | None = None
        self._local_meta_lock = threading.Lock()
        self._in_flight_lock = threading.Lock()

    @property
    def local_meta_path(self) -> Path:
        return self._cwd / self._idl_directory / META_FILENAME

    @property
    def registry_idl_root(self) -> Path:
        return self.repo_cache_location / self._idl_directory

    def fetch_repository(self) -> MetaFile:
        """Clone the registry, or reset the local clone to origin, then load its meta.

        Resetting drops any commit a failed publish left behind.
        """
        branch = self._config.branch
        if self.repo_cache_location.exists():
            commands.fetch_all(self._runner, self.repo_cache_location)
            commands.checkout(self._runner, self.repo_cache_location, branch, force=True)
            commands.reset_hard(self._runner, self.repo_cache_location, f"origin/{branch}")
            commands.clean_untracked(self._runner, self.repo_cache_location)
        else:
            self._config.cache_dir.mkdir(parents=True, exist_ok=True)
            commands.clone(self._runner, self._config.repository, self.repo_cache_location)
            commands.checkout(self._runner, self.repo_cache_location, branch)
        return self._load_registry_meta()

    def _load_registry_meta(self) -> MetaFile:
        self.meta = MetaFile(self.repo_cache_location / META_FILENAME).load()
        return self.meta

    def _registry_meta(self) -> MetaFile:
        if self.meta is None:
            return self.fetch_repository()
        return self.meta

    def list(self) -> ListText:
        registry = self._registry_meta()
        local = MetaFile(self.local_meta_path).load()
        return ListText(registry=registry.remotes(), local=local.remotes(), now=utc_now())

    def show(self, service: str | None) -> str:
        """Return every .thrift file of a service, each preceded by its path."""
        if not service:
            raise ValueError("service unspecified")
        if self._registry_meta().get_record(service) is None:
            raise UnknownServiceError(service)
        source = self.registry_idl_root / service
        chunks: list[str] = []
        for relative in list_tree(source):
            if not relative.endswith(THRIFT_SUFFIX):
                continue
            content = (source / relative).read_text(encoding="utf-8")
            chunks.append(f"{service}/{relative}\n{content}\n")
        return "".join(chunks)

    def fetch(self, service: str | None = None) -> list[str]:
        """Fetch one service and its dependencies, or refresh everything local."""
        if not service:
            return self.fetch_from_meta()
        registry = self._registry_meta()
        if registry.get_record(service) is None:
            raise UnknownServiceError(service)
        local = MetaFile(self.local_meta_path).load()
        if local.get_record(service) is None and local.remotes():
            self.update()
        return self._fetch_with_dependencies(service, set())

    def fetch_from_meta(self) -> list[str]:
        """Re-fetch every locally recorded service at the pinned registry version."""
        local = MetaFile(self.local_meta_path).load()
        self._registry_meta()
        version = local.version()
        if version is not None and self._tag_exists(f"v{version}"):
            commands.checkout(self._runner, self.repo_cache_location, f"v{version}")
            self._load_registry_meta()
        services = list(local.remotes())
        in_flight: set[str] = set()
        return self._fan_out(services, in_flight)

    def update(self) -> list[str]:
        """Re-fetch every service recorded in the local meta file, in order."""
        local = MetaFile(self.local_meta_path).load()
        self._registry_meta()
        fetched: list[str] = []
        in_flight: set[str] = set()
        for service in local.remotes():
            fetched.extend(self._fetch_with_dependencies(service, in_flight))
        return fetched

    def publish(self) -> MetaRecord | None:
        """Publish this project's IDL subtree to the registry if it changed."""
        registry = self._registry_meta()
        service = service_name_from_checkout(self._runner, self._cwd)
        if service is None:
            raise ServiceNameError(f"Could not derive a service name from git remotes in {self._cwd}")
        source = self._cwd / self._idl_directory / service
        new_shasums = hash_tree(source, relative_to=self._cwd)
        destination = self.registry_idl_root / service
        current_shasums = hash_tree(destination) if destination.exists() else {}
        if current_shasums == new_shasums:
            return None
        update = publish_subtree(
            self._runner,
            checkout=self.repo_cache_location,
            meta=registry,
            idl_directory=self._idl_directory,
            service=service,
            source=source,
            shasums=new_shasums,
            time=utc_now(),
            branch=self._config.branch,
            tag=self._config.tag_updates,
        )
        with self._local_meta_lock:
            local = MetaFile(self.local_meta_path).load()
            local.publish(shasums=new_shasums, time=update.record.time)
        return update.record

    def init(self) -> Path:
        """Create a starter IDL file for this project's service."""
        service = service_name_from_checkout(self._runner, self._cwd)
        if service is None:
            raise ServiceNameError(f"Could not derive a service name from git remotes in {self._cwd}")
        basename = service.rstrip("/").split("/")[-1]
        target = self._cwd / self._idl_directory / service / f"{basename}{THRIFT_SUFFIX}"
        if target.exists():
            return target
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(INIT_TEMPLATE.format(name=service_identifier(service)), encoding="utf-8")
        return target

    @staticmethod
    def version() -> str:
        return __version__

    def _tag_exists(self, tag: str) -> bool:
        output = self._runner.run(["tag", "--list", tag], cwd=self.repo_cache_location).stdout
        return bool(output.strip())

    def _fan_out(self, services: Iterable[str], in_flight: set[str]) -> list[str]:
        ordered = list(services)
        if not ordered:
            return []
        workers = min(self._config.fetch_concurrency, len(ordered))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="idl-fetch") as executor:
            futures = [
                executor.submit(self._fetch_with_dependencies, service, in_flight)
                for service in ordered
            ]
        fetched: list[str] = []
        first_error: BaseException | None = None
        for future in futures:
            error = future.exception()
            if error is not None:
                first_error = first_error or error
                continue
            fetched.extend(future.result())
        if first_error is not None:
            raise first_error
        return fetched

    def _claim(self, service: str, in_flight: set[str]) -> bool:
        with self._in_flight_lock:
            if service in in_flight:
                return False
            in_flight.add(service)
            return True

    def _fetch_with_dependencies(self, service: str, in_flight: set[str]) -> list[str]:
        if not self._claim(service, in_flight):
            return []
        self._fetch_one(service)
        fetched = [service]
        for dependency in resolve(self.registry_idl_root, service):
            fetched.extend(self._fetch_with_dependencies(dependency, in_flight))
        return fetched

    def _fetch_one(self, service: str) -> None:
        registry = self._registry_meta()
        record = registry.get_record(service)
        if record is None:
            raise UnknownServiceError(service)
        source = self.registry_idl_root / service
        destination = self._cwd / self._idl_directory / service
        copy_tree(source, destination, relative_to=self.repo_cache_location)
        with self._local_meta_lock:
            local = MetaFile(self.local_meta_path).load()
            local.update_record(service, time=record.time, shasums=record.shasums, sha=record.sha)

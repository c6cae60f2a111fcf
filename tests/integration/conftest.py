from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest


def git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return completed.stdout


def write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def commit_all(repo: Path, message: str) -> None:
    git(repo, "add", "--all")
    git(repo, "commit", "-m", message)


@dataclass(slots=True)
class GitWorld:
    """Throwaway upstream repositories and a bare registry under tmp_path."""

    root: Path

    @property
    def registry(self) -> Path:
        return self.root / "registry.git"

    def create_registry(self) -> Path:
        self.registry.mkdir(parents=True)
        git(self.registry, "init", "--bare", "-b", "master")
        seed = self.root / "seed"
        git(self.root, "clone", str(self.registry), str(seed))
        git(seed, "symbolic-ref", "HEAD", "refs/heads/master")
        write(seed / "README.md", "IDL registry\n")
        commit_all(seed, "initial")
        git(seed, "push", "origin", "master")
        return self.registry

    def upstream_path(self, name: str) -> Path:
        return self.root / "upstreams" / name

    def create_upstream(
        self, name: str, files: dict[str, str], service: str | None = None
    ) -> Path:
        """Create upstreams/<name> with files placed under idl/<service or name>/."""
        repo = self.upstream_path(name)
        repo.mkdir(parents=True)
        git(repo, "init", "-b", "master")
        self.write_upstream(repo, service or name, files)
        return repo

    def write_upstream(self, repo: Path, service: str, files: dict[str, str]) -> None:
        for relative, text in files.items():
            write(repo / "idl" / service / relative, text)
        commit_all(repo, f"update {service}")

    def push_out_of_band(self, message: str) -> None:
        """Advance the registry origin from a separate clone."""
        other = self.root / "out-of-band"
        if not other.exists():
            git(self.root, "clone", str(self.registry), str(other))
        git(other, "pull", "--ff-only", "origin", "master")
        write(other / "NOTES.md", f"{message}\n")
        commit_all(other, message)
        git(other, "push", "origin", "master")

    def registry_subjects(self) -> list[str]:
        return git(self.registry, "log", "--format=%s", "master").splitlines()

    def registry_tags(self) -> list[str]:
        return git(self.registry, "tag", "--list").splitlines()

    def registry_file(self, relative: str) -> str:
        return git(self.registry, "show", f"master:{relative}")


@pytest.fixture
def git_world(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> GitWorld:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / ".gitconfig"))
    for prefix in ("GIT_AUTHOR", "GIT_COMMITTER"):
        monkeypatch.setenv(f"{prefix}_NAME", "IDL Tests")
        monkeypatch.setenv(f"{prefix}_EMAIL", "idl-tests@example.com")
    world = GitWorld(root=tmp_path / "world")
    world.root.mkdir()
    world.create_registry()
    return world


ProjectFactory = Callable[[str], Path]


@pytest.fixture
def make_project(tmp_path: Path, git_world: GitWorld) -> ProjectFactory:
    """Create a consumer project whose origin points at the given URL."""

    def factory(origin: str) -> Path:
        project = tmp_path / "projects" / origin.rsplit("/", 1)[-1].removesuffix(".git")
        project.mkdir(parents=True)
        git(project, "init", "-b", "master")
        git(project, "remote", "add", "origin", origin)
        return project

    return factory

"""Named git operations used by the registry, mirror cache and client."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from idl_registry.git.process import GitRunner
from idl_registry.meta import epoch_ms, iso_timestamp


def clone(
    runner: GitRunner,
    repository: str,
    destination: Path,
    *,
    branch: str | None = None,
    depth: int | None = None,
) -> None:
    """Clone repository into destination (run from its parent directory)."""
    args = ["clone"]
    if branch is not None:
        args.extend(["--branch", branch])
    if depth is not None:
        args.extend(["--depth", str(depth)])
    args.extend([repository, str(destination)])
    runner.run(args, cwd=destination.parent, ignore_stderr=True)


def fetch_all(runner: GitRunner, cwd: Path) -> None:
    runner.run(
        ["fetch", "--all", "--tags", "--prune", "--prune-tags"], cwd=cwd, ignore_stderr=True
    )


def reset_hard(runner: GitRunner, cwd: Path, ref: str) -> None:
    runner.run(["reset", "--hard", ref], cwd=cwd)


def clean_untracked(runner: GitRunner, cwd: Path) -> None:
    runner.run(["clean", "-fdx"], cwd=cwd)


def checkout(runner: GitRunner, cwd: Path, ref: str, *, force: bool = False) -> None:
    args = ["checkout", "--force", ref] if force else ["checkout", ref]
    runner.run(args, cwd=cwd, ignore_stderr=True)


def show_file(runner: GitRunner, cwd: Path, relative_path: str, ref: str = "HEAD") -> str:
    return runner.run(["show", f"{ref}:{relative_path}"], cwd=cwd).stdout


def remote_verbose(runner: GitRunner, cwd: Path) -> str:
    return runner.run(["remote", "--verbose"], cwd=cwd, ignore_stderr=True).stdout


def add_files(runner: GitRunner, cwd: Path, files: list[str]) -> None:
    """Stage files, including deletions under the given paths."""
    runner.run(["add", "--all", "--", *files], cwd=cwd)


def commit_with_message(runner: GitRunner, cwd: Path, service: str, version: str | None) -> str:
    message = f"Updating {service} to latest version {version or ''}".strip()
    runner.run(["commit", "-m", message], cwd=cwd)
    return message


def timestamp_tag(runner: GitRunner, cwd: Path, service: str, when: datetime) -> str:
    tag = f"v{epoch_ms(when)}"
    runner.run(["tag", tag, "-am", f"{iso_timestamp(when)} {service}"], cwd=cwd)
    return tag


def push_to_origin(runner: GitRunner, cwd: Path, branch: str, *, with_tags: bool) -> None:
    args = ["push", "origin", branch]
    if with_tags:
        args.append("--tags")
    runner.run(args, cwd=cwd, ignore_stderr=True)


def add_commit_tag_and_push(
    runner: GitRunner,
    cwd: Path,
    *,
    files: list[str],
    service: str,
    timestamp: datetime,
    branch: str = "master",
    version: str | None = None,
    tag: bool = True,
) -> str | None:
    """Stage, commit, optionally tag, then push. Returns the tag name if created."""
    add_files(runner, cwd, files)
    commit_with_message(runner, cwd, service, version)
    created: str | None = None
    if tag:
        created = timestamp_tag(runner, cwd, service, timestamp)
    push_to_origin(runner, cwd, branch, with_tags=created is not None)
    return created

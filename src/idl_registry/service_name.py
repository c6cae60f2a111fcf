"""Service names derived from remote URLs."""

from __future__ import annotations

import re
from pathlib import Path

from idl_registry.git import commands
from idl_registry.git.process import GitRunner

NAMING_STRATEGIES = ("lastSegment", "lastTwoSegments", "splitOnColon")

_SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def _trim_url(url: str) -> str:
    trimmed = url.strip().rstrip("/")
    if trimmed.endswith(".git"):
        trimmed = trimmed[: -len(".git")]
    return trimmed


def directory_name(repository: str, strategy: str) -> str:
    """Apply a configured naming strategy to a repository URL."""
    trimmed = _trim_url(repository)
    if strategy == "lastSegment":
        return trimmed.split("/")[-1]
    if strategy == "lastTwoSegments":
        parts = trimmed.split("/")
        if len(parts) < 2:
            raise ValueError(f"Repository '{repository}' has fewer than two path segments.")
        return f"{parts[-2]}/{parts[-1]}"
    if strategy == "splitOnColon":
        return trimmed.split(":")[-1]
    raise ValueError(
        f"Unknown naming strategy '{strategy}'; expected one of {', '.join(NAMING_STRATEGIES)}."
    )


def normalize_git_url(url: str) -> str:
    """Turn an HTTPS or SSH git URL into a path such as github.com/org/service."""
    text = _SCHEME_PATTERN.sub("", url.strip())
    if "@" in text:
        text = text.split("@", 1)[1]
    text = _trim_url(text).replace(":", "/", 1)
    return text.strip("/")


def origin_url_from_verbose(output: str) -> str | None:
    """Pick the origin fetch URL from `git remote --verbose` output."""
    first: str | None = None
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        if first is None:
            first = parts[1]
        if parts[0] == "origin":
            return parts[1]
    return first


def service_name_from_checkout(runner: GitRunner, checkout: Path) -> str | None:
    """Derive the service name of a git working copy from its origin remote."""
    url = origin_url_from_verbose(commands.remote_verbose(runner, checkout))
    if url is None:
        return None
    return normalize_git_url(url) or None

"""Content fingerprints for IDL trees and filtered tree copies."""

from __future__ import annotations

import hashlib
import os
import shutil
from pathlib import Path

from idl_registry.meta import META_FILENAME

VCS_DIR_NAMES = frozenset({".git", ".hg", ".svn"})

_READ_CHUNK_BYTES = 1024 * 128


class DirectoryNotFoundError(FileNotFoundError):
    """Raised when a tree to hash or copy does not exist."""

    def __init__(self, relative_path: str) -> None:
        super().__init__(f"Directory not found: {relative_path}")
        self.relative_path = relative_path


def sha1_bytes(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


def hash_file(path: Path) -> str:
    """Compute SHA-1 in chunked reads."""
    digest = hashlib.sha1()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def is_significant(relative_path: str) -> bool:
    """Return False for dotfiles, VCS directories and the meta file."""
    parts = Path(relative_path).parts
    if not parts:
        return False
    for part in parts:
        if part.startswith(".") or part in VCS_DIR_NAMES:
            return False
    return parts[-1] != META_FILENAME


def hash_tree(root: Path, relative_to: Path | None = None) -> dict[str, str]:
    """Map every significant file under root to its digest, keyed by POSIX path."""
    if not root.is_dir():
        raise DirectoryNotFoundError(_display_path(root, relative_to))
    return {relative: hash_file(root / relative) for relative in list_tree(root)}


def list_tree(root: Path) -> list[str]:
    """Return significant file paths under root in deterministic order."""
    output: list[str] = []
    stack: list[Path] = [root]
    while stack:
        current = stack.pop()
        with os.scandir(current) as entries:
            ordered_entries = sorted(entries, key=lambda item: item.name)
        for entry in reversed(ordered_entries):
            full_path = Path(entry.path)
            relative = full_path.relative_to(root).as_posix()
            if not is_significant(relative):
                continue
            if entry.is_dir(follow_symlinks=False):
                stack.append(full_path)
                continue
            if entry.is_file(follow_symlinks=True):
                output.append(relative)
    output.sort()
    return output


def copy_tree(source: Path, destination: Path, relative_to: Path | None = None) -> list[str]:
    """Replace destination with the significant files of source."""
    if not source.is_dir():
        raise DirectoryNotFoundError(_display_path(source, relative_to))
    files = list_tree(source)
    if destination.exists():
        shutil.rmtree(destination)
    destination.mkdir(parents=True, exist_ok=True)
    for relative in files:
        target = destination / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source / relative, target)
    return files


def _display_path(path: Path, relative_to: Path | None) -> str:
    if relative_to is not None and path.is_relative_to(relative_to):
        return path.relative_to(relative_to).as_posix()
    return path.as_posix()

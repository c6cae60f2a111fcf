"""Include-based dependency discovery between IDL services."""

from __future__ import annotations

import posixpath
from pathlib import Path

from idl_registry.hashing import list_tree

THRIFT_SUFFIX = ".thrift"


def parse_includes(text: str) -> list[str]:
    """Return the quoted paths of `include "<path>"` lines, in order."""
    includes: list[str] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] != "include":
            continue
        target = parts[1]
        if len(target) >= 2 and target[0] == target[-1] and target[0] in "\"'":
            target = target[1:-1]
        if target:
            includes.append(target)
    return includes


def include_to_service(including_dir: str, include: str) -> str | None:
    """Resolve an include relative to its file's directory to a service path."""
    resolved = posixpath.normpath(posixpath.join(including_dir, include))
    if resolved.startswith("../") or resolved == ".." or posixpath.isabs(resolved):
        return None
    service = posixpath.dirname(resolved)
    return service or None


def dependency_map(idl_root: Path) -> dict[str, list[str]]:
    """Map every service with includes to its direct dependencies."""
    modules: dict[str, list[str]] = {}
    if not idl_root.is_dir():
        return modules
    for relative in list_tree(idl_root):
        if not relative.endswith(THRIFT_SUFFIX):
            continue
        service = posixpath.dirname(relative)
        text = (idl_root / relative).read_text(encoding="utf-8", errors="replace")
        for include in parse_includes(text):
            dependency = include_to_service(service, include)
            if dependency is None or dependency == service:
                continue
            known = modules.setdefault(service, [])
            if dependency not in known:
                known.append(dependency)
    return modules


def resolve(idl_root: Path, service: str) -> list[str]:
    """Return the direct dependencies declared by a service's IDL files."""
    return list(dependency_map(idl_root).get(service.strip("/"), []))


def resolve_closure(idl_root: Path, service: str) -> list[str]:
    """Return all transitive dependencies, each once, in discovery order."""
    modules = dependency_map(idl_root)
    root = service.strip("/")
    seen: set[str] = {root}
    ordered: list[str] = []
    queue: list[str] = list(modules.get(root, []))
    while queue:
        current = queue.pop(0)
        if current in seen:
            continue
        seen.add(current)
        ordered.append(current)
        queue.extend(modules.get(current, []))
    return ordered

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from idl_registry.config import Remote
from idl_registry.git import GitCommandError, GitRunner
from idl_registry.logging import JsonlAuditLogger
from idl_registry.meta import epoch_ms, parse_time
from idl_registry.registry import Registry

from conftest import GitWorld


def _registry(world: GitWorld, repositories: list[Path], **kwargs: object) -> Registry:
    return Registry(
        remotes=[Remote.from_strategy(str(path), None, "lastSegment") for path in repositories],
        upstream=str(world.registry),
        repository_directory=world.root / "checkout",
        cache_location=world.root / "remote-cache",
        runner=GitRunner(audit=JsonlAuditLogger(world.root / "git.jsonl")),
        **kwargs,  # type: ignore[arg-type]
    )


def _thrift(name: str) -> str:
    return f"service {name.upper()} {{}}\n"


def _registry_meta(world: GitWorld) -> dict[str, object]:
    return json.loads(world.registry_file("meta.json"))


def test_first_pass_publishes_every_remote(git_world: GitWorld) -> None:
    names = ["a", "b", "c", "d"]
    upstreams = [git_world.create_upstream(name, {"service.thrift": _thrift(name)}) for name in names]
    registry = _registry(git_world, upstreams)

    result = registry.bootstrap()

    assert result is not None
    assert result.updated == ("a", "b", "c", "d")
    meta = _registry_meta(git_world)
    remotes = meta["remotes"]
    assert isinstance(remotes, dict)
    assert meta["version"] == remotes["d"]["version"]
    assert meta["version"] == epoch_ms(parse_time(str(meta["time"])))
    digests = {remotes[name]["shasums"]["service.thrift"] for name in names}
    assert digests == {hashlib.sha1(_thrift(name).encode()).hexdigest() for name in names}
    assert git_world.registry_subjects()[:4] == [
        "Updating d to latest version",
        "Updating c to latest version",
        "Updating b to latest version",
        "Updating a to latest version",
    ]
    assert len(git_world.registry_tags()) == 4
    assert git_world.registry_file("idl/b/service.thrift") == _thrift("b")


def test_second_pass_commits_only_the_changed_remote(git_world: GitWorld) -> None:
    names = ["a", "b", "c", "d"]
    upstreams = [git_world.create_upstream(name, {"service.thrift": _thrift(name)}) for name in names]
    registry = _registry(git_world, upstreams)
    registry.bootstrap()
    before = _registry_meta(git_world)
    commits_before = len(git_world.registry_subjects())

    git_world.write_upstream(upstreams[1], "b", {"service.thrift": "service B { void ping() }\n"})
    result = registry.fetch_remotes()

    assert result.updated == ("b",)
    assert result.unchanged == ("a", "c", "d")
    subjects = git_world.registry_subjects()
    assert len(subjects) == commits_before + 1
    assert subjects[0] == "Updating b to latest version"
    after = _registry_meta(git_world)
    for name in ("a", "c", "d"):
        assert after["remotes"][name] == before["remotes"][name]  # type: ignore[index]
    assert after["remotes"]["b"]["version"] > before["version"]  # type: ignore[index]
    assert after["version"] == after["remotes"]["b"]["version"]  # type: ignore[index]


def test_unchanged_pass_creates_no_commits(git_world: GitWorld) -> None:
    upstream = git_world.create_upstream("a", {"service.thrift": _thrift("a")})
    registry = _registry(git_world, [upstream])
    registry.bootstrap()
    commits = git_world.registry_subjects()

    result = registry.fetch_remotes()

    assert result.updated == ()
    assert result.unchanged == ("a",)
    assert git_world.registry_subjects() == commits


def test_deleted_file_is_removed_from_registry(git_world: GitWorld) -> None:
    upstream = git_world.create_upstream(
        "a", {"service.thrift": _thrift("a"), "types.thrift": "typedef string UUID\n"}
    )
    registry = _registry(git_world, [upstream])
    registry.bootstrap()

    (upstream / "idl" / "a" / "types.thrift").unlink()
    git_world.write_upstream(upstream, "a", {"service.thrift": _thrift("a")})
    registry.fetch_remotes()

    shasums = _registry_meta(git_world)["remotes"]["a"]["shasums"]  # type: ignore[index]
    assert list(shasums) == ["service.thrift"]
    assert not (registry.idl_root / "a" / "types.thrift").exists()


def test_failing_remote_aborts_the_rest_of_the_pass(git_world: GitWorld) -> None:
    first = git_world.create_upstream("a", {"service.thrift": _thrift("a")})
    last = git_world.create_upstream("c", {"service.thrift": _thrift("c")})
    missing = git_world.root / "upstreams" / "b"
    registry = _registry(git_world, [first, missing, last])

    with pytest.raises(GitCommandError):
        registry.bootstrap()

    remotes = _registry_meta(git_world)["remotes"]
    assert list(remotes) == ["a"]  # type: ignore[arg-type]
    assert git_world.registry_subjects()[0] == "Updating a to latest version"

    resumed = _registry(git_world, [first, last])
    result = resumed.bootstrap()
    assert result is not None
    assert result.updated == ("c",)
    assert result.unchanged == ("a",)


def test_tags_can_be_disabled(git_world: GitWorld) -> None:
    upstream = git_world.create_upstream("a", {"service.thrift": _thrift("a")})
    registry = _registry(git_world, [upstream], tag_updates=False)

    registry.bootstrap()

    assert git_world.registry_tags() == []


def test_full_clone_mirror_is_reset_to_remote(git_world: GitWorld) -> None:
    upstream = git_world.create_upstream("a", {"service.thrift": _thrift("a")})
    registry = _registry(git_world, [upstream], shallow_clone=False)
    registry.bootstrap()
    mirror = registry.remote_cache.mirror_path(registry.remotes[0])
    (mirror / "idl" / "a" / "stray.thrift").write_text("junk\n", encoding="utf-8")

    git_world.write_upstream(upstream, "a", {"service.thrift": "service A { void ping() }\n"})
    result = registry.fetch_remotes()

    assert result.updated == ("a",)
    assert not (mirror / "idl" / "a" / "stray.thrift").exists()
    assert registry.remote_cache.show_file(registry.remotes[0], "idl/a/service.thrift") == (
        "service A { void ping() }\n"
    )
    assert registry.remote_cache.show_file(registry.remotes[0], "idl/a/absent.thrift") == ""


def test_git_runs_are_audited(git_world: GitWorld) -> None:
    upstream = git_world.create_upstream("a", {"service.thrift": _thrift("a")})
    registry = _registry(git_world, [upstream])

    registry.bootstrap()

    commands = [entry["command"] for entry in registry.runner.audit.read(limit=100)]
    assert ["git", "push", "origin", "master", "--tags"] in commands


def test_rejected_push_aborts_the_pass_and_resumes_cleanly(git_world: GitWorld) -> None:
    upstreams = [
        git_world.create_upstream(name, {"service.thrift": _thrift(name)}) for name in ("a", "b")
    ]
    registry = _registry(git_world, upstreams)
    registry.bootstrap(fetch_remotes=False)
    git_world.push_out_of_band("edit registry notes")

    with pytest.raises(GitCommandError):
        registry.fetch_remotes()

    subjects = git_world.registry_subjects()
    assert subjects[0] == "edit registry notes"
    assert not any(subject.startswith("Updating") for subject in subjects)
    assert git_world.registry_tags() == []

    result = _registry(git_world, upstreams).bootstrap()
    assert result is not None
    assert result.updated == ("a", "b")
    assert git_world.registry_subjects()[:2] == [
        "Updating b to latest version",
        "Updating a to latest version",
    ]


def test_service_name_from_mirror_origin(git_world: GitWorld) -> None:
    service = git_world.upstream_path("a").as_posix().strip("/")
    upstream = git_world.create_upstream("a", {"service.thrift": _thrift("a")}, service=service)
    registry = _registry(
        git_world, [upstream], service_name_source="origin", shallow_clone=False
    )

    result = registry.bootstrap()

    assert result is not None
    assert result.updated == (service,)
    assert git_world.registry_file(f"idl/{service}/service.thrift") == _thrift("a")
    assert list(_registry_meta(git_world)["remotes"]) == [service]  # type: ignore[arg-type]

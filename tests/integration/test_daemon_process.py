from __future__ import annotations

import io
import json
import shutil
from pathlib import Path

import pytest

from conftest import GitWorld
from idl_registry.config import DaemonConfig, Environment, Remote
from idl_registry.daemon import IdlDaemon, main
from idl_registry.git import GitCommandError


def _write_config(world: GitWorld, upstreams: list[Path]) -> Path:
    config_file = world.root / "daemon.json"
    config_file.write_text(
        json.dumps(
            {
                "remotes": [{"repository": str(path)} for path in upstreams],
                "upstream": str(world.registry),
                "fileNameStrategy": "lastSegment",
                "fetchInterval": 1000,
                "repositoryFolder": "checkout",
                "cacheLocation": "mirrors",
                "auditLog": "logs/git.jsonl",
            }
        ),
        encoding="utf-8",
    )
    return config_file


def test_main_once_syncs_and_reports(git_world: GitWorld) -> None:
    upstream = git_world.create_upstream("a", {"service.thrift": "service A {}\n"})
    config_file = _write_config(git_world, [upstream])
    env = Environment(home=git_world.root / "home", cwd=git_world.root, variables={})
    out = io.StringIO()
    err = io.StringIO()

    code = main(["--config-file", str(config_file), "--once"], env=env, stdout=out, stderr=err)

    assert code == 0, err.getvalue()
    assert out.getvalue() == "synced 1 remotes; updated: a\n"
    assert (git_world.root / "checkout" / "idl" / "a" / "service.thrift").exists()
    assert (git_world.root / "mirrors" / "a").is_dir()
    assert (git_world.root / "logs" / "git.jsonl").stat().st_size > 0


def test_main_reports_config_errors(tmp_path: Path) -> None:
    config_file = tmp_path / "daemon.json"
    config_file.write_text(json.dumps({"remotes": []}), encoding="utf-8")
    env = Environment(home=tmp_path, cwd=tmp_path, variables={})
    err = io.StringIO()

    code = main(["--configFile", str(config_file)], env=env, stdout=io.StringIO(), stderr=err)

    assert code == 1
    assert err.getvalue() == "ERR: must configure `upstream`\n"


def test_failed_pass_stops_the_schedule(git_world: GitWorld) -> None:
    upstream = git_world.create_upstream("a", {"service.thrift": "service A {}\n"})
    config = DaemonConfig(
        remotes=(Remote.from_strategy(str(upstream), None, "lastSegment"),),
        upstream=str(git_world.registry),
        file_name_strategy="lastSegment",
        fetch_interval_ms=1,
        repository_directory=git_world.root / "checkout",
        cache_location=git_world.root / "mirrors",
    )
    daemon = IdlDaemon(config)
    errors: list[Exception] = []
    daemon.on_error(errors.append)
    daemon.bootstrap()
    shutil.rmtree(upstream)

    with pytest.raises(GitCommandError):
        daemon.run_forever()

    assert len(errors) == 1
    assert daemon.passes == 1


def test_stopped_daemon_runs_no_passes(git_world: GitWorld) -> None:
    config = DaemonConfig(
        remotes=(),
        upstream=str(git_world.registry),
        file_name_strategy="lastSegment",
        fetch_interval_ms=1,
        repository_directory=git_world.root / "checkout",
        cache_location=git_world.root / "mirrors",
    )
    daemon = IdlDaemon(config)
    daemon.bootstrap(fetch_remotes=False)
    daemon.stop()

    daemon.run_forever()

    assert daemon.stopped
    assert daemon.passes == 0


def test_bootstrap_failure_reaches_error_listeners(git_world: GitWorld) -> None:
    config = DaemonConfig(
        remotes=(Remote.from_strategy(str(git_world.upstream_path("gone")), None, "lastSegment"),),
        upstream=str(git_world.registry),
        file_name_strategy="lastSegment",
        fetch_interval_ms=1,
        repository_directory=git_world.root / "checkout",
        cache_location=git_world.root / "mirrors",
    )
    daemon = IdlDaemon(config)
    errors: list[Exception] = []
    daemon.on_error(errors.append)

    with pytest.raises(GitCommandError) as excinfo:
        daemon.bootstrap()

    assert errors == [excinfo.value]
    assert daemon.passes == 0

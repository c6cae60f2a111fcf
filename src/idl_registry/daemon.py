"""Daemon that keeps the registry in sync with its remotes on a fixed interval."""

from __future__ import annotations

import argparse
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TextIO

from idl_registry.config import DaemonConfig, Environment, load_daemon_config
from idl_registry.git import GitRunner
from idl_registry.logging import JsonlAuditLogger
from idl_registry.registry import Registry, SyncResult

PassListener = Callable[[SyncResult], None]
ErrorListener = Callable[[Exception], None]


def build_registry(config: DaemonConfig, runner: GitRunner) -> Registry:
    return Registry(
        remotes=config.remotes,
        upstream=config.upstream,
        repository_directory=config.repository_directory,
        cache_location=config.cache_location,
        runner=runner,
        idl_directory=config.idl_directory,
        branch=config.branch,
        service_name_source=config.service_name_source,
        tag_updates=config.tag_updates,
        shallow_clone=config.shallow_clone,
    )


class IdlDaemon:
    """Bootstraps the registry, then runs one sync pass per interval.

    A failed pass is reported to error listeners and stops the schedule.
    """

    def __init__(self, config: DaemonConfig, runner: GitRunner | None = None) -> None:
        self.config = config
        timeout = config.git_timeout_ms / 1000 if config.git_timeout_ms is not None else None
        self.runner = runner or GitRunner(audit=JsonlAuditLogger(config.audit_log), timeout=timeout)
        self.registry = build_registry(config, self.runner)
        self._stop = threading.Event()
        self._pass_listeners: list[PassListener] = []
        self._error_listeners: list[ErrorListener] = []
        self.passes = 0

    def on_pass(self, listener: PassListener) -> None:
        self._pass_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def bootstrap(self, fetch_remotes: bool = True) -> SyncResult | None:
        try:
            result = self.registry.bootstrap(fetch_remotes=fetch_remotes)
        except Exception as error:
            self._notify_error(error)
            raise
        if result is not None:
            self._notify_pass(result)
        return result

    def run_once(self) -> SyncResult:
        result = self.registry.fetch_remotes()
        self._notify_pass(result)
        return result

    def run_forever(self) -> None:
        """Run passes until stopped or until a pass fails."""
        interval = self.config.fetch_interval_ms / 1000
        while not self._stop.wait(interval):
            try:
                self.run_once()
            except Exception as error:
                self._notify_error(error)
                raise

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _notify_pass(self, result: SyncResult) -> None:
        self.passes += 1
        for listener in self._pass_listeners:
            listener(result)

    def _notify_error(self, error: Exception) -> None:
        for listener in self._error_listeners:
            listener(error)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="idl-daemon")
    parser.add_argument("--config-file", "--configFile", dest="config_file", required=True)
    parser.add_argument(
        "--once", action="store_true", help="Run a single synchronization pass and exit."
    )
    parser.add_argument(
        "--no-fetch", action="store_true", help="Bootstrap the registry without syncing remotes."
    )
    return parser


def main(
    argv: list[str] | None = None,
    env: Environment | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    """Entrypoint for the idl-daemon process."""
    out = stdout or sys.stdout
    err = stderr or sys.stderr
    args = build_arg_parser().parse_args(argv)
    environment = env or Environment.capture()
    try:
        config = load_daemon_config(Path(args.config_file), environment)
        daemon = IdlDaemon(config)
        daemon.on_pass(lambda result: _report_pass(out, result))
        daemon.bootstrap(fetch_remotes=not args.no_fetch)
        if not args.once:
            daemon.run_forever()
    except KeyboardInterrupt:
        return 0
    except Exception as error:
        err.write(f"ERR: {error}\n")
        return 1
    return 0


def _report_pass(stream: TextIO, result: SyncResult) -> None:
    updated = ", ".join(result.updated) or "none"
    stream.write(f"synced {len(result.updated) + len(result.unchanged)} remotes; updated: {updated}\n")
    stream.flush()


if __name__ == "__main__":
    raise SystemExit(main())

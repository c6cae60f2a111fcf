"""`idl` command line entrypoint."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import TextIO

from idl_registry.client import IdlClient, build_runner
from idl_registry.config import CliOverrides, Environment, load_client_config

COMMANDS = ("list", "fetch", "show", "publish", "update", "init", "version", "help")

HELP_TEXT = "\n".join(
    [
        "usage: idl --repository=<repo> [--help] [-h]",
        "           <command> <args>",
        "",
        "Where <command> is one of:",
        "  - list",
        "  - fetch <name>",
        "  - show <name>",
        "  - publish",
        "  - update",
        "  - init",
        "  - version",
    ]
)


def build_arg_parser() -> argparse.ArgumentParser:
    """Build argument parser for client commands."""
    parser = argparse.ArgumentParser(prog="idl", add_help=False)
    parser.add_argument("command", nargs="?", default=None)
    parser.add_argument("name", nargs="?", default=None)
    parser.add_argument("-h", "--help", action="store_true", dest="help_flag")
    parser.add_argument("--repository", "--registry", dest="repository", default=None)
    parser.add_argument("--cwd", default=None)
    parser.add_argument("--cache-dir", "--cacheDir", dest="cache_dir", default=None)
    parser.add_argument(
        "--debug-git", "--debugGit", dest="debug_git", action="store_true", default=None
    )
    parser.add_argument(
        "--git-timeout", "--gitTimeout", dest="git_timeout", type=int, default=None,
        help="Timeout for each git command in milliseconds.",
    )
    parser.add_argument("--help-url", "--helpUrl", dest="help_url", default=None)
    parser.add_argument(
        "--two-factor-prompt", "--twoFactorPrompt", dest="two_factor_prompt", default=None
    )
    parser.add_argument("--two-factor", "--twoFactor", dest="two_factor", default=None)
    parser.add_argument("--audit-log", dest="audit_log", default=None)
    return parser


def overrides_from_args(args: argparse.Namespace) -> CliOverrides:
    return CliOverrides(
        repository=args.repository,
        cwd=Path(args.cwd).resolve() if args.cwd is not None else None,
        cache_dir=Path(args.cache_dir).resolve() if args.cache_dir is not None else None,
        debug_git=args.debug_git,
        git_timeout_ms=args.git_timeout,
        help_url=args.help_url,
        two_factor_prompt=args.two_factor_prompt,
        two_factor=args.two_factor,
        audit_log=Path(args.audit_log).resolve() if args.audit_log is not None else None,
    )


def run_command(
    client: IdlClient, command: str, name: str | None
) -> str | None:
    """Dispatch one command; returns text to print, if any."""
    if command == "init":
        client.init()
        return None
    client.fetch_repository()
    if command == "list":
        return str(client.list())
    if command == "fetch":
        client.fetch(name)
        return None
    if command == "show":
        return client.show(name)
    if command == "publish":
        client.publish()
        return None
    if command == "update":
        client.update()
        return None
    raise ValueError(f"unknown command {command}")


def main(
    argv: list[str] | None = None,
    env: Environment | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    """Entrypoint for the idl client process."""
    out = stdout or sys.stdout
    err = stderr or sys.stderr
    args = build_arg_parser().parse_args(argv)
    if args.help_flag or args.command in (None, "help"):
        out.write(HELP_TEXT + "\n")
        return 0
    if args.command == "version":
        out.write(IdlClient.version() + "\n")
        return 0
    if args.command not in COMMANDS:
        err.write(f"ERR: unknown command {args.command}\n")
        return 1
    environment = env or Environment.capture()
    try:
        config = load_client_config(environment, overrides_from_args(args))
        client = IdlClient(config, build_runner(config, debug_stream=err))
        text = run_command(client, args.command, args.name)
    except Exception as error:
        err.write(f"ERR: {error}\n")
        return 1
    if text:
        out.write(text if text.endswith("\n") else text + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Configuration loading and deterministic merge order."""

from __future__ import annotations

import json
import os
import tempfile
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from idl_registry.service_name import NAMING_STRATEGIES, directory_name

DEFAULT_BRANCH = "master"
DEFAULT_IDL_DIRECTORY = "idl"
DEFAULT_GIT_TIMEOUT_MS = 10_000
DEFAULT_FETCH_CONCURRENCY = 4
RC_FILENAME = ".idlrc.toml"
ENV_PREFIX = "IDL_"
SERVICE_NAME_SOURCES = ("strategy", "origin")
IDL_DIRECTORY_NAMES = ("idl", "thrift")


class ConfigError(ValueError):
    """Raised for missing or malformed configuration fields."""


@dataclass(slots=True, frozen=True)
class Remote:
    """One upstream repository tracked for IDL content."""

    repository: str
    branch: str
    directory_name: str

    @classmethod
    def from_strategy(cls, repository: str, branch: str | None, strategy: str) -> Remote:
        try:
            name = directory_name(repository, strategy)
        except ValueError as error:
            raise ConfigError(str(error)) from error
        return cls(repository=repository, branch=branch or DEFAULT_BRANCH, directory_name=name)


@dataclass(slots=True, frozen=True)
class DaemonConfig:
    """Fully validated daemon configuration."""

    remotes: tuple[Remote, ...]
    upstream: str
    file_name_strategy: str
    fetch_interval_ms: int
    repository_directory: Path
    cache_location: Path
    idl_directory: str = DEFAULT_IDL_DIRECTORY
    branch: str = DEFAULT_BRANCH
    service_name_source: str = "strategy"
    tag_updates: bool = True
    shallow_clone: bool = True
    git_timeout_ms: int | None = None
    audit_log: Path | None = None


@dataclass(slots=True, frozen=True)
class ClientConfig:
    """Fully merged client configuration."""

    repository: str
    cwd: Path
    cache_dir: Path
    branch: str = DEFAULT_BRANCH
    idl_directory: str = DEFAULT_IDL_DIRECTORY
    debug_git: bool = False
    git_timeout_ms: int = DEFAULT_GIT_TIMEOUT_MS
    help_url: str | None = None
    two_factor_prompt: str | None = None
    two_factor: str | None = None
    audit_log: Path | None = None
    fetch_concurrency: int = DEFAULT_FETCH_CONCURRENCY
    tag_updates: bool = True


@dataclass(slots=True, frozen=True)
class CliOverrides:
    """Optional startup overrides applied at highest precedence."""

    repository: str | None = None
    cwd: Path | None = None
    cache_dir: Path | None = None
    debug_git: bool | None = None
    git_timeout_ms: int | None = None
    help_url: str | None = None
    two_factor_prompt: str | None = None
    two_factor: str | None = None
    audit_log: Path | None = None


@dataclass(slots=True, frozen=True)
class Environment:
    """Process environment captured once at startup."""

    home: Path
    cwd: Path
    variables: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def capture(cls) -> Environment:
        return cls(home=Path.home(), cwd=Path.cwd(), variables=dict(os.environ))


def _read_payload(path: Path) -> dict[str, object]:
    if path.suffix == ".toml":
        with path.open("rb") as handle:
            payload = tomllib.load(handle)
    else:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as error:
            raise ConfigError(f"Config file '{path}' is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigError("config file must be a json object")
    return payload


def load_daemon_config(config_file: Path, env: Environment) -> DaemonConfig:
    """Load and validate the daemon config file (JSON or TOML by suffix)."""
    if not config_file.exists():
        raise ConfigError(f"Config file '{config_file}' does not exist.")
    return parse_daemon_config(_read_payload(config_file), env)


def parse_daemon_config(payload: dict[str, object], env: Environment) -> DaemonConfig:
    raw_remotes = payload.get("remotes")
    if not isinstance(raw_remotes, list):
        raise ConfigError("must configure `remotes`")
    upstream = payload.get("upstream")
    if not isinstance(upstream, str) or not upstream:
        raise ConfigError("must configure `upstream`")
    strategy = payload.get("fileNameStrategy")
    if not isinstance(strategy, str) or not strategy:
        raise ConfigError("must configure fileNameStrategy")
    if strategy not in NAMING_STRATEGIES:
        raise ConfigError(
            f"Config field 'fileNameStrategy' must be one of {', '.join(NAMING_STRATEGIES)}."
        )
    fetch_interval = payload.get("fetchInterval")
    if not isinstance(fetch_interval, int) or isinstance(fetch_interval, bool) or fetch_interval < 1:
        raise ConfigError("must configure fetchInterval")

    remotes: list[Remote] = []
    for index, item in enumerate(raw_remotes):
        if not isinstance(item, dict):
            raise ConfigError(f"Config field 'remotes[{index}]' must be an object.")
        repository = item.get("repository")
        if not isinstance(repository, str) or not repository:
            raise ConfigError(f"Config field 'remotes[{index}].repository' is required.")
        branch = _optional_str(item.get("branch"), f"remotes[{index}].branch")
        remotes.append(Remote.from_strategy(repository, branch, strategy))

    repository_directory = _optional_str(
        payload.get("repositoryDirectory"), "repositoryDirectory"
    ) or _optional_str(payload.get("repositoryFolder"), "repositoryFolder")
    if repository_directory is None:
        stamp = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        resolved_repository = Path(tempfile.gettempdir()) / "idl" / stamp
    else:
        resolved_repository = _resolve(repository_directory, env)

    cache_location = _optional_str(payload.get("cacheLocation"), "cacheLocation")
    resolved_cache = (
        _resolve(cache_location, env)
        if cache_location is not None
        else env.home / ".idl" / "remote-cache"
    )

    idl_directory = (
        _optional_str(payload.get("idlDirectory"), "idlDirectory") or DEFAULT_IDL_DIRECTORY
    )
    if idl_directory not in IDL_DIRECTORY_NAMES:
        raise ConfigError(
            f"Config field 'idlDirectory' must be one of {', '.join(IDL_DIRECTORY_NAMES)}."
        )
    service_name_source = (
        _optional_str(payload.get("serviceNameSource"), "serviceNameSource") or "strategy"
    )
    if service_name_source not in SERVICE_NAME_SOURCES:
        raise ConfigError(
            f"Config field 'serviceNameSource' must be one of {', '.join(SERVICE_NAME_SOURCES)}."
        )
    audit_log = _optional_str(payload.get("auditLog"), "auditLog")

    return DaemonConfig(
        remotes=tuple(remotes),
        upstream=upstream,
        file_name_strategy=strategy,
        fetch_interval_ms=fetch_interval,
        repository_directory=resolved_repository,
        cache_location=resolved_cache,
        idl_directory=idl_directory,
        branch=_optional_str(payload.get("branch"), "branch") or DEFAULT_BRANCH,
        service_name_source=service_name_source,
        tag_updates=_optional_bool(payload.get("tagUpdates"), "tagUpdates", True),
        shallow_clone=_optional_bool(payload.get("shallowClone"), "shallowClone", True),
        git_timeout_ms=_optional_positive_int(payload.get("gitTimeout"), "gitTimeout", None),
        audit_log=_resolve(audit_log, env) if audit_log is not None else None,
    )


def default_client_values(env: Environment) -> dict[str, object]:
    return {
        "cwd": str(env.cwd),
        "cacheDir": str(env.home / ".idl" / "upstream-cache"),
        "branch": DEFAULT_BRANCH,
        "debugGit": False,
        "gitTimeout": DEFAULT_GIT_TIMEOUT_MS,
        "fetchConcurrency": DEFAULT_FETCH_CONCURRENCY,
        "tagUpdates": True,
    }


def load_rc_files(env: Environment, cwd: Path) -> dict[str, object]:
    """Load optional .idlrc.toml from home, then from the project directory."""
    merged: dict[str, object] = {}
    for directory in (env.home, cwd):
        rc_path = directory / RC_FILENAME
        if not rc_path.exists():
            continue
        with rc_path.open("rb") as handle:
            payload = tomllib.load(handle)
        merged.update(payload)
    return merged


def env_values(variables: Mapping[str, str]) -> dict[str, object]:
    """Map IDL_* variables (IDL_CACHE_DIR -> cacheDir) to config keys."""
    output: dict[str, object] = {}
    for key in sorted(variables):
        if not key.startswith(ENV_PREFIX):
            continue
        words = key[len(ENV_PREFIX) :].lower().split("_")
        if not words or not words[0]:
            continue
        output[words[0] + "".join(word.capitalize() for word in words[1:])] = variables[key]
    return output


def load_client_config(env: Environment, overrides: CliOverrides | None = None) -> ClientConfig:
    """Merge defaults -> rc files -> IDL_* environment -> CLI overrides."""
    overrides = overrides or CliOverrides()
    values = default_client_values(env)
    cwd_for_rc = overrides.cwd or env.cwd
    values.update(load_rc_files(env, cwd_for_rc))
    values.update(env_values(env.variables))
    values.update(_overrides_to_values(overrides))
    return merge_client_values(values, env)


def _overrides_to_values(overrides: CliOverrides) -> dict[str, object]:
    output: dict[str, object] = {}
    pairs: tuple[tuple[str, object], ...] = (
        ("repository", overrides.repository),
        ("cwd", str(overrides.cwd) if overrides.cwd is not None else None),
        ("cacheDir", str(overrides.cache_dir) if overrides.cache_dir is not None else None),
        ("debugGit", overrides.debug_git),
        ("gitTimeout", overrides.git_timeout_ms),
        ("helpUrl", overrides.help_url),
        ("twoFactorPrompt", overrides.two_factor_prompt),
        ("twoFactor", overrides.two_factor),
        ("auditLog", str(overrides.audit_log) if overrides.audit_log is not None else None),
    )
    for key, value in pairs:
        if value is not None:
            output[key] = value
    return output


def merge_client_values(values: dict[str, object], env: Environment) -> ClientConfig:
    repository = values.get("repository", values.get("registry"))
    if not isinstance(repository, str) or not repository:
        raise ConfigError("--repository is required")
    cwd = _resolve(_required_str(values.get("cwd"), "cwd"), env)
    cache_dir = _resolve(_required_str(values.get("cacheDir"), "cacheDir"), env)
    audit_log = _optional_str(values.get("auditLog"), "auditLog")
    idl_directory = _optional_str(values.get("idlDirectory"), "idlDirectory") or DEFAULT_IDL_DIRECTORY
    if idl_directory not in IDL_DIRECTORY_NAMES:
        raise ConfigError(
            f"Config field 'idlDirectory' must be one of {', '.join(IDL_DIRECTORY_NAMES)}."
        )
    git_timeout = _coerce_int(values.get("gitTimeout"), "gitTimeout")
    if git_timeout is None or git_timeout < 1:
        raise ConfigError("Config field 'gitTimeout' must be a positive integer.")
    concurrency = _coerce_int(values.get("fetchConcurrency"), "fetchConcurrency")
    if concurrency is None or concurrency < 1:
        raise ConfigError("Config field 'fetchConcurrency' must be a positive integer.")
    return ClientConfig(
        repository=repository,
        cwd=cwd,
        cache_dir=cache_dir,
        branch=_optional_str(values.get("branch"), "branch") or DEFAULT_BRANCH,
        idl_directory=idl_directory,
        debug_git=_coerce_bool(values.get("debugGit"), "debugGit"),
        git_timeout_ms=git_timeout,
        help_url=_optional_str(values.get("helpUrl"), "helpUrl"),
        two_factor_prompt=_optional_str(values.get("twoFactorPrompt"), "twoFactorPrompt"),
        two_factor=_optional_str(values.get("twoFactor"), "twoFactor"),
        audit_log=_resolve(audit_log, env) if audit_log is not None else None,
        fetch_concurrency=concurrency,
        tag_updates=_coerce_bool(values.get("tagUpdates"), "tagUpdates"),
    )


def _resolve(value: str, env: Environment) -> Path:
    path = env.home / value[1:].lstrip("/") if value.startswith("~") else Path(value)
    if not path.is_absolute():
        path = env.cwd / path
    return path.resolve()


def _required_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Config field '{name}' must be a non-empty string.")
    return value


def _optional_str(value: object, name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Config field '{name}' must be a string.")
    return value or None


def _optional_bool(value: object, name: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Config field '{name}' must be a boolean.")
    return value


def _optional_positive_int(value: object, name: str, default: int | None) -> int | None:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigError(f"Config field '{name}' must be a positive integer.")
    return value


def _coerce_bool(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in {"1", "true", "yes"}:
        return True
    if isinstance(value, str) and value.lower() in {"0", "false", "no", ""}:
        return False
    raise ConfigError(f"Config field '{name}' must be a boolean.")


def _coerce_int(value: object, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Config field '{name}' must be an integer.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as error:
            raise ConfigError(f"Config field '{name}' must be an integer.") from error
    raise ConfigError(f"Config field '{name}' must be an integer.")

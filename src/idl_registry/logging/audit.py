"""Structured JSONL audit log for git invocations."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

MAX_OUTPUT_CHARS = 4_000


@dataclass(slots=True, frozen=True)
class GitEvent:
    """Sanitized representation of a single git process run."""

    timestamp: str
    level: str
    command: list[str]
    cwd: str
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int


EventListener = Callable[[GitEvent], None]


def utc_timestamp() -> str:
    """Return an ISO-8601 UTC timestamp."""
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def redact_command(command: list[str], secrets: tuple[str, ...]) -> list[str]:
    """Replace any argument containing a secret value."""
    if not secrets:
        return list(command)
    redacted: list[str] = []
    for part in command:
        if any(secret and secret in part for secret in secrets):
            redacted.append("<redacted>")
            continue
        redacted.append(part)
    return redacted


def truncate_output(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"... [{len(text) - MAX_OUTPUT_CHARS} chars truncated]"


class JsonlAuditLogger:
    """Append-only JSONL audit logger and bounded reader.

    A logger without a path only fans events out to listeners.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._listeners: list[EventListener] = []
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path | None:
        """Return on-disk JSONL path."""
        return self._path

    def add_listener(self, listener: EventListener) -> None:
        """Register a callable notified of every appended event."""
        self._listeners.append(listener)

    def append(self, event: GitEvent) -> None:
        """Append a sanitized event as one JSON object per line."""
        if self._path is not None:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(asdict(event), sort_keys=True))
                handle.write("\n")
        for listener in self._listeners:
            listener(event)

    def read(self, since: str | None = None, limit: int = 50) -> list[dict[str, object]]:
        """Read recent events, optionally filtered by timestamp lower bound."""
        if limit < 1 or self._path is None:
            return []
        entries: list[dict[str, object]] = []
        if not self._path.exists():
            return entries
        with self._path.open("r", encoding="utf-8") as handle:
            for line in handle:
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    record = json.loads(stripped)
                except json.JSONDecodeError:
                    continue
                if since is not None:
                    ts = record.get("timestamp")
                    if not isinstance(ts, str) or ts < since:
                        continue
                entries.append(record)
        if len(entries) <= limit:
            return entries
        return entries[-limit:]

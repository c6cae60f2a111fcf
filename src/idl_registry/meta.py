"""Versioned meta.json store for the registry and for consumer projects."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

META_FILENAME = "meta.json"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MILLISECOND = timedelta(milliseconds=1)

TimeInput = datetime | int | float | str


class CorruptMetaFileError(ValueError):
    """Raised when meta.json exists but cannot be parsed as a meta document."""

    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"Corrupt meta.json file: {detail}")
        self.path = path
        self.detail = detail


@dataclass(slots=True, frozen=True)
class MetaRecord:
    """Sync state of one service subtree."""

    time: str
    version: int
    shasums: dict[str, str] | None = None
    sha: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"time": self.time, "version": self.version}
        if self.sha is not None:
            payload["sha"] = self.sha
        if self.shasums is not None:
            payload["shasums"] = dict(self.shasums)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> MetaRecord:
        raw_time = payload.get("time")
        if not isinstance(raw_time, str):
            raise ValueError("record field 'time' must be a string")
        when = parse_time(raw_time)
        shasums = payload.get("shasums")
        sha = payload.get("sha")
        return cls(
            time=iso_timestamp(when),
            version=epoch_ms(when),
            shasums=_string_map(shasums) if isinstance(shasums, dict) else None,
            sha=sha if isinstance(sha, str) else None,
        )


def epoch_ms(when: datetime) -> int:
    """Return integer milliseconds since the Unix epoch."""
    return (_as_utc(when) - _EPOCH) // _MILLISECOND


def iso_timestamp(when: datetime) -> str:
    """Format as ISO-8601 UTC with millisecond precision and a Z suffix."""
    return _as_utc(when).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_time(value: TimeInput) -> datetime:
    """Coerce datetimes, epoch milliseconds or ISO strings to a UTC datetime in ms."""
    if isinstance(value, datetime):
        when = _as_utc(value)
    elif isinstance(value, bool):
        raise TypeError("time must not be a boolean")
    elif isinstance(value, (int, float)):
        when = _EPOCH + timedelta(milliseconds=int(value))
    elif isinstance(value, str):
        when = _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    else:
        raise TypeError(f"unsupported time value: {value!r}")
    return when.replace(microsecond=(when.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    return parse_time(datetime.now(tz=UTC))


def _as_utc(when: datetime) -> datetime:
    if when.tzinfo is None:
        return when.replace(tzinfo=UTC)
    return when.astimezone(UTC)


def _string_map(value: dict[object, object]) -> dict[str, str]:
    return {str(key): str(item) for key, item in value.items()}


@dataclass(slots=True)
class MetaFile:
    """In-memory meta document bound to a file path.

    The root time is a watermark: the latest record time applied since load,
    seeded from the document on disk. Every mutation is written through.
    """

    path: Path
    _watermark: datetime | None = field(default=None, init=False)
    _remotes: dict[str, MetaRecord] = field(default_factory=dict, init=False)
    _shasums: dict[str, str] | None = field(default=None, init=False)
    _loaded: bool = field(default=False, init=False)

    def load(self) -> MetaFile:
        """Read the document; a missing file is an empty document."""
        self._watermark = None
        self._remotes = {}
        self._shasums = None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._loaded = True
            return self
        try:
            payload = json.loads(raw.lstrip("\ufeff"))
        except json.JSONDecodeError as error:
            raise CorruptMetaFileError(self.path, str(error)) from error
        if not isinstance(payload, dict):
            raise CorruptMetaFileError(self.path, "top-level value must be an object")
        try:
            self._apply_payload(payload)
        except (TypeError, ValueError) as error:
            raise CorruptMetaFileError(self.path, str(error)) from error
        self._loaded = True
        return self

    @property
    def loaded(self) -> bool:
        return self._loaded

    def _apply_payload(self, payload: dict[str, object]) -> None:
        raw_time = payload.get("time")
        if raw_time is not None:
            if not isinstance(raw_time, str):
                raise ValueError("field 'time' must be a string")
            self._watermark = parse_time(raw_time)
        remotes = payload.get("remotes", {})
        if not isinstance(remotes, dict):
            raise ValueError("field 'remotes' must be an object")
        for name, record in remotes.items():
            if not isinstance(record, dict):
                raise ValueError(f"record '{name}' must be an object")
            self._remotes[str(name)] = MetaRecord.from_dict(record)
        shasums = payload.get("shasums")
        if shasums is not None:
            if not isinstance(shasums, dict):
                raise ValueError("field 'shasums' must be an object")
            self._shasums = _string_map(shasums)

    def get_record(self, name: str) -> MetaRecord | None:
        return self._remotes.get(name)

    def get_shasums(self, name: str) -> dict[str, str] | None:
        record = self._remotes.get(name)
        if record is None:
            return None
        return record.shasums

    def get_sha(self, name: str) -> str | None:
        record = self._remotes.get(name)
        if record is None:
            return None
        return record.sha

    def remotes(self) -> dict[str, MetaRecord]:
        return dict(self._remotes)

    def time(self) -> datetime | None:
        """Return the watermark, or None before any record exists."""
        return self._watermark

    def version(self) -> int | None:
        if self._watermark is None:
            return None
        return epoch_ms(self._watermark)

    def update_record(
        self,
        name: str,
        *,
        time: TimeInput | None = None,
        shasums: dict[str, str] | None = None,
        sha: str | None = None,
    ) -> MetaRecord:
        """Record a service update and persist the whole document."""
        watermark = self._advance(time)
        record = MetaRecord(
            time=iso_timestamp(watermark),
            version=epoch_ms(watermark),
            shasums=dict(shasums) if shasums is not None else None,
            sha=sha,
        )
        self._remotes[name] = record
        self.save()
        return record

    def publish(self, *, shasums: dict[str, str] | None, time: TimeInput | None = None) -> None:
        """Replace the flat shasum set of a published project and persist."""
        self._advance(time)
        self._shasums = dict(shasums or {})
        self.save()

    def next_time(self, now: TimeInput | None = None) -> datetime:
        """Return now, or one millisecond past the watermark when the clock lags it."""
        # tags are named after the watermark, so it must move on every update
        candidate = parse_time(now) if now is not None else utc_now()
        if self._watermark is not None and candidate <= self._watermark:
            return self._watermark + _MILLISECOND
        return candidate

    def _advance(self, time: TimeInput | None) -> datetime:
        candidate = parse_time(time) if time is not None else utc_now()
        if self._watermark is None or candidate > self._watermark:
            self._watermark = candidate
        return self._watermark

    def to_json(self) -> dict[str, object]:
        payload: dict[str, object] = {}
        if self._watermark is not None:
            payload["time"] = iso_timestamp(self._watermark)
            payload["version"] = epoch_ms(self._watermark)
        if self._shasums is not None:
            payload["shasums"] = dict(self._shasums)
        payload["remotes"] = {
            name: record.to_dict() for name, record in self._remotes.items()
        }
        return payload

    def to_json_string(self) -> str:
        return json.dumps(self.to_json(), indent=4) + "\n"

    def save(self) -> None:
        """Durably replace the file with the current document."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            handle.write(self.to_json_string())
            handle.flush()
            os.fsync(handle.fileno())
        tmp.replace(self.path)

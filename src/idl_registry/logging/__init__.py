"""Structured logging utilities."""

from .audit import GitEvent, JsonlAuditLogger, redact_command, utc_timestamp

__all__ = ["GitEvent", "JsonlAuditLogger", "redact_command", "utc_timestamp"]

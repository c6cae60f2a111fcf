"""Git process execution with audit logging, timeouts and prompt replies."""

from __future__ import annotations

import os
import re
import select
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from idl_registry.logging import GitEvent, JsonlAuditLogger, redact_command, utc_timestamp
from idl_registry.logging.audit import truncate_output

_PTY_READ_BYTES = 1024


class GitCommandError(Exception):
    """Raised when a git invocation exits non-zero."""

    def __init__(
        self,
        command: list[str],
        cwd: Path,
        exit_code: int | None,
        stdout: str,
        stderr: str,
    ) -> None:
        detail = stderr.strip() or stdout.strip() or "no output"
        super().__init__(
            f"`{' '.join(command)}` failed in {cwd} (exit {exit_code}): {detail}"
        )
        self.command = command
        self.cwd = cwd
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class GitTimeoutError(GitCommandError):
    """Raised when a git invocation exceeds its timeout."""

    def __init__(self, command: list[str], cwd: Path, timeout: float, help_text: str) -> None:
        super().__init__(command, cwd, None, "", f"timed out after {timeout}s")
        self.timeout = timeout
        self.help_text = help_text

    def __str__(self) -> str:
        return f"{super().__str__()}\n{self.help_text}"


@dataclass(slots=True, frozen=True)
class GitResult:
    """Captured output of a successful git run."""

    stdout: str
    stderr: str


@dataclass(slots=True, frozen=True)
class PromptResponder:
    """Reply once to an interactive prompt seen on a pseudo-terminal."""

    pattern: re.Pattern[str]
    response: str

    @classmethod
    def from_strings(cls, prompt: str, response: str) -> PromptResponder:
        return cls(pattern=re.compile(prompt), response=response)


@dataclass(slots=True)
class GitRunner:
    """Runs git subcommands and records each run in the audit log."""

    audit: JsonlAuditLogger = field(default_factory=JsonlAuditLogger)
    timeout: float | None = None
    help_url: str | None = None
    prompt: PromptResponder | None = None
    executable: str = "git"

    def run(
        self,
        args: list[str],
        cwd: Path,
        *,
        ignore_stderr: bool = False,
        timeout: float | None = None,
    ) -> GitResult:
        """Run `git <args>` in cwd; raise GitCommandError on non-zero exit."""
        command = [self.executable, *args]
        effective_timeout = timeout if timeout is not None else self.timeout
        started = time.perf_counter()
        try:
            if self.prompt is not None:
                exit_code, stdout, stderr = self._run_with_pty(
                    command, cwd, effective_timeout, self.prompt
                )
            else:
                completed = subprocess.run(
                    command,
                    cwd=cwd,
                    check=False,
                    capture_output=True,
                    text=True,
                    timeout=effective_timeout,
                    env=_git_env(),
                )
                exit_code, stdout, stderr = (
                    completed.returncode,
                    completed.stdout,
                    completed.stderr,
                )
        except subprocess.TimeoutExpired:
            self._log(command, cwd, None, "", "timeout", started, level="warn")
            raise GitTimeoutError(
                command, cwd, effective_timeout or 0.0, self.timeout_help()
            ) from None

        if exit_code != 0:
            level = "warn"
        elif stderr.strip() and not ignore_stderr:
            level = "warn"
        else:
            level = "debug"
        self._log(command, cwd, exit_code, stdout, stderr, started, level=level)
        if exit_code != 0:
            raise GitCommandError(command, cwd, exit_code, stdout, stderr)
        return GitResult(stdout=stdout, stderr=stderr)

    def timeout_help(self) -> str:
        lines = ["Git is taking longer than expected.", "Re-run with --debug-git to see git output."]
        if self.help_url:
            lines.append(f"For more help see {self.help_url}")
        return "\n".join(lines)

    def _run_with_pty(
        self,
        command: list[str],
        cwd: Path,
        timeout: float | None,
        prompt: PromptResponder,
    ) -> tuple[int, str, str]:
        import pty

        master, slave = pty.openpty()
        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                env=_git_env(interactive=True),
                start_new_session=True,
            )
        finally:
            os.close(slave)

        deadline = None if timeout is None else time.monotonic() + timeout
        chunks: list[bytes] = []
        answered = False
        try:
            while True:
                if deadline is not None and time.monotonic() > deadline:
                    process.kill()
                    process.wait()
                    raise subprocess.TimeoutExpired(command, timeout or 0.0)
                ready, _, _ = select.select([master], [], [], 0.1)
                if ready:
                    try:
                        data = os.read(master, _PTY_READ_BYTES)
                    except OSError:
                        data = b""
                    if not data:
                        break
                    chunks.append(data)
                    if not answered:
                        seen = b"".join(chunks).decode("utf-8", errors="replace")
                        if prompt.pattern.search(seen):
                            os.write(master, f"{prompt.response}\n".encode())
                            answered = True
                elif process.poll() is not None:
                    break
            exit_code = process.wait()
        finally:
            os.close(master)
        output = b"".join(chunks).decode("utf-8", errors="replace").replace("\r\n", "\n")
        return exit_code, output, ""

    def _log(
        self,
        command: list[str],
        cwd: Path,
        exit_code: int | None,
        stdout: str,
        stderr: str,
        started: float,
        *,
        level: str,
    ) -> None:
        secrets = (self.prompt.response,) if self.prompt is not None else ()
        self.audit.append(
            GitEvent(
                timestamp=utc_timestamp(),
                level=level,
                command=redact_command(command, secrets),
                cwd=str(cwd),
                exit_code=exit_code,
                stdout=truncate_output(_redact_text(stdout, secrets)),
                stderr=truncate_output(_redact_text(stderr, secrets)),
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
        )


def _redact_text(text: str, secrets: tuple[str, ...]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "<redacted>")
    return text


def _git_env(interactive: bool = False) -> dict[str, str]:
    env = dict(os.environ)
    if not interactive:
        env.setdefault("GIT_TERMINAL_PROMPT", "0")
    return env

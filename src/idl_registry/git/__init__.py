"""Git process wrapper and named git operations."""

from .process import GitCommandError, GitResult, GitRunner, GitTimeoutError, PromptResponder

__all__ = [
    "GitCommandError",
    "GitResult",
    "GitRunner",
    "GitTimeoutError",
    "PromptResponder",
]

"""Shared error types for curb."""

from __future__ import annotations


class CurbError(Exception):
    """Base exception for user-facing curb errors."""


class ConfigError(CurbError):
    """Invalid or unreadable configuration."""


class BacklogError(CurbError):
    """Backlog store could not be read, parsed, or updated."""


class HarnessNotFoundError(CurbError):
    """No harness executable could be resolved on this system."""


class GitError(CurbError):
    """A git command needed by the run failed."""

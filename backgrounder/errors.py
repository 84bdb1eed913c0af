from __future__ import annotations


class BackgrounderError(Exception):
    """Base error for background attachment handling."""


class ConfigurationError(BackgrounderError):
    """Raised at model-definition time for invalid mounts or policies."""


class DispatchError(BackgrounderError):
    """The worker backend refused or failed to accept a job."""


class InvalidCacheName(BackgrounderError, ValueError):
    pass

"""Exception hierarchy for stash-mirror."""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for every error raised by the mirror."""


class UpstreamUnavailableError(MirrorError):
    """Network failure, timeout or 5xx from an upstream instance. Retryable."""


class UpstreamShapeError(MirrorError):
    """Upstream answered, but not with something we can use."""


class StorageError(MirrorError):
    """A write to the local store failed."""


class QueryError(MirrorError):
    """Invalid query: unknown field, sort, modifier or pagination."""


class NotReadyError(MirrorError):
    """Queries are refused until every instance has completed a full sync."""

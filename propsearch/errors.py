"""Error taxonomy shared by the pipeline, the cache layer and the API."""
from __future__ import annotations


class SearchError(Exception):
    """Base class for every error raised by the search service."""


class ValidationError(SearchError):
    """Input that cannot be clamped to a safe value."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class UpstreamUnavailable(SearchError):
    """An index or cache backend is unreachable or ran past its budget."""

    def __init__(self, component: str, message: str = "unavailable") -> None:
        super().__init__(f"{component} {message}")
        self.component = component
        self.message = message


class RateLimited(SearchError):
    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded, retry after {retry_after:.0f}s")
        self.retry_after = retry_after


class InternalError(SearchError):
    """Unexpected failure surfaced to callers without internals."""

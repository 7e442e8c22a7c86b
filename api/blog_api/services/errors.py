from __future__ import annotations


class BlogError(Exception):
    """Base error for the article pipeline."""


class ValidationError(BlogError):
    """Raised when caller-supplied data is rejected before any mutation."""


class ArticleNotFound(BlogError):
    """Raised when the requested article does not exist or is deleted."""


class VersionConflict(BlogError):
    """Raised when an optimistic concurrency check loses."""

    def __init__(self, article_id: int, expected_version: int, actual_version: int | None) -> None:
        super().__init__(
            f"article {article_id} version conflict: expected {expected_version}, found {actual_version}"
        )
        self.article_id = article_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class TransitionError(BlogError):
    """Raised when a status change is not an edge of the publish state machine."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"invalid status transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


class StoreUnavailableError(BlogError):
    """Raised when the primary store is unavailable or not configured."""


class SearchIndexError(BlogError):
    """Base error for search index operations."""


class TransientIndexError(SearchIndexError):
    """Raised for retryable I/O failures against the search index."""


class StaleWriteRejected(SearchIndexError):
    """Raised when a write carries a lower version than the stored document."""

    def __init__(self, article_id: int, version: int, stored_version: int | None) -> None:
        super().__init__(f"article {article_id} stale write: version {version} < stored {stored_version}")
        self.article_id = article_id
        self.version = version
        self.stored_version = stored_version


class ExhaustedRetryError(BlogError):
    """Logged when a sync event runs out of attempts; the event is dead-lettered, never raised."""

    def __init__(self, article_id: int, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"article {article_id} sync exhausted after {attempts} attempts: {last_error!r}")
        self.article_id = article_id
        self.attempts = attempts
        self.last_error = last_error

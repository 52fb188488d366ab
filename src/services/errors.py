"""Error taxonomy for ingestion and sync.

Source-level errors (fetch, parse) are isolated per source by the
pipeline.  ``NotifyError`` is logged and never fails ingestion.  Sync
errors abort the current page and leave the cursor untouched.
"""

from __future__ import annotations


class SchemeWatchError(Exception):
    """Base class for all domain errors."""


class FetchError(SchemeWatchError):
    """A source could not be retrieved.

    ``transient`` failures (timeouts, transport errors, 5xx, 429) are
    retried with backoff; permanent ones (other 4xx) are not.
    """

    def __init__(
        self,
        message: str,
        *,
        source_key: str = "",
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.source_key = source_key
        self.status_code = status_code
        self.transient = transient


class ParseError(SchemeWatchError):
    """Raw content did not match the structure expected by the source's parser."""

    def __init__(self, message: str, *, source_key: str = "") -> None:
        super().__init__(message)
        self.source_key = source_key


class StoreConflictError(SchemeWatchError):
    """A write lost an optimistic-concurrency race on a single record."""

    def __init__(self, scheme_id: str, expected: int | None, actual: int | None) -> None:
        super().__init__(
            f"Revision conflict on {scheme_id}: expected {expected}, found {actual}"
        )
        self.scheme_id = scheme_id
        self.expected = expected
        self.actual = actual


class NotifyError(SchemeWatchError):
    """A change event could not be handed to the push transport."""


class UnknownSourceError(SchemeWatchError):
    """No registered source matches the requested key or URL."""


class SyncFetchError(SchemeWatchError):
    """The device could not retrieve a delta page or record from the API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncMergeError(SchemeWatchError):
    """A delta page could not be merged into the local cache."""


class DetailAccessDenied(SchemeWatchError):
    """The detail gate refused an on-demand fetch of a scheme's full content."""

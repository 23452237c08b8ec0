"""
Error taxonomy for range fetches against the archive.

Fetch-side errors derive from `FetchError`; table conversion failures are a
separate branch so callers can tell "the data never arrived" from "the data
arrived but could not be shaped into columns".
"""

from typing import Optional


class DatasourceError(Exception):
    """Root of everything this package raises on purpose."""


class FetchError(DatasourceError):
    pass


class InvalidRange(FetchError, ValueError):
    def __init__(self, start_block: int, end_block: int):
        self.start_block = start_block
        self.end_block = end_block
        super().__init__(
            f"Invalid block range [{start_block}, {end_block}): "
            "start must be >= 0 and <= end"
        )


class RetryableError(FetchError):
    """Transient transport failure, 5xx or 429. Retried by the scheduler."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class FatalError(FetchError):
    """Client error or undecodable body. Aborts the whole range fetch."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ProtocolViolation(FatalError):
    """The archive answered, but the page breaks the coverage contract."""


class RetriesExhausted(FatalError):
    def __init__(self, cursor: int, attempts: int, last_error: Exception):
        super().__init__(
            f"Gave up on blocks from {cursor} after {attempts} attempts: {last_error}",
            status=getattr(last_error, "status", None),
        )
        self.cursor = cursor
        self.attempts = attempts
        self.last_error = last_error


class QueryError(DatasourceError, ValueError):
    """A query that cannot be sent at all (wrong shape, bounds inside it)."""


class ConversionError(DatasourceError):
    """Fetched records could not be assembled into a table."""

"""
FeedExceptions — errors raised by content repositories.

Repositories raise; the pager never does. FeedResolver catches FeedFetchError
at the fetch boundary and turns it into a LoadMoreOutcome carrying the
matching ErrorKind, so a failed load-more is an ordinary return value for
callers of FeedManager.

Usage:
    from FeedExceptions import FeedFetchError, FeedRateLimitError

    try:
        page = await repo.fetch_page(filters, None, offset=0, limit=15)
    except FeedRateLimitError as e:
        await asyncio.sleep(e.retry_after)
    except FeedFetchError as e:
        print(e.kind, e.message)

All exceptions are subclasses of FeedError so a single except clause catches
everything.
"""

from FeedTypes import ErrorKind


class FeedError(Exception):
    """
    Base class for all feed-pager errors.

    Attributes:
        message:     Human-readable description.
        status_code: HTTP status that triggered this error (0 if unknown).
    """

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.message     = message
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, status={self.status_code})"


class FeedFetchError(FeedError):
    """
    A fetch_page() call failed. Recoverable: loading flags are cleared and the
    caller may issue another load-more.
    """

    kind = ErrorKind.SERVER_ERROR


class FeedConnectionError(FeedFetchError):
    """Raised when the content store cannot be reached (DNS, refused, proxy)."""

    kind = ErrorKind.CONNECTION_FAILED


class FeedTimeoutError(FeedFetchError):
    """
    Raised when a page request exceeds its time budget.

    Attributes:
        timeout: The timeout value in seconds that was exceeded.
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str = "Page request timed out", timeout: float = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class FeedAuthError(FeedFetchError):
    """Raised on HTTP 401: session token missing or expired."""

    kind = ErrorKind.UNAUTHORIZED


class FeedPermissionError(FeedFetchError):
    """Raised on HTTP 403."""

    kind = ErrorKind.FORBIDDEN


class FeedRateLimitError(FeedFetchError):
    """
    Raised on HTTP 429.

    Attributes:
        retry_after: Seconds the server asked us to wait (default 60).
    """

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "Content store rate limit exceeded", retry_after: int = 60, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class FeedServerError(FeedFetchError):
    """Raised on unexpected HTTP 5xx (and any other non-2xx not covered above)."""

    kind = ErrorKind.SERVER_ERROR


class FeedParseError(FeedFetchError):
    """
    Raised when the response body is not JSON.

    Attributes:
        raw: The raw response bytes for debugging.
    """

    kind = ErrorKind.INVALID_RESPONSE

    def __init__(self, message: str, raw: bytes = b"", **kwargs):
        super().__init__(message, **kwargs)
        self.raw = raw


class FeedValidationError(FeedFetchError):
    """Raised when the response is JSON but not a page: missing or mistyped fields."""

    kind = ErrorKind.INVALID_RESPONSE

"""Exception hierarchy shared by the candle pipeline.

Each error carries an ``http_status`` so a web layer can map failures to
responses without knowing pipeline internals.
"""


class CandleServiceError(Exception):
    """Base exception for candle pipeline errors."""

    http_status = 500


class InvalidRequestError(CandleServiceError, ValueError):
    """Raised when request parameters fail validation."""

    http_status = 422


class NotFoundError(CandleServiceError):
    """Raised when there is no stored data to operate on."""

    http_status = 404


class NoPoolFoundError(NotFoundError):
    """Raised when no trading pool exists for a token."""


class UpstreamUnavailableError(CandleServiceError):
    """Raised when the indexing service or price resolver cannot be reached."""

    http_status = 503


class RefreshInProgressError(CandleServiceError):
    """Raised when another refresh holds the lock for a token."""

    http_status = 429

    def __init__(self, key: str) -> None:
        super().__init__(f"Refresh already in progress for {key}; retry later")
        self.key = key


class PersistenceFailureError(CandleServiceError):
    """Raised when a durable-tier write fails on both the bulk and per-item paths."""

    http_status = 500

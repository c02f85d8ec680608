"""Engine error taxonomy.

Every failure the engine can classify has a type here.  ``retryable``
tells the caller whether the same request may be sent again after a
backoff; non-retryable errors end in an operator-visible terminal state.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False


# ── Venue errors ─────────────────────────────────────────────────────────


class VenueError(EngineError):
    """A call to the trading venue failed."""


class UpstreamUnavailable(VenueError):
    """Network failure or 5xx from the venue.  Request was not applied."""

    retryable = True


class RateLimited(VenueError):
    """The venue asked us to slow down (HTTP 429 / 418).

    Args:
        message: Human readable reason.
        retry_after: Seconds the venue asked us to wait, if provided.
    """

    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AmbiguousNetworkFailure(VenueError):
    """The request may or may not have reached the venue.

    Raised for timeouts and dropped connections on write calls.  Must be
    resolved through the idempotency token, never assumed failed.
    """

    retryable = True


class VenueRejected(VenueError):
    """The venue answered and refused the request.

    Args:
        message: Venue message.
        code: Venue error code, if any.
    """

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class ValidationRejected(VenueRejected):
    """Request parameters were rejected by the venue."""


class InsufficientBalance(VenueRejected):
    """Account balance does not cover the order."""


class DuplicateIntentRejected(VenueRejected):
    """The venue refused the idempotency token as a duplicate."""


# ── Engine-side errors ───────────────────────────────────────────────────


class NoMarketData(EngineError):
    """The market snapshot was empty; nothing may be published."""


class IntentValidationError(EngineError):
    """A buy intent payload did not match any supported variant."""


class IllegalTransition(EngineError):
    """A state machine was asked to make a move it does not allow."""


class NotFound(EngineError):
    """The requested record does not exist for this merchant."""

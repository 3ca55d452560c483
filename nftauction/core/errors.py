"""
Error taxonomy for bid handling and settlement.

ValidationError      client-caused, not retryable as-is
NotFoundError        auction or channel does not exist
ConflictError        genuine state conflict (e.g. settlement already running)
TransientInfraError  store / transfer connectivity failure, retryable
FatalError           invariant violation, surfaced as an internal error
"""

from typing import Optional


class MarketError(Exception):
    """Base class for all auction engine errors."""
    retryable = False


class ValidationError(MarketError):
    """A request broke an auction rule."""

    def __init__(self, reason: str, rule: str = "", required_minimum: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.rule = rule
        self.required_minimum = required_minimum


class NotFoundError(MarketError):
    pass


class ConflictError(MarketError):
    pass


class TransientInfraError(MarketError):
    retryable = True


class FatalError(MarketError):
    pass

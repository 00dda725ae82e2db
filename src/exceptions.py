"""
Custom exception hierarchy for the copy-follow engine.

Provides clear, specific exceptions for different error scenarios
so callers can decide between retry, skip and halt.

Hierarchy:

    FollowSystemError (base)
    ├── OperationalError  : transient/retryable (broker, network, timeouts)
    │   ├── APIError      : broker or source API returned an error
    │   │   └── RateLimitError
    │   └── AgentBusyError: another follow pass holds the agent lock
    ├── DataError         : bad data, skip symbol, don't halt
    │   ├── ValidationError
    │   └── OrderExecutionError
    └── InvariantError    : history/broker state cannot be trusted, halt pass
        ├── PositionValidationError
        └── FollowAbortedError

Rules:
    - OperationalError: catch, log, retry next pass
    - DataError: catch, log, skip this symbol/plan, continue
    - InvariantError: abort the follow pass and surface to the caller
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""


class FollowSystemError(Exception):
    """Base exception for all copy-follow errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(FollowSystemError):
    """Transient/retryable error: broker API, network, timeouts.

    Treatment: catch, log, try again on the next pass.
    """
    pass


class APIError(OperationalError):
    """API-specific operational error (broker or source feed returned error)."""
    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""
    pass


class AgentBusyError(OperationalError):
    """A follow pass for this agent is already running."""
    pass


# ============ DATA (bad input, skip symbol) ============

class DataError(FollowSystemError):
    """Bad data: zero entry price, malformed position payload, unknown symbol.

    Treatment: catch, log, skip this symbol, continue the pass.
    """
    pass


class ValidationError(DataError):
    """Raised when validation checks fail (bad input data)."""
    pass


class OrderExecutionError(DataError):
    """Raised when the venue rejects an order (insufficient margin, min size)."""
    pass


# ============ INVARIANT (inconsistent state, halt pass) ============

class InvariantError(FollowSystemError):
    """Safety invariant violation. Abort the pass.

    This should never be caught and silently continued.
    """
    pass


class PositionValidationError(InvariantError):
    """Position consistency validation failed hard (history unreadable)."""

    def __init__(self, message: str, validation=None):
        super().__init__(message)
        self.validation = validation


class FollowAbortedError(InvariantError):
    """The user confirmed that this follow pass must not proceed."""
    pass

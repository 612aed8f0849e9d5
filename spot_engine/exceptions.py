"""
Custom exception hierarchy for the spot position engine.

Hierarchy:

    EngineError (base)
    ├── OperationalError   transient/retryable (exchange, network, storage)
    │   ├── APIError
    │   │   ├── RateLimitError
    │   │   └── RequestTimeoutError
    │   └── PersistenceError
    ├── DataError          bad input, skip this item, don't halt
    │   ├── ValidationError
    │   ├── UnknownSymbol
    │   ├── MissingATR
    │   ├── BelowMinimum
    │   ├── InsufficientFunds
    │   ├── PositionLimitReached
    │   └── QuantizationError
    │       ├── BelowMinQty
    │       └── BelowMinNotional
    ├── ExchangeRejected   order refused after submission
    │   ├── FilterViolation
    │   └── InsufficientBalance
    └── InvariantError     safety violation, halt immediately

Rules:
    - OperationalError: catch, log, retry next cycle. In-memory state is kept.
    - DataError: catch, log, drop the signal / skip the symbol, continue the batch.
    - ExchangeRejected: handled by the order executor's close state machine.
    - InvariantError: never caught and silently continued.
"""
from typing import Optional


class EngineError(Exception):
    """Base exception for all engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(EngineError):
    """Transient/retryable error: exchange API, network, timeouts, storage."""
    pass


class APIError(OperationalError):
    """Exchange returned an error that is not an order rejection."""
    pass


class RateLimitError(APIError):
    """Raised when the exchange rate limit is exceeded."""
    pass


class RequestTimeoutError(APIError):
    """A queued exchange call did not finish within its per-call timeout."""
    pass


class PersistenceError(OperationalError):
    """Store unreachable or write failed.

    Treatment: log, keep in-memory state, retry on the next cycle.
    """
    pass


# ============ DATA (bad input, skip item) ============

class DataError(EngineError):
    """Bad data for a single item. Skip it and continue."""
    pass


class ValidationError(DataError):
    """Malformed input (signal payload, exchange payload)."""
    pass


class UnknownSymbol(DataError):
    """No exchange filter is known for the symbol."""
    pass


class MissingATR(DataError):
    """ATR absent, non-positive, or implausibly large; SL/TP cannot be derived."""
    pass


class BelowMinimum(DataError):
    """Computed position size is below the minimum trade value."""
    pass


class InsufficientFunds(DataError):
    """Pre-trade sizing found no capital for the entry."""
    pass


class PositionLimitReached(DataError):
    """Strategy already holds its maximum number of open positions."""
    pass


class QuantizationError(DataError):
    """Quantity cannot be turned into an exchange-legal order amount."""

    def __init__(self, message: str, symbol: str = "", quantity: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol
        self.quantity = quantity


class BelowMinQty(QuantizationError):
    """Quantity below the exchange lot minimum."""
    pass


class BelowMinNotional(QuantizationError):
    """Order value below the exchange minimum notional."""
    pass


# ============ EXCHANGE REJECTIONS ============

class ExchangeRejected(EngineError):
    """Order rejected by the exchange after submission.

    ``kind`` is one of ``FilterViolation``, ``Insufficient`` or ``Unknown``.
    """

    kind = "Unknown"

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.code:
            return f"[{self.kind} {self.code}] {self.message}"
        return f"[{self.kind}] {self.message}"


class FilterViolation(ExchangeRejected):
    """Lot size / notional filter failure."""
    kind = "FilterViolation"


class InsufficientBalance(ExchangeRejected):
    """Exchange reports insufficient balance for the order."""
    kind = "Insufficient"


# ============ INVARIANT (safety violation, halt) ============

class InvariantError(EngineError):
    """Safety invariant violation. Halt immediately."""
    pass

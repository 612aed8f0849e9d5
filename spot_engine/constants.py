"""
System-wide constants for the position engine.

Centralizes magic numbers used across modules.
"""
from decimal import Decimal

QUOTE_ASSET = "USDT"

# Rate limiting (token bucket)
PUBLIC_API_CAPACITY = 20
PUBLIC_API_REFILL_RATE = 10.0  # requests per second
PRIVATE_API_CAPACITY = 10
PRIVATE_API_REFILL_RATE = 5.0

# Per-call timeouts (seconds)
ORDER_TIMEOUT_SECONDS = 30
BALANCE_TIMEOUT_SECONDS = 5
QUERY_TIMEOUT_SECONDS = 10

# Float tolerance used by the minimum checks
LOT_EPSILON = Decimal("1e-12")
NOTIONAL_EPSILON = Decimal("1e-8")

# Exchange error codes (Binance spot)
ERR_INSUFFICIENT_BALANCE = "-2010"
ERR_FILTER_FAILURE = "-1013"
ERR_INVALID_QUANTITY = "-1111"

VIRTUAL_CLOSE_PREFIX = "virtual_close_"

"""
Quantity quantization against exchange lot filters.

Turns a raw base-asset quantity into the exchange-legal string the order API
accepts: floored to the step size, clamped to max_qty, checked against min_qty
and (when a price is known) min_notional.
"""
from decimal import ROUND_DOWN, ROUND_FLOOR, Decimal
from typing import Optional

from spot_engine.constants import LOT_EPSILON, NOTIONAL_EPSILON
from spot_engine.domain.models import ExchangeFilter, to_decimal
from spot_engine.exceptions import BelowMinNotional, BelowMinQty, QuantizationError
from spot_engine.execution.exchange_filters import ExchangeFilterCache
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

_NO_STEP_PLACES = 8


def step_decimal_places(step: Decimal) -> int:
    """Decimal places implied by a step size. 0.001 -> 3, 1e-05 -> 5, 1 -> 0, 10 -> 0."""
    if step <= 0:
        return _NO_STEP_PLACES
    exponent = step.normalize().as_tuple().exponent
    return max(0, -int(exponent))


def format_quantity(qty: Decimal, places: int) -> str:
    """Fixed-point string with trailing zeros stripped; never scientific notation."""
    q = qty.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN) if places > 0 else qty.to_integral_value(ROUND_DOWN)
    s = format(q, "f")
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s or "0"


def floor_to_step(qty: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return qty
    units = (qty / step).to_integral_value(rounding=ROUND_FLOOR)
    return units * step


class QuantityQuantizer:
    """Stateless apart from the filter cache it reads."""

    def __init__(self, filters: ExchangeFilterCache):
        self.filters = filters

    def _prepare(self, symbol: str, raw_qty) -> tuple:
        qty = to_decimal(raw_qty)
        if qty is None or not qty.is_finite() or qty <= 0:
            raise QuantizationError(f"Invalid quantity {raw_qty!r} for {symbol}", symbol=symbol, quantity=str(raw_qty))
        return self.filters.get(symbol), qty

    def quantize_decimal(self, symbol: str, raw_qty, price=None) -> Decimal:
        """
        Floor ``raw_qty`` to the symbol's step and validate it.

        Raises BelowMinQty, BelowMinNotional, QuantizationError (invalid input)
        or UnknownSymbol (no filter).
        """
        f, qty = self._prepare(symbol, raw_qty)

        if qty < f.min_qty:
            raise BelowMinQty(
                f"Quantity {qty} below minimum {f.min_qty} for {f.symbol}",
                symbol=f.symbol,
                quantity=str(qty),
            )

        if f.max_qty is not None and qty > f.max_qty:
            logger.warning("QUANTITY_CLAMPED_TO_MAX", symbol=f.symbol, requested=str(qty), max_qty=str(f.max_qty))
            qty = f.max_qty

        result = floor_to_step(qty, f.step_size)
        places = step_decimal_places(f.step_size)
        result = Decimal(format_quantity(result, places))

        if result <= 0 or result < f.min_qty:
            raise BelowMinQty(
                f"After step adjustment quantity {result} is below minimum {f.min_qty} for {f.symbol}",
                symbol=f.symbol,
                quantity=str(result),
            )

        px = to_decimal(price)
        if px is not None and px > 0 and f.min_notional > 0:
            notional = result * px
            if notional < f.min_notional:
                raise BelowMinNotional(
                    f"Trade value {notional:.2f} below minimum {f.min_notional} for {f.symbol}",
                    symbol=f.symbol,
                    quantity=str(result),
                )
        return result

    def quantize(self, symbol: str, raw_qty, price=None) -> str:
        """Exchange-legal quantity string, e.g. ``"1.234"``."""
        result = self.quantize_decimal(symbol, raw_qty, price)
        return format_quantity(result, step_decimal_places(self.filters.get(symbol).step_size))

    def meets_minimums(self, symbol: str, qty, price=None) -> bool:
        """
        Lot and notional test with float tolerance. Does not quantize.
        """
        f: Optional[ExchangeFilter] = self.filters.find(symbol)
        q = to_decimal(qty)
        if f is None or q is None:
            return False
        if q < f.min_qty - LOT_EPSILON:
            return False
        px = to_decimal(price)
        if px is not None and px > 0 and q * px < f.min_notional - NOTIONAL_EPSILON:
            return False
        return True

"""
Entry sizing.

Volatility mode risks a fixed fraction of the balance per trade: the position is
large enough that a stop-out at ATR x SL multiplier loses ``risk_per_trade_pct``
of the balance. Fixed mode scales the default size by conviction.

The result is scaled by the balance risk factor, checked against the minimum
trade value, the available cash and the absolute invest cap, then quantized.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from spot_engine.config.config import SizingConfig
from spot_engine.domain.models import Signal, to_decimal
from spot_engine.exceptions import BelowMinimum, InsufficientFunds, MissingATR, PositionLimitReached
from spot_engine.execution.quantizer import QuantityQuantizer
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SL_MULTIPLIER = Decimal("2.5")


@dataclass(frozen=True)
class SizingResult:
    notional: Decimal
    quantity: Decimal
    quantity_str: str
    method: str  # volatility_adjusted | fixed | presized
    capped: bool = False


class PositionSizer:
    """Sizes one signal at a time; the caller owns the running balance."""

    def __init__(self, quantizer: QuantityQuantizer, config: Optional[SizingConfig] = None):
        self.quantizer = quantizer
        self.config = config or SizingConfig()

    @property
    def minimum_trade_value(self) -> Decimal:
        return Decimal(str(self.config.minimum_trade_value_usdt))

    def cap_headroom(self, invested_so_far: Decimal) -> Optional[Decimal]:
        """Remaining room under the absolute invest cap; None when uncapped."""
        cap = Decimal(str(self.config.max_balance_invest_cap_usdt))
        if cap <= 0:
            return None
        return cap - invested_so_far

    def usable_headroom(self, invested_so_far: Decimal) -> Optional[Decimal]:
        """Headroom less the buffer, which absorbs fill slippage past the sized estimate."""
        headroom = self.cap_headroom(invested_so_far)
        if headroom is None:
            return None
        return headroom - Decimal(str(self.config.invest_cap_buffer_usdt))

    def raw_notional(self, signal: Signal, balance: Decimal) -> tuple:
        """(notional, method) before risk factor, caps and quantization."""
        if signal.position_size_usdt is not None:
            return signal.position_size_usdt, "presized"

        if self.config.use_volatility_sizing:
            atr = signal.atr
            if atr is None or atr <= 0:
                raise MissingATR(f"Volatility sizing needs ATR for {signal.symbol}")
            sl = to_decimal(signal.sl_multiplier)
            if sl is None or sl <= 0:
                sl = DEFAULT_SL_MULTIPLIER
            risk_amount = balance * Decimal(str(self.config.risk_per_trade_pct)) / 100
            units = risk_amount / (atr * sl)
            return units * signal.current_price, "volatility_adjusted"

        conviction = signal.conviction_score
        factor = Decimal("1") if conviction is None else Decimal(str(max(0.0, min(1.0, conviction))))
        return Decimal(str(self.config.default_position_size_usdt)) * factor, "fixed"

    def size(
        self,
        signal: Signal,
        available_cash: Decimal,
        strategy_open_count: int = 0,
        invested_so_far: Decimal = Decimal("0"),
    ) -> SizingResult:
        """
        Raises PositionLimitReached, MissingATR, BelowMinimum, InsufficientFunds,
        or a QuantizationError subclass.
        """
        if strategy_open_count >= self.config.max_positions_per_strategy:
            raise PositionLimitReached(
                f"Max positions ({self.config.max_positions_per_strategy}) reached for {signal.strategy_name}"
            )

        notional, method = self.raw_notional(signal, available_cash)
        if method != "presized":
            notional = notional * Decimal(str(self.config.balance_risk_factor_pct)) / 100

        minimum = self.minimum_trade_value
        if notional < minimum:
            raise BelowMinimum(f"Position size {notional:.2f} below minimum {minimum} for {signal.symbol}")

        capped = False
        usable = self.usable_headroom(invested_so_far)
        if usable is not None:
            if usable <= 0 or usable < minimum:
                raise InsufficientFunds(
                    f"Invest cap reached: usable headroom {max(usable, Decimal('0')):.2f} USDT for {signal.symbol}"
                )
            if notional > usable:
                logger.info(
                    "SIZE_REDUCED_TO_CAP_HEADROOM",
                    symbol=signal.symbol,
                    requested=f"{notional:.2f}",
                    headroom=f"{usable:.2f}",
                )
                notional = usable
                capped = True

        if notional > available_cash:
            raise InsufficientFunds(
                f"Needed {notional:.2f} USDT, have {available_cash:.2f} for {signal.symbol}"
            )

        raw_qty = notional / signal.current_price
        qty = self.quantizer.quantize_decimal(signal.symbol, raw_qty, signal.current_price)
        return SizingResult(
            notional=notional,
            quantity=qty,
            quantity_str=self.quantizer.quantize(signal.symbol, qty),
            method=method,
            capped=capped,
        )

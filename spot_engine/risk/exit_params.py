"""
Stop-loss / take-profit derivation from ATR.

Stop distance = ATR x SL multiplier, clamped to a percentage band of the entry
price. Reward distance keeps the strategy's TP:SL multiplier ratio on top of the
clamped stop.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from spot_engine.config.config import ExitConfig
from spot_engine.domain.models import Direction, to_decimal
from spot_engine.exceptions import MissingATR, ValidationError
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExitParameters:
    stop_loss: Decimal
    take_profit: Decimal
    stop_distance: Decimal
    reward_distance: Decimal
    sl_multiplier: Decimal
    tp_multiplier: Decimal
    clamped: Optional[str] = None  # "min" / "max" when the stop hit a bound

    @property
    def take_profit_pct(self) -> Decimal:
        entry = self.take_profit - self.reward_distance
        return self.reward_distance / entry * 100 if entry > 0 else Decimal("0")


class ExitParameterCalculator:
    """Pure calculator; all inputs explicit, config only supplies defaults and bounds."""

    def __init__(self, config=None):
        cfg = config or ExitConfig()
        self.default_sl = Decimal(str(cfg.default_sl_atr_multiplier))
        self.default_tp = Decimal(str(cfg.default_tp_atr_multiplier))
        self.min_stop_pct = Decimal(str(cfg.min_stop_distance_pct)) / 100
        self.max_stop_pct = Decimal(str(cfg.max_stop_distance_pct)) / 100
        self.max_atr_pct = Decimal(str(cfg.max_atr_pct_of_price)) / 100
        self.min_time_exit_hours = float(cfg.min_time_exit_hours)

    def _multiplier(self, value, default: Decimal) -> Decimal:
        m = to_decimal(value)
        if m is None or m <= 0:
            return default
        return m

    def derive(
        self,
        direction: Direction,
        entry_price,
        atr,
        sl_multiplier=None,
        tp_multiplier=None,
        symbol: str = "",
    ) -> ExitParameters:
        """
        Raises MissingATR when ATR is absent, non-positive or implausibly large
        relative to price; ValidationError for a bad entry price or direction.
        """
        if direction != Direction.LONG:
            raise ValidationError(f"Unsupported direction {direction!r}")
        entry = to_decimal(entry_price)
        if entry is None or entry <= 0:
            raise ValidationError(f"Invalid entry price {entry_price!r} for {symbol}")

        atr_d = to_decimal(atr)
        if atr_d is None or atr_d <= 0:
            raise MissingATR(f"ATR missing or non-positive for {symbol}: {atr!r}")
        if atr_d > entry * self.max_atr_pct:
            raise MissingATR(
                f"ATR {atr_d} exceeds {self.max_atr_pct * 100}% of price {entry} for {symbol}"
            )

        sl = self._multiplier(sl_multiplier, self.default_sl)
        tp = self._multiplier(tp_multiplier, self.default_tp)

        raw_distance = atr_d * sl
        min_distance = entry * self.min_stop_pct
        max_distance = entry * self.max_stop_pct
        distance = max(min(raw_distance, max_distance), min_distance)

        clamped = None
        if distance != raw_distance:
            clamped = "min" if distance == min_distance else "max"
            logger.info(
                "SL_DISTANCE_CLAMPED",
                symbol=symbol,
                bound=clamped,
                raw_pct=f"{raw_distance / entry * 100:.2f}",
                adjusted_pct=f"{distance / entry * 100:.2f}",
            )

        reward = distance * (tp / sl)
        return ExitParameters(
            stop_loss=entry - distance,
            take_profit=entry + reward,
            stop_distance=distance,
            reward_distance=reward,
            sl_multiplier=sl,
            tp_multiplier=tp,
            clamped=clamped,
        )

    def time_exit_hours(self, estimated_exit_minutes=None) -> float:
        """Strategy exit estimate in hours, never below the configured minimum."""
        try:
            minutes = float(estimated_exit_minutes) if estimated_exit_minutes is not None else None
        except (TypeError, ValueError):
            minutes = None
        if minutes is None or minutes <= 0:
            return self.min_time_exit_hours
        return max(minutes / 60.0, self.min_time_exit_hours)

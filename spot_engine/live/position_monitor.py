"""
Exit evaluation for open positions.

Pure with respect to I/O: takes positions and a price snapshot, mutates the
positions' tracking fields, and returns close requests plus the positions that
changed and need persisting. First matching rule wins:

    1. age >= max_position_age_hours            -> timeout (safety ceiling)
    2. age >= position.time_exit_hours          -> timeout / trailing_timeout
    3. price >= take_profit_price               -> take_profit
    4. price <= stop_loss_price                 -> stop_loss
    5. trailing activation / ratchet; price <= trailing stop -> trailing_stop_hit
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from spot_engine.config.config import ExitConfig
from spot_engine.data.symbol_utils import exchange_symbol_id
from spot_engine.domain.models import (
    CloseRequest,
    ExitReason,
    Position,
    PositionStatus,
    to_decimal,
    utc_now,
)
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class MonitorResult:
    close_requests: List[CloseRequest] = field(default_factory=list)
    updated_positions: List[Position] = field(default_factory=list)
    skipped_no_price: List[str] = field(default_factory=list)


def _price_for(symbol: str, prices: Mapping[str, object]) -> Optional[Decimal]:
    raw = prices.get(symbol)
    if raw is None:
        raw = prices.get(exchange_symbol_id(symbol))
    px = to_decimal(raw)
    if px is None or px <= 0:
        return None
    return px


class PositionMonitor:
    """Evaluates exits once per monitor cycle."""

    def __init__(self, config: Optional[ExitConfig] = None):
        cfg = config or ExitConfig()
        self.max_age_hours = float(cfg.max_position_age_hours)
        self.activation_fraction = Decimal(str(cfg.trailing_activation_fraction))
        self.trailing_buffer = Decimal(str(cfg.trailing_buffer_pct)) / 100
        self.default_tp_pct = Decimal(str(cfg.default_take_profit_pct))

    def _track_extremes(self, position: Position, price: Decimal) -> bool:
        changed = position.last_price != price
        position.last_price = price
        if position.peak_price is None or price > position.peak_price:
            position.peak_price = price
            changed = True
        if position.trough_price is None or price < position.trough_price:
            position.trough_price = price
            changed = True
        return changed

    def _take_profit_pct(self, position: Position) -> Decimal:
        if position.take_profit_price is not None and position.take_profit_price > position.entry_price:
            return (position.take_profit_price - position.entry_price) / position.entry_price * 100
        return self.default_tp_pct

    def _update_trailing(self, position: Position, price: Decimal) -> bool:
        """Activate or ratchet the trailing stop. Returns True when anything changed."""
        if not position.trailing_enabled:
            return False

        if not position.is_trailing:
            profit_pct = (price - position.entry_price) / position.entry_price * 100
            if profit_pct < self.activation_fraction * self._take_profit_pct(position):
                return False
            position.is_trailing = True
            position.status = PositionStatus.TRAILING
            position.trailing_peak_price = price
            position.raise_trailing_stop(price * (1 - self.trailing_buffer))
            logger.info(
                "TRAILING_ACTIVATED",
                position_id=position.id,
                symbol=position.symbol,
                price=str(price),
                trailing_stop=str(position.trailing_stop_price),
            )
            return True

        if position.trailing_peak_price is None or price > position.trailing_peak_price:
            position.trailing_peak_price = price
            if position.raise_trailing_stop(price * (1 - self.trailing_buffer)):
                logger.debug(
                    "TRAILING_STOP_RAISED",
                    position_id=position.id,
                    symbol=position.symbol,
                    trailing_stop=str(position.trailing_stop_price),
                )
            return True
        return False

    def check_exit(self, position: Position, price: Decimal, now: datetime) -> Optional[ExitReason]:
        age = position.age_hours(now)
        if age >= self.max_age_hours:
            return ExitReason.TIMEOUT
        if position.time_exit_hours is not None and age >= position.time_exit_hours:
            return ExitReason.TRAILING_TIMEOUT if position.is_trailing else ExitReason.TIMEOUT
        if position.take_profit_price is not None and price >= position.take_profit_price:
            return ExitReason.TAKE_PROFIT
        if position.stop_loss_price is not None and price <= position.stop_loss_price:
            return ExitReason.STOP_LOSS
        return None

    def evaluate(
        self,
        positions: Iterable[Position],
        prices: Mapping[str, object],
        now: Optional[datetime] = None,
        skip_ids: Iterable[str] = (),
    ) -> MonitorResult:
        """
        ``skip_ids`` are positions already being closed elsewhere (pending sells,
        manual closes); they are neither evaluated nor mutated.
        """
        now = now or utc_now()
        skip = set(skip_ids)
        requested: Dict[str, CloseRequest] = {}
        updated: Dict[str, Position] = {}
        result = MonitorResult()

        for position in positions:
            if not position.is_active or position.id in skip or position.id in requested:
                continue

            price = _price_for(position.symbol, prices)
            if price is None:
                result.skipped_no_price.append(position.symbol)
                # Age-based exits still apply without a fresh price
                age = position.age_hours(now)
                if age >= self.max_age_hours and position.last_price is not None:
                    requested[position.id] = CloseRequest(position, ExitReason.TIMEOUT, position.last_price)
                continue

            changed = self._track_extremes(position, price)
            reason = self.check_exit(position, price, now)

            if reason is None:
                if self._update_trailing(position, price):
                    changed = True
                if (
                    position.is_trailing
                    and position.trailing_stop_price is not None
                    and price <= position.trailing_stop_price
                ):
                    reason = ExitReason.TRAILING_STOP_HIT

            if reason is not None:
                logger.info(
                    "EXIT_TRIGGERED",
                    position_id=position.id,
                    symbol=position.symbol,
                    reason=reason.value,
                    price=str(price),
                    age_hours=round(position.age_hours(now), 2),
                )
                requested[position.id] = CloseRequest(position, reason, price)
                updated.pop(position.id, None)
            elif changed:
                updated[position.id] = position

        result.close_requests = list(requested.values())
        result.updated_positions = list(updated.values())
        if result.skipped_no_price:
            logger.warning("MONITOR_NO_PRICE", symbols=sorted(set(result.skipped_no_price)))
        return result

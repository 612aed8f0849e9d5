"""
Domain models for the spot position engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all prices and quantities are Decimal.
"""
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from spot_engine.data.symbol_utils import base_asset, normalize_symbol
from spot_engine.exceptions import APIError, ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """
    Decimal from str/int/float/Decimal via str() so floats don't carry binary noise.

    NaN and infinities come back as ``default``.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            return default
    return d if d.is_finite() else default


class Direction(str, Enum):
    """Spot trading is long-only."""
    LONG = "long"


class PositionStatus(str, Enum):
    OPEN = "open"
    TRAILING = "trailing"
    CLOSED = "closed"


class ExitReason(str, Enum):
    """Why a position left the ledger."""
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TIMEOUT = "timeout"
    TRAILING_STOP_HIT = "trailing_stop_hit"
    TRAILING_TIMEOUT = "trailing_timeout"
    MANUAL_CLOSE = "manual_close"
    ERROR = "error"
    CANCELLED = "cancelled"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    DUST = "dust"
    RECONCILED_GHOST = "reconciled_ghost"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderDisposition(str, Enum):
    """Terminal outcome of one executor call."""
    FILLED = "filled"
    PENDING = "pending"
    VIRTUAL_CLOSED = "virtual_closed"
    DUST = "dust"
    SKIPPED = "skipped"
    ALREADY_CLOSED = "already_closed"
    FAILED = "failed"


# Dispositions after which the position may leave the ledger
CLOSE_TERMINAL_DISPOSITIONS = frozenset({
    OrderDisposition.FILLED,
    OrderDisposition.ALREADY_CLOSED,
    OrderDisposition.VIRTUAL_CLOSED,
    OrderDisposition.DUST,
})


@dataclass(frozen=True)
class ExchangeFilter:
    """
    Per-symbol order constraints. Immutable snapshot; replaced on refresh.
    """
    symbol: str  # unified, e.g. "BTC/USDT"
    step_size: Decimal
    min_qty: Decimal
    max_qty: Optional[Decimal]
    min_notional: Decimal

    def __post_init__(self):
        if self.step_size < 0 or self.min_qty < 0 or self.min_notional < 0:
            raise ValueError(f"Invalid exchange filter for {self.symbol}: negative constraint")
        if self.max_qty is not None and self.max_qty < self.min_qty:
            raise ValueError(f"Invalid exchange filter for {self.symbol}: max_qty < min_qty")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "step_size": str(self.step_size),
            "min_qty": str(self.min_qty),
            "max_qty": str(self.max_qty) if self.max_qty is not None else None,
            "min_notional": str(self.min_notional),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExchangeFilter":
        return cls(
            symbol=d["symbol"],
            step_size=Decimal(str(d.get("step_size", "0"))),
            min_qty=Decimal(str(d.get("min_qty", "0"))),
            max_qty=Decimal(str(d["max_qty"])) if d.get("max_qty") is not None else None,
            min_notional=Decimal(str(d.get("min_notional", "0"))),
        )


@dataclass
class Position:
    """
    Open long spot position tracked in the local ledger.

    ``id`` is the internal ledger key; ``external_order_id`` is the exchange's
    id for the entry order.
    """
    symbol: str
    entry_price: Decimal
    quantity: Decimal
    entry_notional: Decimal
    strategy_name: str = "default"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    external_order_id: Optional[str] = None
    direction: Direction = Direction.LONG
    status: PositionStatus = PositionStatus.OPEN
    trading_mode: str = "testnet"

    stop_loss_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None
    trailing_peak_price: Optional[Decimal] = None
    is_trailing: bool = False
    peak_price: Optional[Decimal] = None
    trough_price: Optional[Decimal] = None
    last_price: Optional[Decimal] = None

    time_exit_hours: Optional[float] = None
    entry_timestamp: datetime = field(default_factory=utc_now)
    conviction_score: Optional[float] = None
    atr_value: Optional[Decimal] = None
    strategy_metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.entry_timestamp.tzinfo is None:
            raise ValueError("Position entry_timestamp must be timezone-aware (UTC)")
        if self.status != PositionStatus.CLOSED:
            if self.quantity <= 0:
                raise ValueError(f"Position {self.id} quantity must be > 0 (got {self.quantity})")
            if self.entry_price <= 0:
                raise ValueError(f"Position {self.id} entry_price must be > 0 (got {self.entry_price})")

    @property
    def base_asset(self) -> str:
        return base_asset(self.symbol)

    @property
    def is_active(self) -> bool:
        return self.status in (PositionStatus.OPEN, PositionStatus.TRAILING)

    @property
    def trailing_enabled(self) -> bool:
        return bool(self.strategy_metadata.get("enable_trailing", True))

    def age_hours(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - self.entry_timestamp).total_seconds() / 3600.0

    def raise_trailing_stop(self, candidate: Decimal) -> bool:
        """Move the trailing stop up to ``candidate``. Never moves it down."""
        if self.trailing_stop_price is not None and candidate <= self.trailing_stop_price:
            return False
        self.trailing_stop_price = candidate
        return True

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        return price * self.quantity - self.entry_notional


@dataclass
class Balance:
    asset: str
    free: Decimal = Decimal("0")
    locked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass
class WalletState:
    """
    Aggregate wallet state for one trading mode.

    Carries a balances snapshot and the authoritative open-position id set,
    never the position objects themselves.
    """
    mode: str
    id: Optional[int] = None
    balances: List[Balance] = field(default_factory=list)
    open_position_ids: List[str] = field(default_factory=list)
    initial_balance_usdt: Decimal = Decimal("0")
    total_trades_count: int = 0
    winning_trades_count: int = 0
    losing_trades_count: int = 0
    total_realized_pnl: Decimal = Decimal("0")
    total_gross_profit: Decimal = Decimal("0")
    total_gross_loss: Decimal = Decimal("0")
    total_fees_paid: Decimal = Decimal("0")
    last_balance_sync: Optional[datetime] = None
    last_updated: datetime = field(default_factory=utc_now)

    def balance_of(self, asset: str) -> Balance:
        asset = asset.upper()
        for b in self.balances:
            if b.asset.upper() == asset:
                return b
        return Balance(asset=asset)


@dataclass(frozen=True)
class CloseRequest:
    """Ephemeral instruction to close one position."""
    position: Position
    exit_reason: ExitReason
    exit_price: Decimal


@dataclass(frozen=True)
class ExchangeResponse:
    """Canonical decode of any exchange call result."""
    ok: bool
    payload: Any = None
    code: Optional[str] = None
    message: str = ""
    status: Optional[int] = None
    transient: bool = False  # network failure / timeout / rate limit, not a venue rejection

    @classmethod
    def success(cls, payload: Any) -> "ExchangeResponse":
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(
        cls,
        code: Optional[str],
        message: str,
        status: Optional[int] = None,
        transient: bool = False,
    ) -> "ExchangeResponse":
        return cls(ok=False, code=code, message=message, status=status, transient=transient)

    def unwrap(self) -> Any:
        """Payload of a successful response; APIError otherwise."""
        if not self.ok:
            raise APIError(f"Exchange call failed [{self.code}]: {self.message}")
        return self.payload


@dataclass
class OrderResult:
    """Outcome of one OrderExecutor buy or sell."""
    disposition: OrderDisposition
    symbol: str
    side: OrderSide
    order_id: Optional[str] = None
    requested_qty: Optional[Decimal] = None
    executed_qty: Decimal = Decimal("0")
    avg_price: Optional[Decimal] = None
    quote_amount: Optional[Decimal] = None
    exchange_status: Optional[str] = None
    reason: str = ""
    error: Optional[str] = None

    @property
    def closes_position(self) -> bool:
        return self.disposition in CLOSE_TERMINAL_DISPOSITIONS

    @property
    def is_virtual(self) -> bool:
        return self.disposition in (OrderDisposition.VIRTUAL_CLOSED, OrderDisposition.DUST)


@dataclass
class TradeRecord:
    """Completed position lifecycle (entry -> exit)."""
    trade_id: str
    position_id: str
    symbol: str
    strategy_name: str
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    entry_value: Decimal
    exit_value: Decimal
    pnl: Decimal
    pnl_percentage: Decimal
    total_fees: Decimal
    entry_timestamp: datetime
    exit_timestamp: datetime
    duration_seconds: int
    exit_reason: str
    trading_mode: str
    direction: str = Direction.LONG.value
    peak_price: Optional[Decimal] = None
    trough_price: Optional[Decimal] = None
    was_trailing: bool = False
    exit_order_id: Optional[str] = None
    is_virtual: bool = False


def _pick(payload: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in payload and payload[k] is not None:
            return payload[k]
    return None


@dataclass
class Signal:
    """
    Entry candidate from the external strategy source, decoded once at ingestion.
    """
    strategy_name: str
    symbol: str
    current_price: Decimal
    direction: Direction = Direction.LONG
    conviction_score: Optional[float] = None
    atr: Optional[Decimal] = None
    sl_multiplier: Optional[float] = None
    tp_multiplier: Optional[float] = None
    estimated_exit_minutes: Optional[float] = None
    position_size_usdt: Optional[Decimal] = None
    enable_trailing: bool = True
    signal_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "Signal":
        """
        Validate a loosely-typed signal dict.

        Accepts flat payloads and the nested ``{"combination": {...}}`` shape the
        strategy scanner emits. Raises ValidationError on anything unusable.
        """
        if isinstance(payload, Signal):
            return payload
        if not isinstance(payload, dict):
            raise ValidationError(f"Signal payload must be a mapping, got {type(payload).__name__}")

        merged = dict(payload)
        combination = payload.get("combination")
        if isinstance(combination, dict):
            for k, v in combination.items():
                merged.setdefault(k, v)

        symbol = normalize_symbol(_pick(merged, "symbol", "coin") or "")
        if not symbol:
            raise ValidationError("Signal has no symbol")

        strategy_name = _pick(merged, "strategy_name", "strategyName", "combinationName")
        if not strategy_name:
            raise ValidationError(f"Signal for {symbol} has no strategy name")

        price = to_decimal(_pick(merged, "current_price", "currentPrice", "price"))
        if price is None or price <= 0:
            raise ValidationError(f"Signal for {symbol} has invalid current price")

        direction_raw = str(_pick(merged, "direction", "strategyDirection") or "long").lower()
        if direction_raw not in ("long", "buy"):
            raise ValidationError(f"Signal for {symbol} is {direction_raw}; spot engine is long-only")

        def _float(*keys: str) -> Optional[float]:
            raw = _pick(merged, *keys)
            if raw is None:
                return None
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise ValidationError(f"Signal for {symbol} has non-numeric {keys[0]}")
            if not math.isfinite(value):
                raise ValidationError(f"Signal for {symbol} has non-finite {keys[0]}")
            return value

        def _decimal(*keys: str) -> Optional[Decimal]:
            raw = _pick(merged, *keys)
            value = to_decimal(raw)
            if value is None and raw is not None and raw != "":
                raise ValidationError(f"Signal for {symbol} has invalid {keys[0]}: {raw!r}")
            return value

        conviction = _float("conviction_score", "convictionScore")
        atr = _decimal("atr", "atr_value")

        size = _decimal("position_size_usdt", "positionSizeUsdt", "calculatedPositionSizeUSDT")
        if size is not None and size <= 0:
            size = None

        known = {
            "symbol", "coin", "strategy_name", "strategyName", "combinationName", "current_price",
            "currentPrice", "price", "direction", "strategyDirection", "conviction_score",
            "convictionScore", "atr", "atr_value", "sl_multiplier", "stopLossAtrMultiplier",
            "tp_multiplier", "takeProfitAtrMultiplier", "estimated_exit_minutes",
            "estimatedExitTimeMinutes", "position_size_usdt", "positionSizeUsdt",
            "calculatedPositionSizeUSDT", "enable_trailing", "enableTrailingTakeProfit",
            "signal_id", "combination",
        }
        enable_trailing = _pick(merged, "enable_trailing", "enableTrailingTakeProfit")

        return cls(
            strategy_name=str(strategy_name),
            symbol=symbol,
            current_price=price,
            conviction_score=conviction,
            atr=atr,
            sl_multiplier=_float("sl_multiplier", "stopLossAtrMultiplier"),
            tp_multiplier=_float("tp_multiplier", "takeProfitAtrMultiplier"),
            estimated_exit_minutes=_float("estimated_exit_minutes", "estimatedExitTimeMinutes"),
            position_size_usdt=size,
            enable_trailing=enable_trailing is not False,
            signal_id=str(_pick(merged, "signal_id") or uuid.uuid4().hex),
            metadata={k: v for k, v in merged.items() if k not in known},
        )

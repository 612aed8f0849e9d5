"""
Pending order monitoring.

Market orders that the exchange has accepted but not yet reported FILLED are
tracked here and polled on each monitor cycle until they fill, fail, or age out.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from spot_engine.domain.models import OrderSide
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

FAILED_STATUSES = frozenset({"CANCELED", "REJECTED", "EXPIRED"})

FillCallback = Callable[["TrackedOrder", Dict[str, Any]], Awaitable[None]]


@dataclass
class TrackedOrder:
    """Order with tracking metadata."""
    order_id: str
    symbol: str
    side: OrderSide
    requested_qty: Decimal
    price: Optional[Decimal] = None
    context: Dict[str, Any] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    check_failures: int = 0
    last_status: str = "NEW"

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.now(timezone.utc)) - self.submitted_at).total_seconds()


@dataclass
class PendingCheckResult:
    filled: List[TrackedOrder] = field(default_factory=list)
    failed: List[TrackedOrder] = field(default_factory=list)
    expired: List[TrackedOrder] = field(default_factory=list)
    still_pending: int = 0


class PendingOrderMonitor:
    """
    Polls tracked orders.

    FILLED -> fill callback for the order's side, then dropped.
    PARTIALLY_FILLED / NEW -> kept.
    CANCELED / REJECTED / EXPIRED -> failed.
    Older than ``max_age_seconds`` -> expired.
    More than ``max_check_failures`` failed polls -> failed.
    """

    def __init__(
        self,
        client,
        max_age_seconds: int = 300,
        max_check_failures: int = 3,
        check_interval_seconds: int = 10,
    ):
        self.client = client
        self.max_age_seconds = max_age_seconds
        self.max_check_failures = max_check_failures
        self.check_interval_seconds = check_interval_seconds
        self.tracked: Dict[str, TrackedOrder] = {}
        self._callbacks: Dict[OrderSide, FillCallback] = {}
        self._last_check: Optional[datetime] = None

    def on_fill(self, side: OrderSide, callback: FillCallback) -> None:
        self._callbacks[side] = callback

    def track(self, order: TrackedOrder) -> None:
        self.tracked[order.order_id] = order
        logger.info(
            "PENDING_ORDER_TRACKED",
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side.value,
            requested_qty=str(order.requested_qty),
        )

    def is_tracked(self, order_id: str) -> bool:
        return order_id in self.tracked

    def tracked_for(self, position_id: str) -> Optional[TrackedOrder]:
        for t in self.tracked.values():
            if t.context.get("position_id") == position_id:
                return t
        return None

    def due(self, now: Optional[datetime] = None) -> bool:
        if not self.tracked:
            return False
        if self._last_check is None:
            return True
        now = now or datetime.now(timezone.utc)
        return (now - self._last_check).total_seconds() >= self.check_interval_seconds

    async def check_pending(self, now: Optional[datetime] = None) -> PendingCheckResult:
        now = now or datetime.now(timezone.utc)
        self._last_check = now
        result = PendingCheckResult()

        for order_id, tracked in list(self.tracked.items()):
            if tracked.age_seconds(now) > self.max_age_seconds:
                logger.warning(
                    "PENDING_ORDER_EXPIRED",
                    order_id=order_id,
                    symbol=tracked.symbol,
                    age_seconds=int(tracked.age_seconds(now)),
                )
                result.expired.append(tracked)
                del self.tracked[order_id]
                continue

            resp = await self.client.fetch_order(order_id, tracked.symbol)
            if not resp.ok:
                tracked.check_failures += 1
                logger.warning(
                    "PENDING_ORDER_CHECK_FAILED",
                    order_id=order_id,
                    failures=tracked.check_failures,
                    error=resp.message,
                )
                if tracked.check_failures >= self.max_check_failures:
                    result.failed.append(tracked)
                    del self.tracked[order_id]
                continue

            order = resp.payload
            status = order.get("status", "NEW")
            tracked.last_status = status

            if status == "FILLED":
                del self.tracked[order_id]
                callback = self._callbacks.get(tracked.side)
                if callback is not None:
                    try:
                        await callback(tracked, order)
                    except Exception as e:
                        logger.error(
                            "PENDING_ORDER_FILL_HANDLER_FAILED",
                            order_id=order_id,
                            symbol=tracked.symbol,
                            error=str(e),
                        )
                        result.failed.append(tracked)
                        continue
                logger.info("PENDING_ORDER_FILLED", order_id=order_id, symbol=tracked.symbol)
                result.filled.append(tracked)
            elif status in FAILED_STATUSES:
                logger.warning("PENDING_ORDER_FAILED", order_id=order_id, symbol=tracked.symbol, status=status)
                del self.tracked[order_id]
                result.failed.append(tracked)

        result.still_pending = len(self.tracked)
        return result

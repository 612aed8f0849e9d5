"""
Reconciliation engine for ledger vs exchange holdings.

Spot holdings are plain asset balances, so a tracked position is a ghost when
the exchange holds (free + locked) less than ``ghost_threshold`` of the
position's quantity of its base asset. Ghosts are deleted from the store and
from the wallet's open id set; deletion is idempotent so a close racing the
same position is harmless.
"""
import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from spot_engine.config.config import ReconciliationConfig
from spot_engine.domain.models import Position
from spot_engine.exceptions import OperationalError
from spot_engine.monitoring.logger import get_logger
from spot_engine.storage.repository import delete_position, get_active_positions

logger = get_logger(__name__)

STALE_RESET_FRACTION = 0.8


@dataclass
class ReconcileResult:
    mode: str
    success: bool = True
    throttled: bool = False
    positions_remaining: int = 0
    ghosts_cleaned: int = 0
    ghost_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0
    positions: List[Position] = field(default_factory=list)


@dataclass
class _ModeState:
    attempts: int = 0
    consecutive_failures: int = 0
    last_attempt: Optional[float] = None  # monotonic
    last_success: Optional[float] = None


def find_ghosts(
    positions: List[Position],
    holdings: Dict[str, Decimal],
    threshold: Decimal,
) -> List[Position]:
    """Active positions whose held base asset is below ``threshold`` of expected."""
    ghosts = []
    for p in positions:
        if not p.is_active or p.quantity <= 0:
            continue
        held = holdings.get(p.base_asset, Decimal("0"))
        ratio = held / p.quantity
        if ratio < threshold:
            logger.info(
                "RECONCILE_GHOST_DETECTED",
                position_id=p.id,
                symbol=p.symbol,
                expected=str(p.quantity),
                held=str(held),
                ratio=f"{ratio:.4f}",
            )
            ghosts.append(p)
    return ghosts


class ReconciliationEngine:
    """
    Throttled, attempt-limited reconciliation per trading mode.

    Logs RECONCILE_START / RECONCILE_SUMMARY / RECONCILE_END.
    """

    def __init__(
        self,
        client,
        config: Optional[ReconciliationConfig] = None,
        *,
        quote_asset: str = "USDT",
        wallet=None,
        alerter=None,
        lock_for: Optional[Callable[[str], asyncio.Lock]] = None,
        on_ghost: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.config = config or ReconciliationConfig()
        self.quote_asset = quote_asset.upper()
        self.wallet = wallet
        self.alerter = alerter
        self.lock_for = lock_for
        self.on_ghost = on_ghost
        self.clock = clock
        self._modes: Dict[str, _ModeState] = {}
        self._lock = asyncio.Lock()

    def _mode_state(self, mode: str) -> _ModeState:
        return self._modes.setdefault(mode, _ModeState())

    def reset_attempts(self, mode: str) -> None:
        old = self._mode_state(mode).attempts
        self._modes[mode] = _ModeState()
        logger.info("RECONCILE_ATTEMPTS_RESET", mode=mode, previous=old)

    def status(self) -> Dict[str, Dict]:
        return {
            mode: {
                "attempts": s.attempts,
                "max_attempts": self.config.max_attempts,
                "consecutive_failures": s.consecutive_failures,
            }
            for mode, s in self._modes.items()
        }

    def _maybe_reset_stale(self, mode: str, state: _ModeState, now: float) -> None:
        threshold = int(self.config.max_attempts * STALE_RESET_FRACTION)
        if state.attempts < threshold or state.last_attempt is None:
            return
        if now - state.last_attempt >= self.config.stale_attempt_reset_seconds:
            logger.info(
                "RECONCILE_STALE_ATTEMPTS_RESET",
                mode=mode,
                attempts=state.attempts,
                max_attempts=self.config.max_attempts,
            )
            state.attempts = 0

    async def _holdings(self) -> Dict[str, Decimal]:
        resp = await self.client.fetch_balances(fresh=True)
        if not resp.ok:
            raise OperationalError(f"Balance read failed [{resp.code}]: {resp.message}")
        return {
            asset: bal.total
            for asset, bal in resp.payload.items()
            if asset != self.quote_asset and bal.total > 0
        }

    async def _delete_ghost(self, ghost: Position) -> None:
        async def _delete():
            existed = await asyncio.to_thread(delete_position, ghost.id)
            logger.info(
                "RECONCILE_GHOST_REMOVED",
                position_id=ghost.id,
                symbol=ghost.symbol,
                already_gone=not existed,
            )
            if self.on_ghost is not None:
                self.on_ghost(ghost.id)

        if self.lock_for is None:
            await _delete()
            return
        async with self.lock_for(ghost.id):
            await _delete()

    async def _on_failure(self, mode: str, state: _ModeState, error: str) -> None:
        state.consecutive_failures += 1
        logger.error(
            "RECONCILE_FAILED",
            mode=mode,
            error=error,
            attempts=state.attempts,
            consecutive_failures=state.consecutive_failures,
        )
        if state.consecutive_failures == self.config.alert_after_failures and self.alerter is not None:
            await self.alerter.send(
                "RECONCILE_FAILING",
                f"Reconciliation for {mode} failed {state.consecutive_failures} times in a row: {error}",
            )

    async def reconcile(self, mode: str, force: bool = False) -> ReconcileResult:
        if not self.config.reconcile_enabled:
            logger.info("RECONCILE_SUMMARY", mode=mode, reconcile_disabled=True)
            return ReconcileResult(mode=mode, success=True, error="disabled")

        async with self._lock:
            state = self._mode_state(mode)
            now = self.clock()

            if (
                not force
                and state.last_attempt is not None
                and now - state.last_attempt < self.config.throttle_seconds
            ):
                return ReconcileResult(mode=mode, throttled=True, attempts=state.attempts)

            self._maybe_reset_stale(mode, state, now)
            if state.attempts >= self.config.max_attempts:
                logger.warning("RECONCILE_MAX_ATTEMPTS", mode=mode, attempts=state.attempts)
                return ReconcileResult(
                    mode=mode, success=False, error="max_attempts_exceeded", attempts=state.attempts
                )

            state.attempts += 1
            state.last_attempt = now
            logger.info("RECONCILE_START", mode=mode, attempt=state.attempts, forced=force)

            try:
                holdings = await self._holdings()
                positions = await asyncio.to_thread(get_active_positions, mode)
                ghosts = find_ghosts(positions, holdings, Decimal(str(self.config.ghost_threshold)))

                for ghost in ghosts:
                    await self._delete_ghost(ghost)

                ghost_ids = [g.id for g in ghosts]
                if self.wallet is not None and ghost_ids:
                    self.wallet.remove_position_ids(ghost_ids)
                    await self.wallet.save()

                remaining = await asyncio.to_thread(get_active_positions, mode)
            except OperationalError as e:
                await self._on_failure(mode, state, str(e))
                logger.info("RECONCILE_END", mode=mode, success=False)
                return ReconcileResult(mode=mode, success=False, error=str(e), attempts=state.attempts)

            state.attempts = 0
            state.consecutive_failures = 0
            state.last_success = now

            logger.info(
                "RECONCILE_SUMMARY",
                mode=mode,
                tracked=len(positions),
                assets_held=len(holdings),
                ghosts_cleaned=len(ghost_ids),
                positions_remaining=len(remaining),
            )
            logger.info("RECONCILE_END", mode=mode, success=True)
            return ReconcileResult(
                mode=mode,
                positions_remaining=len(remaining),
                ghosts_cleaned=len(ghost_ids),
                ghost_ids=ghost_ids,
                positions=remaining,
            )

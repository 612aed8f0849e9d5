"""Per-(symbol, mode) record of holdings too small to sell."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from spot_engine.data.symbol_utils import normalize_symbol


@dataclass
class DustEntry:
    symbol: str
    mode: str
    qty: Decimal
    price: Optional[Decimal] = None
    min_qty: Optional[Decimal] = None
    min_notional: Optional[Decimal] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def base_asset(self) -> str:
        return self.symbol.split("/")[0]

    @property
    def value(self) -> Decimal:
        return self.qty * self.price if self.price is not None else Decimal("0")


class DustRegistry:
    """Instance-scoped; one per engine."""

    def __init__(self):
        self._entries: Dict[Tuple[str, str], DustEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def record(
        self,
        symbol: str,
        mode: str,
        qty: Decimal,
        price: Optional[Decimal] = None,
        min_qty: Optional[Decimal] = None,
        min_notional: Optional[Decimal] = None,
    ) -> DustEntry:
        key = (normalize_symbol(symbol), mode)
        entry = DustEntry(
            symbol=key[0], mode=mode, qty=qty, price=price, min_qty=min_qty, min_notional=min_notional
        )
        self._entries[key] = entry
        return entry

    def is_dust(self, symbol: str, mode: str) -> bool:
        return (normalize_symbol(symbol), mode) in self._entries

    def clear(self, symbol: str, mode: str) -> bool:
        return self._entries.pop((normalize_symbol(symbol), mode), None) is not None

    def entries(self, mode: Optional[str] = None) -> List[DustEntry]:
        return [e for (_, m), e in self._entries.items() if mode is None or m == mode]

"""
Reconciliation Engine - Instrument Cache.

============================================================
PURPOSE
============================================================
Per-symbol instrument precision info with an explicit TTL and an
explicit eviction policy.

- Owned by the gateway that fills it, passed by reference
- Entries older than the TTL are treated as absent
- When full, the oldest 10% of entries are evicted before insert

============================================================
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Dict, Optional, Tuple

from ..clock import ClockProtocol, SystemClock


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstrumentInfo:
    """Trading precision rules for one symbol."""

    symbol: str
    base_coin: str
    quote_coin: str
    base_precision: Decimal
    """Quantity step."""

    tick_size: Decimal
    """Price step."""

    min_order_qty: Decimal = Decimal("0")

    def format_quantity(self, quantity: Decimal) -> Decimal:
        """Round quantity down to the quantity step."""
        return _round_down(quantity, self.base_precision)

    def format_price(self, price: Decimal) -> Decimal:
        """Round price down to the tick size."""
        return _round_down(price, self.tick_size)


def _round_down(value: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return value
    return ((value / step).to_integral_value(rounding=ROUND_DOWN) * step).quantize(step)


class InstrumentCache:
    """
    TTL cache of InstrumentInfo keyed by symbol.

    Usage:
        cache = InstrumentCache(ttl_seconds=3600, max_size=500)
        info = cache.get("BTCUSDT")
        if info is None:
            cache.put(await fetch("BTCUSDT"))
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_size: int = 500,
        clock: Optional[ClockProtocol] = None,
    ):
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[InstrumentInfo, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, stored_at: float) -> bool:
        return self._clock.monotonic() - stored_at > self._ttl

    def get(self, symbol: str) -> Optional[InstrumentInfo]:
        """Cached info, or None when absent or expired."""
        entry = self._entries.get(symbol)
        if entry is None:
            return None
        info, stored_at = entry
        if self._expired(stored_at):
            del self._entries[symbol]
            return None
        return info

    def put(self, info: InstrumentInfo) -> None:
        """Store info, evicting the oldest entries when full."""
        if info.symbol not in self._entries and len(self._entries) >= self._max_size:
            self._evict_oldest()
        self._entries[info.symbol] = (info, self._clock.monotonic())

    def _evict_oldest(self) -> None:
        to_remove = max(1, int(self._max_size * 0.1))
        oldest = sorted(self._entries.items(), key=lambda item: item[1][1])[:to_remove]
        for symbol, _ in oldest:
            del self._entries[symbol]
        logger.debug(f"Instrument cache full, evicted {len(oldest)} entries")

    def cleanup_expired(self) -> int:
        """Drop expired entries. Returns number removed."""
        expired = [s for s, (_, stored_at) in self._entries.items() if self._expired(stored_at)]
        for symbol in expired:
            del self._entries[symbol]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired instrument entries")
        return len(expired)

    def clear(self) -> None:
        """Drop everything."""
        size = len(self._entries)
        self._entries.clear()
        logger.info(f"Cleared instrument cache ({size} entries)")

    def stats(self) -> Dict[str, int]:
        """Size and number of expired-but-not-yet-dropped entries."""
        expired = sum(1 for _, stored_at in self._entries.values() if self._expired(stored_at))
        return {"size": len(self._entries), "expired": expired}

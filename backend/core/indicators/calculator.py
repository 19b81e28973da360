"""Memoizing front-end over the indicator functions.

Strategies re-evaluate the same indicators on a rolling window every bar and
several strategies can share a window. ``IndicatorCalculator`` caches each
result under (indicator name, parameters, input window) so a repeated request
is a dictionary lookup. Cached results are shared: callers treat them as
read-only.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Callable, Sequence

from core.indicators import indicators as ind

logger = logging.getLogger(__name__)

INDICATORS: dict[str, Callable[..., Any]] = {
    "sma": ind.sma,
    "ema": ind.ema,
    "rsi": ind.rsi,
    "macd": ind.macd,
    "bollinger": ind.bollinger_bands,
    "atr": ind.atr,
    "true_range": ind.true_range,
    "stochastic": ind.stochastic,
    "williams_r": ind.williams_r,
    "cci": ind.cci,
    "mfi": ind.mfi,
    "psar": ind.parabolic_sar,
    "support_resistance": ind.support_resistance,
    "volume_profile": ind.volume_profile,
    "momentum": ind.momentum,
    "roc": ind.roc,
    "highest": ind.highest,
    "lowest": ind.lowest,
}


class IndicatorCalculator:
    """Calculator for the technical indicators used by the strategies."""

    def __init__(self, max_entries: int = 512):
        self.max_entries = max_entries
        self._cache: OrderedDict[tuple, Any] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def compute(self, name: str, *series: Sequence[Decimal], **params: Any) -> Any:
        """Compute (or fetch) indicator ``name`` over ``series``.

        Args:
            name: Indicator name, one of ``INDICATORS``.
            *series: Input series in the order the indicator expects.
            **params: Indicator parameters (periods, deviations...).

        Raises:
            KeyError: If the indicator name is unknown.
        """
        fn = INDICATORS.get(name)
        if fn is None:
            available = ", ".join(sorted(INDICATORS))
            raise KeyError(f"Unknown indicator '{name}'. Available: {available}")

        key = (name, tuple(sorted(params.items())), tuple(tuple(s) for s in series))
        if key in self._cache:
            self._hits += 1
            self._cache.move_to_end(key)
            return self._cache[key]

        self._misses += 1
        result = fn(*series, **params)
        self._cache[key] = result
        if len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
        return result

    def latest(self, name: str, *series: Sequence[Decimal], **params: Any) -> Decimal | None:
        """Last value of a single-series indicator, or None without history."""
        values = self.compute(name, *series, **params)
        return values[-1] if values else None

    def clear_cache(self) -> None:
        logger.debug(
            "Clearing indicator cache (%d entries, %d hits, %d misses)",
            len(self._cache), self._hits, self._misses,
        )
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    @property
    def hit_count(self) -> int:
        return self._hits

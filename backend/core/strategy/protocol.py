"""Strategy protocol defining the interface all strategies must implement.

This module provides:
- StrategyKind: the closed set of built-in strategy variants
- Fill: execution result handed back to a strategy after a signal is filled
- Strategy: Runtime-checkable Protocol that strategies must satisfy
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable

from core.models.bar import Bar, BarBuffer
from core.models.performance import PerformanceMetrics
from core.models.position import CloseReason, Position, PositionId
from core.models.signal import Signal


class StrategyKind(str, Enum):
    SCALPING = "scalping"
    DCA = "dca"
    GRID = "grid"


# ---------------------------------------------------------------------------
# Fill: what the execution side reports back for an accepted signal
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Fill:
    """Result of executing a validated signal.

    Attributes:
        price: Actual fill price (after slippage in simulation).
        lot_size: Executed size (the risk-adjusted size, not the requested one).
        time: Fill time; the bar timestamp in simulation.
        order_id: Broker order id, if any.
    """

    price: Decimal
    lot_size: Decimal
    time: datetime
    order_id: str | None = None


# ---------------------------------------------------------------------------
# Strategy Protocol
# ---------------------------------------------------------------------------
@runtime_checkable
class Strategy(Protocol):
    """Protocol that all trading strategies must implement.

    A strategy instance belongs to exactly one bot. It owns its positions
    (and deals / grid orders); callers change them only through ``on_fill``
    and ``close_position``.
    """

    @property
    def name(self) -> str:
        """Registered strategy type (e.g. 'scalping')."""
        ...

    @property
    def kind(self) -> StrategyKind:
        ...

    @property
    def is_active(self) -> bool:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def analyze(self, bar: Bar, buffer: BarBuffer) -> Signal | None:
        """Process one closed bar and optionally produce an entry signal.

        Exits of open positions triggered by this bar are processed first and
        collected for ``drain_exits``. Bars must arrive with strictly
        increasing timestamps; a bar that does not is ignored.

        Args:
            bar: The closed bar to process (already added to ``buffer``).
            buffer: Recent bars for indicator calculation.

        Returns:
            At most one new Signal, or None for "no action this bar".
        """
        ...

    def on_fill(self, signal: Signal, fill: Fill) -> Position:
        """Record the position created by an executed signal."""
        ...

    def on_reject(self, signal: Signal, reasons: list[str]) -> None:
        """Tell the strategy a signal was rejected or not executed."""
        ...

    def drain_exits(self) -> list[Position]:
        """Return (and forget) positions closed since the last call."""
        ...

    def close_position(
        self,
        position_id: PositionId,
        price: Decimal,
        time: datetime,
        reason: CloseReason = CloseReason.MANUAL,
    ) -> Position:
        ...

    @property
    def open_positions(self) -> list[Position]:
        ...

    def get_metrics(self) -> PerformanceMetrics:
        ...

    def status(self) -> dict:
        """Strategy-specific state summary."""
        ...

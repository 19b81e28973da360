"""Shared machinery for the built-in strategies.

``BaseStrategy`` owns the position book, the performance tracker and the
bar-ordering guard. Subclasses implement ``_evaluate_entry`` and may extend
``_process_exits``, ``_on_filled`` and ``_on_position_closed``.

This module is pure business logic with no I/O dependencies.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import ClassVar

from pydantic import BaseModel

from core.errors import PositionStateError
from core.indicators import IndicatorCalculator
from core.models.bar import Bar, BarBuffer
from core.models.performance import PerformanceMetrics, PerformanceTracker
from core.models.position import CloseReason, Position, PositionId
from core.models.signal import Signal
from core.strategy.protocol import Fill, StrategyKind

logger = logging.getLogger(__name__)


def _is_nan(value) -> bool:
    """Check if a value is NaN (handles Decimal and float)."""
    if value is None:
        return True
    if isinstance(value, Decimal):
        return value.is_nan()
    if isinstance(value, float):
        return math.isnan(value)
    return str(value) == "NaN"


def last(values) -> Decimal | None:
    """Last element of an indicator series, None if empty or NaN."""
    if not values:
        return None
    value = values[-1]
    return None if _is_nan(value) else value


class BaseStrategy:
    """Position book, metrics and lifecycle common to all strategies."""

    name: ClassVar[str] = ""
    kind: ClassVar[StrategyKind]
    version: ClassVar[str] = "1.0.0"
    config_model: ClassVar[type[BaseModel]]

    def __init__(
        self,
        config: BaseModel | None = None,
        strategy_id: str | None = None,
        symbol: str | None = None,
        timeframe: str | None = None,
        calculator: IndicatorCalculator | None = None,
    ):
        self.config = config or self.config_model()
        self.strategy_id = strategy_id or self.name
        self.symbol = symbol
        self.timeframe = timeframe
        self.calculator = calculator or IndicatorCalculator()
        self.performance = PerformanceTracker()

        self._active = False
        self._positions: dict[PositionId, Position] = {}
        self._history: list[Position] = []
        self._pending_exits: list[Position] = []
        self._next_position_id = 1
        self._last_timestamp: dict[str, datetime] = {}
        self.signals_emitted = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self) -> None:
        self._active = True
        logger.info(f"{self.__class__.__name__} '{self.strategy_id}' started")

    def stop(self) -> None:
        self._active = False
        logger.info(f"{self.__class__.__name__} '{self.strategy_id}' stopped")

    def reset(self) -> None:
        """Forget all positions, history and metrics."""
        self._positions.clear()
        self._history.clear()
        self._pending_exits.clear()
        self._last_timestamp.clear()
        self._next_position_id = 1
        self.performance = PerformanceTracker()
        self.signals_emitted = 0
        self.calculator.clear_cache()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, bar: Bar, buffer: BarBuffer) -> Signal | None:
        if self.symbol is not None and bar.symbol != self.symbol:
            return None

        previous = self._last_timestamp.get(bar.key)
        if previous is not None and bar.timestamp <= previous:
            logger.debug(
                "%s: ignoring out-of-order bar %s (last %s)",
                self.strategy_id, bar.timestamp, previous,
            )
            return None
        self._last_timestamp[bar.key] = bar.timestamp

        self._process_exits(bar, buffer)
        for position in self._positions.values():
            position.update_unrealized(bar.close)

        if not self._active or bar.close <= 0:
            return None

        signal = self._evaluate_entry(bar, buffer)
        if signal is not None:
            self.signals_emitted += 1
            logger.debug(
                "%s: %s %s @ %s (confidence %.2f)",
                self.strategy_id, signal.direction.name, signal.symbol,
                signal.entry_price, signal.confidence,
            )
        return signal

    def _evaluate_entry(self, bar: Bar, buffer: BarBuffer) -> Signal | None:
        raise NotImplementedError

    def _process_exits(self, bar: Bar, buffer: BarBuffer) -> None:
        """Close positions whose stop or target the bar touched."""
        for position in list(self._positions.values()):
            hit = position.check_exit(bar)
            if hit is not None:
                price, reason = hit
                self._close(position, price, bar.timestamp, reason)

    # ------------------------------------------------------------------
    # Position book
    # ------------------------------------------------------------------

    @property
    def open_positions(self) -> list[Position]:
        return list(self._positions.values())

    @property
    def closed_positions(self) -> list[Position]:
        return list(self._history)

    def get_position(self, position_id: PositionId) -> Position | None:
        return self._positions.get(position_id)

    def _position_levels(self, signal: Signal) -> tuple[Decimal | None, Decimal | None]:
        """Stop loss and take profit attached to the position a signal opens."""
        return signal.stop_loss, signal.take_profit

    def on_fill(self, signal: Signal, fill: Fill) -> Position:
        stop_loss, take_profit = self._position_levels(signal)
        position = Position.open(
            position_id=PositionId(self._next_position_id),
            strategy_id=self.strategy_id,
            symbol=signal.symbol,
            direction=signal.direction,
            lot_size=fill.lot_size,
            entry_price=fill.price,
            open_time=fill.time,
            stop_loss=stop_loss,
            take_profit=take_profit,
            group_id=signal.group_id,
            signal_id=signal.id,
            order_id=fill.order_id,
        )
        self._next_position_id += 1
        self._positions[position.id] = position
        self._on_filled(signal, position)
        return position

    def _on_filled(self, signal: Signal, position: Position) -> None:
        pass

    def on_reject(self, signal: Signal, reasons: list[str]) -> None:
        pass

    def close_position(
        self,
        position_id: PositionId,
        price: Decimal,
        time: datetime,
        reason: CloseReason = CloseReason.MANUAL,
    ) -> Position:
        """Close an open position on request (manual or emergency close)."""
        position = self._positions.get(position_id)
        if position is None:
            raise PositionStateError(
                f"{self.strategy_id}: no open position {position_id}"
            )
        self._close(position, price, time, reason, report=False)
        return position

    def close_all(self, price: Decimal, time: datetime, reason: CloseReason) -> list[Position]:
        closed = []
        for position in list(self._positions.values()):
            self._close(position, price, time, reason, report=False)
            closed.append(position)
        return closed

    def _close(
        self,
        position: Position,
        price: Decimal,
        time: datetime,
        reason: CloseReason,
        report: bool = True,
    ) -> Decimal:
        profit = position.close(price, time, reason)
        del self._positions[position.id]
        self._history.append(position)
        self.performance.record(profit, time)
        if report:
            self._pending_exits.append(position)
        self._on_position_closed(position)
        logger.debug(
            "%s: closed position %s %s @ %s (%s) profit=%s",
            self.strategy_id, position.id, position.symbol, price, reason.value, profit,
        )
        return profit

    def _on_position_closed(self, position: Position) -> None:
        pass

    def drain_exits(self) -> list[Position]:
        exits, self._pending_exits = self._pending_exits, []
        return exits

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> PerformanceMetrics:
        return self.performance.metrics.model_copy()

    def status(self) -> dict:
        return {
            "strategy": self.name,
            "strategy_id": self.strategy_id,
            "active": self._active,
            "open_positions": len(self._positions),
            "signals_emitted": self.signals_emitted,
        }

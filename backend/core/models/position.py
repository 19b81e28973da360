"""Position data models and stop/target trigger rules."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import NewType

from pydantic import BaseModel

from core.errors import PositionStateError
from core.models.bar import Bar
from core.models.signal import Direction

PositionId = NewType("PositionId", int)


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(str, Enum):
    """Why a position was closed."""

    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    SIGNAL_EXIT = "signal_exit"  # Strategy-specific exit rule (e.g. RSI)
    EXHAUSTED = "safety_orders_exhausted"
    MANUAL = "manual"
    EMERGENCY = "emergency"
    END_OF_DATA = "end_of_data"


def triggered_exit(
    direction: Direction,
    stop_loss: Decimal | None,
    take_profit: Decimal | None,
    bar: Bar,
) -> tuple[Decimal, CloseReason] | None:
    """Check a bar's high/low against stop loss and take profit.

    A long stops out when ``low <= stop_loss`` and takes profit when
    ``high >= take_profit``; a short mirrors this. When both are touched in
    the same bar the stop loss wins (pessimistic). The exit price is the
    triggered level, never the bar's close.
    """
    if direction == Direction.BUY:
        if stop_loss is not None and bar.low <= stop_loss:
            return stop_loss, CloseReason.STOP_LOSS
        if take_profit is not None and bar.high >= take_profit:
            return take_profit, CloseReason.TAKE_PROFIT
    else:
        if stop_loss is not None and bar.high >= stop_loss:
            return stop_loss, CloseReason.STOP_LOSS
        if take_profit is not None and bar.low <= take_profit:
            return take_profit, CloseReason.TAKE_PROFIT
    return None


def trailing_stop_price(
    direction: Direction,
    current_stop: Decimal | None,
    price: Decimal,
    distance: Decimal,
) -> Decimal | None:
    """Stop trailing ``distance`` behind price, never looser than current_stop."""
    if direction == Direction.BUY:
        candidate = price - distance
        if current_stop is None or candidate > current_stop:
            return candidate
    else:
        candidate = price + distance
        if current_stop is None or candidate < current_stop:
            return candidate
    return current_stop


class Position(BaseModel):
    """A filled trade owned by exactly one strategy instance.

    Mutated only through ``open``, ``update_unrealized`` and ``close``.
    """

    id: PositionId
    strategy_id: str
    symbol: str
    direction: Direction
    lot_size: Decimal
    entry_price: Decimal
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    open_time: datetime
    status: PositionStatus = PositionStatus.OPEN
    close_price: Decimal | None = None
    close_time: datetime | None = None
    profit: Decimal | None = None
    close_reason: CloseReason | None = None
    unrealized_pnl: Decimal = Decimal("0")
    group_id: str | None = None  # Deal id or grid order id
    signal_id: str | None = None
    order_id: str | None = None  # Broker order id

    @classmethod
    def open(
        cls,
        position_id: PositionId,
        strategy_id: str,
        symbol: str,
        direction: Direction,
        lot_size: Decimal,
        entry_price: Decimal,
        open_time: datetime,
        stop_loss: Decimal | None = None,
        take_profit: Decimal | None = None,
        group_id: str | None = None,
        signal_id: str | None = None,
        order_id: str | None = None,
    ) -> "Position":
        if lot_size <= 0:
            raise PositionStateError(f"Position lot size must be positive, got {lot_size}")
        return cls(
            id=position_id,
            strategy_id=strategy_id,
            symbol=symbol,
            direction=direction,
            lot_size=lot_size,
            entry_price=entry_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            open_time=open_time,
            group_id=group_id,
            signal_id=signal_id,
            order_id=order_id,
        )

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def notional(self) -> Decimal:
        return self.entry_price * self.lot_size

    @property
    def risk_amount(self) -> Decimal | None:
        """Money lost if the stop is hit, None without a stop."""
        if self.stop_loss is None:
            return None
        return abs(self.entry_price - self.stop_loss) * self.lot_size

    def pnl_at(self, price: Decimal) -> Decimal:
        return self.direction.value * (price - self.entry_price) * self.lot_size

    def update_unrealized(
        self, price: Decimal, stop_loss: Decimal | None = None
    ) -> Decimal:
        """Mark to market; optionally tighten the stop.

        A new stop is only accepted if it is tighter than the current one
        (higher for a long, lower for a short). Returns the unrealized P&L.
        """
        if not self.is_open:
            raise PositionStateError(f"Position {self.id} is closed")
        self.unrealized_pnl = self.pnl_at(price)
        if stop_loss is not None:
            if self.stop_loss is None:
                self.stop_loss = stop_loss
            elif self.direction == Direction.BUY and stop_loss > self.stop_loss:
                self.stop_loss = stop_loss
            elif self.direction == Direction.SELL and stop_loss < self.stop_loss:
                self.stop_loss = stop_loss
        return self.unrealized_pnl

    def check_exit(self, bar: Bar) -> tuple[Decimal, CloseReason] | None:
        """Stop/target check that only looks at bars after the open."""
        if not self.is_open or bar.timestamp <= self.open_time:
            return None
        return triggered_exit(self.direction, self.stop_loss, self.take_profit, bar)

    def close(self, price: Decimal, time: datetime, reason: CloseReason) -> Decimal:
        """Close the position and return realized profit."""
        if not self.is_open:
            raise PositionStateError(f"Position {self.id} is already closed")
        self.status = PositionStatus.CLOSED
        self.close_price = price
        self.close_time = time
        self.close_reason = reason
        self.profit = self.pnl_at(price)
        self.unrealized_pnl = Decimal("0")
        return self.profit

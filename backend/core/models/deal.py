"""DCA deal models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from core.errors import InvariantViolation
from core.models.position import CloseReason, PositionId


class DealStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class DealOrder(BaseModel):
    """One filled order of a deal (the base order or a safety order)."""

    number: int  # 0 = base order, 1..n = safety orders
    position_id: PositionId
    price: Decimal
    volume: Decimal
    time: datetime


class Deal(BaseModel):
    """A DCA deal aggregating the positions opened at averaging levels.

    ``average_price == total_invested / total_volume`` after every order and
    ``safety_order_count <= max_safety_orders`` at all times.
    """

    id: str
    symbol: str
    base_order: DealOrder
    safety_orders: list[DealOrder] = Field(default_factory=list)
    max_safety_orders: int
    average_price: Decimal
    total_volume: Decimal
    total_invested: Decimal
    take_profit_price: Decimal
    stop_loss_price: Decimal | None = None
    next_safety_order_price: Decimal | None = None
    status: DealStatus = DealStatus.OPEN
    opened_at: datetime
    closed_at: datetime | None = None
    close_price: Decimal | None = None
    close_reason: CloseReason | None = None
    profit: Decimal | None = None

    @classmethod
    def start(
        cls,
        deal_id: str,
        symbol: str,
        base_order: DealOrder,
        max_safety_orders: int,
        take_profit_price: Decimal,
        stop_loss_price: Decimal | None,
        next_safety_order_price: Decimal | None,
    ) -> "Deal":
        return cls(
            id=deal_id,
            symbol=symbol,
            base_order=base_order,
            max_safety_orders=max_safety_orders,
            average_price=base_order.price,
            total_volume=base_order.volume,
            total_invested=base_order.price * base_order.volume,
            take_profit_price=take_profit_price,
            stop_loss_price=stop_loss_price,
            next_safety_order_price=next_safety_order_price,
            opened_at=base_order.time,
        )

    @property
    def safety_order_count(self) -> int:
        return len(self.safety_orders)

    @property
    def is_open(self) -> bool:
        return self.status == DealStatus.OPEN

    @property
    def has_safety_orders_left(self) -> bool:
        return self.safety_order_count < self.max_safety_orders

    @property
    def position_ids(self) -> list[PositionId]:
        return [self.base_order.position_id] + [o.position_id for o in self.safety_orders]

    def add_safety_order(self, order: DealOrder) -> Decimal:
        """Record a filled safety order and return the new average price."""
        if not self.is_open:
            raise InvariantViolation(f"Deal {self.id} is closed")
        if not self.has_safety_orders_left:
            raise InvariantViolation(
                f"Deal {self.id} already has {self.max_safety_orders} safety orders"
            )
        self.safety_orders.append(order)
        self.total_volume += order.volume
        self.total_invested += order.price * order.volume
        self.average_price = self.total_invested / self.total_volume
        return self.average_price

    def profit_at(self, price: Decimal) -> Decimal:
        return price * self.total_volume - self.total_invested

    def close(self, price: Decimal, time: datetime, reason: CloseReason) -> Decimal:
        if not self.is_open:
            raise InvariantViolation(f"Deal {self.id} is already closed")
        self.status = DealStatus.CLOSED
        self.closed_at = time
        self.close_price = price
        self.close_reason = reason
        self.profit = self.profit_at(price)
        self.next_safety_order_price = None
        return self.profit

    @property
    def duration_hours(self) -> float | None:
        if self.closed_at is None:
            return None
        return (self.closed_at - self.opened_at).total_seconds() / 3600

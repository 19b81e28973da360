"""Grid ladder models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel

from core.models.position import PositionId
from core.models.signal import Direction


class LevelType(str, Enum):
    LOWER_BOUND = "lower_bound"
    UPPER_BOUND = "upper_bound"
    GRID = "grid"
    MANUAL = "manual"


class GridOrderStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"  # Position open
    CLOSED = "closed"  # Position closed
    CANCELLED = "cancelled"


class GridLevel(BaseModel):
    """One rung of the price ladder."""

    index: int
    price: Decimal
    kind: LevelType
    order_direction: Direction  # BUY below the centre, SELL above

    @property
    def is_interior(self) -> bool:
        return self.kind in (LevelType.GRID, LevelType.MANUAL)


class GridOrder(BaseModel):
    """Order resting on a grid level."""

    id: str
    level_index: int | None  # None for hedge orders placed off the ladder
    direction: Direction
    price: Decimal
    lot_size: Decimal
    status: GridOrderStatus = GridOrderStatus.PENDING
    created_at: datetime
    position_id: PositionId | None = None
    fill_price: Decimal | None = None
    is_replacement: bool = False
    is_hedge: bool = False

    @property
    def is_pending(self) -> bool:
        return self.status == GridOrderStatus.PENDING

    def is_triggered(self, close: Decimal) -> bool:
        """Buy orders fill when price trades down to them, sells when up."""
        if self.direction == Direction.BUY:
            return close <= self.price
        return close >= self.price

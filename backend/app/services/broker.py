"""Broker-execution collaborator interface and an in-process paper broker.

The engine only needs two calls: place an order for a validated signal and
close a position. Any ``ExecutionError`` means "not executed"; partial fills
are not modelled. Retrying is the broker's business, never the engine's.
"""

import asyncio
import logging
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from core.errors import ExecutionError
from core.models import Direction

logger = logging.getLogger(__name__)


class OrderType(str, Enum):
    """Order type enum."""
    MARKET = "market"
    LIMIT = "limit"


class OrderRequest(BaseModel):
    """What the engine asks the broker to execute."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    direction: Direction
    lot_size: Decimal
    order_type: OrderType = OrderType.MARKET
    price: Decimal | None = None  # Reference price (market) or limit price
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    client_id: str | None = None  # Signal id, for idempotency on the broker side


class OrderResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str  # Also identifies the broker-side position
    filled_price: Decimal
    lot_size: Decimal


class CloseResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    closed_price: Decimal
    profit: Decimal


@runtime_checkable
class Broker(Protocol):
    """Execution collaborator used by the orchestrator."""

    async def place_order(self, request: OrderRequest) -> OrderResult:
        """Execute an order.

        Raises:
            ExecutionError: The order was not executed.
        """
        ...

    async def close_position(
        self, position_id: str, exit_price: Decimal | None = None
    ) -> CloseResult:
        """Close a broker position (identified by its opening order id).

        Raises:
            ExecutionError: The position was not closed.
        """
        ...


class _PaperPosition(BaseModel):
    symbol: str
    direction: Direction
    lot_size: Decimal
    entry_price: Decimal


class PaperBroker:
    """
    Simulated broker keeping positions in memory.

    Market orders fill at the request's reference price shifted by
    ``slippage`` against the trader; order ids are sequential so runs are
    reproducible.
    """

    def __init__(self, slippage: Decimal = Decimal("0")):
        self.slippage = slippage
        self._positions: dict[str, _PaperPosition] = {}
        self._counter = 0
        self._lock = asyncio.Lock()
        self.realized_pnl = Decimal("0")

    @property
    def open_position_ids(self) -> list[str]:
        return list(self._positions)

    async def place_order(self, request: OrderRequest) -> OrderResult:
        if request.lot_size <= 0:
            raise ExecutionError(f"Invalid lot size {request.lot_size} for {request.symbol}")
        if request.price is None or request.price <= 0:
            raise ExecutionError(f"Paper broker needs a reference price for {request.symbol}")

        async with self._lock:
            self._counter += 1
            order_id = f"paper-{self._counter}"
            filled = request.price + request.direction.value * self.slippage
            self._positions[order_id] = _PaperPosition(
                symbol=request.symbol,
                direction=request.direction,
                lot_size=request.lot_size,
                entry_price=filled,
            )

        logger.info(
            f"Paper order {order_id}: {request.direction.name} {request.symbol} "
            f"qty={request.lot_size} @ {filled}"
        )
        return OrderResult(order_id=order_id, filled_price=filled, lot_size=request.lot_size)

    async def close_position(
        self, position_id: str, exit_price: Decimal | None = None
    ) -> CloseResult:
        async with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                raise ExecutionError(f"Unknown paper position {position_id}")
            if exit_price is None:
                raise ExecutionError(f"Paper broker needs an exit price to close {position_id}")
            del self._positions[position_id]

        profit = position.direction.value * (exit_price - position.entry_price) * position.lot_size
        self.realized_pnl += profit
        logger.info(f"Paper position {position_id} closed @ {exit_price} profit={profit}")
        return CloseResult(closed_price=exit_price, profit=profit)

"""Signal data models."""

import hashlib
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Direction(int, Enum):
    """Trade direction. The value is the P&L sign."""

    BUY = 1
    SELL = -1

    @property
    def opposite(self) -> "Direction":
        return Direction.SELL if self is Direction.BUY else Direction.BUY


class SignalKind(str, Enum):
    """What a filled signal does to the book."""

    ENTRY = "entry"  # Opens a new position (or a new deal)
    SCALE_IN = "scale_in"  # Adds to an existing position group (DCA safety order)


def _generate_signal_id(
    strategy_id: str,
    symbol: str,
    timestamp: datetime,
    direction: int,
    group_id: str | None,
) -> str:
    """Generate deterministic signal ID based on signal attributes.

    The same bar replayed through the same strategy yields the same ID, so
    live runs and backtests can be compared signal by signal.
    """
    ts_str = timestamp.strftime("%Y%m%d%H%M%S%f")
    key = f"{strategy_id}:{symbol}:{ts_str}:{direction}:{group_id or ''}"
    return hashlib.sha256(key.encode()).hexdigest()[:32]


class Signal(BaseModel):
    """Candidate trade produced by a strategy on one analysis step."""

    model_config = ConfigDict(frozen=True)

    id: str = ""  # Will be set in model_post_init
    strategy_id: str
    symbol: str
    timeframe: str = ""
    direction: Direction
    entry_price: Decimal
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    lot_size: Decimal
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    timestamp: datetime
    kind: SignalKind = SignalKind.ENTRY
    group_id: str | None = None  # Deal id / grid order id the signal belongs to
    metadata: dict[str, Any] = Field(default_factory=dict)

    def model_post_init(self, __context) -> None:
        """Generate deterministic ID after model initialization."""
        if not self.id:
            object.__setattr__(
                self,
                "id",
                _generate_signal_id(
                    self.strategy_id,
                    self.symbol,
                    self.timestamp,
                    self.direction.value,
                    self.group_id,
                ),
            )

    @property
    def risk_distance(self) -> Decimal | None:
        """Absolute distance from entry to stop loss."""
        if self.stop_loss is None:
            return None
        return abs(self.entry_price - self.stop_loss)

    @property
    def reward_distance(self) -> Decimal | None:
        """Absolute distance from entry to take profit."""
        if self.take_profit is None:
            return None
        return abs(self.take_profit - self.entry_price)

    @property
    def risk_reward(self) -> Decimal | None:
        """|takeProfit - entry| / |entry - stopLoss|, None if undefined."""
        risk = self.risk_distance
        reward = self.reward_distance
        if risk is None or reward is None or risk == 0:
            return None
        return reward / risk

    @property
    def atr(self) -> Decimal | None:
        """Volatility reported by the strategy, if any."""
        value = self.metadata.get("atr")
        return Decimal(str(value)) if value is not None else None

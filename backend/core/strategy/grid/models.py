"""Grid strategy configuration."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

GRID_STRATEGY_NAME = "grid"


class GridConfig(BaseModel):
    """Configuration for the Grid strategy."""

    model_config = ConfigDict(extra="forbid")

    grid_type: Literal["arithmetic", "geometric"] = "arithmetic"
    grid_levels: int = Field(default=10, ge=3)
    grid_order_size: Decimal = Decimal("0.1")

    # Per-order exits (pips)
    take_profit_pips: Decimal = Decimal("30")
    stop_loss_pips: Decimal | None = Decimal("500")
    pip_size: Decimal = Decimal("0.0001")

    max_grid_orders: int = Field(default=20, ge=1)

    # Explicit bounds; computed from volatility when not both set
    upper_bound: Decimal | None = None
    lower_bound: Decimal | None = None

    # Volatility-derived bounds
    atr_period: int = 14
    atr_range_multiplier: Decimal = Decimal("10")
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    support_lookback: int = 5

    # Rebalancing
    rebalance_on_breakout: bool = True
    volatility_change_threshold: Decimal = Decimal("0.3")
    volatility_lookback: int = 10
    rebalance_cooldown_hours: Decimal = Decimal("1")

    # Hedging: opposite order one spacing unit away from a fill
    hedging: bool = False
    grid_spacing_pips: Decimal = Decimal("50")

    martingale_multiplier: Decimal = Decimal("1.0")

    @property
    def has_fixed_bounds(self) -> bool:
        return self.upper_bound is not None and self.lower_bound is not None

    @model_validator(mode="after")
    def check_bounds(self) -> "GridConfig":
        if self.has_fixed_bounds and self.upper_bound <= self.lower_bound:
            raise ValueError(
                f"upper_bound ({self.upper_bound}) must be above lower_bound ({self.lower_bound})"
            )
        return self

"""DCA strategy configuration."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DCA_STRATEGY_NAME = "dca"

DealStartCondition = Literal["rsi_oversold", "ema_cross", "support_bounce", "always"]


class DcaConfig(BaseModel):
    """Configuration for the DCA (dollar-cost averaging) strategy.

    Percentages are expressed in percent (2.5 means 2.5%).
    """

    model_config = ConfigDict(extra="forbid")

    base_order_size: Decimal = Decimal("0.1")
    safety_order_size: Decimal = Decimal("0.2")

    # Safety order ladder
    price_deviation: Decimal = Field(default=Decimal("2.5"), gt=0)
    safety_order_step_scale: Decimal = Decimal("1.05")
    safety_order_volume_scale: Decimal = Decimal("1.2")
    max_safety_orders: int = Field(default=5, ge=0)

    take_profit_percentage: Decimal = Field(default=Decimal("3.0"), gt=0)
    stop_loss_percentage: Decimal | None = Decimal("15.0")  # None disables

    # Deal start
    deal_start_condition: DealStartCondition = "rsi_oversold"
    rsi_period: int = 14
    rsi_oversold: Decimal = Decimal("30")
    ema_fast: int = 12
    ema_slow: int = 26
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    support_lookback: int = 5
    support_proximity: Decimal = Decimal("0.5")
    atr_period: int = 14

    cooldown_hours: Decimal = Decimal("6")
    max_deals: int = 10
    close_on_exhaustion: bool = True

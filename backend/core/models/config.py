"""Risk and bot configuration models."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class RiskConfig(BaseModel):
    """Risk Manager parameters (per bot)."""

    model_config = ConfigDict(extra="forbid")

    max_risk_per_trade: Decimal = Decimal("0.02")
    max_daily_risk: Decimal = Decimal("0.05")
    max_drawdown: Decimal = Decimal("0.15")
    max_positions: int = 5
    max_leverage: Decimal = Decimal("10")
    min_risk_reward_ratio: Decimal = Decimal("1.5")
    correlation_limit: Decimal = Decimal("0.7")

    # Volatility: dynamic stop distance and the ATR/entry ceiling
    volatility_multiplier: Decimal = Decimal("2")
    max_volatility_ratio: Decimal = Decimal("0.05")

    # Margin committed to one position as a share of the balance
    max_position_balance_pct: Decimal = Decimal("0.5")

    account_balance: Decimal = Decimal("10000")

    sizing_method: Literal["fixed_fractional", "kelly"] = "fixed_fractional"
    kelly_fraction: Decimal = Decimal("0.25")

    # Emergency stop
    max_portfolio_heat: Decimal = Decimal("0.2")
    max_consecutive_losses: int = 5
    max_daily_loss: Decimal = Decimal("0.05")


class BotConfig(BaseModel):
    """Configuration of one bot: which strategy, on what market, with what risk.

    ``strategy_params`` is validated into the strategy's own config model when
    the strategy is built.
    """

    model_config = ConfigDict(extra="forbid")

    bot_id: str
    strategy_type: str
    symbol: str
    timeframe: str = "1m"
    strategy_params: dict[str, Any] = Field(default_factory=dict)
    risk_params: RiskConfig = Field(default_factory=RiskConfig)
    enabled: bool = True

    @property
    def key(self) -> str:
        return f"{self.symbol}_{self.timeframe}"

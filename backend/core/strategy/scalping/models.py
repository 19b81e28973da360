"""Scalping strategy configuration."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

SCALPING_STRATEGY_NAME = "scalping"


class ScalpingConfig(BaseModel):
    """Configuration for the Scalping strategy."""

    model_config = ConfigDict(extra="forbid")

    # Trend
    ema_fast: int = 8
    ema_slow: int = 21

    # Momentum
    rsi_period: int = 14
    rsi_overbought: Decimal = Decimal("70")
    rsi_oversold: Decimal = Decimal("30")
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    momentum_period: int = 10
    stoch_k: int = 14
    stoch_d: int = 3
    stoch_smoothing: int = 3

    # Mean reversion / volatility
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    atr_period: int = 14

    # Volume / spread filters
    volume_period: int = 20
    volume_threshold: Decimal = Decimal("1.5")
    require_volume_surge: bool = False
    max_spread_pips: Decimal = Decimal("3")

    # Orders (pips)
    stop_loss_pips: Decimal = Decimal("10")
    take_profit_pips: Decimal = Decimal("15")
    pip_size: Decimal = Decimal("0.0001")
    lot_size: Decimal = Decimal("0.1")

    # Fraction of directional conditions that must agree
    signal_threshold: float = Field(default=0.8, gt=0.0, le=1.0)

    max_positions: int = 3
    max_consecutive_losses: int = 3

    trailing_stop: bool = True
    trailing_stop_pips: Decimal = Decimal("3")

    min_bars: int = 50

"""Technical indicators (pure math, no I/O)."""

from core.indicators.indicators import (
    sma,
    ema,
    rsi,
    macd,
    bollinger_bands,
    atr,
    true_range,
    stochastic,
    williams_r,
    cci,
    mfi,
    parabolic_sar,
    support_resistance,
    volume_profile,
    momentum,
    roc,
    highest,
    lowest,
    fibonacci_retracement,
    MACDResult,
    BollingerResult,
    StochasticResult,
    PriceLevel,
    SupportResistance,
    VolumeProfile,
)
from core.indicators.calculator import IndicatorCalculator, INDICATORS

__all__ = [
    "sma",
    "ema",
    "rsi",
    "macd",
    "bollinger_bands",
    "atr",
    "true_range",
    "stochastic",
    "williams_r",
    "cci",
    "mfi",
    "parabolic_sar",
    "support_resistance",
    "volume_profile",
    "momentum",
    "roc",
    "highest",
    "lowest",
    "fibonacci_retracement",
    "MACDResult",
    "BollingerResult",
    "StochasticResult",
    "PriceLevel",
    "SupportResistance",
    "VolumeProfile",
    "IndicatorCalculator",
    "INDICATORS",
]

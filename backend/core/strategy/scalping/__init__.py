"""Scalping strategy package.

Importing this package triggers strategy registration via the
@register_strategy decorator on ScalpingStrategy.
"""

from core.strategy.scalping.generator import IndicatorSnapshot, ScalpingStrategy
from core.strategy.scalping.models import SCALPING_STRATEGY_NAME, ScalpingConfig

__all__ = [
    "ScalpingStrategy",
    "IndicatorSnapshot",
    "ScalpingConfig",
    "SCALPING_STRATEGY_NAME",
]

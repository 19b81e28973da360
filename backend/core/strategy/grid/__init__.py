"""Grid strategy package.

Importing this package triggers strategy registration via the
@register_strategy decorator on GridStrategy.
"""

from core.strategy.grid.generator import GridStrategy
from core.strategy.grid.models import GRID_STRATEGY_NAME, GridConfig

__all__ = [
    "GridStrategy",
    "GridConfig",
    "GRID_STRATEGY_NAME",
]

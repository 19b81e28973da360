"""DCA strategy package.

Importing this package triggers strategy registration via the
@register_strategy decorator on DcaStrategy.
"""

from core.strategy.dca.generator import DcaStrategy
from core.strategy.dca.models import DCA_STRATEGY_NAME, DcaConfig, DealStartCondition

__all__ = [
    "DcaStrategy",
    "DcaConfig",
    "DealStartCondition",
    "DCA_STRATEGY_NAME",
]

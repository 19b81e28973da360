"""Strategy plugin system.

Public API:
- Strategy: Protocol that all strategies must implement
- StrategyKind: closed set of built-in strategy variants
- Fill: execution result handed back to a strategy
- BaseStrategy: shared position book / metrics / lifecycle
- register_strategy: Decorator to register a strategy class
- create_strategy: Factory function to instantiate strategies by name
- build_strategy: Instantiate the strategy described by a BotConfig
- list_strategies: Discover all registered strategies
- get_strategy_class: Get strategy class by name without instantiating

Importing this package auto-registers all built-in strategies.
"""

from core.strategy.protocol import Fill, Strategy, StrategyKind
from core.strategy.registry import (
    register_strategy,
    create_strategy,
    build_strategy,
    list_strategies,
    get_strategy_class,
)
from core.strategy.base import BaseStrategy

# Import built-in strategies to trigger auto-registration
import core.strategy.scalping  # noqa: F401
import core.strategy.dca  # noqa: F401
import core.strategy.grid  # noqa: F401

__all__ = [
    "Strategy",
    "StrategyKind",
    "Fill",
    "BaseStrategy",
    "register_strategy",
    "create_strategy",
    "build_strategy",
    "list_strategies",
    "get_strategy_class",
]

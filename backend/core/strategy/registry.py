"""Strategy registry for discovering and instantiating strategies.

Usage:
    @register_strategy("my_strategy")
    class MyStrategy(BaseStrategy):
        ...

    strategy = create_strategy("my_strategy", config=config)
    strategy = build_strategy(bot_config)
    strategies = list_strategies()
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from core.errors import ConfigError
from core.models.config import BotConfig

logger = logging.getLogger(__name__)

# Global registry: strategy_name -> strategy_class
_REGISTRY: dict[str, type] = {}


def register_strategy(name: str):
    """Decorator to register a strategy class under a given name.

    Args:
        name: Unique strategy name (e.g., 'scalping').

    Returns:
        Decorator that registers the class and returns it unchanged.

    Raises:
        ValueError: If a strategy with the same name is already registered.
    """

    def decorator(cls):
        if name in _REGISTRY:
            raise ValueError(
                f"Strategy '{name}' is already registered by {_REGISTRY[name].__name__}"
            )
        _REGISTRY[name] = cls
        logger.debug("Registered strategy: %s -> %s", name, cls.__name__)
        return cls

    return decorator


def get_strategy_class(name: str) -> type:
    """Get the strategy class by name (without instantiating).

    Raises:
        KeyError: If no strategy is registered under the given name.
    """
    cls = _REGISTRY.get(name)
    if cls is None:
        available = ", ".join(sorted(_REGISTRY.keys())) or "(none)"
        raise KeyError(
            f"Unknown strategy '{name}'. Available: {available}"
        )
    return cls


def create_strategy(name: str, **kwargs: Any):
    """Create a strategy instance by name.

    Args:
        name: Registered strategy name.
        **kwargs: Arguments passed to the strategy constructor.

    Raises:
        KeyError: If no strategy is registered under the given name.
    """
    return get_strategy_class(name)(**kwargs)


def build_strategy(bot: BotConfig, **kwargs: Any):
    """Instantiate the strategy described by a bot configuration.

    ``bot.strategy_params`` is validated against the strategy's config model.

    Raises:
        ConfigError: Unknown strategy type or invalid parameters.
    """
    try:
        cls = get_strategy_class(bot.strategy_type)
    except KeyError as e:
        raise ConfigError(str(e.args[0])) from e

    try:
        config = cls.config_model.model_validate(bot.strategy_params)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid params for strategy '{bot.strategy_type}' (bot {bot.bot_id}): {e}"
        ) from e

    return cls(
        config=config,
        strategy_id=bot.bot_id,
        symbol=bot.symbol,
        timeframe=bot.timeframe,
        **kwargs,
    )


def list_strategies() -> list[str]:
    """Return a sorted list of registered strategy names."""
    return sorted(_REGISTRY.keys())

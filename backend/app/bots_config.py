"""Bot configuration loaded from bots.yaml.

Layout::

    bots:
      - bot_id: eurusd-scalper
        strategy_type: scalping
        symbol: EURUSD
        timeframe: 1m
        strategy_params: {signal_threshold: 0.8}
        risk_params: {max_positions: 3}

A missing file means no bots. Strategy params are validated against the
strategy's config model when the bot is built, so typos fail at startup.
"""

import logging
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, model_validator

from core.errors import ConfigError
from core.models.config import BotConfig

logger = logging.getLogger(__name__)


class BotsConfig(BaseModel):
    """Top-level bots.yaml configuration."""

    bots: list[BotConfig] = []

    @model_validator(mode="after")
    def _validate(self):
        seen = set()
        for bot in self.bots:
            if bot.bot_id in seen:
                raise ValueError(f"Duplicate bot_id '{bot.bot_id}'")
            seen.add(bot.bot_id)
        return self

    def get_enabled_bots(self) -> list[BotConfig]:
        return [b for b in self.bots if b.enabled]


_DEFAULT_PATH = Path(__file__).parent.parent / "bots.yaml"


def load_bots_config(path: Path | None = None) -> BotsConfig:
    """Load bot definitions from a YAML file.

    Falls back to an empty configuration if the file doesn't exist.

    Raises:
        ConfigError: The file exists but is not a valid bot configuration.
    """
    config_path = Path(path) if path is not None else _DEFAULT_PATH

    # .env next to the YAML file feeds the ENGINE_* / BACKTEST_* settings
    env_path = config_path.parent / ".env"
    load_dotenv(env_path, override=False)

    if not config_path.exists():
        logger.info("No bots config found at %s, starting with no bots", config_path)
        return BotsConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    try:
        config = BotsConfig(**raw)
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"Invalid bots config {config_path}: {e}") from e

    logger.info(
        "Loaded bots config: %d bots (%d enabled)",
        len(config.bots),
        len(config.get_enabled_bots()),
    )
    return config

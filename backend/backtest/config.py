"""Backtest-specific configuration.

Independent of app/config.py: only the simulated account and execution
costs. Prices are in quote currency and lot sizes in units, so commission is
a fraction of notional and slippage a price offset.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class BacktestSettings(BaseSettings):
    """Backtest configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BACKTEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    initial_balance: Decimal = Decimal("10000")
    leverage: Decimal = Decimal("50")
    commission: Decimal = Decimal("0.0001")  # Fraction of notional, per side
    slippage: Decimal = Decimal("0.0001")  # Price offset against the trader, per side

    # Close positions still open after the last bar at its close
    close_at_end: bool = True

    # Parallel runs in BacktestRunner.run_many (None = CPU count)
    max_workers: int | None = None


_settings: BacktestSettings | None = None


def get_backtest_settings() -> BacktestSettings:
    """Get cached backtest settings instance."""
    global _settings
    if _settings is None:
        _settings = BacktestSettings()
    return _settings

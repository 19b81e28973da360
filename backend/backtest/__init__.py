"""Backtesting system for the trading strategies.

Independent of the live engine: replays bars through a strategy and the risk
manager on a simulated ledger (slippage, commission, margin), synchronously
and deterministically.

Usage:
    python -m backtest --bars eurusd.csv --symbol EURUSD --strategy scalping
"""

from backtest.engine import BacktestEngine, run_backtest
from backtest.ledger import SimulatedLedger, Trade
from backtest.runner import BacktestJob, BacktestRunner
from backtest.stats import BacktestResult, StatisticsCalculator

__all__ = [
    "BacktestEngine",
    "run_backtest",
    "SimulatedLedger",
    "Trade",
    "BacktestJob",
    "BacktestRunner",
    "BacktestResult",
    "StatisticsCalculator",
]

"""Statistics calculator for backtest results.

Computes overall account metrics from the simulated ledger, plus
per-direction / per-exit-reason breakdowns and a daily P&L curve.

Conventions:
  - A trade wins when its net P&L (after commissions) is positive; a
    break-even trade counts as a loss.
  - Win rate and drawdown percentages are in percent.
  - Sharpe ratio is mean / population stddev of per-bar equity returns
    (not annualized).
  - Profit factor, recovery factor and Calmar ratio are 0 when their
    denominator is 0.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

import numpy as np

from backtest.ledger import EquityPoint, SimulatedLedger, Trade
from core.models import Direction

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class DirectionStats:
    direction: str  # "BUY" or "SELL"
    total: int = 0
    wins: int = 0
    losses: int = 0
    net_pnl: Decimal = ZERO

    @property
    def win_rate(self) -> float:
        return (self.wins / self.total * 100) if self.total > 0 else 0.0


@dataclass
class ExitStats:
    reason: str
    total: int = 0
    net_pnl: Decimal = ZERO


@dataclass
class DailyPnL:
    date: str  # YYYY-MM-DD
    trades: int = 0
    wins: int = 0
    losses: int = 0
    pnl: Decimal = ZERO
    cumulative: Decimal = ZERO


@dataclass
class BacktestResult:
    """Complete result of one backtest run."""

    # Metadata
    strategy: str
    strategy_id: str
    symbol: str
    timeframe: str
    start_date: datetime | None
    end_date: datetime | None
    bars: int = 0

    # Account
    initial_balance: Decimal = ZERO
    final_balance: Decimal = ZERO
    final_equity: Decimal = ZERO
    total_return: Decimal = ZERO
    total_return_pct: float = 0.0

    # Trades
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit: Decimal = ZERO
    total_loss: Decimal = ZERO  # Positive
    net_profit: Decimal = ZERO
    total_commission: Decimal = ZERO
    average_win: Decimal = ZERO
    average_loss: Decimal = ZERO  # Positive
    largest_win: Decimal = ZERO
    largest_loss: Decimal = ZERO  # Positive
    profit_factor: float = 0.0

    # Risk
    max_drawdown: Decimal = ZERO
    max_drawdown_pct: float = 0.0
    sharpe_ratio: float = 0.0
    recovery_factor: float = 0.0
    calmar_ratio: float = 0.0

    # Execution
    signals: int = 0
    rejected_signals: int = 0
    rejected_for_margin: int = 0

    # Data
    trades: list[Trade] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)

    # Breakdowns
    by_direction: list[DirectionStats] = field(default_factory=list)
    by_exit_reason: list[ExitStats] = field(default_factory=list)
    daily_pnl: list[DailyPnL] = field(default_factory=list)

    @property
    def profitable(self) -> bool:
        return self.total_return > 0


class StatisticsCalculator:
    """Calculate backtest statistics from a finished ledger."""

    def calculate(
        self,
        ledger: SimulatedLedger,
        strategy: str,
        strategy_id: str,
        symbol: str,
        timeframe: str,
        bars: int,
        signals: int = 0,
        rejected_signals: int = 0,
    ) -> BacktestResult:
        curve = ledger.equity_curve
        result = BacktestResult(
            strategy=strategy,
            strategy_id=strategy_id,
            symbol=symbol,
            timeframe=timeframe,
            start_date=curve[0].time if curve else None,
            end_date=curve[-1].time if curve else None,
            bars=bars,
            signals=signals,
            rejected_signals=rejected_signals,
            rejected_for_margin=ledger.rejected_for_margin,
            trades=list(ledger.trades),
            equity_curve=list(curve),
        )
        self._calc_account(result, ledger)
        self._calc_trades(result)
        self._calc_risk(result, ledger)
        self._calc_by_direction(result)
        self._calc_by_exit_reason(result)
        self._calc_daily_pnl(result)
        return result

    def _calc_account(self, result: BacktestResult, ledger: SimulatedLedger) -> None:
        result.initial_balance = ledger.initial_balance
        result.final_balance = ledger.balance
        result.final_equity = ledger.equity
        result.total_return = ledger.balance - ledger.initial_balance
        if ledger.initial_balance > 0:
            result.total_return_pct = float(result.total_return / ledger.initial_balance * 100)

    def _calc_trades(self, result: BacktestResult) -> None:
        trades = result.trades
        wins = [t.pnl for t in trades if t.is_win]
        losses = [-t.pnl for t in trades if not t.is_win]

        result.total_trades = len(trades)
        result.winning_trades = len(wins)
        result.losing_trades = len(losses)
        result.total_profit = sum(wins, ZERO)
        result.total_loss = sum(losses, ZERO)
        result.net_profit = result.total_profit - result.total_loss
        result.total_commission = sum((t.commission for t in trades), ZERO)

        if trades:
            result.win_rate = len(wins) / len(trades) * 100
        if wins:
            result.average_win = result.total_profit / len(wins)
            result.largest_win = max(wins)
        if losses:
            result.average_loss = result.total_loss / len(losses)
            result.largest_loss = max(losses)
        if result.total_loss > 0:
            result.profit_factor = float(result.total_profit / result.total_loss)

    def _calc_risk(self, result: BacktestResult, ledger: SimulatedLedger) -> None:
        result.max_drawdown = ledger.max_drawdown
        result.max_drawdown_pct = ledger.max_drawdown_pct

        equity = np.array([float(p.equity) for p in result.equity_curve])
        if len(equity) > 1:
            prev = equity[:-1]
            returns = np.divide(np.diff(equity), prev, out=np.zeros(len(prev)), where=prev != 0)
            std = returns.std()
            if std > 0:
                result.sharpe_ratio = float(returns.mean() / std)

        if result.max_drawdown > 0:
            result.recovery_factor = float(result.total_return / result.max_drawdown)
        if result.max_drawdown_pct > 0:
            result.calmar_ratio = result.total_return_pct / result.max_drawdown_pct

    def _calc_by_direction(self, result: BacktestResult) -> None:
        groups: dict[str, DirectionStats] = {}
        for trade in result.trades:
            label = "BUY" if trade.direction == Direction.BUY else "SELL"
            if label not in groups:
                groups[label] = DirectionStats(direction=label)
            stats = groups[label]
            stats.total += 1
            stats.net_pnl += trade.pnl
            if trade.is_win:
                stats.wins += 1
            else:
                stats.losses += 1
        result.by_direction = sorted(groups.values(), key=lambda s: s.direction)

    def _calc_by_exit_reason(self, result: BacktestResult) -> None:
        groups: dict[str, ExitStats] = {}
        for trade in result.trades:
            stats = groups.setdefault(trade.close_reason, ExitStats(reason=trade.close_reason))
            stats.total += 1
            stats.net_pnl += trade.pnl
        result.by_exit_reason = sorted(groups.values(), key=lambda s: s.total, reverse=True)

    def _calc_daily_pnl(self, result: BacktestResult) -> None:
        daily: dict[str, DailyPnL] = defaultdict(lambda: DailyPnL(date=""))
        for trade in result.trades:
            date_str = trade.close_time.strftime("%Y-%m-%d")
            entry = daily[date_str]
            entry.date = date_str
            entry.trades += 1
            entry.pnl += trade.pnl
            if trade.is_win:
                entry.wins += 1
            else:
                entry.losses += 1

        # Sort by date and compute cumulative
        sorted_daily = sorted(daily.values(), key=lambda d: d.date)
        cumulative = ZERO
        for entry in sorted_daily:
            cumulative += entry.pnl
            entry.cumulative = cumulative
        result.daily_pnl = sorted_daily

"""Trade performance metrics, updated incrementally after every closed trade."""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

import numpy as np
from pydantic import BaseModel

PERCENTILES = (10, 25, 50, 75, 90)


class PerformanceMetrics(BaseModel):
    """Snapshot of a strategy's closed-trade performance."""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_profit: Decimal = Decimal("0")  # Sum of winning trades
    total_loss: Decimal = Decimal("0")  # Sum of losing trades (positive)
    net_profit: Decimal = Decimal("0")
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: Decimal = Decimal("0")
    average_loss: Decimal = Decimal("0")
    largest_win: Decimal = Decimal("0")
    largest_loss: Decimal = Decimal("0")  # Magnitude (positive)
    max_drawdown: Decimal = Decimal("0")  # Of the cumulative profit curve
    sharpe_ratio: float = 0.0
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0


class PerformanceTracker:
    """Accumulates closed-trade results into ``PerformanceMetrics``."""

    def __init__(self):
        self.metrics = PerformanceMetrics()
        self._profits: list[Decimal] = []
        self._close_times: list[datetime | None] = []
        self._peak = Decimal("0")

    def record(self, profit: Decimal, closed_at: datetime | None = None) -> PerformanceMetrics:
        """Add one closed trade. A zero-profit trade counts as a loss."""
        m = self.metrics
        self._profits.append(profit)
        self._close_times.append(closed_at)

        m.total_trades += 1
        m.net_profit += profit
        if profit > 0:
            m.winning_trades += 1
            m.total_profit += profit
            m.consecutive_wins += 1
            m.consecutive_losses = 0
            m.max_consecutive_wins = max(m.max_consecutive_wins, m.consecutive_wins)
            m.largest_win = max(m.largest_win, profit)
        else:
            m.losing_trades += 1
            m.total_loss += -profit
            m.consecutive_losses += 1
            m.consecutive_wins = 0
            m.max_consecutive_losses = max(m.max_consecutive_losses, m.consecutive_losses)
            m.largest_loss = max(m.largest_loss, -profit)

        if m.net_profit > self._peak:
            self._peak = m.net_profit
        m.max_drawdown = max(m.max_drawdown, self._peak - m.net_profit)

        m.win_rate = m.winning_trades / m.total_trades
        m.average_win = m.total_profit / m.winning_trades if m.winning_trades else Decimal("0")
        m.average_loss = m.total_loss / m.losing_trades if m.losing_trades else Decimal("0")
        m.profit_factor = float(m.total_profit / m.total_loss) if m.total_loss > 0 else 0.0

        if len(self._profits) > 1:
            arr = np.array([float(p) for p in self._profits])
            std = arr.std(ddof=1)
            m.sharpe_ratio = float(arr.mean() / std) if std > 0 else 0.0
        return m

    def detailed(self) -> dict:
        """Distribution, monthly and tail-risk figures over all trades."""
        base = self.metrics.model_dump()
        if not self._profits:
            return {**base, "profit_distribution": {}, "monthly": {}, "risk": {}}

        arr = np.sort(np.array([float(p) for p in self._profits]))
        distribution = {
            f"p{p}": float(np.percentile(arr, p)) for p in PERCENTILES
        }

        monthly: dict[str, dict] = defaultdict(lambda: {"profit": 0.0, "trades": 0, "wins": 0})
        for profit, closed_at in zip(self._profits, self._close_times):
            if closed_at is None:
                continue
            bucket = monthly[closed_at.strftime("%Y-%m")]
            bucket["profit"] += float(profit)
            bucket["trades"] += 1
            if profit > 0:
                bucket["wins"] += 1

        var95 = arr[int(math.floor(0.05 * len(arr)))]
        var99 = arr[int(math.floor(0.01 * len(arr)))]
        tail = arr[arr <= var95]
        max_dd = float(self.metrics.max_drawdown)
        risk = {
            "value_at_risk_95": abs(float(var95)),
            "value_at_risk_99": abs(float(var99)),
            "expected_shortfall": abs(float(tail.mean())) if len(tail) else 0.0,
            "calmar_ratio": float(self.metrics.net_profit) / max_dd if max_dd > 0 else 0.0,
        }
        return {**base, "profit_distribution": distribution, "monthly": dict(monthly), "risk": risk}

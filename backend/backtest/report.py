"""Report formatting for backtest results.

Outputs results to console (formatted tables) and JSON files.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum

from backtest.stats import BacktestResult


class DecimalEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.name
        return super().default(obj)


class ReportFormatter:
    """Format backtest results for display and export."""

    @staticmethod
    def print_console(result: BacktestResult) -> None:
        """Print formatted report to console."""
        print("\n" + "=" * 70)
        print(f"  BACKTEST RESULTS: {result.strategy_id} ({result.strategy})")
        print("=" * 70)
        if result.start_date and result.end_date:
            print(f"  Period: {result.start_date:%Y-%m-%d %H:%M} → {result.end_date:%Y-%m-%d %H:%M}")
        print(f"  Series: {result.symbol} {result.timeframe} ({result.bars:,} bars)")

        print("\n" + "-" * 70)
        print("  ACCOUNT")
        print("-" * 70)
        print(f"  Initial balance:  {result.initial_balance:,.2f}")
        print(f"  Final balance:    {result.final_balance:,.2f}")
        print(f"  Total return:     {result.total_return:+,.2f} ({result.total_return_pct:+.2f}%)")
        print(f"  Commission paid:  {result.total_commission:,.2f}")

        print("\n" + "-" * 70)
        print("  TRADES")
        print("-" * 70)
        print(f"  Signals:          {result.signals} ({result.rejected_signals} rejected)")
        print(f"  Total trades:     {result.total_trades}")
        print(f"  Wins / losses:    {result.winning_trades} / {result.losing_trades}")
        print(f"  Win rate:         {result.win_rate:.1f}%")
        print(f"  Average win:      {result.average_win:,.2f}")
        print(f"  Average loss:     {result.average_loss:,.2f}")
        print(f"  Largest win:      {result.largest_win:,.2f}")
        print(f"  Largest loss:     {result.largest_loss:,.2f}")
        print(f"  Profit factor:    {result.profit_factor:.2f}")

        print("\n" + "-" * 70)
        print("  RISK")
        print("-" * 70)
        print(f"  Max drawdown:     {result.max_drawdown:,.2f} ({result.max_drawdown_pct:.2f}%)")
        print(f"  Sharpe (per bar): {result.sharpe_ratio:.4f}")
        print(f"  Recovery factor:  {result.recovery_factor:.2f}")
        print(f"  Calmar ratio:     {result.calmar_ratio:.2f}")

        if result.by_direction:
            print("\n" + "-" * 70)
            print("  BY DIRECTION")
            print("-" * 70)
            print(f"  {'Direction':<12} {'Total':>6} {'Wins':>6} {'Losses':>6} {'Win%':>8} {'Net P&L':>12}")
            for s in result.by_direction:
                print(f"  {s.direction:<12} {s.total:>6} {s.wins:>6} {s.losses:>6} {s.win_rate:>7.1f}% {s.net_pnl:>12,.2f}")

        if result.by_exit_reason:
            print("\n" + "-" * 70)
            print("  BY EXIT")
            print("-" * 70)
            for s in result.by_exit_reason:
                print(f"  {s.reason:<26} {s.total:>6} {s.net_pnl:>12,.2f}")

        # Daily P&L (last 10 days)
        if result.daily_pnl:
            print("\n" + "-" * 70)
            print("  DAILY P&L (last 10 days)")
            print("-" * 70)
            print(f"  {'Date':<12} {'Trades':>6} {'Wins':>6} {'Losses':>6} {'P&L':>12} {'Cumulative':>12}")
            for d in result.daily_pnl[-10:]:
                print(f"  {d.date:<12} {d.trades:>6} {d.wins:>6} {d.losses:>6} {d.pnl:>+12,.2f} {d.cumulative:>+12,.2f}")

        print("\n" + "=" * 70)

    @staticmethod
    def to_dict(result: BacktestResult, include_curve: bool = True) -> dict:
        """Convert results to a JSON-serializable dict (Decimals kept as Decimal)."""
        data = {
            "metadata": {
                "strategy": result.strategy,
                "strategy_id": result.strategy_id,
                "symbol": result.symbol,
                "timeframe": result.timeframe,
                "start_date": result.start_date.isoformat() if result.start_date else None,
                "end_date": result.end_date.isoformat() if result.end_date else None,
                "bars": result.bars,
            },
            "account": {
                "initial_balance": result.initial_balance,
                "final_balance": result.final_balance,
                "final_equity": result.final_equity,
                "total_return": result.total_return,
                "total_return_pct": round(result.total_return_pct, 4),
            },
            "trades_summary": {
                "signals": result.signals,
                "rejected_signals": result.rejected_signals,
                "rejected_for_margin": result.rejected_for_margin,
                "total_trades": result.total_trades,
                "winning_trades": result.winning_trades,
                "losing_trades": result.losing_trades,
                "win_rate": round(result.win_rate, 2),
                "total_profit": result.total_profit,
                "total_loss": result.total_loss,
                "net_profit": result.net_profit,
                "total_commission": result.total_commission,
                "average_win": result.average_win,
                "average_loss": result.average_loss,
                "largest_win": result.largest_win,
                "largest_loss": result.largest_loss,
                "profit_factor": round(result.profit_factor, 4),
            },
            "risk": {
                "max_drawdown": result.max_drawdown,
                "max_drawdown_pct": round(result.max_drawdown_pct, 4),
                "sharpe_ratio": round(result.sharpe_ratio, 6),
                "recovery_factor": round(result.recovery_factor, 4),
                "calmar_ratio": round(result.calmar_ratio, 4),
            },
            "by_direction": [
                {
                    "direction": s.direction,
                    "total": s.total,
                    "wins": s.wins,
                    "losses": s.losses,
                    "win_rate": round(s.win_rate, 2),
                    "net_pnl": s.net_pnl,
                }
                for s in result.by_direction
            ],
            "by_exit_reason": [
                {"reason": s.reason, "total": s.total, "net_pnl": s.net_pnl}
                for s in result.by_exit_reason
            ],
            "daily_pnl": [
                {
                    "date": d.date,
                    "trades": d.trades,
                    "wins": d.wins,
                    "losses": d.losses,
                    "pnl": d.pnl,
                    "cumulative": d.cumulative,
                }
                for d in result.daily_pnl
            ],
            "trades": [
                {
                    "position_id": t.position_id,
                    "symbol": t.symbol,
                    "direction": t.direction.name,
                    "lot_size": t.lot_size,
                    "entry_price": t.entry_price,
                    "exit_price": t.exit_price,
                    "open_time": t.open_time.isoformat(),
                    "close_time": t.close_time.isoformat(),
                    "gross_pnl": t.gross_pnl,
                    "commission": t.commission,
                    "pnl": t.pnl,
                    "close_reason": t.close_reason,
                }
                for t in result.trades
            ],
        }
        if include_curve:
            data["equity_curve"] = [
                {
                    "time": p.time.isoformat(),
                    "balance": p.balance,
                    "equity": p.equity,
                    "drawdown": p.drawdown,
                    "drawdown_pct": round(p.drawdown_pct, 4),
                }
                for p in result.equity_curve
            ]
        return data

    @staticmethod
    def save_json(result: BacktestResult, filepath: str, include_curve: bool = True) -> None:
        """Save results to JSON file."""
        data = ReportFormatter.to_dict(result, include_curve=include_curve)
        with open(filepath, "w") as f:
            json.dump(data, f, indent=2, cls=DecimalEncoder)
        print(f"\nResults saved to {filepath}")

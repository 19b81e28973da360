"""Single-run backtest engine.

Replays an ordered bar sequence through one strategy and a risk manager,
executing accepted signals on a ``SimulatedLedger``. Synchronous and free of
wall-clock or random inputs: the same bars and configuration always give
the same result.
"""

from __future__ import annotations

import logging
from typing import Iterable

from core.models import Bar, BarBuffer, CloseReason, RiskConfig, RiskState, Signal
from core.risk import RiskManager
from core.strategy import BaseStrategy, Fill

from backtest.config import BacktestSettings, get_backtest_settings
from backtest.ledger import SimulatedLedger
from backtest.stats import BacktestResult, StatisticsCalculator

logger = logging.getLogger(__name__)


class BacktestEngine:
    """Run one strategy over a bar sequence.

    Processing order for each bar:
    1. Strategy processes exits of open positions (stop-loss / take-profit
       from this bar's high/low, closing at the triggered level) and may
       produce an entry signal
    2. Closed positions are settled on the ledger
    3. The signal goes through the risk manager and the margin check, then
       fills at the signal price shifted by slippage
    4. Equity is revalued at the bar close; drawdown and emergency-stop
       conditions are updated

    A position is never checked against the bar it opened on.
    """

    def __init__(
        self,
        strategy: BaseStrategy,
        risk_config: RiskConfig | None = None,
        risk_manager: RiskManager | None = None,
        settings: BacktestSettings | None = None,
    ):
        self.strategy = strategy
        self.settings = settings or get_backtest_settings()
        self.risk_config = risk_config or RiskConfig(account_balance=self.settings.initial_balance)
        self.risk_manager = risk_manager or RiskManager(self.risk_config)

        self.ledger = SimulatedLedger(
            initial_balance=self.settings.initial_balance,
            leverage=self.settings.leverage,
            commission=self.settings.commission,
            slippage=self.settings.slippage,
        )
        self.risk_state = RiskState(peak_equity=self.settings.initial_balance)
        self._buffer: BarBuffer | None = None
        self._fills = 0
        self.bars_processed = 0
        self.bars_skipped = 0
        self.signals = 0
        self.rejected = 0

    def run(self, bars: Iterable[Bar]) -> BacktestResult:
        """Replay ``bars`` (in the given order) and compute statistics."""
        strategy = self.strategy
        strategy.start()

        last: Bar | None = None
        for bar in bars:
            if self._buffer is None:
                self._buffer = BarBuffer(symbol=bar.symbol, timeframe=bar.timeframe)
            if not self._buffer.add(bar):
                self.bars_skipped += 1
                logger.debug(f"Skipping out-of-order bar {bar.key} {bar.timestamp}")
                continue

            self.process_bar(bar)
            last = bar
            if self.bars_processed % 100_000 == 0:
                logger.info(f"[{strategy.strategy_id}] Processed {self.bars_processed:,} bars")

        if last is not None and self.settings.close_at_end:
            self._close_remaining(last)
        strategy.stop()

        result = StatisticsCalculator().calculate(
            self.ledger,
            strategy=strategy.name,
            strategy_id=strategy.strategy_id,
            symbol=strategy.symbol or (last.symbol if last else ""),
            timeframe=strategy.timeframe or (last.timeframe if last else ""),
            bars=self.bars_processed,
            signals=self.signals,
            rejected_signals=self.rejected,
        )
        logger.info(
            f"[{strategy.strategy_id}] Backtest done: {self.bars_processed:,} bars, "
            f"{result.total_trades} trades, return {result.total_return_pct:+.2f}%, "
            f"max DD {result.max_drawdown_pct:.2f}%"
        )
        return result

    def process_bar(self, bar: Bar) -> None:
        """Process one bar that has already been added to the buffer."""
        self.bars_processed += 1
        signal = self.strategy.analyze(bar, self._buffer)
        self._settle_exits()

        if signal is not None:
            self.signals += 1
            self._execute(signal, bar)

        self.ledger.mark(bar.timestamp, bar.close, self.strategy.open_positions)
        self.risk_manager.update_drawdown(self.risk_state, self.ledger.equity)
        if not self.risk_state.halted:
            self.risk_manager.emergency_stop(
                self.risk_state,
                self.strategy.open_positions,
                self.risk_config,
                self.ledger.balance,
            )

    def _execute(self, signal: Signal, bar: Bar) -> None:
        strategy = self.strategy
        balance = self.ledger.balance

        assessment = self.risk_manager.evaluate(
            signal, strategy.open_positions, self.risk_state, self.risk_config, balance
        )
        validated = None
        if assessment.passed:
            validated = self.risk_manager.approve(
                signal, assessment, self.risk_config, balance, strategy.get_metrics()
            )
        if validated is None:
            self.rejected += 1
            reasons = assessment.reasons or ["position size is not positive"]
            logger.debug(f"Signal {signal.id[:8]} rejected: {'; '.join(reasons)}")
            strategy.on_reject(signal, reasons)
            return

        price = self.ledger.entry_fill(signal.direction, signal.entry_price)
        if not self.ledger.can_open(validated.lot_size, price):
            self.rejected += 1
            strategy.on_reject(signal, ["insufficient margin"])
            return

        self._fills += 1
        position = strategy.on_fill(
            signal,
            Fill(
                price=price,
                lot_size=validated.lot_size,
                time=bar.timestamp,
                order_id=f"bt-{self._fills}",
            ),
        )
        self.ledger.open(position)
        self.risk_manager.record_trade_risk(self.risk_state, validated, balance, bar.timestamp)

    def _settle_exits(self, extra=None) -> None:
        for position in list(extra or []) + self.strategy.drain_exits():
            trade = self.ledger.close(position)
            self.risk_manager.record_outcome(self.risk_state, trade.pnl, trade.close_time)

    def _close_remaining(self, last: Bar) -> None:
        closed = self.strategy.close_all(last.close, last.timestamp, CloseReason.END_OF_DATA)
        if not closed and not self.ledger.open_count:
            return
        self._settle_exits(closed)
        self.ledger.mark(last.timestamp, last.close, self.strategy.open_positions, replace=True)
        logger.info(
            f"[{self.strategy.strategy_id}] Closed {len(closed)} open positions at end of data @ {last.close}"
        )


def run_backtest(
    strategy: BaseStrategy,
    bars: Iterable[Bar],
    risk_config: RiskConfig | None = None,
    settings: BacktestSettings | None = None,
) -> BacktestResult:
    """Convenience wrapper: one engine, one run."""
    return BacktestEngine(strategy, risk_config=risk_config, settings=settings).run(bars)

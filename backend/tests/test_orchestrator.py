"""Tests for the bot orchestrator and the bar replay feed."""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from pydantic import BaseModel

from app.config import Settings
from app.services.broker import PaperBroker
from app.services.notifications import EventType
from app.services.orchestrator import BotStatus, Orchestrator
from app.services.replay import BarReplayFeed
from core.errors import BotNotFoundError, BotStateError, ConfigError, ExecutionError, PositionStateError
from core.models import Bar, BotConfig, CloseReason, Direction, PositionId, RiskConfig, Signal
from core.strategy import BaseStrategy, StrategyKind

T0 = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)
PIP = Decimal("0.0001")


class ScriptedConfig(BaseModel):
    take_profit_pips: Decimal = Decimal("20")
    max_signals: int = 1
    fail: bool = False


class ScriptedStrategy(BaseStrategy):
    """Goes long at the close whenever flat, up to ``max_signals`` times."""

    name = "scripted"
    kind = StrategyKind.SCALPING
    config_model = ScriptedConfig

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.rejections: list[list[str]] = []

    def _evaluate_entry(self, bar, buffer):
        if self.config.fail:
            raise RuntimeError("boom")
        if self._positions or self.signals_emitted >= self.config.max_signals:
            return None
        return Signal(
            strategy_id=self.strategy_id,
            symbol=bar.symbol,
            timeframe=bar.timeframe,
            direction=Direction.BUY,
            entry_price=bar.close,
            stop_loss=bar.close - 10 * PIP,
            take_profit=bar.close + self.config.take_profit_pips * PIP,
            lot_size=Decimal("1000"),
            timestamp=bar.timestamp,
        )

    def on_reject(self, signal, reasons):
        self.rejections.append(reasons)


def scripted_factory(config: BotConfig) -> ScriptedStrategy:
    return ScriptedStrategy(
        config=ScriptedConfig(**config.strategy_params),
        strategy_id=config.bot_id,
        symbol=config.symbol,
        timeframe=config.timeframe,
    )


def make_bot(bot_id: str = "b1", symbol: str = "EURUSD", risk: dict | None = None, **params) -> BotConfig:
    return BotConfig(
        bot_id=bot_id,
        strategy_type="scripted",
        symbol=symbol,
        timeframe="1m",
        strategy_params=params,
        risk_params=RiskConfig(**(risk or {})),
    )


def make_bar(i: int, close: str, high: str | None = None, low: str | None = None, symbol: str = "EURUSD") -> Bar:
    c = Decimal(close)
    return Bar(
        symbol=symbol,
        timeframe="1m",
        timestamp=T0 + timedelta(minutes=i),
        open=c,
        high=Decimal(high) if high else c,
        low=Decimal(low) if low else c,
        close=c,
    )


def make_orchestrator(broker=None, settings: Settings | None = None, **kwargs) -> Orchestrator:
    return Orchestrator(
        broker=broker or PaperBroker(),
        strategy_factory=scripted_factory,
        settings=settings or Settings(),
        **kwargs,
    )


async def feed(orch: Orchestrator, *bars: Bar) -> None:
    for bar in bars:
        await orch.publish(bar)
        await orch.wait_idle()


class TestRegistry:
    """Tests for adding bots and their lifecycle."""

    @pytest.mark.asyncio
    async def test_add_and_start(self):
        orch = make_orchestrator()
        bot_id = await orch.add_bot(make_bot())

        assert bot_id == "b1"
        assert (await orch.status("b1"))["status"] == BotStatus.INITIALIZED.value

        await orch.start("b1")
        assert (await orch.status("b1"))["status"] == BotStatus.RUNNING.value
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_bot_rejected(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot())
        with pytest.raises(BotStateError):
            await orch.add_bot(make_bot())

    @pytest.mark.asyncio
    async def test_unknown_strategy(self):
        orch = Orchestrator(broker=PaperBroker(), settings=Settings())
        with pytest.raises(ConfigError):
            await orch.add_bot(BotConfig(bot_id="x", strategy_type="nope", symbol="EURUSD"))
        assert await orch.list_bots() == []

    @pytest.mark.asyncio
    async def test_unknown_bot(self):
        orch = make_orchestrator()
        with pytest.raises(BotNotFoundError):
            await orch.start("missing")
        with pytest.raises(BotNotFoundError):
            await orch.cleanup("missing")

    @pytest.mark.asyncio
    async def test_stop_requires_start(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot())
        with pytest.raises(BotStateError):
            await orch.stop("b1")

    @pytest.mark.asyncio
    async def test_stop_and_resume(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot())
        await orch.start("b1")

        await orch.stop("b1")
        assert (await orch.status("b1"))["status"] == "stopped"
        assert await orch.publish(make_bar(0, "1.1000")) == 0

        await orch.start("b1")
        assert await orch.publish(make_bar(1, "1.1000")) == 1
        await orch.wait_idle()
        assert (await orch.status("b1"))["bars_processed"] == 1
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_cleanup_removes_bot(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot())
        await orch.start("b1")
        await feed(orch, make_bar(0, "1.1000"))
        worker = orch._bots["b1"].worker

        await orch.cleanup("b1")

        assert worker.done()
        assert await orch.list_bots() == []
        with pytest.raises(BotNotFoundError):
            await orch.status("b1")


class TestBarRouting:
    """Tests for bar dispatch to bots."""

    @pytest.mark.asyncio
    async def test_routes_by_symbol(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot("eur", "EURUSD"))
        await orch.add_bot(make_bot("gbp", "GBPUSD"))
        await orch.start("eur")
        await orch.start("gbp")

        assert await orch.publish(make_bar(0, "1.1000")) == 1
        await orch.wait_idle()

        assert (await orch.status("eur"))["bars_processed"] == 1
        assert (await orch.status("gbp"))["bars_processed"] == 0
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_not_started_bot_gets_nothing(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot())
        assert await orch.publish(make_bar(0, "1.1000")) == 0

    @pytest.mark.asyncio
    async def test_bars_processed_in_order(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot(max_signals=0))
        await orch.start("b1")

        for i in range(5):
            await orch.publish(make_bar(i, "1.1000"))
        await orch.wait_idle()

        bot = orch._bots["b1"]
        assert bot.bars_processed == 5
        assert [b.timestamp for b in bot.buffer.bars] == [T0 + timedelta(minutes=i) for i in range(5)]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_stale_bars_not_dispatched(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot(max_signals=0))
        await orch.start("b1")
        bot = orch._bots["b1"]
        bot.strategy.analyze = MagicMock(wraps=bot.strategy.analyze)

        # Repeat of the last bar, then one older than it
        await feed(orch, make_bar(0, "1.1000"), make_bar(1, "1.1000"), make_bar(1, "1.1010"), make_bar(0, "1.1020"))

        assert bot.strategy.analyze.call_count == 2
        assert bot.bars_processed == 2
        assert len(bot.buffer) == 2
        # The repeated timestamp still refreshes the stored bar
        assert bot.buffer.last.close == Decimal("1.1010")
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_full_queue_drops_bar(self):
        orch = make_orchestrator(settings=Settings(queue_size=1))
        await orch.add_bot(make_bot(max_signals=0))
        await orch.start("b1")

        queued = [await orch.publish(make_bar(i, "1.1000")) for i in range(3)]
        await orch.wait_idle()

        assert queued == [1, 0, 0]
        status = await orch.status("b1")
        assert status["bars_dropped"] == 2
        assert status["bars_processed"] == 1
        await orch.shutdown()


class TestSignalPipeline:
    """Tests for signal validation, execution and exits."""

    @pytest.mark.asyncio
    async def test_open_and_take_profit(self):
        broker = PaperBroker()
        notifier = MagicMock()
        notifier.notify = AsyncMock()
        recorder = MagicMock()
        recorder.record = AsyncMock()
        orch = make_orchestrator(broker, notifier=notifier, recorder=recorder)
        await orch.add_bot(make_bot())
        await orch.start("b1")

        await feed(orch, make_bar(0, "1.1000"))
        status = await orch.status("b1")
        assert status["open_positions"] == 1
        assert status["positions"][0]["order_id"] == "paper-1"
        assert status["last_action"]["ok"] is True

        await feed(orch, make_bar(1, "1.1025", high="1.1030", low="1.1000"))

        position = orch._bots["b1"].strategy.closed_positions[0]
        assert position.close_reason == CloseReason.TAKE_PROFIT
        assert position.close_price == Decimal("1.1020")
        assert broker.open_position_ids == []
        assert broker.realized_pnl == position.profit

        status = await orch.status("b1")
        assert status["open_positions"] == 0
        assert status["balance"] == Decimal("10000") + position.profit
        assert status["performance"]["winning_trades"] == 1

        events = [c.args[0].type for c in notifier.notify.await_args_list]
        assert events == [
            EventType.SIGNAL_GENERATED,
            EventType.POSITION_OPENED,
            EventType.POSITION_CLOSED,
        ]
        records = [c.args[0] for c in recorder.record.await_args_list]
        assert records == ["position_opened", "position_closed", "performance"]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_position_is_risk_sized(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot(risk={"max_position_balance_pct": Decimal("1")}))
        await orch.start("b1")
        await feed(orch, make_bar(0, "1.1000"))

        position = orch._bots["b1"].strategy.open_positions[0]
        # Leverage cap: 10000 * 10 / 1.1
        assert position.lot_size == Decimal("100000") / Decimal("1.1000")
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_risk_rejection(self):
        notifier = MagicMock()
        notifier.notify = AsyncMock()
        orch = make_orchestrator(notifier=notifier)
        await orch.add_bot(make_bot(take_profit_pips=Decimal("5")))
        await orch.start("b1")

        await feed(orch, make_bar(0, "1.1000"))

        strategy = orch._bots["b1"].strategy
        assert strategy.open_positions == []
        assert len(strategy.rejections) == 1
        assert "Risk/reward" in strategy.rejections[0][0]
        events = [c.args[0].type for c in notifier.notify.await_args_list]
        assert events == [EventType.SIGNAL_GENERATED, EventType.RISK_REJECTED]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_execution_error(self):
        broker = MagicMock()
        broker.place_order = AsyncMock(side_effect=ExecutionError("market closed"))
        orch = make_orchestrator(broker)
        await orch.add_bot(make_bot())
        await orch.start("b1")

        await feed(orch, make_bar(0, "1.1000"))

        status = await orch.status("b1")
        assert status["status"] == "running"
        assert status["open_positions"] == 0
        assert status["last_action"]["ok"] is False
        assert status["last_action"]["detail"] == "market closed"
        assert orch._bots["b1"].strategy.rejections == [["execution failed: market closed"]]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_execution_timeout(self):
        async def slow_order(request):
            await asyncio.sleep(5)

        broker = MagicMock()
        broker.place_order = slow_order
        orch = make_orchestrator(broker, settings=Settings(execution_timeout=0.01))
        await orch.add_bot(make_bot())
        await orch.start("b1")

        await feed(orch, make_bar(0, "1.1000"))

        status = await orch.status("b1")
        assert status["open_positions"] == 0
        assert status["last_action"]["detail"] == "TimeoutError"
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_break_pipeline(self):
        notifier = MagicMock()
        notifier.notify = AsyncMock(side_effect=RuntimeError("smtp down"))
        orch = make_orchestrator(notifier=notifier)
        await orch.add_bot(make_bot())
        await orch.start("b1")

        await feed(orch, make_bar(0, "1.1000"))

        assert (await orch.status("b1"))["open_positions"] == 1
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_manual_close(self):
        broker = PaperBroker()
        orch = make_orchestrator(broker)
        await orch.add_bot(make_bot())
        await orch.start("b1")
        await feed(orch, make_bar(0, "1.1000"))

        position = await orch.close_position("b1", PositionId(1), Decimal("1.1010"))

        assert position.close_reason == CloseReason.MANUAL
        assert position.close_time == T0
        assert broker.open_position_ids == []
        assert (await orch.status("b1"))["balance"] == Decimal("10000") + position.profit

        with pytest.raises(PositionStateError):
            await orch.close_position("b1", PositionId(1), Decimal("1.1010"))
        await orch.shutdown()


class TestIsolationAndSafety:
    """Tests for failure isolation and the emergency stop."""

    @pytest.mark.asyncio
    async def test_failing_bot_does_not_affect_others(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot("bad", fail=True))
        await orch.add_bot(make_bot("good"))
        await orch.start("bad")
        await orch.start("good")

        await feed(orch, make_bar(0, "1.1000"))

        bad = await orch.status("bad")
        assert bad["status"] == "error"
        assert bad["last_error"] == "RuntimeError: boom"
        assert (await orch.status("good"))["open_positions"] == 1

        # Only the healthy bot still receives bars
        assert await orch.publish(make_bar(1, "1.1000")) == 1
        await orch.wait_idle()

        await orch.start("bad")
        bad = await orch.status("bad")
        assert bad["status"] == "running"
        assert bad["last_error"] is None
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_emergency_stop_blocks_signals(self):
        notifier = MagicMock()
        notifier.notify = AsyncMock()
        orch = make_orchestrator(notifier=notifier)
        await orch.add_bot(make_bot(risk={"max_consecutive_losses": 1}, max_signals=3))
        await orch.start("b1")

        await feed(orch, make_bar(0, "1.1000"))
        # Stop-out; the halt latches after this bar's re-entry was executed
        await feed(orch, make_bar(1, "1.0985", low="1.0980"))
        events = [c.args[0].type for c in notifier.notify.await_args_list]
        assert events[-1] == EventType.EMERGENCY_STOP

        await feed(orch, make_bar(2, "1.0970", low="1.0965"))

        status = await orch.status("b1")
        assert status["risk"]["halted"] is True
        assert status["risk"]["consecutive_losses"] == 2
        assert status["open_positions"] == 0
        assert status["balance"] < Decimal("10000")
        events = [c.args[0].type for c in notifier.notify.await_args_list]
        assert events.count(EventType.EMERGENCY_STOP) == 1
        assert events[-3:] == [
            EventType.POSITION_CLOSED,
            EventType.SIGNAL_GENERATED,
            EventType.RISK_REJECTED,
        ]

        await orch.clear_emergency_stop("b1")
        status = await orch.status("b1")
        assert status["risk"]["halted"] is False
        assert status["status"] == "running"
        await orch.shutdown()


class TestReplay:
    """Tests for the bar replay feed."""

    @pytest.mark.asyncio
    async def test_replay_sorts_and_counts(self):
        orch = make_orchestrator()
        await orch.add_bot(make_bot(max_signals=0))
        await orch.start("b1")
        bars = [make_bar(2, "1.1"), make_bar(0, "1.1"), make_bar(1, "1.1"), make_bar(0, "1.5", symbol="USDJPY")]

        replayer = BarReplayFeed(orch)
        assert await replayer.replay(bars) == 4

        assert replayer.skipped == 1
        bot = orch._bots["b1"]
        assert bot.bars_processed == 3
        assert bot.buffer.last.timestamp == T0 + timedelta(minutes=2)
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_replay_csv(self, tmp_path):
        path = tmp_path / "bars.csv"
        path.write_text(
            "timestamp,open,high,low,close,volume\n"
            "2024-01-02 09:00:00,1.1000,1.1000,1.1000,1.1000,10\n"
            "2024-01-02 09:01:00,1.1025,1.1030,1.1000,1.1025,12\n"
        )
        orch = make_orchestrator()
        await orch.add_bot(make_bot())
        await orch.start("b1")

        assert await BarReplayFeed(orch).replay_csv(path, "EURUSD", "1m") == 2

        status = await orch.status("b1")
        assert status["performance"]["total_trades"] == 1
        assert status["performance"]["winning_trades"] == 1
        await orch.shutdown()

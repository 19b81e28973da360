"""Engine orchestrator: runs bots concurrently on incoming bars.

Each bot owns a strategy instance, its risk state and a bar buffer, and
consumes bars from its own bounded queue in a dedicated worker task. Bars of
one bot are processed strictly in order (the bot lock is held for the whole
bar); bots never share state, so a slow broker or a crashing strategy in one
bot does not hold up the others.

Per bar:
1. strategy.analyze (exits processed first, entry signal maybe)
2. exits settled with the broker
3. signal checked by the risk manager, executed by the broker, filled back
   into the strategy
4. drawdown updated and emergency-stop conditions checked

Bot states: initialized -> running <-> stopped, running -> error. A bot in
error only runs again after an explicit ``start``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, NewType

from app.config import Settings, get_settings
from app.services.broker import Broker, OrderRequest
from app.services.notifications import EngineEvent, EventType, NotificationSink, RecordSink
from core.errors import BotNotFoundError, BotStateError, ExecutionError, InvariantViolation
from core.models import Bar, BarBuffer, BotConfig, Position, PositionId, RiskState, Signal
from core.risk import RiskManager
from core.strategy import Fill, Strategy, build_strategy

logger = logging.getLogger(__name__)

BotId = NewType("BotId", str)

StrategyFactory = Callable[[BotConfig], Strategy]


class BotStatus(str, Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(slots=True)
class ActionResult:
    """Outcome of the last broker interaction of a bot."""

    action: str
    ok: bool
    at: datetime
    detail: str = ""


@dataclass
class Bot:
    """Runtime state of one bot. Owned by the orchestrator."""

    id: BotId
    config: BotConfig
    strategy: Strategy
    buffer: BarBuffer
    risk_state: RiskState
    queue: asyncio.Queue
    status: BotStatus = BotStatus.INITIALIZED
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    worker: asyncio.Task | None = None
    realized_pnl: Decimal = Decimal("0")
    last_action: ActionResult | None = None
    last_error: str | None = None
    bars_processed: int = 0
    bars_dropped: int = 0

    @property
    def balance(self) -> Decimal:
        return self.config.risk_params.account_balance + self.realized_pnl

    @property
    def equity(self) -> Decimal:
        unrealized = sum((p.unrealized_pnl for p in self.strategy.open_positions), Decimal("0"))
        return self.balance + unrealized


class Orchestrator:
    """Registry of bots and the per-bot bar pipeline."""

    def __init__(
        self,
        broker: Broker,
        risk_manager: RiskManager | None = None,
        strategy_factory: StrategyFactory = build_strategy,
        notifier: NotificationSink | None = None,
        recorder: RecordSink | None = None,
        settings: Settings | None = None,
    ):
        self.broker = broker
        self.risk_manager = risk_manager or RiskManager()
        self.strategy_factory = strategy_factory
        self.notifier = notifier
        self.recorder = recorder
        self.settings = settings or get_settings()

        self._bots: dict[BotId, Bot] = {}
        self._lock = asyncio.Lock()  # Guards _bots

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def add_bot(self, config: BotConfig) -> BotId:
        """Register a bot in the initialized state.

        Raises:
            BotStateError: A bot with the same id exists.
            ConfigError: Unknown strategy type or invalid parameters.
        """
        bot_id = BotId(config.bot_id)
        strategy = self.strategy_factory(config)
        balance = config.risk_params.account_balance
        bot = Bot(
            id=bot_id,
            config=config,
            strategy=strategy,
            buffer=BarBuffer(symbol=config.symbol, timeframe=config.timeframe),
            risk_state=RiskState(peak_equity=balance),
            queue=asyncio.Queue(maxsize=self.settings.queue_size),
        )
        async with self._lock:
            if bot_id in self._bots:
                raise BotStateError(f"Bot '{bot_id}' already exists")
            self._bots[bot_id] = bot

        logger.info(
            f"Bot {bot_id} added: {config.strategy_type} on {config.symbol} {config.timeframe}"
        )
        return bot_id

    async def _get(self, bot_id: str) -> Bot:
        async with self._lock:
            bot = self._bots.get(BotId(bot_id))
        if bot is None:
            raise BotNotFoundError(bot_id)
        return bot

    async def list_bots(self) -> list[BotId]:
        async with self._lock:
            return list(self._bots)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, bot_id: str) -> None:
        """Start (or resume, or recover from error) a bot."""
        bot = await self._get(bot_id)
        if bot.status == BotStatus.RUNNING:
            return

        if bot.status == BotStatus.ERROR:
            logger.info(f"Bot {bot_id} restarting after error: {bot.last_error}")
            bot.last_error = None

        bot.strategy.start()
        bot.status = BotStatus.RUNNING
        if bot.worker is None or bot.worker.done():
            bot.worker = asyncio.create_task(self._worker(bot), name=f"bot-{bot_id}")
        logger.info(f"Bot {bot_id} started")

    async def stop(self, bot_id: str) -> None:
        """Stop dispatching bars to a bot; waits for the in-flight bar."""
        bot = await self._get(bot_id)
        if bot.status == BotStatus.INITIALIZED:
            raise BotStateError(f"Bot '{bot_id}' was never started")
        if bot.status == BotStatus.RUNNING:
            bot.status = BotStatus.STOPPED
            bot.strategy.stop()
        async with bot.lock:
            pass
        logger.info(f"Bot {bot_id} stopped")

    async def cleanup(self, bot_id: str) -> None:
        """Remove a bot: stop its worker, wait for the in-flight bar, drop state."""
        async with self._lock:
            bot = self._bots.pop(BotId(bot_id), None)
        if bot is None:
            raise BotNotFoundError(bot_id)

        if bot.status == BotStatus.RUNNING:
            bot.strategy.stop()
        bot.status = BotStatus.STOPPED

        if bot.worker is not None and not bot.worker.done():
            # Pending bars are discarded; the sentinel ends the worker
            while not bot.queue.empty():
                bot.queue.get_nowait()
                bot.queue.task_done()
            bot.queue.put_nowait(None)
            await bot.worker

        async with bot.lock:
            pass
        logger.info(
            f"Bot {bot_id} cleaned up ({len(bot.strategy.open_positions)} positions left open)"
        )

    async def shutdown(self) -> None:
        """Stop and clean up every bot."""
        for bot_id in await self.list_bots():
            try:
                await self.cleanup(bot_id)
            except Exception as e:
                logger.error(f"Cleanup of bot {bot_id} failed: {e}", exc_info=True)
        logger.info("Orchestrator shut down")

    # ------------------------------------------------------------------
    # Bar ingestion
    # ------------------------------------------------------------------

    async def publish(self, bar: Bar) -> int:
        """Queue a bar for every running bot subscribed to its symbol/timeframe.

        Returns the number of bots the bar was queued for. A bot whose queue
        is full misses the bar.
        """
        async with self._lock:
            targets = [
                bot for bot in self._bots.values()
                if bot.status == BotStatus.RUNNING
                and bot.config.symbol == bar.symbol
                and bot.config.timeframe == bar.timeframe
            ]

        queued = 0
        for bot in targets:
            try:
                bot.queue.put_nowait(bar)
                queued += 1
            except asyncio.QueueFull:
                bot.bars_dropped += 1
                logger.warning(f"Bot {bot.id} queue full, dropping bar {bar.key} {bar.timestamp}")
        return queued

    async def wait_idle(self) -> None:
        """Wait until every bot has processed all queued bars."""
        async with self._lock:
            bots = list(self._bots.values())
        await asyncio.gather(*(bot.queue.join() for bot in bots))

    async def _worker(self, bot: Bot) -> None:
        while True:
            bar = await bot.queue.get()
            try:
                if bar is None:
                    return
                if bot.status != BotStatus.RUNNING:
                    continue
                async with bot.lock:
                    await self._process_bar(bot, bar)
            finally:
                bot.queue.task_done()

    async def _process_bar(self, bot: Bot, bar: Bar) -> None:
        try:
            if not bot.buffer.add(bar):
                logger.debug(f"Bot {bot.id}: bar {bar.timestamp} does not extend the buffer, skipped")
                return
            signal = bot.strategy.analyze(bar, bot.buffer)
            bot.bars_processed += 1

            await self._settle_exits(bot, bar.timestamp)
            if signal is not None:
                await self._handle_signal(bot, signal, bar)
            await self._update_risk(bot, bar.timestamp)
        except InvariantViolation as e:
            bot.last_error = str(e)
            logger.error(f"Bot {bot.id}: invariant violation on {bar.timestamp}: {e}", exc_info=True)
        except Exception as e:
            bot.last_error = f"{type(e).__name__}: {e}"
            bot.status = BotStatus.ERROR
            bot.strategy.stop()
            logger.error(f"Bot {bot.id} failed on {bar.timestamp}, moved to error: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Signal pipeline
    # ------------------------------------------------------------------

    async def _handle_signal(self, bot: Bot, signal: Signal, bar: Bar) -> None:
        strategy = bot.strategy
        risk_cfg = bot.config.risk_params
        balance = bot.balance

        await self._emit(bot, EventType.SIGNAL_GENERATED, bar.timestamp, {
            "signal_id": signal.id,
            "symbol": signal.symbol,
            "direction": signal.direction.name,
            "kind": signal.kind.value,
            "entry_price": signal.entry_price,
            "stop_loss": signal.stop_loss,
            "take_profit": signal.take_profit,
            "lot_size": signal.lot_size,
            "confidence": signal.confidence,
        })

        assessment = self.risk_manager.evaluate(
            signal, strategy.open_positions, bot.risk_state, risk_cfg, balance
        )
        validated = None
        if assessment.passed:
            validated = self.risk_manager.approve(
                signal, assessment, risk_cfg, balance, strategy.get_metrics()
            )
        if validated is None:
            reasons = assessment.reasons or ["position size is not positive"]
            logger.warning(f"Bot {bot.id}: signal {signal.id[:8]} rejected: {'; '.join(reasons)}")
            strategy.on_reject(signal, reasons)
            await self._emit(bot, EventType.RISK_REJECTED, bar.timestamp, {
                "signal_id": signal.id,
                "reasons": reasons,
            })
            return

        request = OrderRequest(
            symbol=signal.symbol,
            direction=signal.direction,
            lot_size=validated.lot_size,
            price=signal.entry_price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            client_id=signal.id,
        )
        try:
            result = await asyncio.wait_for(
                self.broker.place_order(request), timeout=self.settings.execution_timeout
            )
        except (ExecutionError, asyncio.TimeoutError) as e:
            detail = str(e) or type(e).__name__
            bot.last_action = ActionResult("place_order", False, bar.timestamp, detail)
            logger.error(f"Bot {bot.id}: order for signal {signal.id[:8]} not executed: {detail}")
            strategy.on_reject(signal, [f"execution failed: {detail}"])
            return

        position = strategy.on_fill(
            signal,
            Fill(
                price=result.filled_price,
                lot_size=result.lot_size,
                time=bar.timestamp,
                order_id=result.order_id,
            ),
        )
        self.risk_manager.record_trade_risk(bot.risk_state, validated, balance, bar.timestamp)
        bot.last_action = ActionResult("place_order", True, bar.timestamp, result.order_id)

        payload = _position_payload(position)
        await self._emit(bot, EventType.POSITION_OPENED, bar.timestamp, payload)
        await self._record(bot, "position_opened", payload)

    async def _settle_exits(self, bot: Bot, time: datetime, extra: list[Position] | None = None) -> None:
        """Close with the broker every position the strategy closed."""
        for position in (extra or []) + bot.strategy.drain_exits():
            if position.order_id is not None:
                try:
                    await asyncio.wait_for(
                        self.broker.close_position(position.order_id, position.close_price),
                        timeout=self.settings.execution_timeout,
                    )
                    bot.last_action = ActionResult("close_position", True, time, position.order_id)
                except (ExecutionError, asyncio.TimeoutError) as e:
                    detail = str(e) or type(e).__name__
                    bot.last_action = ActionResult("close_position", False, time, detail)
                    logger.error(
                        f"Bot {bot.id}: broker close of position {position.id} failed: {detail}"
                    )

            profit = position.profit or Decimal("0")
            bot.realized_pnl += profit
            self.risk_manager.record_outcome(bot.risk_state, profit, time)

            payload = _position_payload(position)
            await self._emit(bot, EventType.POSITION_CLOSED, time, payload)
            await self._record(bot, "position_closed", payload)
            await self._record(bot, "performance", bot.strategy.get_metrics().model_dump(mode="json"))

    async def _update_risk(self, bot: Bot, time: datetime) -> None:
        state = bot.risk_state
        self.risk_manager.update_drawdown(state, bot.equity)
        if state.halted:
            return
        status = self.risk_manager.emergency_stop(
            state, bot.strategy.open_positions, bot.config.risk_params, bot.balance
        )
        if status.should_stop:
            logger.warning(f"Bot {bot.id}: emergency stop, new signals blocked: {'; '.join(status.reasons)}")
            await self._emit(bot, EventType.EMERGENCY_STOP, time, {
                "reasons": status.reasons,
                "conditions": status.conditions,
            })

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    async def close_position(
        self, bot_id: str, position_id: PositionId, price: Decimal
    ) -> Position:
        """Manually close one position of a bot at ``price``.

        Raises:
            BotNotFoundError: Unknown bot.
            PositionStateError: The bot has no such open position.
        """
        bot = await self._get(bot_id)
        async with bot.lock:
            last = bot.buffer.last
            time = last.timestamp if last is not None else datetime.now(timezone.utc)
            position = bot.strategy.close_position(position_id, price, time)
            await self._settle_exits(bot, time, extra=[position])
            await self._update_risk(bot, time)
        logger.info(f"Bot {bot_id}: position {position_id} closed manually @ {price}")
        return position

    async def clear_emergency_stop(self, bot_id: str) -> None:
        bot = await self._get(bot_id)
        async with bot.lock:
            self.risk_manager.clear_emergency_stop(bot.risk_state)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self, bot_id: str) -> dict[str, Any]:
        bot = await self._get(bot_id)
        positions = bot.strategy.open_positions
        return {
            "bot_id": bot.id,
            "strategy": bot.config.strategy_type,
            "symbol": bot.config.symbol,
            "timeframe": bot.config.timeframe,
            "status": bot.status.value,
            "open_positions": len(positions),
            "positions": [_position_payload(p) for p in positions],
            "performance": bot.strategy.get_metrics().model_dump(),
            "balance": bot.balance,
            "equity": bot.equity,
            "risk": self.risk_manager.risk_metrics(
                bot.risk_state, positions, bot.config.risk_params, bot.balance
            ),
            "last_action": (
                {
                    "action": bot.last_action.action,
                    "ok": bot.last_action.ok,
                    "at": bot.last_action.at,
                    "detail": bot.last_action.detail,
                }
                if bot.last_action else None
            ),
            "last_error": bot.last_error,
            "bars_processed": bot.bars_processed,
            "bars_dropped": bot.bars_dropped,
            "strategy_status": bot.strategy.status(),
        }

    async def status_all(self) -> dict[BotId, dict[str, Any]]:
        return {bot_id: await self.status(bot_id) for bot_id in await self.list_bots()}

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def _emit(self, bot: Bot, event_type: EventType, time: datetime, data: dict) -> None:
        if self.notifier is None:
            return
        event = EngineEvent(type=event_type, bot_id=bot.id, timestamp=time, data=data)
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"Bot {bot.id}: notification {event_type.value} failed: {e}")

    async def _record(self, bot: Bot, record_type: str, payload: dict) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder.record(record_type, {"bot_id": bot.id, **payload})
        except Exception as e:
            logger.warning(f"Bot {bot.id}: recording {record_type} failed: {e}")


def _position_payload(position: Position) -> dict[str, Any]:
    return position.model_dump(mode="json")

"""DCA strategy implementation.

Deal state machine per symbol: idle -> open -> closed (then idle again after
the cooldown).

- A deal opens with a base order when the start condition holds.
- While open, each bar may add one safety order once price trades down to
  ``base * (1 - sum(deviation * step_scale**(k-1) for k in 1..n) / 100)``.
  Safety order n has volume ``safety_order_size * volume_scale**(n-1)``.
- The take profit follows the average entry: ``average * (1 + tp% / 100)``.
- The deal closes on take profit, stop loss, or (optionally) when price
  falls through the next virtual safety level with no safety orders left.

DCA deals are long only. Stop and target live on the deal, not on the
individual positions it aggregates.

This module is pure business logic with no I/O dependencies.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from core.models import (
    Bar,
    BarBuffer,
    CloseReason,
    Deal,
    DealOrder,
    Direction,
    Position,
    PositionId,
    Signal,
    SignalKind,
    triggered_exit,
)
from core.strategy.base import BaseStrategy, last
from core.strategy.dca.models import DCA_STRATEGY_NAME, DcaConfig
from core.strategy.protocol import StrategyKind
from core.strategy.registry import register_strategy

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@register_strategy(DCA_STRATEGY_NAME)
class DcaStrategy(BaseStrategy):
    """Dollar-cost averaging with a geometric safety-order ladder."""

    name = DCA_STRATEGY_NAME
    kind = StrategyKind.DCA
    config_model = DcaConfig

    def __init__(self, config: DcaConfig | None = None, **kwargs):
        super().__init__(config=config, **kwargs)
        self._deals: dict[str, Deal] = {}
        self._deal_history: list[Deal] = []
        self._deal_counter = 0
        self._last_deal_close: datetime | None = None

    # ------------------------------------------------------------------
    # Ladder math
    # ------------------------------------------------------------------

    def safety_order_price(self, base_price: Decimal, number: int) -> Decimal:
        """Trigger price of safety order ``number`` (1-based)."""
        cfg = self.config
        total_deviation = sum(
            (cfg.price_deviation * cfg.safety_order_step_scale ** (i - 1) for i in range(1, number + 1)),
            Decimal("0"),
        )
        return base_price * (1 - total_deviation / HUNDRED)

    def safety_order_volume(self, number: int) -> Decimal:
        cfg = self.config
        return cfg.safety_order_size * cfg.safety_order_volume_scale ** (number - 1)

    def take_profit_price(self, average_price: Decimal) -> Decimal:
        return average_price * (1 + self.config.take_profit_percentage / HUNDRED)

    def stop_loss_price(self, reference_price: Decimal) -> Decimal | None:
        pct = self.config.stop_loss_percentage
        if pct is None:
            return None
        return reference_price * (1 - pct / HUNDRED)

    # ------------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------------

    @property
    def active_deals(self) -> list[Deal]:
        return list(self._deals.values())

    @property
    def deal_history(self) -> list[Deal]:
        return list(self._deal_history)

    def get_deal(self, deal_id: str) -> Deal | None:
        return self._deals.get(deal_id)

    def active_deal(self, symbol: str) -> Deal | None:
        for deal in self._deals.values():
            if deal.symbol == symbol:
                return deal
        return None

    def _next_deal_id(self) -> str:
        return f"{self.strategy_id}-deal-{self._deal_counter + 1}"

    def _last_order_time(self, deal: Deal) -> datetime:
        if deal.safety_orders:
            return deal.safety_orders[-1].time
        return deal.base_order.time

    def in_cooldown(self, now: datetime) -> bool:
        if self._last_deal_close is None or self.config.cooldown_hours <= 0:
            return False
        cooldown = timedelta(hours=float(self.config.cooldown_hours))
        return now < self._last_deal_close + cooldown

    def _close_deal(
        self,
        deal: Deal,
        price: Decimal,
        time: datetime,
        reason: CloseReason,
        report: bool = True,
    ) -> list[Position]:
        closed = []
        for position_id in deal.position_ids:
            position = self._positions.get(position_id)
            if position is not None:
                self._close(position, price, time, reason, report=report)
                closed.append(position)
        profit = deal.close(price, time, reason)
        del self._deals[deal.id]
        self._deal_history.append(deal)
        self._last_deal_close = time
        logger.info(
            f"{self.strategy_id}: deal {deal.id} closed ({reason.value}) @ {price}, "
            f"safety orders={deal.safety_order_count}, profit={profit}"
        )
        return closed

    def close_all_deals(
        self,
        price: Decimal,
        time: datetime,
        reason: CloseReason = CloseReason.MANUAL,
    ) -> list[Position]:
        """Close every open deal at ``price``. Returns the closed positions."""
        closed = []
        for deal in list(self._deals.values()):
            closed.extend(self._close_deal(deal, price, time, reason, report=False))
        return closed

    def close_all(self, price: Decimal, time: datetime, reason: CloseReason) -> list[Position]:
        return self.close_all_deals(price, time, reason)

    def close_position(
        self,
        position_id: PositionId,
        price: Decimal,
        time: datetime,
        reason: CloseReason = CloseReason.MANUAL,
    ) -> Position:
        """Closing any position of a deal closes the whole deal.

        The other positions of the deal are reported through ``drain_exits``.
        """
        position = self._positions.get(position_id)
        if position is None or position.group_id not in self._deals:
            return super().close_position(position_id, price, time, reason)

        deal = self._deals[position.group_id]
        self._close(position, price, time, reason, report=False)
        self._close_deal(deal, price, time, reason)
        return position

    def update_config(self, **changes) -> DcaConfig:
        """Apply new parameters and reprice the targets of open deals."""
        self.config = DcaConfig.model_validate({**self.config.model_dump(), **changes})
        for deal in self._deals.values():
            deal.take_profit_price = self.take_profit_price(deal.average_price)
            deal.stop_loss_price = self.stop_loss_price(deal.average_price)
            if deal.safety_order_count < deal.max_safety_orders:
                deal.next_safety_order_price = self.safety_order_price(
                    deal.base_order.price, deal.safety_order_count + 1
                )
        logger.info(f"{self.strategy_id}: config updated {sorted(changes)}")
        return self.config

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    def _position_levels(self, signal: Signal) -> tuple[Decimal | None, Decimal | None]:
        return None, None

    def _process_exits(self, bar: Bar, buffer: BarBuffer) -> None:
        deal = self.active_deal(bar.symbol)
        if deal is None or bar.timestamp <= self._last_order_time(deal):
            return

        hit = triggered_exit(Direction.BUY, deal.stop_loss_price, deal.take_profit_price, bar)
        if hit is not None:
            price, reason = hit
            self._close_deal(deal, price, bar.timestamp, reason)
            return

        if self.config.close_on_exhaustion and not deal.has_safety_orders_left:
            virtual_level = self.safety_order_price(
                deal.base_order.price, deal.max_safety_orders + 1
            )
            if bar.close <= virtual_level:
                self._close_deal(deal, bar.close, bar.timestamp, CloseReason.EXHAUSTED)

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _evaluate_entry(self, bar: Bar, buffer: BarBuffer) -> Signal | None:
        deal = self.active_deal(bar.symbol)
        if deal is not None:
            return self._safety_order_signal(deal, bar)

        if self.in_cooldown(bar.timestamp):
            return None
        if len(self._deals) >= self.config.max_deals:
            return None
        if not self.start_condition_met(bar, buffer):
            return None
        return self._base_order_signal(bar, buffer)

    def start_condition_met(self, bar: Bar, buffer: BarBuffer) -> bool:
        cfg = self.config
        condition = cfg.deal_start_condition
        if condition == "always":
            return True

        closes = buffer.get_closes()
        if condition == "rsi_oversold":
            rsi = last(self.calculator.compute("rsi", closes, period=cfg.rsi_period))
            bands = self.calculator.compute(
                "bollinger", closes, period=cfg.bollinger_period, deviation=cfg.bollinger_std
            )
            lower = last(bands.lower)
            return rsi is not None and lower is not None and rsi < cfg.rsi_oversold and bar.close < lower

        if condition == "ema_cross":
            fast = self.calculator.compute("ema", closes, period=cfg.ema_fast)
            slow = self.calculator.compute("ema", closes, period=cfg.ema_slow)
            if len(slow) < 2:
                return False
            return fast[-1] > slow[-1] and fast[-2] <= slow[-2]

        if condition == "support_bounce":
            levels = self.calculator.compute(
                "support_resistance", buffer.get_highs(), buffer.get_lows(), lookback=cfg.support_lookback
            )
            tolerance = cfg.support_proximity / HUNDRED
            return any(
                abs(bar.close - level.price) / bar.close < tolerance for level in levels.support
            )

        return False

    def _base_order_signal(self, bar: Bar, buffer: BarBuffer) -> Signal:
        cfg = self.config
        entry = bar.close
        deal_id = self._next_deal_id()
        metadata = {
            "order": "base",
            "deal_id": deal_id,
            "next_safety_order_price": str(self.safety_order_price(entry, 1)),
        }
        stop = self.stop_loss_price(entry)
        if stop is not None:
            metadata["deal_stop_loss"] = str(stop)
        atr = last(self.calculator.compute(
            "atr", buffer.get_highs(), buffer.get_lows(), buffer.get_closes(), period=cfg.atr_period
        ))
        if atr is not None:
            metadata["atr"] = str(atr)

        return Signal(
            strategy_id=self.strategy_id,
            symbol=bar.symbol,
            timeframe=bar.timeframe,
            direction=Direction.BUY,
            entry_price=entry,
            take_profit=self.take_profit_price(entry),
            lot_size=cfg.base_order_size,
            confidence=0.6,
            timestamp=bar.timestamp,
            kind=SignalKind.ENTRY,
            group_id=deal_id,
            metadata=metadata,
        )

    def _safety_order_signal(self, deal: Deal, bar: Bar) -> Signal | None:
        if not deal.has_safety_orders_left or deal.next_safety_order_price is None:
            return None
        if bar.timestamp <= self._last_order_time(deal):
            return None
        if bar.close > deal.next_safety_order_price:
            return None

        number = deal.safety_order_count + 1
        volume = self.safety_order_volume(number)
        projected_average = (deal.total_invested + bar.close * volume) / (deal.total_volume + volume)
        return Signal(
            strategy_id=self.strategy_id,
            symbol=bar.symbol,
            timeframe=bar.timeframe,
            direction=Direction.BUY,
            entry_price=bar.close,
            lot_size=volume,
            confidence=0.6,
            timestamp=bar.timestamp,
            kind=SignalKind.SCALE_IN,
            group_id=deal.id,
            metadata={
                "order": "safety",
                "deal_id": deal.id,
                "safety_order_number": number,
                "trigger_price": str(deal.next_safety_order_price),
                "projected_average": str(projected_average),
            },
        )

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    def _on_filled(self, signal: Signal, position: Position) -> None:
        order_time = position.open_time
        if signal.kind == SignalKind.ENTRY:
            deal_id = signal.group_id or self._next_deal_id()
            self._deal_counter += 1
            base = DealOrder(
                number=0,
                position_id=position.id,
                price=position.entry_price,
                volume=position.lot_size,
                time=order_time,
            )
            deal = Deal.start(
                deal_id=deal_id,
                symbol=position.symbol,
                base_order=base,
                max_safety_orders=self.config.max_safety_orders,
                take_profit_price=self.take_profit_price(base.price),
                stop_loss_price=self.stop_loss_price(base.price),
                next_safety_order_price=(
                    self.safety_order_price(base.price, 1)
                    if self.config.max_safety_orders > 0 else None
                ),
            )
            self._deals[deal.id] = deal
            logger.info(
                f"{self.strategy_id}: deal {deal.id} opened @ {base.price} "
                f"(TP {deal.take_profit_price}, first safety {deal.next_safety_order_price})"
            )
            return

        deal = self._deals.get(signal.group_id or "")
        if deal is None:
            logger.error(f"{self.strategy_id}: fill for unknown deal {signal.group_id}")
            return

        deal.add_safety_order(
            DealOrder(
                number=deal.safety_order_count + 1,
                position_id=position.id,
                price=position.entry_price,
                volume=position.lot_size,
                time=order_time,
            )
        )
        deal.take_profit_price = self.take_profit_price(deal.average_price)
        deal.next_safety_order_price = (
            self.safety_order_price(deal.base_order.price, deal.safety_order_count + 1)
            if deal.has_safety_orders_left else None
        )
        logger.debug(
            "%s: deal %s safety order %d @ %s, average %s, TP %s",
            self.strategy_id, deal.id, deal.safety_order_count,
            position.entry_price, deal.average_price, deal.take_profit_price,
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def deal_metrics(self) -> dict:
        history = self._deal_history
        durations = [d.duration_hours for d in history if d.duration_hours is not None]
        return {
            "active_deals": len(self._deals),
            "total_deals": len(history),
            "average_safety_orders": (
                sum(d.safety_order_count for d in history) / len(history) if history else 0.0
            ),
            "max_safety_orders_used": max((d.safety_order_count for d in history), default=0),
            "profitable_deals": sum(1 for d in history if d.profit is not None and d.profit > 0),
            "average_deal_duration_hours": sum(durations) / len(durations) if durations else 0.0,
            "total_invested_capital": sum(
                (d.total_invested for d in self._deals.values()), Decimal("0")
            ),
        }

    def reset(self) -> None:
        super().reset()
        self._deals.clear()
        self._deal_history.clear()
        self._deal_counter = 0
        self._last_deal_close = None

    def status(self) -> dict:
        status = super().status()
        status.update(self.deal_metrics())
        status["last_deal_close"] = (
            self._last_deal_close.isoformat() if self._last_deal_close else None
        )
        return status

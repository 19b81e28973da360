"""Grid strategy implementation.

On the first usable bar the strategy derives its price range (explicit
bounds, or ``max(atr_range_multiplier * ATR, Bollinger width)`` centred on
price and clamped by the nearest support/resistance), splits it into
``grid_levels`` levels and rests one pending order on every interior level:
buys below the centre, sells above it.

Each following bar:
- positions hitting take profit / stop loss are closed; a take-profit close
  re-arms a replacement order on the same level
- the grid is rebuilt on a breakout or a volatility shift (with cooldown)
- the first pending order crossed by the close becomes the bar's signal

Invariants: at most one pending order per level, and pending plus filled
orders never exceed ``max_grid_orders``.

This module is pure business logic with no I/O dependencies.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from core.models import (
    Bar,
    BarBuffer,
    CloseReason,
    Direction,
    GridLevel,
    GridOrder,
    GridOrderStatus,
    LevelType,
    Position,
    Signal,
    SignalKind,
)
from core.strategy.base import BaseStrategy, last
from core.strategy.grid.models import GRID_STRATEGY_NAME, GridConfig
from core.strategy.protocol import StrategyKind
from core.strategy.registry import register_strategy

logger = logging.getLogger(__name__)

TWO = Decimal("2")


@register_strategy(GRID_STRATEGY_NAME)
class GridStrategy(BaseStrategy):
    """Self-healing price-ladder strategy."""

    name = GRID_STRATEGY_NAME
    kind = StrategyKind.GRID
    config_model = GridConfig

    def __init__(self, config: GridConfig | None = None, **kwargs):
        super().__init__(config=config, **kwargs)
        self.levels: list[GridLevel] = []
        self._orders: dict[str, GridOrder] = {}
        self._order_counter = 0
        self._generation = 0
        self.center_price: Decimal | None = None
        self.upper_bound: Decimal | None = None
        self.lower_bound: Decimal | None = None
        self.last_rebalance: datetime | None = None

    @property
    def is_initialized(self) -> bool:
        return bool(self.levels)

    @property
    def grid_id(self) -> str:
        return f"{self.strategy_id}-grid-{self._generation}"

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @property
    def orders(self) -> list[GridOrder]:
        return list(self._orders.values())

    @property
    def pending_orders(self) -> list[GridOrder]:
        return [o for o in self._orders.values() if o.status == GridOrderStatus.PENDING]

    @property
    def filled_orders(self) -> list[GridOrder]:
        return [o for o in self._orders.values() if o.status == GridOrderStatus.FILLED]

    @property
    def live_order_count(self) -> int:
        return len(self.pending_orders) + len(self.filled_orders)

    def get_level(self, index: int) -> GridLevel | None:
        for level in self.levels:
            if level.index == index:
                return level
        return None

    def _pending_at(self, level_index: int) -> GridOrder | None:
        for order in self._orders.values():
            if order.level_index == level_index and order.is_pending:
                return order
        return None

    def order_size(self, level: GridLevel) -> Decimal:
        """Martingale sizing by distance (in levels) from the centre level."""
        size = self.config.grid_order_size
        multiplier = self.config.martingale_multiplier
        if multiplier != 1:
            distance = abs(level.index - self.config.grid_levels // 2)
            size *= multiplier ** distance
        return size

    def _new_order_id(self) -> str:
        self._order_counter += 1
        return f"{self.strategy_id}-order-{self._order_counter}"

    def _place_level_order(
        self, level: GridLevel, time: datetime, replacement: bool = False
    ) -> GridOrder | None:
        if self._pending_at(level.index) is not None:
            return None
        if self.live_order_count >= self.config.max_grid_orders:
            logger.debug(
                "%s: max grid orders reached, level %d left empty", self.strategy_id, level.index
            )
            return None
        order = GridOrder(
            id=self._new_order_id(),
            level_index=level.index,
            direction=level.order_direction,
            price=level.price,
            lot_size=self.order_size(level),
            created_at=time,
            is_replacement=replacement,
        )
        self._orders[order.id] = order
        return order

    def _place_hedge_order(self, filled: GridOrder, time: datetime) -> GridOrder | None:
        spacing = self.config.grid_spacing_pips * self.config.pip_size
        base = filled.fill_price if filled.fill_price is not None else filled.price
        price = base + spacing if filled.direction == Direction.BUY else base - spacing
        if not (self.lower_bound <= price <= self.upper_bound):
            return None
        if self.live_order_count >= self.config.max_grid_orders:
            return None
        order = GridOrder(
            id=self._new_order_id(),
            level_index=None,
            direction=filled.direction.opposite,
            price=price,
            lot_size=filled.lot_size,
            created_at=time,
            is_hedge=True,
        )
        self._orders[order.id] = order
        return order

    def _cancel_pending(self) -> int:
        cancelled = 0
        for order in self._orders.values():
            if order.is_pending:
                order.status = GridOrderStatus.CANCELLED
                cancelled += 1
        return cancelled

    def _prune_orders(self) -> None:
        """Drop finished orders that no longer reference anything live."""
        self._orders = {
            oid: o for oid, o in self._orders.items()
            if o.status in (GridOrderStatus.PENDING, GridOrderStatus.FILLED)
        }

    # ------------------------------------------------------------------
    # Grid construction
    # ------------------------------------------------------------------

    def calculate_bounds(self, price: Decimal, buffer: BarBuffer) -> tuple[Decimal, Decimal] | None:
        """Upper and lower bound around ``price``, None without enough history."""
        cfg = self.config
        if cfg.has_fixed_bounds:
            return cfg.upper_bound, cfg.lower_bound

        highs = buffer.get_highs()
        lows = buffer.get_lows()
        closes = buffer.get_closes()
        atr = last(self.calculator.compute("atr", highs, lows, closes, period=cfg.atr_period))
        bands = self.calculator.compute(
            "bollinger", closes, period=cfg.bollinger_period, deviation=cfg.bollinger_std
        )
        upper_band = last(bands.upper)
        lower_band = last(bands.lower)
        if atr is None or upper_band is None or lower_band is None:
            return None

        width = max(atr * cfg.atr_range_multiplier, upper_band - lower_band)
        if width <= 0:
            return None
        upper = price + width / TWO
        lower = price - width / TWO

        levels = self.calculator.compute(
            "support_resistance", highs, lows, lookback=cfg.support_lookback
        )
        resistance = levels.nearest_resistance(price)
        if resistance is not None:
            upper = min(upper, resistance.price)
        support = levels.nearest_support(price)
        if support is not None:
            lower = max(lower, support.price)
        return upper, lower

    def generate_levels(self, upper: Decimal, lower: Decimal, center: Decimal) -> list[GridLevel]:
        """Split [lower, upper] into ``grid_levels`` prices, bounds included."""
        n = self.config.grid_levels
        if self.config.grid_type == "geometric":
            ratio = (upper / lower) ** (Decimal(1) / Decimal(n - 1))
            prices = [lower * ratio ** i for i in range(n)]
        else:
            spacing = (upper - lower) / (n - 1)
            prices = [lower + spacing * i for i in range(n)]
        prices[-1] = upper

        levels = []
        for i, price in enumerate(prices):
            if i == 0:
                kind = LevelType.LOWER_BOUND
            elif i == n - 1:
                kind = LevelType.UPPER_BOUND
            else:
                kind = LevelType.GRID
            levels.append(
                GridLevel(
                    index=i,
                    price=price,
                    kind=kind,
                    order_direction=Direction.BUY if price < center else Direction.SELL,
                )
            )
        return levels

    def build_grid(self, bar: Bar, buffer: BarBuffer) -> bool:
        """(Re)build levels and pending orders around the bar's close."""
        bounds = self.calculate_bounds(bar.close, buffer)
        if bounds is None:
            return False
        upper, lower = bounds
        if upper <= lower:
            logger.debug("%s: degenerate grid range %s..%s", self.strategy_id, lower, upper)
            return False

        self._cancel_pending()
        self._prune_orders()
        # Positions from the previous ladder run to their exits without re-arming
        for order in self._orders.values():
            order.level_index = None
        self._generation += 1
        self.center_price = bar.close
        self.upper_bound = upper
        self.lower_bound = lower
        self.levels = self.generate_levels(upper, lower, bar.close)
        for level in self.levels:
            if level.is_interior:
                self._place_level_order(level, bar.timestamp)
        self.last_rebalance = bar.timestamp

        logger.info(
            f"{self.strategy_id}: grid {self.grid_id} built for {bar.symbol}: "
            f"{len(self.levels)} levels {lower}..{upper}, {len(self.pending_orders)} pending orders"
        )
        return True

    def should_rebalance(self, bar: Bar, buffer: BarBuffer) -> bool:
        cfg = self.config
        if not cfg.rebalance_on_breakout or cfg.has_fixed_bounds:
            return False
        if self.last_rebalance is not None:
            cooldown = timedelta(hours=float(cfg.rebalance_cooldown_hours))
            if bar.timestamp < self.last_rebalance + cooldown:
                return False

        if bar.close > self.upper_bound or bar.close < self.lower_bound:
            return True

        atr = self.calculator.compute(
            "atr", buffer.get_highs(), buffer.get_lows(), buffer.get_closes(), period=cfg.atr_period
        )
        if len(atr) <= cfg.volatility_lookback:
            return False
        previous = atr[-1 - cfg.volatility_lookback]
        if previous <= 0:
            return False
        return abs(atr[-1] - previous) / previous > cfg.volatility_change_threshold

    # ------------------------------------------------------------------
    # Manual management
    # ------------------------------------------------------------------

    def add_grid_level(self, price: Decimal, direction: Direction, time: datetime) -> GridLevel:
        """Add a manual level and rest an order on it if capacity allows."""
        index = max((lv.index for lv in self.levels), default=-1) + 1
        level = GridLevel(index=index, price=price, kind=LevelType.MANUAL, order_direction=direction)
        self.levels.append(level)
        self._place_level_order(level, time)
        return level

    def remove_grid_level(self, index: int) -> bool:
        """Remove a level and cancel its pending order. Filled positions stay open."""
        level = self.get_level(index)
        if level is None:
            return False
        self.levels.remove(level)
        pending = self._pending_at(index)
        if pending is not None:
            pending.status = GridOrderStatus.CANCELLED
        return True

    def close_all_positions(
        self,
        price: Decimal,
        time: datetime,
        reason: CloseReason = CloseReason.EMERGENCY,
    ) -> list[Position]:
        """Close every grid position and cancel all pending orders."""
        closed = super().close_all(price, time, reason)
        self._cancel_pending()
        self._prune_orders()
        return closed

    def close_all(self, price: Decimal, time: datetime, reason: CloseReason) -> list[Position]:
        return self.close_all_positions(price, time, reason)

    # ------------------------------------------------------------------
    # Bar processing
    # ------------------------------------------------------------------

    def _evaluate_entry(self, bar: Bar, buffer: BarBuffer) -> Signal | None:
        if not self.is_initialized:
            # Orders become live from the next bar on
            self.build_grid(bar, buffer)
            return None

        if self.should_rebalance(bar, buffer):
            logger.info(f"{self.strategy_id}: rebalancing grid at {bar.close}")
            self.build_grid(bar, buffer)
            return None

        for order in self._orders.values():
            if order.is_pending and order.created_at < bar.timestamp and order.is_triggered(bar.close):
                return self._order_signal(order, bar, buffer)
        return None

    def _order_signal(self, order: GridOrder, bar: Bar, buffer: BarBuffer) -> Signal:
        cfg = self.config
        entry = bar.close
        sign = order.direction.value
        stop_loss = None
        if cfg.stop_loss_pips is not None:
            stop_loss = entry - sign * cfg.stop_loss_pips * cfg.pip_size

        metadata = {
            "grid_order_id": order.id,
            "grid_level": order.level_index,
            "grid_type": cfg.grid_type,
            "hedge": order.is_hedge,
        }
        atr = last(self.calculator.compute(
            "atr", buffer.get_highs(), buffer.get_lows(), buffer.get_closes(), period=cfg.atr_period
        ))
        if atr is not None:
            metadata["atr"] = str(atr)

        return Signal(
            strategy_id=self.strategy_id,
            symbol=bar.symbol,
            timeframe=bar.timeframe,
            direction=order.direction,
            entry_price=entry,
            stop_loss=stop_loss,
            take_profit=entry + sign * cfg.take_profit_pips * cfg.pip_size,
            lot_size=order.lot_size,
            confidence=0.6,
            timestamp=bar.timestamp,
            kind=SignalKind.SCALE_IN,
            group_id=order.id,
            metadata=metadata,
        )

    def _order_for(self, signal: Signal) -> GridOrder | None:
        return self._orders.get(signal.metadata.get("grid_order_id", ""))

    def _on_filled(self, signal: Signal, position: Position) -> None:
        order = self._order_for(signal)
        if order is None:
            logger.error(f"{self.strategy_id}: fill for unknown grid order {signal.group_id}")
            return
        order.status = GridOrderStatus.FILLED
        order.position_id = position.id
        order.fill_price = position.entry_price
        if self.config.hedging and not order.is_hedge:
            self._place_hedge_order(order, position.open_time)

    def on_reject(self, signal: Signal, reasons: list[str]) -> None:
        order = self._order_for(signal)
        if order is not None and order.is_pending:
            order.status = GridOrderStatus.CANCELLED
            logger.debug("%s: grid order %s cancelled: %s", self.strategy_id, order.id, "; ".join(reasons))

    def _on_position_closed(self, position: Position) -> None:
        order = next(
            (o for o in self._orders.values() if o.position_id == position.id), None
        )
        if order is None:
            return
        order.status = GridOrderStatus.CLOSED
        if position.close_reason == CloseReason.TAKE_PROFIT and order.level_index is not None:
            level = self.get_level(order.level_index)
            if level is not None and position.close_time is not None:
                self._place_level_order(level, position.close_time, replacement=True)
        self._prune_orders()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def grid_metrics(self) -> dict:
        return {
            "grid_levels": len(self.levels),
            "pending_orders": len(self.pending_orders),
            "filled_orders": len(self.filled_orders),
            "upper_bound": self.upper_bound,
            "lower_bound": self.lower_bound,
            "center_price": self.center_price,
            "last_rebalance": self.last_rebalance.isoformat() if self.last_rebalance else None,
            "hedging": self.config.hedging,
        }

    def grid_status(self) -> dict:
        return {
            "initialized": self.is_initialized,
            "grid_id": self.grid_id if self.is_initialized else None,
            "levels": [lv.model_dump() for lv in self.levels],
            "orders": [o.model_dump() for o in self._orders.values()],
            "bounds": {
                "upper": self.upper_bound,
                "lower": self.lower_bound,
                "center": self.center_price,
            },
        }

    def reset(self) -> None:
        super().reset()
        self.levels = []
        self._orders.clear()
        self._order_counter = 0
        self._generation = 0
        self.center_price = None
        self.upper_bound = None
        self.lower_bound = None
        self.last_rebalance = None

    def status(self) -> dict:
        status = super().status()
        status.update(self.grid_metrics())
        return status

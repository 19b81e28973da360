"""Tests for the grid strategy."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from core.models import Bar, BarBuffer, CloseReason, Direction, GridOrderStatus, LevelType, SignalKind
from core.strategy import Fill
from core.strategy.grid import GridConfig, GridStrategy

T0 = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)


def make_bar(i: int, close: str, high: str | None = None, low: str | None = None) -> Bar:
    c = Decimal(close)
    return Bar(
        symbol="EURUSD",
        timeframe="5m",
        timestamp=T0 + timedelta(minutes=5 * i),
        open=c,
        high=Decimal(high) if high else c,
        low=Decimal(low) if low else c,
        close=c,
    )


def make_strategy(**params) -> GridStrategy:
    params = {
        "grid_levels": 5,
        "upper_bound": Decimal("1.05"),
        "lower_bound": Decimal("0.95"),
        **params,
    }
    strategy = GridStrategy(config=GridConfig(**params), strategy_id="grid", symbol="EURUSD")
    strategy.start()
    return strategy


def step(strategy: GridStrategy, buffer: BarBuffer, bar: Bar, fill: bool = True):
    buffer.add(bar)
    signal = strategy.analyze(bar, buffer)
    if signal is not None and fill:
        strategy.on_fill(signal, Fill(price=bar.close, lot_size=signal.lot_size, time=bar.timestamp))
    return signal


class TestGridConstruction:
    """Tests for level generation."""

    def test_levels_and_pending_orders(self):
        strategy = make_strategy()
        buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
        assert step(strategy, buffer, make_bar(0, "1.00")) is None

        prices = [lv.price for lv in strategy.levels]
        assert len(prices) == 5
        assert prices[0] == Decimal("0.95")
        assert prices[-1] == Decimal("1.05")
        spacings = {b - a for a, b in zip(prices, prices[1:])}
        assert spacings == {Decimal("0.025")}

        assert strategy.levels[0].kind == LevelType.LOWER_BOUND
        assert strategy.levels[-1].kind == LevelType.UPPER_BOUND
        assert len(strategy.pending_orders) == 3
        assert {o.level_index for o in strategy.pending_orders} == {1, 2, 3}

    def test_order_directions_around_centre(self):
        strategy = make_strategy()
        step(strategy, BarBuffer(symbol="EURUSD", timeframe="5m"), make_bar(0, "1.00"))

        directions = {o.level_index: o.direction for o in strategy.pending_orders}
        assert directions[1] == Direction.BUY
        assert directions[3] == Direction.SELL

    def test_geometric_levels(self):
        strategy = make_strategy(grid_type="geometric")
        levels = strategy.generate_levels(Decimal("1.05"), Decimal("0.95"), Decimal("1.00"))

        assert levels[0].price == Decimal("0.95")
        assert levels[-1].price == Decimal("1.05")
        ratios = [b.price / a.price for a, b in zip(levels, levels[1:-1])]
        assert abs(ratios[0] - ratios[1]) < Decimal("1e-20")

    def test_max_grid_orders(self):
        strategy = make_strategy(max_grid_orders=2)
        step(strategy, BarBuffer(symbol="EURUSD", timeframe="5m"), make_bar(0, "1.00"))
        assert strategy.live_order_count == 2

    def test_martingale_sizing(self):
        strategy = make_strategy(martingale_multiplier=Decimal("2"))
        step(strategy, BarBuffer(symbol="EURUSD", timeframe="5m"), make_bar(0, "1.00"))

        sizes = {o.level_index: o.lot_size for o in strategy.pending_orders}
        assert sizes[2] == Decimal("0.1")
        assert sizes[1] == Decimal("0.2")

    def test_volatility_bounds_need_history(self):
        strategy = GridStrategy(config=GridConfig(grid_levels=5), strategy_id="grid", symbol="EURUSD")
        strategy.start()
        step(strategy, BarBuffer(symbol="EURUSD", timeframe="5m"), make_bar(0, "1.00"))
        assert not strategy.is_initialized


class TestGridTrading:
    """Tests for order triggering and self-healing."""

    def test_order_triggers_next_bar(self):
        strategy = make_strategy()
        buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
        step(strategy, buffer, make_bar(0, "1.00"))

        signal = step(strategy, buffer, make_bar(1, "0.975"))

        assert signal.direction == Direction.BUY
        assert signal.kind == SignalKind.SCALE_IN
        assert signal.take_profit == Decimal("0.978")
        assert signal.stop_loss == Decimal("0.925")
        assert len(strategy.filled_orders) == 1
        assert len(strategy.pending_orders) == 2

    def test_at_most_one_signal_per_bar(self):
        strategy = make_strategy()
        buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
        step(strategy, buffer, make_bar(0, "1.00"))
        step(strategy, buffer, make_bar(1, "1.03"))
        assert len(strategy.open_positions) == 1

    def test_take_profit_rearms_level(self):
        strategy = make_strategy()
        buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
        step(strategy, buffer, make_bar(0, "1.00"))
        step(strategy, buffer, make_bar(1, "0.975"))

        assert step(strategy, buffer, make_bar(2, "0.979")) is None

        exits = strategy.drain_exits()
        assert len(exits) == 1
        assert exits[0].close_reason == CloseReason.TAKE_PROFIT
        assert exits[0].close_price == Decimal("0.978")
        replacement = [o for o in strategy.pending_orders if o.level_index == 1]
        assert len(replacement) == 1
        assert replacement[0].is_replacement
        assert len(strategy.pending_orders) == 3

    def test_one_pending_order_per_level(self):
        strategy = make_strategy()
        step(strategy, BarBuffer(symbol="EURUSD", timeframe="5m"), make_bar(0, "1.00"))
        level = strategy.get_level(1)

        assert strategy._place_level_order(level, T0) is None
        assert len(strategy.pending_orders) == 3

    def test_reject_cancels_order(self):
        strategy = make_strategy()
        buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
        step(strategy, buffer, make_bar(0, "1.00"))
        signal = step(strategy, buffer, make_bar(1, "0.975"), fill=False)

        strategy.on_reject(signal, ["max_positions"])

        order = strategy._order_for(signal)
        assert order.status == GridOrderStatus.CANCELLED
        assert len(strategy.pending_orders) == 2

    def test_hedge_order_on_fill(self):
        strategy = make_strategy(hedging=True, grid_spacing_pips=Decimal("50"))
        buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
        step(strategy, buffer, make_bar(0, "1.00"))
        step(strategy, buffer, make_bar(1, "0.975"))

        hedges = [o for o in strategy.pending_orders if o.is_hedge]
        assert len(hedges) == 1
        assert hedges[0].direction == Direction.SELL
        assert hedges[0].price == Decimal("0.980")

    def test_manual_levels(self):
        strategy = make_strategy()
        step(strategy, BarBuffer(symbol="EURUSD", timeframe="5m"), make_bar(0, "1.00"))

        level = strategy.add_grid_level(Decimal("0.99"), Direction.BUY, T0)
        assert level.kind == LevelType.MANUAL
        assert len(strategy.pending_orders) == 4

        assert strategy.remove_grid_level(level.index)
        assert len(strategy.pending_orders) == 3
        assert not strategy.remove_grid_level(99)

    def test_close_all_positions(self):
        strategy = make_strategy()
        buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
        step(strategy, buffer, make_bar(0, "1.00"))
        step(strategy, buffer, make_bar(1, "0.975"))

        closed = strategy.close_all(Decimal("0.97"), T0 + timedelta(hours=1), CloseReason.EMERGENCY)

        assert len(closed) == 1
        assert strategy.open_positions == []
        assert strategy.pending_orders == []
        assert strategy.status()["pending_orders"] == 0


def volatility_grid(**params) -> tuple[GridStrategy, BarBuffer]:
    """Volatility-bounded grid built on 30 quiet bars (last one at index 29)."""
    strategy = GridStrategy(config=GridConfig(grid_levels=5, **params), strategy_id="grid", symbol="EURUSD")
    strategy.start()
    buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
    for i in range(30):
        buffer.add(make_bar(i, "1.0000", high="1.0005", low="0.9995"))
    assert strategy.build_grid(buffer.last, buffer)
    return strategy, buffer


class TestGridRebalancing:
    """Tests for breakout and volatility driven rebuilds."""

    def test_breakout_above(self):
        strategy, buffer = volatility_grid()
        bar = make_bar(45, "1.0100")
        buffer.add(bar)

        assert bar.close > strategy.upper_bound
        assert strategy.should_rebalance(bar, buffer)

    def test_breakout_below(self):
        strategy, buffer = volatility_grid()
        bar = make_bar(45, "0.9900")
        buffer.add(bar)

        assert bar.close < strategy.lower_bound
        assert strategy.should_rebalance(bar, buffer)

    def test_quiet_market_keeps_grid(self):
        strategy, buffer = volatility_grid()
        for i in range(30, 46):
            buffer.add(make_bar(i, "1.0000", high="1.0005", low="0.9995"))

        assert not strategy.should_rebalance(buffer.last, buffer)

    def test_volatility_expansion(self):
        strategy, buffer = volatility_grid()
        # Ranges triple while the close stays inside the bounds
        for i in range(30, 45):
            buffer.add(make_bar(i, "1.0000", high="1.0015", low="0.9985"))
        bar = buffer.last

        assert strategy.lower_bound <= bar.close <= strategy.upper_bound
        assert strategy.should_rebalance(bar, buffer)

    def test_cooldown_suppresses_rebalance(self):
        strategy, buffer = volatility_grid()
        early = make_bar(35, "1.0100")  # 30 minutes after the build
        buffer.add(early)
        assert not strategy.should_rebalance(early, buffer)

        late = make_bar(42, "1.0100")  # 65 minutes after the build
        buffer.add(late)
        assert strategy.should_rebalance(late, buffer)

    def test_second_rebalance_waits_for_cooldown(self):
        strategy, buffer = volatility_grid()
        breakout = make_bar(45, "1.0100")
        buffer.add(breakout)

        assert strategy.analyze(breakout, buffer) is None
        assert strategy.grid_id == "grid-grid-2"
        assert strategy.center_price == Decimal("1.0100")
        assert strategy.last_rebalance == breakout.timestamp
        assert all(o.price > Decimal("1.0000") for o in strategy.pending_orders)

        crash = make_bar(50, "0.9000")
        buffer.add(crash)
        assert crash.close < strategy.lower_bound
        assert not strategy.should_rebalance(crash, buffer)

    def test_breakout_rebalance_disabled(self):
        strategy, buffer = volatility_grid(rebalance_on_breakout=False)
        bar = make_bar(45, "1.0100")
        buffer.add(bar)
        assert not strategy.should_rebalance(bar, buffer)

    def test_fixed_bounds_never_rebalance(self):
        strategy = make_strategy()
        buffer = BarBuffer(symbol="EURUSD", timeframe="5m")
        step(strategy, buffer, make_bar(0, "1.00"))

        breakout = make_bar(100, "1.20")
        buffer.add(breakout)
        assert not strategy.should_rebalance(breakout, buffer)

        strategy.analyze(breakout, buffer)
        assert strategy.grid_id == "grid-grid-1"
        assert strategy.upper_bound == Decimal("1.05")

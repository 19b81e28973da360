"""Tests for the DCA strategy."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from core.models import Bar, BarBuffer, CloseReason, SignalKind
from core.strategy import Fill
from core.strategy.dca import DcaConfig, DcaStrategy

T0 = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)


def make_bar(i: int, close: str, high: str | None = None) -> Bar:
    c = Decimal(close)
    return Bar(
        symbol="EURUSD",
        timeframe="1h",
        timestamp=T0 + timedelta(minutes=i),
        open=c,
        high=Decimal(high) if high else c,
        low=c,
        close=c,
    )


def make_strategy(**params) -> DcaStrategy:
    params = {
        "deal_start_condition": "always",
        "price_deviation": Decimal("1"),
        "safety_order_step_scale": Decimal("1"),
        **params,
    }
    strategy = DcaStrategy(config=DcaConfig(**params), strategy_id="dca", symbol="EURUSD")
    strategy.start()
    return strategy


def run(strategy: DcaStrategy, closes: list[str], start: int = 0, buffer: BarBuffer | None = None):
    """Feed closes one bar apart, filling every signal at the bar close."""
    buffer = buffer if buffer is not None else BarBuffer(symbol="EURUSD", timeframe="1h")
    signals = []
    for i, close in enumerate(closes, start=start):
        bar = make_bar(i, close)
        buffer.add(bar)
        signal = strategy.analyze(bar, buffer)
        if signal is not None:
            signals.append(signal)
            strategy.on_fill(signal, Fill(price=bar.close, lot_size=signal.lot_size, time=bar.timestamp))
    return signals


class TestLadder:
    """Tests for the safety-order ladder math."""

    def test_safety_order_prices(self):
        strategy = make_strategy(price_deviation=Decimal("2"), safety_order_step_scale=Decimal("1.5"))
        # 2% then 2 + 3 = 5%
        assert strategy.safety_order_price(Decimal("100"), 1) == Decimal("98")
        assert strategy.safety_order_price(Decimal("100"), 2) == Decimal("95")

    def test_safety_order_volume_scales(self):
        strategy = make_strategy()
        assert strategy.safety_order_volume(1) == Decimal("0.2")
        assert strategy.safety_order_volume(2) == Decimal("0.24")

    def test_stop_loss_optional(self):
        assert make_strategy(stop_loss_percentage=None).stop_loss_price(Decimal("100")) is None
        assert make_strategy().stop_loss_price(Decimal("100")) == Decimal("85")


class TestDeals:
    """Tests for the deal lifecycle."""

    def test_base_order_opens_deal(self):
        strategy = make_strategy()
        signals = run(strategy, ["100"])

        assert len(signals) == 1
        assert signals[0].kind == SignalKind.ENTRY
        assert signals[0].take_profit == Decimal("103")
        deal = strategy.active_deal("EURUSD")
        assert deal.id == "dca-deal-1"
        assert deal.next_safety_order_price == Decimal("99")

    def test_safety_orders_on_decline(self):
        strategy = make_strategy()
        triggers = []

        run(strategy, ["100"])
        for i, close in enumerate(["99", "98", "97", "96", "95"], start=1):
            triggers.append(strategy.active_deal("EURUSD").next_safety_order_price)
            run(strategy, [close], start=i)

        deal = strategy.active_deal("EURUSD")
        assert deal.safety_order_count == 5
        assert all(b < a for a, b in zip(triggers, triggers[1:]))
        assert deal.next_safety_order_price is None
        assert deal.average_price == deal.total_invested / deal.total_volume

    def test_safety_orders_capped_by_max(self):
        strategy = make_strategy(max_safety_orders=3, close_on_exhaustion=False)
        signals = run(strategy, ["100", "99", "98", "97", "96", "95"])

        assert sum(1 for s in signals if s.kind == SignalKind.SCALE_IN) == 3
        assert strategy.active_deal("EURUSD").safety_order_count == 3

    def test_one_safety_order_per_bar(self):
        strategy = make_strategy()
        # A gap through two trigger levels still adds a single order
        signals = run(strategy, ["100", "97"])
        assert len(signals) == 2
        assert strategy.active_deal("EURUSD").safety_order_count == 1

    def test_take_profit_follows_average(self):
        strategy = make_strategy()
        run(strategy, ["100", "99"])
        deal = strategy.active_deal("EURUSD")

        assert deal.average_price < Decimal("100")
        assert deal.take_profit_price == deal.average_price * Decimal("1.03")

    def test_take_profit_closes_deal(self):
        strategy = make_strategy()
        buffer = BarBuffer(symbol="EURUSD", timeframe="1h")
        run(strategy, ["100"], buffer=buffer)
        assert len(buffer) == 1

        bar = make_bar(1, "102", high="104")
        buffer.add(bar)
        strategy.analyze(bar, buffer)

        assert strategy.active_deal("EURUSD") is None
        deal = strategy.deal_history[0]
        assert deal.close_reason == CloseReason.TAKE_PROFIT
        assert deal.close_price == Decimal("103")
        exits = strategy.drain_exits()
        assert len(exits) == 1
        assert exits[0].profit == Decimal("0.3")

    def test_exhaustion_closes_deal(self):
        strategy = make_strategy(max_safety_orders=2)
        run(strategy, ["100", "99", "98", "97"])

        deal = strategy.deal_history[0]
        assert deal.close_reason == CloseReason.EXHAUSTED
        assert deal.safety_order_count == 2
        assert len(strategy.drain_exits()) == 3

    def test_cooldown_after_close(self):
        strategy = make_strategy(max_safety_orders=0)
        signals = run(strategy, ["100", "99", "98"])

        # Deal closed on exhaustion at 99, next start blocked for 6 hours
        assert len(signals) == 1
        assert strategy.in_cooldown(T0 + timedelta(hours=1))
        assert not strategy.in_cooldown(T0 + timedelta(hours=7))

    def test_close_position_closes_whole_deal(self):
        strategy = make_strategy()
        run(strategy, ["100", "99"])
        base_id, safety_id = strategy.active_deal("EURUSD").position_ids

        closed = strategy.close_position(base_id, Decimal("99.5"), T0 + timedelta(hours=1))

        assert closed.id == base_id
        assert strategy.open_positions == []
        assert [p.id for p in strategy.drain_exits()] == [safety_id]
        assert strategy.deal_history[0].close_reason == CloseReason.MANUAL

    def test_close_all_deals(self):
        strategy = make_strategy()
        run(strategy, ["100", "99"])
        closed = strategy.close_all(Decimal("98"), T0 + timedelta(hours=1), CloseReason.END_OF_DATA)

        assert len(closed) == 2
        assert strategy.active_deals == []
        assert strategy.drain_exits() == []

    def test_update_config_reprices_open_deal(self):
        strategy = make_strategy()
        run(strategy, ["100"])
        strategy.update_config(take_profit_percentage=Decimal("5"))

        assert strategy.active_deal("EURUSD").take_profit_price == Decimal("105")

    def test_deal_metrics(self):
        strategy = make_strategy(max_safety_orders=1)
        run(strategy, ["100", "99", "98"])

        status = strategy.status()
        assert status["total_deals"] == 1
        assert status["max_safety_orders_used"] == 1
        assert status["average_safety_orders"] == pytest.approx(1.0)
        assert status["last_deal_close"] is not None

    def test_signal_ids_tagged_with_deal(self):
        strategy = make_strategy()
        signals = run(strategy, ["100", "99"])
        assert {s.group_id for s in signals} == {"dca-deal-1"}
        assert signals[1].metadata["safety_order_number"] == 1

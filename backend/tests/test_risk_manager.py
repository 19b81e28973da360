"""Tests for the risk manager."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from core.models import (
    Direction,
    PerformanceMetrics,
    Position,
    PositionId,
    RiskConfig,
    RiskState,
    Signal,
    SignalKind,
)
from core.risk import RiskManager, count_position_groups

T0 = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)


def make_signal(**kwargs) -> Signal:
    params = dict(
        strategy_id="bot-1",
        symbol="EURUSD",
        direction=Direction.BUY,
        entry_price=Decimal("1.1000"),
        stop_loss=Decimal("1.0950"),
        take_profit=Decimal("1.1100"),
        lot_size=Decimal("1000"),
        timestamp=T0,
    )
    params.update(kwargs)
    return Signal(**params)


def make_position(pid: int, symbol: str = "EURUSD", group_id: str | None = None, **kwargs) -> Position:
    params = dict(
        position_id=PositionId(pid),
        strategy_id="bot-1",
        symbol=symbol,
        direction=Direction.BUY,
        lot_size=Decimal("1000"),
        entry_price=Decimal("1.1000"),
        open_time=T0,
        group_id=group_id,
    )
    params.update(kwargs)
    return Position.open(**params)


def check(assessment, name: str):
    return next(c for c in assessment.checks if c.name == name)


class TestPositionSizing:
    """Tests for risk-based sizing."""

    def test_fixed_fractional_respects_risk_amount(self):
        manager = RiskManager()
        validated = manager.validate(make_signal(), [], RiskState())

        assert validated is not None
        assert validated.lot_size * Decimal("0.0050") == Decimal("200")
        assert validated.lot_size == Decimal("40000")
        assert validated.risk_amount == Decimal("200")

    def test_margin_cap(self):
        manager = RiskManager(RiskConfig(max_position_balance_pct=Decimal("0.1")))
        size = manager.position_size(make_signal())
        # 10000 * 0.1 * 10 / 1.1
        assert size == Decimal("10000") / Decimal("1.1")

    def test_scale_in_keeps_size(self):
        manager = RiskManager()
        signal = make_signal(kind=SignalKind.SCALE_IN, lot_size=Decimal("500"))
        assert manager.position_size(signal) == Decimal("500")

    def test_no_stop_keeps_size(self):
        manager = RiskManager()
        assert manager.position_size(make_signal(stop_loss=None)) == Decimal("1000")

    def test_kelly_sizing(self):
        config = RiskConfig(sizing_method="kelly")
        manager = RiskManager(config)
        metrics = PerformanceMetrics(
            total_trades=10,
            win_rate=0.6,
            average_win=Decimal("100"),
            average_loss=Decimal("50"),
        )
        # kelly = (0.6*100 - 0.4*50)/100 = 0.4, * 0.25 = 0.1, capped at 0.02
        assert manager.kelly_size(Decimal("0.6"), Decimal("100"), Decimal("50")) == Decimal("200")
        assert manager.position_size(make_signal(), metrics=metrics) == Decimal("40000")

    def test_kelly_never_negative(self):
        manager = RiskManager()
        assert manager.kelly_size(Decimal("0.1"), Decimal("10"), Decimal("100")) == 0


class TestChecks:
    """Tests for the individual validation checks."""

    def test_all_pass(self):
        assessment = RiskManager().evaluate(make_signal(), [], RiskState())
        assert assessment.passed
        assert assessment.reasons == []

    def test_risk_reward_rejection(self):
        signal = make_signal(take_profit=Decimal("1.1050"))  # 1:1
        assessment = RiskManager().evaluate(signal, [], RiskState())

        assert not assessment.passed
        assert [c.name for c in assessment.failures] == ["risk_reward"]

    def test_undefined_risk_reward_passes(self):
        assessment = RiskManager().evaluate(make_signal(take_profit=None), [], RiskState())
        assert check(assessment, "risk_reward").passed

    def test_max_positions(self):
        config = RiskConfig(max_positions=2)
        positions = [make_position(1, "USDJPY"), make_position(2, "AUDUSD")]
        assessment = RiskManager(config).evaluate(make_signal(), positions, RiskState())
        assert not check(assessment, "max_positions").passed

    def test_deal_positions_count_once(self):
        positions = [make_position(1, group_id="d1"), make_position(2, group_id="d1"), make_position(3, "USDJPY")]
        assert count_position_groups(positions) == 2

    def test_same_symbol_rejected(self):
        assessment = RiskManager().evaluate(make_signal(), [make_position(1)], RiskState())
        assert not check(assessment, "correlation").passed

    def test_scale_in_same_symbol_allowed(self):
        signal = make_signal(kind=SignalKind.SCALE_IN, group_id="d1")
        assessment = RiskManager().evaluate(signal, [make_position(1, group_id="d1")], RiskState())
        assert check(assessment, "correlation").passed

    def test_correlated_symbol_rejected(self):
        positions = [make_position(1, "GBP_USD")]
        assessment = RiskManager().evaluate(make_signal(), positions, RiskState())
        failed = check(assessment, "correlation")
        assert not failed.passed
        assert "GBP_USD" in failed.reason

    def test_daily_risk_and_drawdown(self):
        state = RiskState(daily_risk_used=Decimal("0.05"), current_drawdown=Decimal("0.2"))
        assessment = RiskManager().evaluate(make_signal(), [], state)
        names = {c.name for c in assessment.failures}
        assert names == {"daily_risk", "drawdown"}

    def test_volatility(self):
        signal = make_signal(metadata={"atr": "0.1"})
        assessment = RiskManager().evaluate(signal, [], RiskState())
        assert not check(assessment, "volatility").passed

    def test_leverage(self):
        signal = make_signal(lot_size=Decimal("200000"))
        assessment = RiskManager().evaluate(signal, [], RiskState())
        assert not check(assessment, "leverage").passed

    def test_halted_state_rejects(self):
        state = RiskState(halted=True, halt_reasons=["manual"])
        assert RiskManager().validate(make_signal(), [], state) is None

    def test_every_reason_reported(self):
        signal = make_signal(take_profit=Decimal("1.1050"), lot_size=Decimal("200000"))
        assessment = RiskManager().evaluate(signal, [make_position(1)], RiskState())
        assert len(assessment.reasons) == 3


class TestStops:
    """Tests for dynamic and trailing stops."""

    def test_dynamic_levels(self):
        stop, target = RiskManager().dynamic_levels(Decimal("1.1000"), Direction.BUY, Decimal("0.0010"))
        assert stop == Decimal("1.0980")
        assert target == Decimal("1.1030")

    def test_dynamic_levels_short(self):
        stop, target = RiskManager().dynamic_levels(
            Decimal("1.1000"), Direction.SELL, Decimal("0.0010"), risk_reward=Decimal("2")
        )
        assert stop == Decimal("1.1020")
        assert target == Decimal("1.0960")

    def test_trailing_stop_never_loosens(self):
        manager = RiskManager()
        position = make_position(1, stop_loss=Decimal("1.0990"))
        assert manager.trailing_stop(position, Decimal("1.1050"), Decimal("0.0010")) == Decimal("1.1030")
        assert manager.trailing_stop(position, Decimal("1.0990"), Decimal("0.0010")) == Decimal("1.0990")


class TestRiskState:
    """Tests for bookkeeping and the emergency stop."""

    def test_record_trade_risk_rolls_daily(self):
        manager = RiskManager()
        state = RiskState()
        validated = manager.validate(make_signal(), [], state)

        manager.record_trade_risk(state, validated, Decimal("10000"), T0)
        assert state.daily_risk_used == Decimal("0.02")

        manager.record_trade_risk(state, validated, Decimal("10000"), T0 + timedelta(days=1))
        assert state.daily_risk_used == Decimal("0.02")
        assert state.risk_day == (T0 + timedelta(days=1)).date()

    def test_record_outcome_streak(self):
        manager = RiskManager()
        state = RiskState()
        manager.record_outcome(state, Decimal("-10"), T0)
        manager.record_outcome(state, Decimal("-5"), T0)
        assert state.consecutive_losses == 2
        assert state.daily_loss == Decimal("15")

        manager.record_outcome(state, Decimal("3"), T0)
        assert state.consecutive_losses == 0

    def test_update_drawdown(self):
        manager = RiskManager()
        state = RiskState()
        manager.update_drawdown(state, Decimal("10000"))
        assert manager.update_drawdown(state, Decimal("9000")) == Decimal("0.1")
        manager.update_drawdown(state, Decimal("9500"))
        assert state.max_drawdown_reached == Decimal("0.1")
        assert state.current_drawdown == Decimal("0.05")

    def test_emergency_stop_on_drawdown(self):
        manager = RiskManager()
        state = RiskState(current_drawdown=Decimal("0.2"))
        status = manager.emergency_stop(state, [])

        assert status.should_stop
        assert status.conditions["max_drawdown_exceeded"]
        assert state.halted
        assert manager.validate(make_signal(), [], state) is None

    def test_emergency_stop_on_losses(self):
        manager = RiskManager(RiskConfig(max_consecutive_losses=2))
        state = RiskState(consecutive_losses=2)
        assert manager.emergency_stop(state, []).conditions["consecutive_losses"]

    def test_emergency_stop_on_heat(self):
        manager = RiskManager()
        # 0.0500 * 50000 = 2500 at risk, a quarter of the balance
        position = make_position(1, lot_size=Decimal("50000"), stop_loss=Decimal("1.0500"))
        status = manager.emergency_stop(RiskState(), [position])
        assert status.conditions["portfolio_heat_too_high"]

    def test_no_emergency(self):
        status = RiskManager().emergency_stop(RiskState(), [])
        assert not status.should_stop
        assert status.reasons == []

    def test_clear_emergency_stop(self):
        manager = RiskManager()
        state = RiskState(consecutive_losses=6)
        manager.emergency_stop(state, [])
        assert state.halted

        manager.clear_emergency_stop(state)
        assert not state.halted
        assert state.halt_reasons == []
        assert manager.evaluate(make_signal(), [], state).passed

    def test_risk_metrics(self):
        manager = RiskManager()
        state = RiskState(daily_risk_used=Decimal("0.01"))
        metrics = manager.risk_metrics(state, [])
        assert metrics["daily_risk_remaining"] == Decimal("0.04")
        assert metrics["halted"] is False
        assert metrics["portfolio_heat"] == 0

    @pytest.mark.parametrize("balance", [Decimal("0"), Decimal("-1")])
    def test_non_positive_balance_rejected(self, balance):
        assessment = RiskManager().evaluate(make_signal(), [], RiskState(), balance=balance)
        assert not check(assessment, "leverage").passed

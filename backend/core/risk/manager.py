"""Risk Manager: the gate between strategy signals and execution.

``evaluate`` runs every check and reports each one; ``validate`` turns a
passing signal into a sized ``ValidatedSignal`` and logs all failed reasons
otherwise. The manager holds no per-bot state: callers pass the bot's
``RiskState``, open positions and ``RiskConfig`` explicitly.

Checks (all must pass):
1. open position groups < max_positions
2. daily_risk_used < max_daily_risk
3. current_drawdown < max_drawdown
4. risk/reward >= min_risk_reward_ratio (when both stop and target are set)
5. no open position in the same symbol (scale-ins excepted) and
   |correlation| < correlation_limit against every open symbol
6. ATR / entry < max_volatility_ratio (when the signal reports ATR)
7. lot_size * entry / balance < max_leverage

A halted state (emergency stop) fails everything until cleared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from core.models import (
    Direction,
    PerformanceMetrics,
    Position,
    RiskConfig,
    RiskState,
    Signal,
    SignalKind,
    trailing_stop_price,
)
from core.risk.correlation import correlation

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(slots=True)
class CheckResult:
    """Outcome of one risk check."""

    name: str
    passed: bool
    reason: str


@dataclass(slots=True)
class RiskAssessment:
    """All check results for one signal."""

    signal_id: str
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.passed]

    @property
    def reasons(self) -> list[str]:
        return [c.reason for c in self.failures]


@dataclass(slots=True)
class EmergencyStatus:
    should_stop: bool
    reasons: list[str]
    conditions: dict[str, bool]


class ValidatedSignal(BaseModel):
    """A signal that passed every check, with its risk-adjusted size."""

    model_config = ConfigDict(frozen=True)

    signal: Signal
    lot_size: Decimal
    risk_amount: Decimal | None = None  # Money lost if the stop is hit

    @property
    def symbol(self) -> str:
        return self.signal.symbol

    @property
    def direction(self) -> Direction:
        return self.signal.direction

    @property
    def entry_price(self) -> Decimal:
        return self.signal.entry_price

    @property
    def stop_loss(self) -> Decimal | None:
        return self.signal.stop_loss

    @property
    def take_profit(self) -> Decimal | None:
        return self.signal.take_profit


def count_position_groups(positions: Iterable[Position]) -> int:
    """Open positions sharing a group id (DCA deal) count once."""
    groups = set()
    count = 0
    for p in positions:
        if p.group_id is None:
            count += 1
        elif p.group_id not in groups:
            groups.add(p.group_id)
            count += 1
    return count


class RiskManager:
    """Stateless risk gate and risk-state bookkeeping."""

    def __init__(self, config: RiskConfig | None = None):
        self.config = config or RiskConfig()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        signal: Signal,
        open_positions: list[Position],
        state: RiskState,
        config: RiskConfig | None = None,
        balance: Decimal | None = None,
    ) -> RiskAssessment:
        """Run every check and report each result."""
        cfg = config or self.config
        balance = cfg.account_balance if balance is None else balance
        assessment = RiskAssessment(signal_id=signal.id)
        checks = assessment.checks

        if state.halted:
            checks.append(CheckResult(
                "emergency_stop", False,
                "Emergency stop active: " + ", ".join(state.halt_reasons or ["manual"]),
            ))

        # 1. Position count
        groups = count_position_groups(open_positions)
        checks.append(CheckResult(
            "max_positions",
            groups < cfg.max_positions,
            f"Open positions: {groups}/{cfg.max_positions}",
        ))

        # 2. Daily risk budget
        checks.append(CheckResult(
            "daily_risk",
            state.daily_risk_used < cfg.max_daily_risk,
            f"Daily risk used: {state.daily_risk_used:.4f}/{cfg.max_daily_risk}",
        ))

        # 3. Drawdown
        checks.append(CheckResult(
            "drawdown",
            state.current_drawdown < cfg.max_drawdown,
            f"Drawdown: {state.current_drawdown:.4f}/{cfg.max_drawdown}",
        ))

        # 4. Risk/reward
        rr = signal.risk_reward
        if rr is None:
            checks.append(CheckResult("risk_reward", True, "Risk/reward undefined (no stop or target)"))
        else:
            checks.append(CheckResult(
                "risk_reward",
                rr >= cfg.min_risk_reward_ratio,
                f"Risk/reward: {rr:.2f}/{cfg.min_risk_reward_ratio}",
            ))

        # 5. Same symbol and correlation
        checks.append(self._exposure_check(signal, open_positions, cfg))

        # 6. Volatility
        atr = signal.atr
        if atr is None or signal.entry_price <= 0:
            checks.append(CheckResult("volatility", True, "Volatility not reported"))
        else:
            ratio = atr / signal.entry_price
            checks.append(CheckResult(
                "volatility",
                ratio < cfg.max_volatility_ratio,
                f"Volatility: {ratio:.5f}/{cfg.max_volatility_ratio}",
            ))

        # 7. Leverage
        if balance <= 0:
            checks.append(CheckResult("leverage", False, "Account balance is not positive"))
        else:
            leverage = signal.lot_size * signal.entry_price / balance
            checks.append(CheckResult(
                "leverage",
                leverage < cfg.max_leverage,
                f"Leverage: {leverage:.2f}x/{cfg.max_leverage}x",
            ))

        return assessment

    def _exposure_check(
        self, signal: Signal, open_positions: list[Position], cfg: RiskConfig
    ) -> CheckResult:
        problems = []
        seen = set()
        for p in open_positions:
            if p.symbol in seen:
                continue
            seen.add(p.symbol)
            if p.symbol == signal.symbol:
                if signal.kind != SignalKind.SCALE_IN:
                    problems.append(f"Position already open in {p.symbol}")
                continue
            corr = correlation(signal.symbol, p.symbol)
            if abs(corr) >= cfg.correlation_limit:
                problems.append(f"High correlation ({corr:.2f}) with {p.symbol}")
        if problems:
            return CheckResult("correlation", False, "; ".join(problems))
        return CheckResult("correlation", True, "No conflicting exposure")

    def position_size(
        self,
        signal: Signal,
        config: RiskConfig | None = None,
        balance: Decimal | None = None,
        metrics: PerformanceMetrics | None = None,
    ) -> Decimal:
        """Risk-adjusted lot size.

        Fixed-fractional: ``balance * max_risk_per_trade / |entry - stop|``.
        Kelly (when configured and trade history exists) replaces the risk
        amount. Signals without a stop and scale-ins keep their own size.
        Both are clamped by the margin cap and the leverage cap.
        """
        cfg = config or self.config
        balance = cfg.account_balance if balance is None else balance
        distance = signal.risk_distance

        if signal.kind == SignalKind.SCALE_IN or not distance:
            size = signal.lot_size
        else:
            risk_amount = balance * cfg.max_risk_per_trade
            if cfg.sizing_method == "kelly" and metrics is not None and metrics.total_trades > 0:
                risk_amount = self.kelly_size(
                    Decimal(str(metrics.win_rate)),
                    metrics.average_win,
                    metrics.average_loss,
                    balance,
                    cfg,
                )
            size = risk_amount / distance

        price = signal.entry_price
        if price > 0:
            margin_cap = balance * cfg.max_position_balance_pct * cfg.max_leverage / price
            leverage_cap = balance * cfg.max_leverage / price
            size = min(size, margin_cap, leverage_cap)
        return size

    def approve(
        self,
        signal: Signal,
        assessment: RiskAssessment,
        config: RiskConfig | None = None,
        balance: Decimal | None = None,
        metrics: PerformanceMetrics | None = None,
    ) -> ValidatedSignal | None:
        """Size a signal whose assessment passed."""
        if not assessment.passed:
            return None
        size = self.position_size(signal, config, balance, metrics)
        if size <= 0:
            logger.warning(f"Signal {signal.id[:8]} rejected: non-positive size {size}")
            return None
        distance = signal.risk_distance
        return ValidatedSignal(
            signal=signal,
            lot_size=size,
            risk_amount=distance * size if distance else None,
        )

    def validate(
        self,
        signal: Signal,
        open_positions: list[Position],
        state: RiskState,
        config: RiskConfig | None = None,
        balance: Decimal | None = None,
        metrics: PerformanceMetrics | None = None,
    ) -> ValidatedSignal | None:
        """Evaluate, log every failed reason, and size a passing signal."""
        assessment = self.evaluate(signal, open_positions, state, config, balance)
        if not assessment.passed:
            logger.warning(
                "Signal %s (%s %s %s) rejected: %s",
                signal.id[:8], signal.strategy_id, signal.direction.name, signal.symbol,
                "; ".join(assessment.reasons),
            )
            return None
        return self.approve(signal, assessment, config, balance, metrics)

    # ------------------------------------------------------------------
    # Stops and sizing helpers
    # ------------------------------------------------------------------

    def dynamic_levels(
        self,
        entry: Decimal,
        direction: Direction,
        atr: Decimal,
        config: RiskConfig | None = None,
        risk_reward: Decimal | None = None,
    ) -> tuple[Decimal, Decimal]:
        """Stop ``atr * volatility_multiplier`` away and a target at ``risk_reward`` times that."""
        cfg = config or self.config
        distance = atr * cfg.volatility_multiplier
        ratio = risk_reward if risk_reward is not None else cfg.min_risk_reward_ratio
        sign = direction.value
        return entry - sign * distance, entry + sign * distance * ratio

    def trailing_stop(
        self,
        position: Position,
        price: Decimal,
        atr: Decimal,
        config: RiskConfig | None = None,
    ) -> Decimal | None:
        """Trail ``atr * volatility_multiplier`` behind price. Never loosens."""
        cfg = config or self.config
        return trailing_stop_price(
            position.direction, position.stop_loss, price, atr * cfg.volatility_multiplier
        )

    def kelly_size(
        self,
        win_rate: Decimal,
        average_win: Decimal,
        average_loss: Decimal,
        balance: Decimal | None = None,
        config: RiskConfig | None = None,
    ) -> Decimal:
        """Money to risk under a fractional Kelly criterion.

        kelly = (p * W - (1 - p) * L) / W, scaled by ``kelly_fraction`` and
        capped at ``max_risk_per_trade``; never negative.
        """
        cfg = config or self.config
        balance = cfg.account_balance if balance is None else balance
        if average_loss == 0 or average_win == 0:
            return ZERO
        kelly = (win_rate * average_win - (1 - win_rate) * average_loss) / average_win
        fraction = max(ZERO, min(kelly * cfg.kelly_fraction, cfg.max_risk_per_trade))
        return balance * fraction

    @staticmethod
    def portfolio_heat(positions: Iterable[Position], balance: Decimal) -> Decimal:
        """Total money at risk to the stops, as a fraction of balance."""
        if balance <= 0:
            return ZERO
        total = sum((p.risk_amount or ZERO for p in positions), ZERO)
        return total / balance

    # ------------------------------------------------------------------
    # Emergency stop
    # ------------------------------------------------------------------

    def emergency_stop(
        self,
        state: RiskState,
        positions: list[Position],
        config: RiskConfig | None = None,
        balance: Decimal | None = None,
    ) -> EmergencyStatus:
        """Check halt conditions; latch ``state.halted`` when any holds."""
        cfg = config or self.config
        balance = cfg.account_balance if balance is None else balance
        daily_loss = state.daily_loss / balance if balance > 0 else ZERO
        heat = self.portfolio_heat(positions, balance)

        conditions = {
            "max_drawdown_exceeded": state.current_drawdown >= cfg.max_drawdown,
            "daily_loss_limit_exceeded": daily_loss >= cfg.max_daily_loss,
            "portfolio_heat_too_high": heat >= cfg.max_portfolio_heat,
            "consecutive_losses": state.consecutive_losses >= cfg.max_consecutive_losses,
        }
        details = {
            "max_drawdown_exceeded": f"drawdown {state.current_drawdown:.4f} >= {cfg.max_drawdown}",
            "daily_loss_limit_exceeded": f"daily loss {daily_loss:.4f} >= {cfg.max_daily_loss}",
            "portfolio_heat_too_high": f"portfolio heat {heat:.4f} >= {cfg.max_portfolio_heat}",
            "consecutive_losses": (
                f"{state.consecutive_losses} consecutive losses >= {cfg.max_consecutive_losses}"
            ),
        }
        reasons = [details[name] for name, hit in conditions.items() if hit]

        if reasons and not state.halted:
            state.halted = True
            state.halt_reasons = reasons
            logger.warning("Emergency stop triggered: %s", "; ".join(reasons))
        return EmergencyStatus(should_stop=bool(reasons), reasons=reasons, conditions=conditions)

    def clear_emergency_stop(self, state: RiskState) -> None:
        """Lift the halt latch and restart the loss streak."""
        if state.halted:
            logger.info("Emergency stop cleared (was: %s)", "; ".join(state.halt_reasons))
        state.halted = False
        state.halt_reasons = []
        state.consecutive_losses = 0

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _roll_day(state: RiskState, day: date) -> None:
        if state.risk_day != day:
            state.risk_day = day
            state.daily_risk_used = ZERO
            state.daily_loss = ZERO

    def reset_daily_risk(self, state: RiskState, day: date | None = None) -> None:
        state.daily_risk_used = ZERO
        state.daily_loss = ZERO
        state.risk_day = day

    def record_trade_risk(
        self,
        state: RiskState,
        validated: ValidatedSignal,
        balance: Decimal,
        time: datetime,
    ) -> None:
        """Charge an executed trade's stop risk to the daily budget."""
        self._roll_day(state, time.date())
        if validated.risk_amount is not None and balance > 0:
            state.daily_risk_used += validated.risk_amount / balance

    def record_outcome(self, state: RiskState, profit: Decimal, time: datetime) -> None:
        """Update the loss streak and realized daily loss with a closed trade."""
        self._roll_day(state, time.date())
        if profit < 0:
            state.daily_loss += -profit
            state.consecutive_losses += 1
        else:
            state.consecutive_losses = 0

    def update_drawdown(self, state: RiskState, equity: Decimal) -> Decimal:
        """Track the equity high-water mark; returns the current drawdown."""
        if equity > state.peak_equity:
            state.peak_equity = equity
        if state.peak_equity > 0:
            state.current_drawdown = (state.peak_equity - equity) / state.peak_equity
        else:
            state.current_drawdown = ZERO
        if state.current_drawdown > state.max_drawdown_reached:
            state.max_drawdown_reached = state.current_drawdown
        return state.current_drawdown

    def risk_metrics(
        self,
        state: RiskState,
        positions: list[Position],
        config: RiskConfig | None = None,
        balance: Decimal | None = None,
    ) -> dict:
        cfg = config or self.config
        balance = cfg.account_balance if balance is None else balance
        return {
            "daily_risk_used": state.daily_risk_used,
            "daily_risk_remaining": max(ZERO, cfg.max_daily_risk - state.daily_risk_used),
            "daily_loss": state.daily_loss,
            "current_drawdown": state.current_drawdown,
            "max_drawdown_reached": state.max_drawdown_reached,
            "portfolio_heat": self.portfolio_heat(positions, balance),
            "open_positions": len(positions),
            "consecutive_losses": state.consecutive_losses,
            "halted": state.halted,
            "halt_reasons": list(state.halt_reasons),
        }

"""Simulated account used by the backtest engine in place of a broker.

Fills are shifted by a fixed slippage against the trader on both entry and
exit, and commission is charged on notional value per side. The open
commission leaves the balance when the position opens; gross P&L and the
close commission settle when it closes, so the final balance is the initial
balance plus the sum of net trade P&L.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from core.errors import PositionStateError
from core.models import Direction, Position, PositionId

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class LedgerEntry:
    """Bookkeeping of one open simulated position."""

    position_id: PositionId
    direction: Direction
    lot_size: Decimal
    entry_price: Decimal
    open_commission: Decimal
    margin: Decimal


@dataclass
class Trade:
    """A closed simulated position."""

    position_id: PositionId
    symbol: str
    direction: Direction
    lot_size: Decimal
    entry_price: Decimal
    exit_price: Decimal
    open_time: datetime
    close_time: datetime
    gross_pnl: Decimal
    commission: Decimal
    pnl: Decimal  # Net of both commissions
    close_reason: str
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    @property
    def duration_seconds(self) -> float:
        return (self.close_time - self.open_time).total_seconds()


@dataclass
class EquityPoint:
    time: datetime
    balance: Decimal
    equity: Decimal
    drawdown: Decimal
    drawdown_pct: float


class SimulatedLedger:
    """Balance, margin, equity curve and drawdown of a backtest account."""

    def __init__(
        self,
        initial_balance: Decimal,
        leverage: Decimal,
        commission: Decimal,
        slippage: Decimal,
    ):
        self.initial_balance = initial_balance
        self.leverage = leverage
        self.commission = commission
        self.slippage = slippage

        self.balance = initial_balance
        self.equity = initial_balance
        self.peak_equity = initial_balance
        self.max_drawdown = ZERO
        self.max_drawdown_pct = 0.0

        self.trades: list[Trade] = []
        self.equity_curve: list[EquityPoint] = []
        self.rejected_for_margin = 0
        self._open: dict[PositionId, LedgerEntry] = {}

    # ------------------------------------------------------------------
    # Prices and margin
    # ------------------------------------------------------------------

    def entry_fill(self, direction: Direction, price: Decimal) -> Decimal:
        return price + direction.value * self.slippage

    def exit_fill(self, direction: Direction, price: Decimal) -> Decimal:
        return price - direction.value * self.slippage

    def required_margin(self, lot_size: Decimal, price: Decimal) -> Decimal:
        return lot_size * price / self.leverage

    @property
    def used_margin(self) -> Decimal:
        return sum((e.margin for e in self._open.values()), ZERO)

    @property
    def free_margin(self) -> Decimal:
        return self.equity - self.used_margin

    def can_open(self, lot_size: Decimal, price: Decimal) -> bool:
        required = self.required_margin(lot_size, price)
        if required > self.free_margin:
            self.rejected_for_margin += 1
            logger.debug(f"Insufficient margin: required {required}, free {self.free_margin}")
            return False
        return True

    @property
    def open_count(self) -> int:
        return len(self._open)

    # ------------------------------------------------------------------
    # Position lifecycle
    # ------------------------------------------------------------------

    def open(self, position: Position) -> LedgerEntry:
        """Book a newly filled position (its entry price already slipped)."""
        if position.id in self._open:
            raise PositionStateError(f"Position {position.id} is already on the ledger")
        notional = position.lot_size * position.entry_price
        entry = LedgerEntry(
            position_id=position.id,
            direction=position.direction,
            lot_size=position.lot_size,
            entry_price=position.entry_price,
            open_commission=notional * self.commission,
            margin=self.required_margin(position.lot_size, position.entry_price),
        )
        self._open[position.id] = entry
        self.balance -= entry.open_commission
        return entry

    def close(self, position: Position) -> Trade:
        """Settle a position the strategy has closed; returns the trade."""
        entry = self._open.pop(position.id, None)
        if entry is None:
            raise PositionStateError(f"Position {position.id} is not on the ledger")
        if position.close_price is None or position.close_time is None:
            raise PositionStateError(f"Position {position.id} has not been closed")

        exit_price = self.exit_fill(entry.direction, position.close_price)
        gross = entry.direction.value * (exit_price - entry.entry_price) * entry.lot_size
        close_commission = entry.lot_size * exit_price * self.commission
        self.balance += gross - close_commission

        trade = Trade(
            position_id=position.id,
            symbol=position.symbol,
            direction=entry.direction,
            lot_size=entry.lot_size,
            entry_price=entry.entry_price,
            exit_price=exit_price,
            open_time=position.open_time,
            close_time=position.close_time,
            gross_pnl=gross,
            commission=entry.open_commission + close_commission,
            pnl=gross - entry.open_commission - close_commission,
            close_reason=position.close_reason.value if position.close_reason else "",
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
        )
        self.trades.append(trade)
        return trade

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    def mark(self, time: datetime, price: Decimal, positions: Iterable[Position], replace: bool = False) -> EquityPoint:
        """Revalue open positions at ``price`` and append an equity point.

        With ``replace`` the last point is overwritten instead (used after
        closing everything at the end of the data).
        """
        unrealized = sum((p.pnl_at(price) for p in positions if p.is_open), ZERO)
        self.equity = self.balance + unrealized

        if self.equity > self.peak_equity:
            self.peak_equity = self.equity
        drawdown = max(ZERO, self.peak_equity - self.equity)
        drawdown_pct = float(drawdown / self.peak_equity * 100) if self.peak_equity > 0 else 0.0
        self.max_drawdown = max(self.max_drawdown, drawdown)
        self.max_drawdown_pct = max(self.max_drawdown_pct, drawdown_pct)

        point = EquityPoint(
            time=time,
            balance=self.balance,
            equity=self.equity,
            drawdown=drawdown,
            drawdown_pct=drawdown_pct,
        )
        if replace and self.equity_curve:
            self.equity_curve[-1] = point
        else:
            self.equity_curve.append(point)
        return point

"""Per-bot risk state."""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field


class RiskState(BaseModel):
    """Risk bookkeeping for one bot. Mutated only by the RiskManager."""

    daily_risk_used: Decimal = Decimal("0")  # Fraction of balance risked today
    daily_loss: Decimal = Decimal("0")  # Realized loss today (money, positive)
    risk_day: date | None = None
    peak_equity: Decimal = Decimal("0")
    current_drawdown: Decimal = Decimal("0")  # Fraction below peak equity
    max_drawdown_reached: Decimal = Decimal("0")
    consecutive_losses: int = 0
    halted: bool = False
    halt_reasons: list[str] = Field(default_factory=list)

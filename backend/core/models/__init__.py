"""Data models shared by live trading and backtesting."""

from core.models.bar import Bar, BarBuffer
from core.models.config import BotConfig, RiskConfig
from core.models.deal import Deal, DealOrder, DealStatus
from core.models.grid import GridLevel, GridOrder, GridOrderStatus, LevelType
from core.models.performance import PerformanceMetrics, PerformanceTracker
from core.models.position import (
    CloseReason,
    Position,
    PositionId,
    PositionStatus,
    trailing_stop_price,
    triggered_exit,
)
from core.models.risk import RiskState
from core.models.signal import Direction, Signal, SignalKind

__all__ = [
    "Bar",
    "BarBuffer",
    "BotConfig",
    "RiskConfig",
    "Deal",
    "DealOrder",
    "DealStatus",
    "GridLevel",
    "GridOrder",
    "GridOrderStatus",
    "LevelType",
    "PerformanceMetrics",
    "PerformanceTracker",
    "CloseReason",
    "Position",
    "PositionId",
    "PositionStatus",
    "trailing_stop_price",
    "triggered_exit",
    "RiskState",
    "Direction",
    "Signal",
    "SignalKind",
]

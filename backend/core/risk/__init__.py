"""Risk management: signal validation, sizing and emergency stop."""

from core.models.config import RiskConfig
from core.risk.correlation import CORRELATIONS, correlation, normalize_symbol
from core.risk.manager import (
    CheckResult,
    EmergencyStatus,
    RiskAssessment,
    RiskManager,
    ValidatedSignal,
    count_position_groups,
)

__all__ = [
    "RiskConfig",
    "RiskManager",
    "RiskAssessment",
    "CheckResult",
    "EmergencyStatus",
    "ValidatedSignal",
    "count_position_groups",
    "CORRELATIONS",
    "correlation",
    "normalize_symbol",
]

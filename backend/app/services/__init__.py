"""Business services."""

from app.services.broker import Broker, CloseResult, OrderRequest, OrderResult, OrderType, PaperBroker
from app.services.notifications import (
    EngineEvent,
    EventType,
    JsonLinesRecorder,
    LoggingNotifier,
    NotificationHub,
    NotificationSink,
    RecordSink,
)
from app.services.orchestrator import ActionResult, Bot, BotId, BotStatus, Orchestrator
from app.services.replay import BarReplayFeed

__all__ = [
    "Broker",
    "CloseResult",
    "OrderRequest",
    "OrderResult",
    "OrderType",
    "PaperBroker",
    "EngineEvent",
    "EventType",
    "JsonLinesRecorder",
    "LoggingNotifier",
    "NotificationHub",
    "NotificationSink",
    "RecordSink",
    "ActionResult",
    "Bot",
    "BotId",
    "BotStatus",
    "Orchestrator",
    "BarReplayFeed",
]

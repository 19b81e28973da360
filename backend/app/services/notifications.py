"""Engine events and the notification / persistence collaborators.

The engine emits discrete events; how they are delivered (push, email,
dashboard) is the sink's concern. Records of positions and performance are
handed to a record sink; the engine never reads them back.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import orjson
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def _orjson_dumps(obj: Any) -> str:
    """Serialize object to JSON string using orjson."""
    return orjson.dumps(obj, default=str).decode("utf-8")


class EventType(str, Enum):
    SIGNAL_GENERATED = "signal_generated"
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    RISK_REJECTED = "risk_rejected"
    EMERGENCY_STOP = "emergency_stop"


class EngineEvent(BaseModel):
    """Event emitted by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    bot_id: str
    timestamp: datetime  # Bar time that caused the event
    data: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize to JSON string using orjson."""
        return _orjson_dumps(self.model_dump(mode="json"))


@runtime_checkable
class NotificationSink(Protocol):
    async def notify(self, event: EngineEvent) -> None:
        ...


@runtime_checkable
class RecordSink(Protocol):
    async def record(self, record_type: str, payload: dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Writes every event to the log; warnings for rejections and halts."""

    _WARN = (EventType.RISK_REJECTED, EventType.EMERGENCY_STOP)

    async def notify(self, event: EngineEvent) -> None:
        level = logging.WARNING if event.type in self._WARN else logging.INFO
        logger.log(level, "[%s] %s %s", event.bot_id, event.type.value, event.to_json())


class NotificationHub:
    """Fan-out of events to several sinks.

    A failing sink is logged and skipped; it never blocks the others.
    """

    def __init__(self, sinks: list[NotificationSink] | None = None):
        self._sinks: list[NotificationSink] = list(sinks or [])
        self._lock = asyncio.Lock()

    async def add(self, sink: NotificationSink) -> None:
        async with self._lock:
            self._sinks.append(sink)

    async def remove(self, sink: NotificationSink) -> None:
        async with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    async def notify(self, event: EngineEvent) -> None:
        async with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                await sink.notify(event)
            except Exception as e:
                logger.warning(f"Notification sink {type(sink).__name__} failed: {e}")


class JsonLinesRecorder:
    """Appends one JSON object per record to a file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self.count = 0

    async def record(self, record_type: str, payload: dict[str, Any]) -> None:
        line = _orjson_dumps({"type": record_type, **payload})
        async with self._lock:
            await asyncio.to_thread(self._append, line)
            self.count += 1

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

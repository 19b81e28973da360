"""Tests for engine events, the notification hub and the JSON lines recorder."""

import asyncio
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import orjson

from app.services.notifications import EngineEvent, EventType, JsonLinesRecorder, NotificationHub

T0 = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)


def read_lines(path) -> list[dict]:
    return [orjson.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestJsonLinesRecorder:
    """Tests for the append-only record file."""

    @pytest.mark.asyncio
    async def test_appends_one_object_per_record(self, tmp_path):
        path = tmp_path / "records" / "engine.jsonl"
        recorder = JsonLinesRecorder(path)

        await recorder.record("position_opened", {"position_id": 1, "entry_price": Decimal("1.1000")})
        await recorder.record("position_closed", {"position_id": 1, "profit": Decimal("-2.5")})

        assert recorder.count == 2
        records = read_lines(path)
        assert [r["type"] for r in records] == ["position_opened", "position_closed"]
        assert records[0]["entry_price"] == "1.1000"
        assert records[1]["profit"] == "-2.5"

    @pytest.mark.asyncio
    async def test_file_io_runs_in_worker_thread(self, tmp_path, monkeypatch):
        to_thread = AsyncMock(side_effect=lambda fn, *args: fn(*args))
        monkeypatch.setattr(asyncio, "to_thread", to_thread)
        recorder = JsonLinesRecorder(tmp_path / "engine.jsonl")

        await recorder.record("performance", {"total_trades": 3})

        to_thread.assert_awaited_once()
        assert read_lines(tmp_path / "engine.jsonl") == [{"type": "performance", "total_trades": 3}]

    @pytest.mark.asyncio
    async def test_concurrent_records_stay_whole(self, tmp_path):
        path = tmp_path / "engine.jsonl"
        recorder = JsonLinesRecorder(path)

        await asyncio.gather(*(recorder.record("tick", {"n": i}) for i in range(20)))

        records = read_lines(path)
        assert recorder.count == 20
        assert sorted(r["n"] for r in records) == list(range(20))


class TestNotificationHub:
    """Tests for event fan-out."""

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_block_others(self):
        broken = MagicMock()
        broken.notify = AsyncMock(side_effect=RuntimeError("down"))
        healthy = MagicMock()
        healthy.notify = AsyncMock()
        hub = NotificationHub([broken, healthy])
        event = EngineEvent(type=EventType.RISK_REJECTED, bot_id="b1", timestamp=T0)

        await hub.notify(event)

        healthy.notify.assert_awaited_once_with(event)

    def test_event_json(self):
        event = EngineEvent(type=EventType.POSITION_OPENED, bot_id="b1", timestamp=T0, data={"lot": Decimal("1000")})
        payload = orjson.loads(event.to_json())

        assert payload["type"] == "position_opened"
        assert payload["bot_id"] == "b1"
        assert payload["data"]["lot"] == "1000"

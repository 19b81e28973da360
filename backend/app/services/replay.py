"""Bar replay feed for the live engine.

Feeds recorded bars through the orchestrator the way a market-data
collaborator would, one closed bar at a time in timestamp order. In lockstep
mode every bar is fully processed by all bots before the next one is
published, which makes a replay deterministic.
"""

import logging
from pathlib import Path
from typing import Iterable

from app.services.orchestrator import Orchestrator
from backtest.data import load_bars_csv
from core.models import Bar

logger = logging.getLogger(__name__)

# Log progress every N bars
PROGRESS_INTERVAL = 1000


class BarReplayFeed:
    """Publishes historical bars to an orchestrator."""

    def __init__(self, orchestrator: Orchestrator, lockstep: bool = True):
        self.orchestrator = orchestrator
        self.lockstep = lockstep
        self.published = 0
        self.skipped = 0  # Bars no running bot subscribed to

    async def replay(self, bars: Iterable[Bar]) -> int:
        """Publish bars in timestamp order; returns the number published."""
        ordered = sorted(bars, key=lambda b: (b.timestamp, b.symbol, b.timeframe))
        for bar in ordered:
            queued = await self.orchestrator.publish(bar)
            if queued == 0:
                self.skipped += 1
            self.published += 1
            if self.lockstep:
                await self.orchestrator.wait_idle()
            if self.published % PROGRESS_INTERVAL == 0:
                logger.info(f"Replay progress: {self.published}/{len(ordered)} bars")

        await self.orchestrator.wait_idle()
        logger.info(f"Replay complete: {self.published} bars, {self.skipped} without subscribers")
        return self.published

    async def replay_csv(self, path: Path, symbol: str, timeframe: str) -> int:
        """Replay bars from a CSV file (see ``backtest.data.load_bars_csv``)."""
        return await self.replay(load_bars_csv(path, symbol=symbol, timeframe=timeframe))

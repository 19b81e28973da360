"""Main application entry point.

Runs the configured bots against the paper broker, fed by recorded bars.

Usage:
    python -m app --bars data/EURUSD_1m.csv
    python -m app --config bots.yaml --bars data/EURUSD_1m.csv --records records.jsonl
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from app.bots_config import load_bots_config
from app.config import Settings, get_settings
from app.services import (
    BarReplayFeed,
    JsonLinesRecorder,
    LoggingNotifier,
    NotificationHub,
    Orchestrator,
    PaperBroker,
)
from core.errors import ConfigError
from core.risk import RiskManager

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> Orchestrator:
    """Wire the orchestrator with the paper broker and logging notifier."""
    recorder = JsonLinesRecorder(settings.records_path) if settings.records_path else None
    return Orchestrator(
        broker=PaperBroker(),
        risk_manager=RiskManager(),
        notifier=NotificationHub([LoggingNotifier()]),
        recorder=recorder,
        settings=settings,
    )


async def run(settings: Settings, bars_path: Path) -> dict:
    """Start every enabled bot, replay the bars, return the final status."""
    bots = load_bots_config(settings.bots_config).get_enabled_bots()
    if not bots:
        logger.warning("No enabled bots configured, nothing to run")
        return {}

    orchestrator = build_orchestrator(settings)
    feed = BarReplayFeed(orchestrator)

    try:
        for bot in bots:
            await orchestrator.add_bot(bot)
            await orchestrator.start(bot.bot_id)

        # One replay per subscribed series
        for symbol, timeframe in sorted({(b.symbol, b.timeframe) for b in bots}):
            await feed.replay_csv(bars_path, symbol=symbol, timeframe=timeframe)

        statuses = await orchestrator.status_all()
        for bot_id, status in statuses.items():
            perf = status["performance"]
            logger.info(
                f"{bot_id}: {status['status']} trades={perf['total_trades']} "
                f"win_rate={perf['win_rate']:.2%} net={perf['net_profit']} "
                f"open={status['open_positions']}"
            )
        return statuses
    finally:
        await orchestrator.shutdown()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run trading bots on recorded bars")
    parser.add_argument("--bars", type=Path, required=True, help="CSV file of bars")
    parser.add_argument("--config", type=Path, default=None, help="Bots YAML (default: ENGINE_BOTS_CONFIG)")
    parser.add_argument("--records", type=Path, default=None, help="JSON-lines record output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()
    updates = {}
    if args.config is not None:
        updates["bots_config"] = args.config
    if args.records is not None:
        updates["records_path"] = args.records
    if updates:
        settings = settings.model_copy(update=updates)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run(settings, args.bars))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(f"Bars file not found: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""CLI entry point for the backtesting system.

Usage:
    python -m backtest --bars data/EURUSD_1m.csv --symbol EURUSD --strategy scalping
    python -m backtest --bars data/EURUSD_1m.csv --symbol EURUSD --strategy dca \
        --params '{"deal_start_condition": "always"}'
    python -m backtest --bars data/EURUSD_1m.csv --config bots.yaml -o results.json
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone

from app.bots_config import load_bots_config
from core.errors import ConfigError
from core.models import BotConfig
from core.strategy import list_strategies

from backtest.config import get_backtest_settings
from backtest.data import load_bars_csv
from backtest.report import ReportFormatter
from backtest.runner import BacktestJob, BacktestRunner

logger = logging.getLogger(__name__)


def parse_date(date_str: str) -> datetime:
    """Parse YYYY-MM-DD to timezone-aware datetime."""
    try:
        dt = datetime.strptime(date_str, "%Y-%m-%d")
        return dt.replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid date format: {date_str} (expected YYYY-MM-DD)"
        )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Backtest trading strategies on recorded bars",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m backtest --bars eurusd.csv --symbol EURUSD --strategy scalping
  python -m backtest --bars eurusd.csv --config bots.yaml --output results.json
        """,
    )
    parser.add_argument("--bars", type=str, required=True, help="CSV file of bars")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Bots YAML; every enabled bot is backtested on its symbol/timeframe",
    )
    parser.add_argument(
        "--strategy",
        type=str,
        default="scalping",
        help=f"Strategy type when no --config is given ({', '.join(list_strategies())})",
    )
    parser.add_argument("--symbol", type=str, default="EURUSD", help="Symbol (default: EURUSD)")
    parser.add_argument("--timeframe", type=str, default="1m", help="Timeframe (default: 1m)")
    parser.add_argument(
        "--params",
        type=str,
        default="{}",
        help="Strategy params as a JSON object",
    )
    parser.add_argument("--start", type=parse_date, default=None, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=parse_date, default=None, help="End date (YYYY-MM-DD)")
    parser.add_argument(
        "--sequential",
        action="store_true",
        help="Run several backtests in this process instead of a process pool",
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Output file path for JSON results (one run) or directory (several runs)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )
    return parser.parse_args()


def build_jobs(args: argparse.Namespace) -> list[BacktestJob]:
    if args.config:
        bots = load_bots_config(args.config).get_enabled_bots()
    else:
        bots = [
            BotConfig(
                bot_id=f"{args.strategy}-{args.symbol}-{args.timeframe}".lower(),
                strategy_type=args.strategy,
                symbol=args.symbol,
                timeframe=args.timeframe,
                strategy_params=json.loads(args.params),
            )
        ]

    end = args.end.replace(hour=23, minute=59, second=59) if args.end else None
    jobs = []
    series: dict[tuple[str, str], list] = {}
    for bot in bots:
        key = (bot.symbol, bot.timeframe)
        if key not in series:
            bars = load_bars_csv(args.bars, symbol=bot.symbol, timeframe=bot.timeframe)
            series[key] = [
                b for b in bars
                if (args.start is None or b.timestamp >= args.start)
                and (end is None or b.timestamp <= end)
            ]
        jobs.append(BacktestJob(bot=bot, bars=series[key]))
    return jobs


def main() -> int:
    args = parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        jobs = build_jobs(args)
    except (ConfigError, ValueError, FileNotFoundError) as e:
        print(f"Error: {e}")
        return 1
    if not jobs:
        print("No enabled bots to backtest.")
        return 1

    runner = BacktestRunner(get_backtest_settings())
    results = runner.run_many(jobs, parallel=not args.sequential)

    failed = 0
    for bot_id, result in results.items():
        if result is None:
            print(f"\nBacktest {bot_id} failed (see log)")
            failed += 1
            continue
        ReportFormatter.print_console(result)
        if args.output:
            if len(results) == 1:
                path = args.output
            else:
                os.makedirs(args.output, exist_ok=True)
                path = os.path.join(args.output, f"{bot_id}.json")
            ReportFormatter.save_json(result, path)

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())

"""BacktestRunner: builds engines from bot configurations and runs them.

Each run owns its strategy, risk state and ledger, so independent runs can
execute in parallel worker processes. Run ids are derived from the bot
configuration and the bar span only, so repeating a run reproduces its id.
"""

from __future__ import annotations

import hashlib
import logging
import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass

from core.models import Bar, BotConfig
from core.strategy import build_strategy

from backtest.config import BacktestSettings, get_backtest_settings
from backtest.engine import BacktestEngine
from backtest.stats import BacktestResult

logger = logging.getLogger(__name__)


@dataclass
class BacktestJob:
    """One strategy configuration over one bar series."""

    bot: BotConfig
    bars: list[Bar]


def generate_run_id(job: BacktestJob) -> str:
    """Stable id from the bot config and the first/last bar times."""
    first = job.bars[0].timestamp.isoformat() if job.bars else ""
    last = job.bars[-1].timestamp.isoformat() if job.bars else ""
    key = f"{job.bot.model_dump_json()}:{first}:{last}:{len(job.bars)}"
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def run_job(job: BacktestJob, settings: BacktestSettings | None = None) -> BacktestResult:
    """Run one job in the current process.

    Raises:
        ConfigError: Unknown strategy type or invalid strategy params.
    """
    strategy = build_strategy(job.bot)
    risk_config = job.bot.risk_params
    settings = settings or get_backtest_settings()
    if "account_balance" not in risk_config.model_fields_set:
        risk_config = risk_config.model_copy(update={"account_balance": settings.initial_balance})
    engine = BacktestEngine(strategy, risk_config=risk_config, settings=settings)
    return engine.run(job.bars)


def _run_job_worker(args: tuple[BacktestJob, BacktestSettings]) -> BacktestResult:
    job, settings = args
    return run_job(job, settings)


class BacktestRunner:
    """Run one or many backtests."""

    def __init__(self, settings: BacktestSettings | None = None):
        self.settings = settings or get_backtest_settings()

    def run(self, job: BacktestJob) -> BacktestResult:
        run_id = generate_run_id(job)
        start_time = time.time()
        logger.info(
            f"Starting backtest run={run_id}: {job.bot.bot_id} "
            f"({job.bot.strategy_type} {job.bot.symbol} {job.bot.timeframe}, {len(job.bars):,} bars)"
        )
        result = run_job(job, self.settings)
        logger.info(f"Backtest run={run_id} completed in {time.time() - start_time:.1f}s")
        return result

    def run_many(self, jobs: list[BacktestJob], parallel: bool = True) -> dict[str, BacktestResult | None]:
        """Run independent jobs, in worker processes when ``parallel``.

        Returns results keyed by bot id, in job order. A failed run is
        logged and reported as None; it does not stop the others.
        """
        results: dict[str, BacktestResult | None] = {}
        if not jobs:
            return results

        if not parallel or len(jobs) == 1:
            for job in jobs:
                try:
                    results[job.bot.bot_id] = self.run(job)
                except Exception:
                    logger.error(f"Backtest failed: {job.bot.bot_id}", exc_info=True)
                    results[job.bot.bot_id] = None
            return results

        start_time = time.time()
        logger.info(f"Running {len(jobs)} backtests with max_workers={self.settings.max_workers}")
        with ProcessPoolExecutor(max_workers=self.settings.max_workers) as executor:
            futures = [
                (job, executor.submit(_run_job_worker, (job, self.settings)))
                for job in jobs
            ]
            for job, future in futures:
                try:
                    results[job.bot.bot_id] = future.result()
                except Exception:
                    logger.error(f"Backtest failed: {job.bot.bot_id}", exc_info=True)
                    results[job.bot.bot_id] = None

        done = sum(1 for r in results.values() if r is not None)
        logger.info(f"{done}/{len(jobs)} backtests completed in {time.time() - start_time:.1f}s")
        return results

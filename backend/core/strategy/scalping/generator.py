"""Scalping strategy implementation.

Multi-indicator confirmation on every closed bar. Six directional
conditions are scored per side:

- Trend: EMA(fast) vs EMA(slow)
- Momentum: RSI vs 50, MACD line vs 0, price momentum vs 0
- Mean reversion: close vs Bollinger middle band
- Oscillator: Stochastic %K vs %D

An entry fires when the share of agreeing conditions reaches
``signal_threshold``. Spread ceiling, optional volume surge, the open
position cap and the consecutive-loss circuit breaker gate every entry.

Exits: stop loss / take profit on the bar's high/low, RSI crossing back
through the opposite threshold, and an optional trailing stop.

This module is pure business logic with no I/O dependencies.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from core.models import Bar, BarBuffer, CloseReason, Direction, Position, Signal
from core.models.position import trailing_stop_price
from core.strategy.base import BaseStrategy, last
from core.strategy.protocol import StrategyKind
from core.strategy.registry import register_strategy
from core.strategy.scalping.models import SCALPING_STRATEGY_NAME, ScalpingConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IndicatorSnapshot:
    """Latest indicator values for one bar."""

    ema_fast: Decimal
    ema_slow: Decimal
    rsi: Decimal
    macd: Decimal
    macd_signal: Decimal | None
    bb_upper: Decimal
    bb_middle: Decimal
    bb_lower: Decimal
    momentum: Decimal
    stoch_k: Decimal
    stoch_d: Decimal
    atr: Decimal | None
    avg_volume: Decimal | None


@register_strategy(SCALPING_STRATEGY_NAME)
class ScalpingStrategy(BaseStrategy):
    """Short-horizon multi-indicator strategy.

    Keeps a consecutive-loss counter that blocks new entries once it
    reaches ``max_consecutive_losses``; a winning trade resets it.
    """

    name = SCALPING_STRATEGY_NAME
    kind = StrategyKind.SCALPING
    config_model = ScalpingConfig

    def __init__(self, config: ScalpingConfig | None = None, **kwargs):
        super().__init__(config=config, **kwargs)
        self.consecutive_losses = 0
        self._last_snapshot: IndicatorSnapshot | None = None

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    def _snapshot(self, buffer: BarBuffer) -> IndicatorSnapshot | None:
        """Compute the latest indicator values, None without enough history."""
        cfg = self.config
        calc = self.calculator
        closes = buffer.get_closes()
        highs = buffer.get_highs()
        lows = buffer.get_lows()
        volumes = buffer.get_volumes()

        macd = calc.compute(
            "macd", closes, fast=cfg.macd_fast, slow=cfg.macd_slow, signal_period=cfg.macd_signal
        )
        bands = calc.compute("bollinger", closes, period=cfg.bollinger_period, deviation=cfg.bollinger_std)
        stoch = calc.compute(
            "stochastic", highs, lows, closes,
            k_period=cfg.stoch_k, d_period=cfg.stoch_d, smoothing=cfg.stoch_smoothing,
        )
        values = {
            "ema_fast": last(calc.compute("ema", closes, period=cfg.ema_fast)),
            "ema_slow": last(calc.compute("ema", closes, period=cfg.ema_slow)),
            "rsi": last(calc.compute("rsi", closes, period=cfg.rsi_period)),
            "macd": last(macd.macd),
            "bb_upper": last(bands.upper),
            "bb_middle": last(bands.middle),
            "bb_lower": last(bands.lower),
            "momentum": last(calc.compute("momentum", closes, period=cfg.momentum_period)),
            "stoch_k": last(stoch.k),
            "stoch_d": last(stoch.d),
        }
        if any(v is None for v in values.values()):
            return None

        # Average volume of the bars before the current one
        prior_volumes = volumes[:-1]
        avg_volume = last(calc.compute("sma", prior_volumes, period=cfg.volume_period))

        return IndicatorSnapshot(
            macd_signal=last(macd.signal),
            atr=last(calc.compute("atr", highs, lows, closes, period=cfg.atr_period)),
            avg_volume=avg_volume,
            **values,
        )

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    def _process_exits(self, bar: Bar, buffer: BarBuffer) -> None:
        # Stop loss / take profit first, at the triggered level
        super()._process_exits(bar, buffer)
        if not self._positions:
            return

        cfg = self.config
        rsi = last(self.calculator.compute("rsi", buffer.get_closes(), period=cfg.rsi_period))

        for position in list(self._positions.values()):
            if bar.timestamp <= position.open_time:
                continue
            if rsi is not None and self._rsi_exit(position, rsi):
                self._close(position, bar.close, bar.timestamp, CloseReason.SIGNAL_EXIT)
                continue
            if cfg.trailing_stop:
                new_stop = trailing_stop_price(
                    position.direction,
                    position.stop_loss,
                    bar.close,
                    cfg.trailing_stop_pips * cfg.pip_size,
                )
                position.update_unrealized(bar.close, stop_loss=new_stop)

    def _rsi_exit(self, position: Position, rsi: Decimal) -> bool:
        if position.direction == Direction.BUY:
            return rsi > self.config.rsi_overbought
        return rsi < self.config.rsi_oversold

    def _on_position_closed(self, position: Position) -> None:
        if position.profit is not None and position.profit < 0:
            self.consecutive_losses += 1
            if self.consecutive_losses == self.config.max_consecutive_losses:
                logger.warning(
                    f"{self.strategy_id}: {self.consecutive_losses} consecutive losses, "
                    "pausing new entries"
                )
        else:
            self.consecutive_losses = 0

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _evaluate_entry(self, bar: Bar, buffer: BarBuffer) -> Signal | None:
        cfg = self.config

        if len(buffer) < cfg.min_bars:
            return None
        if bar.spread > cfg.max_spread_pips:
            logger.debug("%s: spread %s above ceiling", self.strategy_id, bar.spread)
            return None
        if len(self._positions) >= cfg.max_positions:
            return None
        if self.consecutive_losses >= cfg.max_consecutive_losses:
            return None

        snap = self._snapshot(buffer)
        if snap is None:
            return None
        self._last_snapshot = snap

        volume_surge = (
            snap.avg_volume is not None
            and snap.avg_volume > 0
            and bar.volume >= snap.avg_volume * cfg.volume_threshold
        )
        if cfg.require_volume_surge and not volume_surge:
            return None

        long_score, short_score = self.score(snap, bar.close)
        if long_score >= cfg.signal_threshold and long_score > short_score:
            direction = Direction.BUY
            score = long_score
        elif short_score >= cfg.signal_threshold and short_score > long_score:
            direction = Direction.SELL
            score = short_score
        else:
            return None

        return self._build_signal(bar, direction, snap, score, volume_surge)

    @staticmethod
    def score(snap: IndicatorSnapshot, close: Decimal) -> tuple[float, float]:
        """Share of long and short conditions that hold."""
        long_conditions = [
            snap.ema_fast > snap.ema_slow,
            snap.rsi > 50,
            snap.macd > 0,
            close > snap.bb_middle,
            snap.momentum > 0,
            snap.stoch_k > snap.stoch_d,
        ]
        short_conditions = [
            snap.ema_fast < snap.ema_slow,
            snap.rsi < 50,
            snap.macd < 0,
            close < snap.bb_middle,
            snap.momentum < 0,
            snap.stoch_k < snap.stoch_d,
        ]
        return (
            sum(long_conditions) / len(long_conditions),
            sum(short_conditions) / len(short_conditions),
        )

    def _confidence(self, snap: IndicatorSnapshot, score: float, volume_surge: bool) -> float:
        confidence = 0.5
        if 40 < snap.rsi < 60:
            confidence += 0.2
        if snap.macd_signal is not None and (snap.macd - snap.macd_signal) * snap.macd > 0:
            confidence += 0.1
        if volume_surge:
            confidence += 0.1
        confidence += (score - self.config.signal_threshold)
        return min(0.95, max(0.5, confidence))

    def _build_signal(
        self,
        bar: Bar,
        direction: Direction,
        snap: IndicatorSnapshot,
        score: float,
        volume_surge: bool,
    ) -> Signal:
        cfg = self.config
        entry = bar.close
        sl_distance = cfg.stop_loss_pips * cfg.pip_size
        tp_distance = cfg.take_profit_pips * cfg.pip_size
        sign = direction.value

        metadata = {
            "score": round(score, 4),
            "rsi": str(snap.rsi),
            "ema_fast": str(snap.ema_fast),
            "ema_slow": str(snap.ema_slow),
            "volume_surge": volume_surge,
        }
        if snap.atr is not None:
            metadata["atr"] = str(snap.atr)

        return Signal(
            strategy_id=self.strategy_id,
            symbol=bar.symbol,
            timeframe=bar.timeframe,
            direction=direction,
            entry_price=entry,
            stop_loss=entry - sign * sl_distance,
            take_profit=entry + sign * tp_distance,
            lot_size=cfg.lot_size,
            confidence=self._confidence(snap, score, volume_surge),
            timestamp=bar.timestamp,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def reset(self) -> None:
        super().reset()
        self.consecutive_losses = 0
        self._last_snapshot = None

    def status(self) -> dict:
        status = super().status()
        status["consecutive_losses"] = self.consecutive_losses
        status["circuit_breaker"] = self.consecutive_losses >= self.config.max_consecutive_losses
        return status

"""Technical indicators for signal generation.

Every function takes ordered price series (Decimal) and returns an aligned
output series that is shorter than the input: ``output[i]`` belongs to
``input[i + offset]``. The offset of each indicator is documented on the
function (``period - 1`` for the moving averages). When there is not enough
history the result is empty; no indicator raises on short input and none of
them mutates its arguments.

Computation runs on NumPy float64 arrays; results are converted back to
Decimal so they compose with the price models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Sequence

import numpy as np

# CCI scaling constant (Lambert)
CCI_CONSTANT = 0.015

FIBONACCI_RATIOS: tuple[tuple[str, Decimal], ...] = (
    ("0.0", Decimal("0")),
    ("23.6", Decimal("0.236")),
    ("38.2", Decimal("0.382")),
    ("50.0", Decimal("0.5")),
    ("61.8", Decimal("0.618")),
    ("78.6", Decimal("0.786")),
    ("100.0", Decimal("1")),
)


# =============================================================================
# Result containers for multi-series indicators
# =============================================================================

@dataclass(slots=True)
class MACDResult:
    """MACD line, signal line and histogram.

    ``macd`` has offset ``slow - 1``; ``signal`` and ``histogram`` have offset
    ``slow + signal_period - 2``.
    """

    macd: list[Decimal] = field(default_factory=list)
    signal: list[Decimal] = field(default_factory=list)
    histogram: list[Decimal] = field(default_factory=list)


@dataclass(slots=True)
class BollingerResult:
    upper: list[Decimal] = field(default_factory=list)
    middle: list[Decimal] = field(default_factory=list)
    lower: list[Decimal] = field(default_factory=list)


@dataclass(slots=True)
class StochasticResult:
    """%K (smoothed) and %D.

    ``k`` has offset ``k_period + smoothing - 2``; ``d`` adds ``d_period - 1``.
    """

    k: list[Decimal] = field(default_factory=list)
    d: list[Decimal] = field(default_factory=list)


@dataclass(slots=True)
class PriceLevel:
    """A local extremum found by support/resistance detection."""

    price: Decimal
    index: int
    kind: str  # "support" or "resistance"


@dataclass(slots=True)
class SupportResistance:
    support: list[PriceLevel] = field(default_factory=list)
    resistance: list[PriceLevel] = field(default_factory=list)

    @property
    def levels(self) -> list[PriceLevel]:
        return sorted(self.support + self.resistance, key=lambda lv: lv.index)

    def nearest_support(self, price: Decimal) -> PriceLevel | None:
        """Highest support strictly below price."""
        below = [lv for lv in self.support if lv.price < price]
        return max(below, key=lambda lv: lv.price) if below else None

    def nearest_resistance(self, price: Decimal) -> PriceLevel | None:
        """Lowest resistance strictly above price."""
        above = [lv for lv in self.resistance if lv.price > price]
        return min(above, key=lambda lv: lv.price) if above else None


@dataclass(slots=True)
class VolumeProfile:
    """Volume aggregated by (rounded) close price."""

    total_volume: Decimal = Decimal("0")
    avg_volume: Decimal = Decimal("0")
    poc: Decimal | None = None  # Point of control
    high_volume_nodes: list[tuple[Decimal, Decimal]] = field(default_factory=list)
    distribution: dict[Decimal, Decimal] = field(default_factory=dict)


# =============================================================================
# NumPy helpers
# =============================================================================

def _to_array(values: Sequence[Decimal]) -> np.ndarray:
    return np.array([float(v) for v in values], dtype=np.float64)


def _to_decimals(arr: np.ndarray) -> list[Decimal]:
    return [Decimal(str(v)) for v in arr.tolist()]


def _rolling(arr: np.ndarray, period: int) -> np.ndarray:
    """2-D view of every full window of ``period`` values."""
    return np.lib.stride_tricks.sliding_window_view(arr, period)


def _flat(windows: np.ndarray) -> np.ndarray:
    """True for every window whose values are all equal."""
    return windows.max(axis=1) == windows.min(axis=1)


def _window_means(windows: np.ndarray) -> np.ndarray:
    # A flat window's mean is its value; float summation would drift off it
    return np.where(_flat(windows), windows[:, 0], windows.mean(axis=1))


def _sma_arr(arr: np.ndarray, period: int) -> np.ndarray:
    if period <= 0 or len(arr) < period:
        return np.empty(0, dtype=np.float64)
    return _window_means(_rolling(arr, period))


def _ema_arr(arr: np.ndarray, period: int) -> np.ndarray:
    """EMA seeded with the first value, trimmed to offset ``period - 1``."""
    if period <= 0 or len(arr) < period:
        return np.empty(0, dtype=np.float64)
    multiplier = 2.0 / (period + 1)
    result = np.empty_like(arr)
    result[0] = arr[0]
    for i in range(1, len(arr)):
        result[i] = arr[i] * multiplier + result[i - 1] * (1 - multiplier)
    return result[period - 1:]


def _true_range_arr(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> np.ndarray:
    """True range from the second bar onward (needs a previous close)."""
    if len(closes) < 2:
        return np.empty(0, dtype=np.float64)
    prev_close = closes[:-1]
    h = highs[1:]
    l = lows[1:]
    return np.maximum.reduce([h - l, np.abs(h - prev_close), np.abs(l - prev_close)])


# =============================================================================
# Moving averages
# =============================================================================

def sma(values: Sequence[Decimal], period: int) -> list[Decimal]:
    """Simple Moving Average. Offset ``period - 1``."""
    return _to_decimals(_sma_arr(_to_array(values), period))


def ema(values: Sequence[Decimal], period: int) -> list[Decimal]:
    """
    Exponential Moving Average.

    multiplier = 2 / (period + 1), seeded with the first input value. The
    warm-up values (the first ``period - 1``) are dropped so the output has
    offset ``period - 1`` like SMA.

    Args:
        values: Sequence of price values
        period: EMA period

    Returns:
        List of ``len(values) - period + 1`` EMA values (empty if too short)
    """
    return _to_decimals(_ema_arr(_to_array(values), period))


def highest(values: Sequence[Decimal], period: int) -> list[Decimal]:
    """Rolling maximum. Offset ``period - 1``."""
    arr = _to_array(values)
    if period <= 0 or len(arr) < period:
        return []
    return _to_decimals(_rolling(arr, period).max(axis=1))


def lowest(values: Sequence[Decimal], period: int) -> list[Decimal]:
    """Rolling minimum. Offset ``period - 1``."""
    arr = _to_array(values)
    if period <= 0 or len(arr) < period:
        return []
    return _to_decimals(_rolling(arr, period).min(axis=1))


# =============================================================================
# Oscillators
# =============================================================================

def rsi(values: Sequence[Decimal], period: int = 14) -> list[Decimal]:
    """
    Relative Strength Index with Wilder smoothing.

    RSI = 100 - 100 / (1 + avg_gain / avg_loss). The first averages are the
    plain means of the first ``period`` changes. Offset ``period``.
    A series without losses reads 100, a series without any change reads 50.
    """
    arr = _to_array(values)
    if period <= 0 or len(arr) < period + 1:
        return []

    deltas = np.diff(arr)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    result = [_rsi_value(avg_gain, avg_loss)]

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        result.append(_rsi_value(avg_gain, avg_loss))

    return _to_decimals(np.clip(np.array(result), 0.0, 100.0))


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def macd(
    values: Sequence[Decimal],
    fast: int = 12,
    slow: int = 26,
    signal_period: int = 9,
) -> MACDResult:
    """
    Moving Average Convergence/Divergence.

    macd = EMA(fast) - EMA(slow); signal = EMA(macd, signal_period);
    histogram = macd - signal.
    """
    arr = _to_array(values)
    if fast <= 0 or slow <= 0 or len(arr) < max(fast, slow):
        return MACDResult()

    fast_ema = _ema_arr(arr, fast)
    slow_ema = _ema_arr(arr, slow)
    # Align the longer fast series onto the slow one
    shift = len(fast_ema) - len(slow_ema)
    macd_line = fast_ema[shift:] - slow_ema

    signal_line = _ema_arr(macd_line, signal_period)
    if len(signal_line) == 0:
        return MACDResult(macd=_to_decimals(macd_line))

    histogram = macd_line[signal_period - 1:] - signal_line
    return MACDResult(
        macd=_to_decimals(macd_line),
        signal=_to_decimals(signal_line),
        histogram=_to_decimals(histogram),
    )


def stochastic(
    highs: Sequence[Decimal],
    lows: Sequence[Decimal],
    closes: Sequence[Decimal],
    k_period: int = 14,
    d_period: int = 3,
    smoothing: int = 3,
) -> StochasticResult:
    """
    Stochastic oscillator.

    raw %K = 100 * (close - lowest_low) / (highest_high - lowest_low) over
    ``k_period`` bars (50 when the range is zero), smoothed with an SMA of
    ``smoothing``; %D = SMA(%K, d_period).
    """
    h = _to_array(highs)
    l = _to_array(lows)
    c = _to_array(closes)
    if k_period <= 0 or len(c) < k_period:
        return StochasticResult()

    hh = _rolling(h, k_period).max(axis=1)
    ll = _rolling(l, k_period).min(axis=1)
    rng = hh - ll
    cc = c[k_period - 1:]
    safe = np.where(rng == 0, 1.0, rng)
    raw_k = np.where(rng == 0, 50.0, (cc - ll) / safe * 100.0)

    k = _sma_arr(raw_k, smoothing)
    d = _sma_arr(k, d_period)
    return StochasticResult(k=_to_decimals(k), d=_to_decimals(d))


def williams_r(
    highs: Sequence[Decimal],
    lows: Sequence[Decimal],
    closes: Sequence[Decimal],
    period: int = 14,
) -> list[Decimal]:
    """Williams %R in [-100, 0]. Offset ``period - 1``; -50 on a zero range."""
    h = _to_array(highs)
    l = _to_array(lows)
    c = _to_array(closes)
    if period <= 0 or len(c) < period:
        return []

    hh = _rolling(h, period).max(axis=1)
    ll = _rolling(l, period).min(axis=1)
    rng = hh - ll
    safe = np.where(rng == 0, 1.0, rng)
    wr = np.where(rng == 0, -50.0, (hh - c[period - 1:]) / safe * -100.0)
    return _to_decimals(wr)


def cci(
    highs: Sequence[Decimal],
    lows: Sequence[Decimal],
    closes: Sequence[Decimal],
    period: int = 20,
) -> list[Decimal]:
    """Commodity Channel Index. Offset ``period - 1``; 0 on a flat window."""
    tp = (_to_array(highs) + _to_array(lows) + _to_array(closes)) / 3.0
    if period <= 0 or len(tp) < period:
        return []

    windows = _rolling(tp, period)
    means = _window_means(windows)
    mean_dev = np.abs(windows - means[:, None]).mean(axis=1)
    flat = _flat(windows) | np.isclose(mean_dev, 0.0, rtol=0.0, atol=1e-12)
    safe = np.where(flat, 1.0, mean_dev)
    result = np.where(
        flat, 0.0, (tp[period - 1:] - means) / (CCI_CONSTANT * safe)
    )
    return _to_decimals(result)


def mfi(
    highs: Sequence[Decimal],
    lows: Sequence[Decimal],
    closes: Sequence[Decimal],
    volumes: Sequence[Decimal],
    period: int = 14,
) -> list[Decimal]:
    """
    Money Flow Index in [0, 100]. Offset ``period``.

    Money flow on bar i is typical_price * volume, classed positive when the
    typical price rose against bar i-1 and negative otherwise.
    """
    tp = (_to_array(highs) + _to_array(lows) + _to_array(closes)) / 3.0
    vol = _to_array(volumes)
    if period <= 0 or len(tp) < period + 1:
        return []

    flow = tp[1:] * vol[1:]
    rising = tp[1:] > tp[:-1]
    positive = _rolling(np.where(rising, flow, 0.0), period).sum(axis=1)
    negative = _rolling(np.where(rising, 0.0, flow), period).sum(axis=1)

    result = []
    for pos, neg in zip(positive.tolist(), negative.tolist()):
        if neg == 0:
            result.append(50.0 if pos == 0 else 100.0)
        else:
            result.append(100.0 - 100.0 / (1.0 + pos / neg))
    return _to_decimals(np.array(result))


def momentum(values: Sequence[Decimal], period: int = 10) -> list[Decimal]:
    """close[i] - close[i - period]. Offset ``period``."""
    if period <= 0 or len(values) <= period:
        return []
    return [values[i] - values[i - period] for i in range(period, len(values))]


def roc(values: Sequence[Decimal], period: int = 10) -> list[Decimal]:
    """Rate of change in percent. Offset ``period``; 0 when the base is 0."""
    if period <= 0 or len(values) <= period:
        return []
    result = []
    for i in range(period, len(values)):
        base = values[i - period]
        result.append((values[i] - base) / base * 100 if base != 0 else Decimal("0"))
    return result


# =============================================================================
# Volatility
# =============================================================================

def true_range(
    highs: Sequence[Decimal],
    lows: Sequence[Decimal],
    closes: Sequence[Decimal],
) -> list[Decimal]:
    """
    Calculate True Range.

    TR = max(high - low, abs(high - prev_close), abs(low - prev_close))

    The first bar has no previous close, so the output has offset 1.
    """
    n = len(closes)
    result = []
    for i in range(1, n):
        hl = highs[i] - lows[i]
        hc = abs(highs[i] - closes[i - 1])
        lc = abs(lows[i] - closes[i - 1])
        result.append(max(hl, hc, lc))
    return result


def atr(
    highs: Sequence[Decimal],
    lows: Sequence[Decimal],
    closes: Sequence[Decimal],
    period: int = 14,
) -> list[Decimal]:
    """
    Average True Range: SMA of the true range.

    Args:
        highs: Sequence of high prices
        lows: Sequence of low prices
        closes: Sequence of close prices
        period: ATR period

    Returns:
        List of ATR values with offset ``period`` (empty if too short)
    """
    tr = _true_range_arr(_to_array(highs), _to_array(lows), _to_array(closes))
    return _to_decimals(_sma_arr(tr, period))


def bollinger_bands(
    values: Sequence[Decimal],
    period: int = 20,
    deviation: float = 2.0,
) -> BollingerResult:
    """
    Bollinger Bands: SMA +/- deviation * population stddev over the window.

    Offset ``period - 1``; upper >= middle >= lower at every index.
    """
    arr = _to_array(values)
    if period <= 0 or len(arr) < period:
        return BollingerResult()

    windows = _rolling(arr, period)
    middle = _window_means(windows)
    width = np.where(_flat(windows), 0.0, float(deviation) * windows.std(axis=1))
    return BollingerResult(
        upper=_to_decimals(middle + width),
        middle=_to_decimals(middle),
        lower=_to_decimals(middle - width),
    )


def parabolic_sar(
    highs: Sequence[Decimal],
    lows: Sequence[Decimal],
    step: float = 0.02,
    maximum: float = 0.2,
) -> list[Decimal]:
    """
    Parabolic SAR trailing stop.

    Starts long with SAR at the first low and the extreme point at the first
    high. The acceleration factor grows by ``step`` on each new extreme and
    is capped at ``maximum``. Offset 0; needs at least two bars.
    """
    h = _to_array(highs)
    l = _to_array(lows)
    if len(h) < 2:
        return []

    uptrend = True
    sar = l[0]
    ep = h[0]
    af = step
    result = [sar]

    for i in range(1, len(h)):
        sar = sar + af * (ep - sar)
        if uptrend:
            if l[i] <= sar:
                uptrend = False
                sar = ep
                ep = l[i]
                af = step
            elif h[i] > ep:
                ep = h[i]
                af = min(af + step, maximum)
        else:
            if h[i] >= sar:
                uptrend = True
                sar = ep
                ep = h[i]
                af = step
            elif l[i] < ep:
                ep = l[i]
                af = min(af + step, maximum)
        result.append(sar)

    return _to_decimals(np.array(result))


# =============================================================================
# Price levels
# =============================================================================

def support_resistance(
    highs: Sequence[Decimal],
    lows: Sequence[Decimal],
    lookback: int = 20,
) -> SupportResistance:
    """
    Local extrema over a symmetric window.

    Bar i is resistance when its high is >= every high ``lookback`` bars on
    either side, and support when its low is <= every such low. Only bars
    with a full window on both sides are considered.
    """
    n = len(highs)
    result = SupportResistance()
    if lookback <= 0 or n < 2 * lookback + 1:
        return result

    for i in range(lookback, n - lookback):
        hi = highs[i]
        lo = lows[i]
        if all(h <= hi for h in highs[i - lookback:i + lookback + 1]):
            result.resistance.append(PriceLevel(price=hi, index=i, kind="resistance"))
        if all(l >= lo for l in lows[i - lookback:i + lookback + 1]):
            result.support.append(PriceLevel(price=lo, index=i, kind="support"))
    return result


def volume_profile(
    closes: Sequence[Decimal],
    volumes: Sequence[Decimal],
    precision: int = 4,
) -> VolumeProfile:
    """
    Aggregate volume by close price rounded to ``precision`` decimals.

    The point of control is the price level with the highest volume (ties go
    to the lower price); ``high_volume_nodes`` are the top five levels.
    """
    if not closes or len(closes) != len(volumes):
        return VolumeProfile()

    quantum = Decimal(1).scaleb(-precision)
    distribution: dict[Decimal, Decimal] = {}
    for price, vol in zip(closes, volumes):
        level = Decimal(price).quantize(quantum)
        distribution[level] = distribution.get(level, Decimal("0")) + vol

    ranked = sorted(distribution.items(), key=lambda kv: (-kv[1], kv[0]))
    total = sum(volumes, Decimal("0"))
    return VolumeProfile(
        total_volume=total,
        avg_volume=total / len(volumes),
        poc=ranked[0][0],
        high_volume_nodes=ranked[:5],
        distribution=distribution,
    )


def fibonacci_retracement(high: Decimal, low: Decimal) -> dict[str, Decimal]:
    """
    Retracement levels between a swing high and low.

    level = high - (high - low) * ratio, keyed by the ratio in percent.
    """
    rng = high - low
    return {name: high - rng * ratio for name, ratio in FIBONACCI_RATIOS}

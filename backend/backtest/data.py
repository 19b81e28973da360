"""Load bars from CSV files into ``Bar`` models.

Expected columns (case-insensitive): ``timestamp`` (or ``time`` / ``date``),
``open``, ``high``, ``low``, ``close`` and optionally ``volume``, ``spread``,
``symbol`` and ``timeframe``. When the file has symbol / timeframe columns,
rows are filtered to the requested series; otherwise every row belongs to it.

Prices are read as text and converted straight to Decimal so no float
rounding enters the models. Timestamps are parsed as UTC.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path

import pandas as pd

from core.models import Bar

logger = logging.getLogger(__name__)

_TIME_COLUMNS = ("timestamp", "time", "date", "datetime")
_PRICE_COLUMNS = ("open", "high", "low", "close")


def _decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    text = str(value).strip()
    return Decimal(text) if text else Decimal("0")


def bars_from_dataframe(df: pd.DataFrame, symbol: str, timeframe: str) -> list[Bar]:
    """Convert a DataFrame of OHLCV rows to bars sorted by timestamp.

    Rows with a duplicate timestamp keep the last occurrence.
    """
    df = df.rename(columns={c: c.strip().lower() for c in df.columns})

    time_col = next((c for c in _TIME_COLUMNS if c in df.columns), None)
    if time_col is None:
        raise ValueError(f"No timestamp column found (expected one of {_TIME_COLUMNS})")
    missing = [c for c in _PRICE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing price columns: {missing}")

    if "symbol" in df.columns:
        df = df[df["symbol"].astype(str) == symbol]
    if "timeframe" in df.columns:
        df = df[df["timeframe"].astype(str) == timeframe]

    df = df.assign(ts_utc=pd.to_datetime(df[time_col], utc=True))
    df = df.drop_duplicates(subset="ts_utc", keep="last").sort_values("ts_utc")

    return [
        Bar(
            symbol=symbol,
            timeframe=timeframe,
            timestamp=row["ts_utc"].to_pydatetime(),
            open=_decimal(row["open"]),
            high=_decimal(row["high"]),
            low=_decimal(row["low"]),
            close=_decimal(row["close"]),
            volume=_decimal(row.get("volume")),
            spread=_decimal(row.get("spread")),
        )
        for row in df.to_dict("records")
    ]


def load_bars_csv(path: Path | str, symbol: str, timeframe: str) -> list[Bar]:
    """Read a CSV file of bars for one (symbol, timeframe) series.

    Raises:
        FileNotFoundError: The file does not exist.
        ValueError: Required columns are missing.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    bars = bars_from_dataframe(df, symbol=symbol, timeframe=timeframe)
    logger.info(f"Loaded {len(bars):,} {symbol} {timeframe} bars from {path}")
    return bars

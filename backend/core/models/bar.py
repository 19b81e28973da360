"""Price bar (candlestick) data models."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class Bar(BaseModel):
    """OHLCV bar for one symbol/timeframe.

    Supplied by the market-data collaborator in strictly increasing timestamp
    order per (symbol, timeframe). ``spread`` is the quoted spread in pips at
    bar close when the feed provides it.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    timeframe: str
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")
    spread: Decimal = Decimal("0")

    @property
    def is_bullish(self) -> bool:
        """Check if this is a bullish (green) candle."""
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        """Check if this is a bearish (red) candle."""
        return self.close < self.open

    @property
    def body_size(self) -> Decimal:
        """Get the absolute size of the candle body."""
        return abs(self.close - self.open)

    @property
    def range_size(self) -> Decimal:
        """Get the full range (high - low) of the candle."""
        return self.high - self.low

    @property
    def key(self) -> str:
        return f"{self.symbol}_{self.timeframe}"


class BarBuffer(BaseModel):
    """Rolling window of recent bars used for indicator calculation."""

    symbol: str
    timeframe: str
    bars: list[Bar] = Field(default_factory=list)
    max_size: int = 300

    def add(self, bar: Bar) -> bool:
        """Append a bar, keeping at most ``max_size``.

        Returns True when the bar extends the series. A bar with the same
        timestamp as the last one replaces it and an older bar is ignored;
        both return False.
        """
        if self.bars and bar.timestamp <= self.bars[-1].timestamp:
            if bar.timestamp == self.bars[-1].timestamp:
                self.bars[-1] = bar
            return False

        self.bars.append(bar)
        if len(self.bars) > self.max_size:
            self.bars = self.bars[-self.max_size :]
        return True

    @property
    def last(self) -> Bar | None:
        return self.bars[-1] if self.bars else None

    def get_opens(self) -> list[Decimal]:
        return [b.open for b in self.bars]

    def get_closes(self) -> list[Decimal]:
        """Get list of close prices."""
        return [b.close for b in self.bars]

    def get_highs(self) -> list[Decimal]:
        """Get list of high prices."""
        return [b.high for b in self.bars]

    def get_lows(self) -> list[Decimal]:
        """Get list of low prices."""
        return [b.low for b in self.bars]

    def get_volumes(self) -> list[Decimal]:
        """Get list of volumes."""
        return [b.volume for b in self.bars]

    def __len__(self) -> int:
        return len(self.bars)

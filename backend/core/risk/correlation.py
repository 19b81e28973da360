"""Static symbol correlation table."""

from decimal import Decimal

# Symmetric: looked up in both orders
CORRELATIONS: dict[tuple[str, str], Decimal] = {
    ("EURUSD", "GBPUSD"): Decimal("0.8"),
    ("EURUSD", "EURGBP"): Decimal("0.6"),
    ("GBPUSD", "EURGBP"): Decimal("-0.7"),
    ("USDJPY", "EURJPY"): Decimal("0.75"),
    ("AUDUSD", "NZDUSD"): Decimal("0.85"),
}


def normalize_symbol(symbol: str) -> str:
    """'EUR_USD', 'eur/usd' and 'EURUSD' all map to 'EURUSD'."""
    return symbol.replace("_", "").replace("/", "").upper()


def correlation(symbol_a: str, symbol_b: str) -> Decimal:
    """Correlation coefficient of two symbols, 0 when unknown."""
    a = normalize_symbol(symbol_a)
    b = normalize_symbol(symbol_b)
    if a == b:
        return Decimal("1")
    value = CORRELATIONS.get((a, b))
    if value is None:
        value = CORRELATIONS.get((b, a), Decimal("0"))
    return value

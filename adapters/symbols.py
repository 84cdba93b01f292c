from __future__ import annotations

_QUOTE_ASSETS = ("USDT", "USDC", "BUSD")


def split_symbol(symbol: str) -> tuple[str, str] | None:
    upper = symbol.upper()
    for quote in _QUOTE_ASSETS:
        if upper.endswith(quote) and len(upper) > len(quote):
            return upper[: -len(quote)], quote
    return None


def to_hyphenated(symbol: str) -> str:
    """BTCUSDT -> BTC-USDT; unknown quote assets pass through."""
    parts = split_symbol(symbol)
    if not parts:
        return symbol.upper()
    return f"{parts[0]}-{parts[1]}"


def from_hyphenated(symbol: str) -> str:
    return symbol.replace("-", "").upper()

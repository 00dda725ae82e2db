"""
Shared symbol helpers for USDⓈ-margined futures.

- Source feed symbols are bare assets (BTC, ETH, DOGE)
- Broker symbols are concatenated with the quote asset (BTCUSDT)
- CCXT unified symbols use BASE/QUOTE:SETTLE (BTC/USDT:USDT)

This module is the single place where symbol formats are converted. Compare
symbols across formats through ``normalize_to_base``.
"""
from __future__ import annotations

DEFAULT_QUOTE = "USDT"


def normalize_symbol(symbol: str) -> str:
    """
    Canonical concatenated form.

    BTC/USDT, BTC/USDT:USDT, btcusdt, BTC-USDT -> BTCUSDT. Bare assets are
    left alone (BTC -> BTC).
    """
    if not symbol:
        return ""
    s = str(symbol).upper().strip()
    s = s.split(":")[0]
    return s.replace("/", "").replace("-", "").replace("_", "")


def normalize_to_base(symbol: str, quote: str = DEFAULT_QUOTE) -> str:
    """
    Extract the base asset name from any symbol format.

    BTC, BTCUSDT, BTC/USDT:USDT -> BTC.
    """
    s = normalize_symbol(symbol)
    quote = quote.upper()
    if s.endswith(quote) and len(s) > len(quote):
        s = s[: -len(quote)]
    return s


def to_broker_symbol(symbol: str, quote: str = DEFAULT_QUOTE) -> str:
    """BTC -> BTCUSDT; already-qualified symbols pass through normalized."""
    return normalize_to_base(symbol, quote) + quote.upper()


def to_unified_symbol(symbol: str, quote: str = DEFAULT_QUOTE) -> str:
    """BTC or BTCUSDT -> BTC/USDT:USDT (CCXT linear perpetual)."""
    quote = quote.upper()
    return f"{normalize_to_base(symbol, quote)}/{quote}:{quote}"


def symbols_match(a: str, b: str, quote: str = DEFAULT_QUOTE) -> bool:
    """True when both symbols refer to the same asset."""
    return bool(a) and bool(b) and normalize_to_base(a, quote) == normalize_to_base(b, quote)

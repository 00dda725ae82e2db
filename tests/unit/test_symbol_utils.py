"""
Unit tests for src.data.symbol_utils.

Locks the conversions between source (BTC), broker (BTCUSDT) and CCXT
unified (BTC/USDT:USDT) symbols.
"""
from src.data.symbol_utils import (
    normalize_symbol,
    normalize_to_base,
    symbols_match,
    to_broker_symbol,
    to_unified_symbol,
)


class TestNormalizeSymbol:
    def test_separators_and_settle_suffix_removed(self) -> None:
        """Separators and the settle suffix are removed."""
        assert normalize_symbol("BTC/USDT:USDT") == "BTCUSDT"
        assert normalize_symbol("btc-usdt") == "BTCUSDT"
        assert normalize_symbol("BTC_USDT") == "BTCUSDT"

    def test_bare_asset_untouched(self) -> None:
        """A bare asset is left as is."""
        assert normalize_symbol("doge") == "DOGE"

    def test_empty(self) -> None:
        """An empty symbol stays empty."""
        assert normalize_symbol("") == ""


class TestConversions:
    def test_base_from_any_format(self) -> None:
        """The base asset is read from any format."""
        for symbol in ("BTC", "BTCUSDT", "BTC/USDT", "BTC/USDT:USDT"):
            assert normalize_to_base(symbol) == "BTC"

    def test_quote_itself_is_not_stripped(self) -> None:
        """The quote asset alone is not stripped."""
        assert normalize_to_base("USDT") == "USDT"

    def test_broker_symbol(self) -> None:
        """Broker symbols use the broker format."""
        assert to_broker_symbol("ETH") == "ETHUSDT"
        assert to_broker_symbol("ETHUSDT") == "ETHUSDT"
        assert to_broker_symbol("eth", quote="usdc") == "ETHUSDC"

    def test_unified_symbol(self) -> None:
        """Unified symbols use the ccxt format."""
        assert to_unified_symbol("SOL") == "SOL/USDT:USDT"
        assert to_unified_symbol("SOLUSDT") == "SOL/USDT:USDT"


class TestSymbolsMatch:
    def test_cross_format_match(self) -> None:
        """Symbols in different formats match."""
        assert symbols_match("BTC", "BTC/USDT:USDT")
        assert not symbols_match("BTC", "ETHUSDT")
        assert not symbols_match("", "BTC")

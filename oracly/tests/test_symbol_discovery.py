from oracly.services.portfolio.symbol_discovery import (
    assets_with_balance,
    build_symbol_index,
    discover_symbols,
)

CATALOG = [
    {"symbol": "BTCUSDT", "status": "TRADING", "baseAsset": "BTC", "quoteAsset": "USDT"},
    {"symbol": "ETHBTC", "status": "TRADING", "baseAsset": "ETH", "quoteAsset": "BTC"},
    {"symbol": "ETHUSDT", "status": "TRADING", "baseAsset": "ETH", "quoteAsset": "USDT"},
    {"symbol": "DOGEUSDT", "status": "TRADING", "baseAsset": "DOGE", "quoteAsset": "USDT"},
    {"symbol": "SOLDOGE", "status": "TRADING", "baseAsset": "SOL", "quoteAsset": "DOGE"},
    {"symbol": "BTCBUSD", "status": "BREAK", "baseAsset": "BTC", "quoteAsset": "BUSD"},
]


def test_assets_with_balance_counts_locked():
    balances = [
        {"asset": "BTC", "free": "0.5", "locked": "0"},
        {"asset": "ETH", "free": "0", "locked": "1.2"},
        {"asset": "XRP", "free": "0.00000000", "locked": "0.00000000"},
    ]
    assert assets_with_balance(balances) == {"BTC", "ETH"}


def test_held_asset_discovers_pairs_against_major_quotes():
    balances = [{"asset": "BTC", "free": "0.5", "locked": "0"}]
    symbols = discover_symbols(balances, None, CATALOG)
    assert "BTCUSDT" in symbols
    assert "ETHBTC" in symbols  # BTC is held and ETH is a major quote
    assert "DOGEUSDT" not in symbols


def test_non_trading_pairs_are_skipped():
    balances = [{"asset": "BTC", "free": "1", "locked": "0"}]
    assert "BTCBUSD" not in discover_symbols(balances, None, CATALOG)


def test_pair_between_two_minor_assets_needs_both_held():
    only_sol = [{"asset": "SOL", "free": "3", "locked": "0"}]
    assert "SOLDOGE" not in discover_symbols(only_sol, None, CATALOG)
    both = only_sol + [{"asset": "DOGE", "free": "10", "locked": "0"}]
    assert "SOLDOGE" in discover_symbols(both, None, CATALOG)


def test_explicit_and_tracked_symbols_are_always_included():
    symbols = discover_symbols([], ["dogeusdt"], CATALOG, tracked_symbols=["ETHUSDT"])
    assert symbols == ["DOGEUSDT", "ETHUSDT"]


def test_result_is_sorted_and_unique():
    balances = [
        {"asset": "BTC", "free": "1", "locked": "0"},
        {"asset": "ETH", "free": "1", "locked": "0"},
    ]
    symbols = discover_symbols(balances, ["BTCUSDT"], CATALOG, tracked_symbols=["BTCUSDT"])
    assert symbols == sorted(set(symbols))
    assert symbols.count("BTCUSDT") == 1


def test_custom_quote_allow_list():
    balances = [{"asset": "BTC", "free": "1", "locked": "0"}]
    assert discover_symbols(balances, None, CATALOG, quote_allow_list=("USDT",)) == ["BTCUSDT"]


def test_symbol_index_maps_base_and_quote():
    index = build_symbol_index(CATALOG)
    assert index["ETHBTC"] == ("ETH", "BTC")
    assert index["BTCBUSD"] == ("BTC", "BUSD")


def test_assets_present_on_one_side_of_the_catalog_only():
    # USDT is only ever a quote and SOL only ever a base here
    balances = [
        {"asset": "BTC", "free": "1.0", "locked": "0"},
        {"asset": "USDT", "free": "500", "locked": "0"},
        {"asset": "SOL", "free": "2", "locked": "0"},
    ]
    assert discover_symbols(balances, None, CATALOG, tracked_symbols=["BTCUSDT"]) == ["BTCUSDT", "ETHBTC", "ETHUSDT"]

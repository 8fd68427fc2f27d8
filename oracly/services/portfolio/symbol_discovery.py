"""
Symbol Discovery
================

Decides which trading pairs are worth polling for trade history, so a sync
does not walk hundreds of pairs the user never touched.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

# Quote currencies treated as "held" even at zero balance, so a BTC holder
# discovers BTCUSDT without owning USDT.
MAJOR_QUOTE_ASSETS = ("USDT", "USDC", "BUSD", "FDUSD", "TUSD", "BTC", "ETH", "BNB", "EUR")


def _to_float(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def assets_with_balance(balances: Iterable[Mapping]) -> Set[str]:
    """Assets whose free + locked amount is positive."""
    held = set()
    for b in balances:
        asset = b.get("asset")
        if asset and _to_float(b.get("free")) + _to_float(b.get("locked")) > 0:
            held.add(asset)
    return held


def build_symbol_index(catalog: Iterable[Mapping]) -> Dict[str, Tuple[str, str]]:
    """symbol -> (baseAsset, quoteAsset) from the exchange catalog."""
    return {
        entry["symbol"]: (entry.get("baseAsset"), entry.get("quoteAsset"))
        for entry in catalog
        if entry.get("symbol") and entry.get("baseAsset") and entry.get("quoteAsset")
    }


def discover_symbols(
    balances: Iterable[Mapping],
    explicit_symbols: Optional[Iterable[str]],
    catalog: Iterable[Mapping],
    tracked_symbols: Optional[Iterable[str]] = None,
    quote_allow_list: Iterable[str] = MAJOR_QUOTE_ASSETS,
) -> List[str]:
    """
    Symbols to sync, sorted lexicographically.

    A catalog pair is selected when one side has a balance and the other side
    either has a balance or is a major quote currency. Explicitly requested and
    previously tracked symbols are always kept, so an asset that was traded
    once keeps syncing after its balance drops to zero.
    """
    allow = set(quote_allow_list)
    held = assets_with_balance(balances)
    considered = held | allow

    by_base: Dict[str, Set[str]] = defaultdict(set)
    by_quote: Dict[str, Set[str]] = defaultdict(set)
    pairs: Dict[str, Tuple[str, str]] = {}
    for entry in catalog:
        symbol = entry.get("symbol")
        base, quote = entry.get("baseAsset"), entry.get("quoteAsset")
        if not symbol or not base or not quote:
            continue
        status = entry.get("status")
        if status and status != "TRADING":
            continue
        by_base[base].add(symbol)
        by_quote[quote].add(symbol)
        pairs[symbol] = (base, quote)

    def _selected(symbol: str) -> bool:
        base, quote = pairs[symbol]
        if base in held and (quote in allow or quote in held):
            return True
        return quote in held and (base in allow or base in held)

    selected: Set[str] = set()
    for asset in considered:
        for symbol in by_base.get(asset, set()) | by_quote.get(asset, set()):
            if _selected(symbol):
                selected.add(symbol)

    selected.update(s.upper() for s in (explicit_symbols or ()) if s)
    selected.update(s for s in (tracked_symbols or ()) if s)
    return sorted(selected)

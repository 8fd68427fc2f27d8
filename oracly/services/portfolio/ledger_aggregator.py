"""
Ledger Aggregator
=================

Folds stored trades, deposits and withdrawals into a per-asset ledger and
derives holdings, realized P&L and day-bucketed series for charts.

Everything here is a pure function of the raw rows: nothing is cached or
persisted, so results always match the underlying records. USD values use the
trade notional (quote quantity, or price x quantity) as a USD proxy.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

# Ordered quote tickers for symbol splitting; the longest matching suffix wins.
QUOTE_ASSETS = (
    "USDT", "USDC", "BUSD", "USD", "FDUSD", "TUSD", "DAI",
    "BTC", "ETH", "BNB", "EUR", "GBP", "TRY", "AUD", "CAD", "BRL",
)

# A conversion leg in one of these carries the conversion's USD value.
USD_STABLE_ASSETS = frozenset({"USDT", "USDC", "BUSD", "FDUSD", "TUSD", "DAI", "USD"})

BUY, SELL, DEPOSIT, WITHDRAWAL = "BUY", "SELL", "DEPOSIT", "WITHDRAWAL"


def extract_base_asset(symbol: str, quotes: Iterable[str] = QUOTE_ASSETS) -> str:
    """
    Strip a known quote suffix from a trading symbol.

    Heuristic: the longest listed quote that is a proper suffix wins, so
    ``ETHBTC`` -> ``ETH``. A symbol with no matching suffix comes back
    uppercased. A base that itself ends in a quote ticker (``EURTEUR``-like
    pairs) is inherently ambiguous; prefer ``resolve_base_asset``, which uses
    the exchange catalog when the row carries it.
    """
    upper = (symbol or "").upper()
    for quote in sorted(quotes, key=len, reverse=True):
        if upper.endswith(quote) and len(upper) > len(quote):
            return upper[: -len(quote)]
    return upper


def resolve_base_asset(trade: Any) -> str:
    """Catalog base asset stored at ingestion, else the suffix heuristic."""
    base = getattr(trade, "base_asset", None)
    if base:
        return base.upper()
    return extract_base_asset(trade.symbol)


def _notional(trade: Any) -> float:
    quote_qty = getattr(trade, "quote_quantity", None)
    if quote_qty is not None:
        return float(quote_qty)
    return float(trade.price or 0) * float(trade.quantity or 0)


def trade_value_usd(trade: Any) -> float:
    """USD value of a trade; a conversion is valued by its stablecoin leg when it has one."""
    from_asset = getattr(trade, "from_asset", None)
    to_asset = getattr(trade, "to_asset", None)
    if from_asset and to_asset:
        if from_asset.upper() in USD_STABLE_ASSETS:
            return float(trade.from_amount or 0)
        if to_asset.upper() in USD_STABLE_ASSETS:
            return float(trade.to_amount or 0)
    return _notional(trade)


@dataclass
class LedgerEntry:
    timestamp: int  # epoch ms
    asset: str
    kind: str  # BUY, SELL, DEPOSIT, WITHDRAWAL
    quantity: float
    price: Optional[float] = None
    value_usd: Optional[float] = None
    fee: float = 0.0
    fee_asset: Optional[str] = None
    symbol: Optional[str] = None
    source: str = "trade"
    reference: Optional[str] = None
    running_quantity: float = 0.0


@dataclass
class PortfolioToken:
    asset: str
    current_quantity: float = 0.0
    buy_quantity: float = 0.0
    sell_quantity: float = 0.0
    deposit_quantity: float = 0.0
    withdrawal_quantity: float = 0.0
    buy_value_usd: float = 0.0  # invested
    sell_value_usd: float = 0.0  # realized
    trade_count: int = 0
    last_activity_at: Optional[int] = None
    events: List[LedgerEntry] = field(default_factory=list)

    @property
    def average_buy_price(self) -> Optional[float]:
        return self.buy_value_usd / self.buy_quantity if self.buy_quantity else None

    @property
    def average_sell_price(self) -> Optional[float]:
        return self.sell_value_usd / self.sell_quantity if self.sell_quantity else None

    @property
    def net_profit_usd(self) -> float:
        return self.sell_value_usd - self.buy_value_usd

    def to_dict(self, include_events: bool = True) -> Dict[str, Any]:
        data = {
            "asset": self.asset,
            "current_quantity": self.current_quantity,
            "buy_quantity": self.buy_quantity,
            "sell_quantity": self.sell_quantity,
            "deposit_quantity": self.deposit_quantity,
            "withdrawal_quantity": self.withdrawal_quantity,
            "buy_value_usd": self.buy_value_usd,
            "sell_value_usd": self.sell_value_usd,
            "average_buy_price": self.average_buy_price,
            "average_sell_price": self.average_sell_price,
            "net_profit_usd": self.net_profit_usd,
            "trade_count": self.trade_count,
            "last_activity_at": self.last_activity_at,
        }
        if include_events:
            data["events"] = [asdict(e) for e in self.events]
        return data


@dataclass
class ProfitSummary:
    total_buy_usd: float
    total_sell_usd: float
    total_profit_usd: float
    cost_basis_usd: float
    profit_pct: float
    best_performer: Optional[Dict[str, Any]]
    worst_performer: Optional[Dict[str, Any]]
    token_count: int


@dataclass
class HistoryPoint:
    date: str  # UTC calendar day, YYYY-MM-DD
    timestamp: int  # last trade of the day, epoch ms
    cumulative_profit_usd: float
    net_invested_usd: float


@dataclass
class PerformancePoint:
    date: str
    profit_pct: float
    invested_pct: float


def trade_entries(trade: Any) -> List[LedgerEntry]:
    """
    Ledger entries posted by one trade.

    A conversion posts a SELL of the from-asset and a BUY of the to-asset that
    share one notional: the stablecoin leg's amount when either leg is a USD
    stablecoin, otherwise the trade's own notional.
    """
    ts = int(trade.executed_at)
    fee = float(getattr(trade, "fee", 0) or 0)
    fee_asset = getattr(trade, "fee_asset", None)
    reference = getattr(trade, "provider_trade_id", None)
    from_asset = getattr(trade, "from_asset", None)
    to_asset = getattr(trade, "to_asset", None)

    if from_asset and to_asset:
        from_amount = float(trade.from_amount or 0)
        to_amount = float(trade.to_amount or 0)
        notional = trade_value_usd(trade)
        legs = ((from_asset, SELL, from_amount), (to_asset, BUY, to_amount))
        return [
            LedgerEntry(
                timestamp=ts,
                asset=asset.upper(),
                kind=kind,
                quantity=amount,
                price=notional / amount if amount else None,
                value_usd=notional,
                fee=fee,
                fee_asset=fee_asset,
                symbol=trade.symbol,
                reference=reference,
            )
            for asset, kind, amount in legs
        ]

    side = (trade.side or "").upper()
    return [
        LedgerEntry(
            timestamp=ts,
            asset=resolve_base_asset(trade),
            kind=BUY if side == BUY else SELL,
            quantity=float(trade.quantity or 0),
            price=float(trade.price) if trade.price is not None else None,
            value_usd=_notional(trade),
            fee=fee,
            fee_asset=fee_asset,
            symbol=trade.symbol,
            reference=reference,
        )
    ]


def _transfer_entry(row: Any, kind: str) -> LedgerEntry:
    if kind == DEPOSIT:
        ts, reference, fee = row.insert_time, row.deposit_id, 0.0
    else:
        ts, reference, fee = row.apply_time, row.withdraw_id, float(row.fee or 0)
    return LedgerEntry(
        timestamp=int(ts),
        asset=row.coin.upper(),
        kind=kind,
        quantity=float(row.amount or 0),
        fee=fee,
        fee_asset=row.coin.upper() if fee else None,
        source=kind.lower(),
        reference=reference,
    )


def _apply(token: PortfolioToken, entry: LedgerEntry) -> None:
    if entry.kind == BUY:
        token.current_quantity += entry.quantity
        token.buy_quantity += entry.quantity
        token.buy_value_usd += entry.value_usd or 0.0
        token.trade_count += 1
    elif entry.kind == SELL:
        token.current_quantity -= entry.quantity
        token.sell_quantity += entry.quantity
        token.sell_value_usd += entry.value_usd or 0.0
        token.trade_count += 1
    elif entry.kind == DEPOSIT:
        token.current_quantity += entry.quantity
        token.deposit_quantity += entry.quantity
    else:
        token.current_quantity -= entry.quantity
        token.withdrawal_quantity += entry.quantity
    entry.running_quantity = token.current_quantity
    token.last_activity_at = entry.timestamp
    token.events.append(entry)


def aggregate(
    trades: Iterable[Any],
    deposits: Iterable[Any] = (),
    withdrawals: Iterable[Any] = (),
) -> Dict[str, PortfolioToken]:
    """Per-asset PortfolioToken built from every stored record, keyed by asset."""
    entries: List[LedgerEntry] = []
    for trade in trades:
        entries.extend(trade_entries(trade))
    entries.extend(_transfer_entry(d, DEPOSIT) for d in deposits)
    entries.extend(_transfer_entry(w, WITHDRAWAL) for w in withdrawals)

    # Stable sort keeps a conversion's two legs in posting order
    entries.sort(key=lambda e: e.timestamp)
    tokens: Dict[str, PortfolioToken] = {}
    for entry in entries:
        token = tokens.get(entry.asset)
        if token is None:
            token = tokens[entry.asset] = PortfolioToken(asset=entry.asset)
        _apply(token, entry)
    return tokens


def build_profit_summary(tokens: Dict[str, PortfolioToken]) -> ProfitSummary:
    total_buy = sum(t.buy_value_usd for t in tokens.values())
    total_sell = sum(t.sell_value_usd for t in tokens.values())
    profit = total_sell - total_buy
    cost_basis = max(total_buy - total_sell, 0.0)
    profit_pct = (profit / cost_basis * 100.0) if cost_basis else 0.0

    # Transfer-only assets have no P&L basis
    traded = [t for t in tokens.values() if t.trade_count > 0]
    best = max(traded, key=lambda t: t.net_profit_usd, default=None)
    worst = min(traded, key=lambda t: t.net_profit_usd, default=None)

    def _performer(token: Optional[PortfolioToken]) -> Optional[Dict[str, Any]]:
        if token is None:
            return None
        return {"asset": token.asset, "net_profit_usd": token.net_profit_usd}

    return ProfitSummary(
        total_buy_usd=total_buy,
        total_sell_usd=total_sell,
        total_profit_usd=profit,
        cost_basis_usd=cost_basis,
        profit_pct=profit_pct,
        best_performer=_performer(best),
        worst_performer=_performer(worst),
        token_count=len(tokens),
    )


def _utc_day(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def build_history(trades: Iterable[Any]) -> List[HistoryPoint]:
    """Cumulative profit and net invested at the end of each UTC day with trades."""
    entries: List[LedgerEntry] = []
    for trade in trades:
        entries.extend(trade_entries(trade))
    entries.sort(key=lambda e: e.timestamp)

    bought = sold = 0.0
    days: "OrderedDict[str, HistoryPoint]" = OrderedDict()
    for entry in entries:
        if entry.kind == BUY:
            bought += entry.value_usd or 0.0
        else:
            sold += entry.value_usd or 0.0
        day = _utc_day(entry.timestamp)
        days[day] = HistoryPoint(
            date=day,
            timestamp=entry.timestamp,
            cumulative_profit_usd=sold - bought,
            net_invested_usd=max(bought - sold, 0.0),
        )
    return list(days.values())


def build_performance(history: List[HistoryPoint]) -> List[PerformancePoint]:
    """History normalized to the first day's net invested; a zero baseline yields 0% throughout."""
    if not history:
        return []
    baseline = abs(history[0].net_invested_usd)
    if not baseline:
        return [PerformancePoint(date=p.date, profit_pct=0.0, invested_pct=0.0) for p in history]
    return [
        PerformancePoint(
            date=p.date,
            profit_pct=p.cumulative_profit_usd / baseline * 100.0,
            invested_pct=p.net_invested_usd / baseline * 100.0,
        )
        for p in history
    ]


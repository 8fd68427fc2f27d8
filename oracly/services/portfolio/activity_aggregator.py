from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from oracly.models import Integration
from oracly.services.portfolio.ledger_aggregator import resolve_base_asset, trade_entries, trade_value_usd
from oracly.services.portfolio.portfolio_analytics_service import UserRecords, load_user_records

ACTIVITY_KINDS = ("trade", "deposit", "withdrawal")


def _provider_fields(integration: Optional[Integration]) -> Dict[str, Any]:
    if integration is None:
        return {"provider": None, "provider_display_name": None}
    return {"provider": integration.provider.value, "provider_display_name": integration.label}


class ActivityAggregatorService:
    """
    Unified activity feed and overview figures across trades, deposits and withdrawals.
    """

    def get_activity(
        self,
        db: Session,
        user_id: str,
        kind: Optional[str] = None,  # trade / deposit / withdrawal
        asset: Optional[str] = None,
        limit: Optional[int] = 200,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return unified activity rows, newest first."""
        records = load_user_records(db, user_id)
        rows = self._rows(records)
        if kind:
            rows = [r for r in rows if r["type"] == kind.lower()]
        if asset:
            rows = [r for r in rows if r["base_asset"] == asset.upper()]
        rows.sort(key=lambda r: r["timestamp"], reverse=True)
        end = offset + limit if limit is not None else None
        return rows[offset:end]

    def _rows(self, records: UserRecords) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for t in records.trades:
            rows.append(
                {
                    "type": "trade",
                    "id": t.id,
                    "integration_id": t.integration_id,
                    **_provider_fields(records.integrations.get(t.integration_id)),
                    "provider_trade_id": t.provider_trade_id,
                    "trade_type": t.trade_type.value if t.trade_type else None,
                    "symbol": t.symbol,
                    "base_asset": resolve_base_asset(t),
                    "side": t.side,
                    "quantity": t.quantity,
                    "price": t.price,
                    "quote_quantity": t.quote_quantity,
                    "fee": t.fee,
                    "fee_asset": t.fee_asset,
                    "from_asset": t.from_asset,
                    "from_amount": t.from_amount,
                    "to_asset": t.to_asset,
                    "to_amount": t.to_amount,
                    "timestamp": t.executed_at,
                }
            )
        for d in records.deposits:
            rows.append(
                {
                    "type": "deposit",
                    "id": d.id,
                    "integration_id": d.integration_id,
                    **_provider_fields(records.integrations.get(d.integration_id)),
                    "base_asset": d.coin.upper(),
                    "amount": d.amount,
                    "network": d.network,
                    "status": d.status,
                    "tx_id": d.tx_id,
                    "direction": "IN",
                    "timestamp": d.insert_time,
                }
            )
        for w in records.withdrawals:
            rows.append(
                {
                    "type": "withdrawal",
                    "id": w.id,
                    "integration_id": w.integration_id,
                    **_provider_fields(records.integrations.get(w.integration_id)),
                    "base_asset": w.coin.upper(),
                    "amount": w.amount,
                    "network": w.network,
                    "status": w.status,
                    "tx_id": w.tx_id,
                    "fee": w.fee,
                    "direction": "OUT",
                    "timestamp": w.apply_time,
                }
            )
        return rows

    def get_overview(self, db: Session, user_id: str) -> Dict[str, Any]:
        """Headline figures, allocation by traded value, and cumulative daily volume."""
        records = load_user_records(db, user_id)
        trades = records.trades

        total_volume = sum(trade_value_usd(t) for t in trades)
        total_fees = sum(float(t.fee or 0) for t in trades)
        # Both legs of a conversion count
        assets = {e.asset for t in trades for e in trade_entries(t)}
        assets.update(d.coin.upper() for d in records.deposits)
        assets.update(w.coin.upper() for w in records.withdrawals)

        by_asset: Dict[str, float] = {}
        by_day: "OrderedDict[str, float]" = OrderedDict()
        for t in trades:  # loaded in execution order
            base = resolve_base_asset(t)
            value = trade_value_usd(t)
            by_asset[base] = by_asset.get(base, 0.0) + value
            day = datetime.fromtimestamp(t.executed_at / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
            by_day[day] = by_day.get(day, 0.0) + value

        allocation = []
        if total_volume:
            allocation = [
                {"asset": asset, "value": value, "share": value / total_volume}
                for asset, value in sorted(by_asset.items(), key=lambda kv: kv[1], reverse=True)
            ]

        nav_series = []
        cumulative = 0.0
        for day, value in by_day.items():
            cumulative += value
            nav_series.append({"date": day, "nav": cumulative})

        return {
            "trade_count": len(trades),
            "deposit_count": len(records.deposits),
            "withdrawal_count": len(records.withdrawals),
            "total_volume": total_volume,
            "total_fees": total_fees,
            "unique_assets": len(assets),
            "last_trade_at": trades[-1].executed_at if trades else None,
            "allocation": allocation,
            "nav_series": nav_series,
        }


activity_aggregator = ActivityAggregatorService()

"""
Portfolio Analytics Service
===========================

Read path for the dashboard: loads a user's raw exchange history and runs
the ledger aggregator over it. Nothing is cached; each call rescans.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from oracly.models import Deposit, Integration, Trade, Withdrawal
from oracly.services.portfolio.ledger_aggregator import (
    aggregate,
    build_history,
    build_performance,
    build_profit_summary,
)

logger = logging.getLogger(__name__)


@dataclass
class UserRecords:
    trades: List[Trade]
    deposits: List[Deposit]
    withdrawals: List[Withdrawal]
    integrations: Dict[int, Integration]


def load_user_records(db: Session, user_id: str) -> UserRecords:
    """Every stored trade/deposit/withdrawal across the user's integrations."""
    integrations = {
        i.id: i for i in db.query(Integration).filter(Integration.user_id == user_id).all()
    }
    ids = list(integrations)
    if not ids:
        return UserRecords([], [], [], {})
    trades = (
        db.query(Trade)
        .filter(Trade.integration_id.in_(ids))
        .order_by(Trade.executed_at, Trade.id)
        .all()
    )
    deposits = (
        db.query(Deposit)
        .filter(Deposit.integration_id.in_(ids))
        .order_by(Deposit.insert_time, Deposit.id)
        .all()
    )
    withdrawals = (
        db.query(Withdrawal)
        .filter(Withdrawal.integration_id.in_(ids))
        .order_by(Withdrawal.apply_time, Withdrawal.id)
        .all()
    )
    return UserRecords(trades, deposits, withdrawals, integrations)


class PortfolioAnalyticsService:
    """Derived portfolio views for one user."""

    def __init__(self, db_session: Optional[Session] = None):
        self.db = db_session

    def _records(self, user_id: str, db: Optional[Session]) -> UserRecords:
        session = db or self.db
        if session is None:
            raise ValueError("A database session is required")
        return load_user_records(session, user_id)

    def get_portfolio_tokens(
        self, user_id: str, db: Optional[Session] = None, include_events: bool = True
    ) -> List[Dict[str, Any]]:
        """Per-asset tokens, largest invested first."""
        records = self._records(user_id, db)
        tokens = aggregate(records.trades, records.deposits, records.withdrawals)
        ordered = sorted(tokens.values(), key=lambda t: (-t.buy_value_usd, t.asset))
        return [t.to_dict(include_events=include_events) for t in ordered]

    def get_profit_summary(self, user_id: str, db: Optional[Session] = None) -> Dict[str, Any]:
        records = self._records(user_id, db)
        tokens = aggregate(records.trades, records.deposits, records.withdrawals)
        return asdict(build_profit_summary(tokens))

    def get_history(self, user_id: str, db: Optional[Session] = None) -> List[Dict[str, Any]]:
        records = self._records(user_id, db)
        return [asdict(p) for p in build_history(records.trades)]

    def get_performance(self, user_id: str, db: Optional[Session] = None) -> List[Dict[str, Any]]:
        records = self._records(user_id, db)
        return [asdict(p) for p in build_performance(build_history(records.trades))]


# Global instance
portfolio_analytics_service = PortfolioAnalyticsService()

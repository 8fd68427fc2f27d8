"""
Sync Cursor Store
=================

Persists one opaque resumption cursor per (integration, dataset, scope).
No business logic lives here; synchronizers decide what a cursor means.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from oracly.models import IntegrationSyncState, utcnow

logger = logging.getLogger(__name__)

DATASET_SPOT_TRADES = "spot_trades"
DATASET_DEPOSITS = "deposits"
DATASET_WITHDRAWALS = "withdrawals"
DATASET_CONVERT_TRADES = "convert_trades"

KNOWN_DATASETS = (
    DATASET_SPOT_TRADES,
    DATASET_DEPOSITS,
    DATASET_WITHDRAWALS,
    DATASET_CONVERT_TRADES,
)

DEFAULT_SCOPE = "default"

# Stored in place of a cursor after a reset; reads treat it as absent.
UNINITIALIZED_CURSOR: Dict[str, Any] = {"initialized": False}


def is_initialized(cursor: Optional[Dict[str, Any]]) -> bool:
    return bool(cursor) and cursor.get("initialized", True) is not False


class SyncCursorStore:
    """
    Cursor persistence on top of a SQLAlchemy session.

    ``save`` only stages the row; committing is the caller's job so a page's
    records and its cursor land in the same transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    def _row(self, integration_id: int, dataset: str, scope: str) -> Optional[IntegrationSyncState]:
        return (
            self.session.query(IntegrationSyncState)
            .filter(
                IntegrationSyncState.integration_id == integration_id,
                IntegrationSyncState.dataset == dataset,
                IntegrationSyncState.scope == scope,
            )
            .first()
        )

    def load(self, integration_id: int, dataset: str, scope: str = DEFAULT_SCOPE) -> Optional[Dict[str, Any]]:
        """Stored cursor, or None when absent or reset."""
        row = self._row(integration_id, dataset, scope)
        if row is None or not is_initialized(row.cursor):
            return None
        return dict(row.cursor)

    def save(self, integration_id: int, dataset: str, scope: str, cursor: Dict[str, Any]) -> None:
        row = self._row(integration_id, dataset, scope)
        value = {**cursor, "initialized": cursor.get("initialized", True)}
        if row is None:
            row = IntegrationSyncState(
                integration_id=integration_id, dataset=dataset, scope=scope, cursor=value
            )
            self.session.add(row)
        else:
            # Assign a new dict so the JSON column is flagged dirty
            row.cursor = value
            row.updated_at = utcnow()
        self.session.flush()

    def list_scopes(self, integration_id: int, dataset: str) -> List[str]:
        """Scopes with a row for this dataset, including reset ones."""
        rows = (
            self.session.query(IntegrationSyncState.scope)
            .filter(
                IntegrationSyncState.integration_id == integration_id,
                IntegrationSyncState.dataset == dataset,
            )
            .all()
        )
        return sorted(scope for (scope,) in rows)

    def tracked_symbols(self, integration_id: int) -> List[str]:
        """Trading symbols that already have a spot-trade scope."""
        return [
            s
            for s in self.list_scopes(integration_id, DATASET_SPOT_TRADES)
            if s != DEFAULT_SCOPE
        ]

    def reset(self, integration_id: int) -> int:
        """
        Overwrite every cursor of the integration with the uninitialized marker.

        Per-symbol rows are kept (so their symbols stay tracked) but invalidated,
        and each known dataset gets a reset ``default`` row. Returns the number
        of rows written.
        """
        rows = (
            self.session.query(IntegrationSyncState)
            .filter(IntegrationSyncState.integration_id == integration_id)
            .all()
        )
        seen = set()
        for row in rows:
            row.cursor = dict(UNINITIALIZED_CURSOR)
            row.updated_at = utcnow()
            seen.add((row.dataset, row.scope))
        count = len(rows)
        for dataset in KNOWN_DATASETS:
            if (dataset, DEFAULT_SCOPE) not in seen:
                self.session.add(
                    IntegrationSyncState(
                        integration_id=integration_id,
                        dataset=dataset,
                        scope=DEFAULT_SCOPE,
                        cursor=dict(UNINITIALIZED_CURSOR),
                    )
                )
                count += 1
        self.session.flush()
        logger.info(f"🔄 Reset {count} sync cursors for integration {integration_id}")
        return count

"""
Provider-Agnostic Integration Sync Service
==========================================

Universal sync coordinator that routes to provider-specific services.

It owns the cross-cutting rules every provider shares:
1. Resolves the integration (and its owner) or raises NotFoundError
2. Claims the integration so at most one sync runs per integration
3. Delegates to the provider service and records the outcome
4. Exposes best-effort cancellation of a running sync
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from oracly.config import settings
from oracly.database import SessionLocal
from oracly.exceptions import NotFoundError, SyncInProgressError, UnsupportedProviderError
from oracly.models import Integration, ProviderType, SyncStatus, SUPPORTED_PROVIDERS, utcnow
from oracly.services.portfolio.binance_sync_service import BinanceSyncService

logger = logging.getLogger(__name__)

_RESULT_STATUS = {
    "success": SyncStatus.SUCCESS,
    "partial": SyncStatus.PARTIAL,
    "error": SyncStatus.FAILED,
    "cancelled": SyncStatus.FAILED,
}


class BrokerSyncService:
    """Routes integration syncs to provider services and serializes them per integration."""

    def __init__(self):
        # DI registry (instances) – tests can override per ProviderType
        self._provider_services = {}
        self._cancel_events: Dict[int, asyncio.Event] = {}

    def get_available_providers(self):
        return list(SUPPORTED_PROVIDERS)

    def _get_provider_service(self, provider):
        if not isinstance(provider, ProviderType):
            raise UnsupportedProviderError(f"Unsupported provider: {provider}")
        if provider in self._provider_services:
            return self._provider_services[provider]
        if provider == ProviderType.BINANCE:
            instance = BinanceSyncService()
        else:
            raise UnsupportedProviderError(f"Unsupported provider: {provider.value}")
        self._provider_services[provider] = instance
        return instance

    @staticmethod
    def _load_integration(session: Session, integration_id: int, user_id: Optional[str]) -> Integration:
        query = session.query(Integration).filter(Integration.id == integration_id)
        if user_id is not None:
            query = query.filter(Integration.user_id == user_id)
        integration = query.first()
        if not integration:
            raise NotFoundError(f"Integration {integration_id} not found")
        return integration

    @staticmethod
    def _claim(session: Session, integration_id: int) -> bool:
        """Atomically flip the integration to SYNCING unless a live sync holds it."""
        now = utcnow()
        stale_before = now - timedelta(seconds=settings.SYNC_LOCK_TTL_SECONDS)
        claimed = (
            session.query(Integration)
            .filter(
                Integration.id == integration_id,
                or_(
                    Integration.sync_status != SyncStatus.SYNCING,
                    Integration.sync_started_at.is_(None),
                    Integration.sync_started_at < stale_before,
                ),
            )
            .update(
                {
                    Integration.sync_status: SyncStatus.SYNCING,
                    Integration.sync_started_at: now,
                    Integration.last_sync_attempt: now,
                },
                synchronize_session=False,
            )
        )
        session.commit()
        return claimed == 1

    @staticmethod
    def _release(session: Session, integration_id: int, status: SyncStatus, error_message: str = None):
        integration = session.query(Integration).filter(Integration.id == integration_id).first()
        if integration is None:
            return
        integration.update_sync_status(status, error_message)
        session.commit()

    def is_running(self, integration_id: int) -> bool:
        return integration_id in self._cancel_events

    def cancel(self, integration_id: int) -> bool:
        """Ask a running sync in this process to stop before its next page."""
        event = self._cancel_events.get(integration_id)
        if event is None:
            return False
        event.set()
        logger.info(f"🛑 Cancellation requested for integration {integration_id}")
        return True

    async def sync_integration_async(
        self,
        integration_id: int,
        db: Session = None,
        user_id: Optional[str] = None,
        symbols=None,
        start_time: Optional[int] = None,
    ) -> Dict:
        """
        Sync one integration with its provider service.

        Raises NotFoundError for unknown (or foreign, when ``user_id`` is given)
        integrations and SyncInProgressError when another sync holds it.
        Credential problems propagate after the integration is marked FAILED.
        """
        # Tests pass in db session directly
        session = db or SessionLocal()
        try:
            integration = self._load_integration(session, integration_id, user_id)
            service = self._get_provider_service(integration.provider)
            if not self._claim(session, integration.id):
                raise SyncInProgressError(f"Integration {integration_id} is already syncing")

            session.refresh(integration)
            cancel_event = asyncio.Event()
            self._cancel_events[integration.id] = cancel_event
            logger.info(f"🚀 Starting {integration.provider.value} sync for integration {integration.id}")
            try:
                result = await service.sync_integration(
                    session,
                    integration,
                    symbols=symbols,
                    start_time=start_time,
                    cancel_event=cancel_event,
                )
            except Exception as e:
                logger.error(f"❌ Error syncing integration {integration_id}: {e}")
                session.rollback()
                self._release(session, integration_id, SyncStatus.FAILED, str(e))
                raise
            finally:
                self._cancel_events.pop(integration_id, None)

            status = _RESULT_STATUS.get(result.get("status"), SyncStatus.FAILED)
            message = None
            if result.get("status") == "cancelled":
                message = "Sync cancelled"
            elif result.get("errors"):
                message = "; ".join(
                    f"{err['dataset']}/{err['scope']}: {err['message']}" for err in result["errors"]
                )
            self._release(session, integration_id, status, message)
            return result
        finally:
            if db is None:
                session.close()

    def sync_integration(self, integration_id: int, db: Session = None, **kwargs) -> Dict:
        """Blocking variant for Celery workers and scripts."""
        return asyncio.run(self.sync_integration_async(integration_id, db=db, **kwargs))


# Global instance
broker_sync_service = BrokerSyncService()

from __future__ import annotations

import logging
from typing import List, Optional

from celery import shared_task

from oracly.config import settings
from oracly.database import SessionLocal
from oracly.exceptions import OraclyError
from oracly.models import Integration
from oracly.services.portfolio.broker_sync_service import broker_sync_service

logger = logging.getLogger(__name__)


@shared_task(name="oracly.tasks.integration_sync.sync_integration_task")
def sync_integration_task(
    integration_id: int,
    symbols: Optional[List[str]] = None,
    start_time: Optional[int] = None,
) -> dict:
    """Run one integration sync in a Celery worker (separate process)."""
    session = SessionLocal()
    try:
        # Worker-owned event loop per task
        return broker_sync_service.sync_integration(
            integration_id, db=session, symbols=symbols, start_time=start_time
        )
    except OraclyError as e:
        logger.error(f"❌ Sync task for integration {integration_id} failed: {e}")
        return {"status": "error", "integration_id": integration_id, **e.to_dict()}
    finally:
        session.close()


@shared_task(name="oracly.tasks.integration_sync.sync_all_integrations")
def sync_all_integrations() -> dict:
    """Enqueue one sync task per integration."""
    session = SessionLocal()
    try:
        integrations = session.query(Integration).all()
        enqueued = 0
        skipped = 0
        results = []
        for integration in integrations:
            if not integration.can_sync(settings.SYNC_LOCK_TTL_SECONDS):
                skipped += 1
                continue
            task = sync_integration_task.delay(integration.id)
            results.append({"integration_id": integration.id, "task_id": task.id})
            enqueued += 1
        logger.info(f"🗓️ Scheduled sync: {enqueued} enqueued, {skipped} already syncing")
        return {"status": "queued", "enqueued": enqueued, "skipped": skipped, "results": results}
    finally:
        session.close()

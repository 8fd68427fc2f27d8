"""
Integration API Routes
======================

Flow:
1. User connects an exchange with an API key pair (stored encrypted)
2. User triggers a sync, inline or queued on Celery
3. Reset cursors forces the next sync to re-import full history
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from oracly.api.dependencies import get_current_user_id
from oracly.database import get_db
from oracly.services.portfolio.broker_sync_service import broker_sync_service
from oracly.services.portfolio.integration_service import integration_service

router = APIRouter(prefix="/api/v1/integrations", tags=["Integrations"])


class ConnectIntegrationRequest(BaseModel):
    provider: str = "binance"
    api_key: str
    api_secret: str
    read_only: bool = True
    label: Optional[str] = None


class ConnectIntegrationResponse(BaseModel):
    status: str  # created / updated
    provider: str
    integration_id: int


class IntegrationResponse(BaseModel):
    id: int
    provider: str
    display_name: str
    read_only: bool
    scopes: List[str] = Field(default_factory=list)
    sync_status: Optional[str] = None
    last_sync_attempt: Optional[datetime] = None
    last_successful_sync: Optional[datetime] = None
    sync_error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncIntegrationRequest(BaseModel):
    symbols: Optional[List[str]] = None  # always synced, on top of discovery
    start_time: Optional[int] = None  # epoch ms; only extends history backward
    background: bool = False  # queue on Celery instead of running inline


@router.post("", response_model=ConnectIntegrationResponse)
async def connect_integration(
    request: ConnectIntegrationRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Create the user's integration for a provider, or replace its credentials."""
    return integration_service.connect_integration(
        db,
        user_id,
        request.provider,
        request.api_key,
        request.api_secret,
        read_only=request.read_only,
        label=request.label,
    )


@router.get("", response_model=List[IntegrationResponse])
async def list_integrations(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return integration_service.list_integrations(db, user_id)


@router.post("/{integration_id}/sync")
async def sync_integration(
    integration_id: int,
    request: Optional[SyncIntegrationRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """
    Sync one integration.

    Inline syncs return the per-dataset result; background syncs return the
    Celery task id.
    """
    request = request or SyncIntegrationRequest()
    # Ownership check before anything is queued
    integration = integration_service.get_integration(db, integration_id, user_id)
    if request.background:
        from oracly.tasks.celery_app import celery_app

        task = celery_app.send_task(
            "oracly.tasks.integration_sync.sync_integration_task",
            args=[integration.id],
            kwargs={"symbols": request.symbols, "start_time": request.start_time},
        )
        return {"status": "queued", "task_id": task.id}
    return await broker_sync_service.sync_integration_async(
        integration.id,
        db=db,
        user_id=user_id,
        symbols=request.symbols,
        start_time=request.start_time,
    )


@router.post("/{integration_id}/cancel")
async def cancel_sync(
    integration_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Best-effort: a running sync stops before its next page request."""
    integration = integration_service.get_integration(db, integration_id, user_id)
    return {"cancelled": broker_sync_service.cancel(integration.id)}


@router.post("/{integration_id}/reset-cursors")
async def reset_cursors(
    integration_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return integration_service.reset_cursors(db, integration_id, user_id)


@router.get("/sync-scopes")
async def list_sync_scopes(
    dataset: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return integration_service.list_sync_scopes(db, user_id, dataset)

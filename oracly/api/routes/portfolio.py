"""
Portfolio API Routes
====================

Read-only views recomputed from stored exchange history on every request.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from oracly.api.dependencies import get_current_user_id
from oracly.database import get_db
from oracly.services.portfolio.activity_aggregator import ACTIVITY_KINDS, activity_aggregator
from oracly.services.portfolio.portfolio_analytics_service import portfolio_analytics_service

router = APIRouter(prefix="/api/v1/portfolio", tags=["Portfolio"])


@router.get("/transactions")
async def list_transactions(
    kind: Optional[str] = Query(None, description="trade, deposit or withdrawal"),
    asset: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    if kind and kind.lower() not in ACTIVITY_KINDS:
        raise HTTPException(status_code=400, detail=f"Unknown transaction kind: {kind}")
    rows = activity_aggregator.get_activity(db, user_id, kind=kind, asset=asset, limit=limit, offset=offset)
    return {"transactions": rows, "count": len(rows)}


@router.get("/tokens")
async def get_portfolio_tokens(
    include_events: bool = Query(True),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    tokens = portfolio_analytics_service.get_portfolio_tokens(user_id, db=db, include_events=include_events)
    return {"tokens": tokens}


@router.get("/summary")
async def get_profit_summary(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return portfolio_analytics_service.get_profit_summary(user_id, db=db)


@router.get("/history")
async def get_history(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return {"history": portfolio_analytics_service.get_history(user_id, db=db)}


@router.get("/performance")
async def get_performance(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return {"performance": portfolio_analytics_service.get_performance(user_id, db=db)}


@router.get("/overview")
async def get_overview(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return activity_aggregator.get_overview(db, user_id)

"""
Alerts Router — read and resolve velocity alerts.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import resolve_alert
from api.deps import get_db, verify_cron_secret
from db.models import Alert

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"], dependencies=[Depends(verify_cron_secret)])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    alert_id: UUID
    shop_id: UUID
    product_id: UUID
    alert_type: str
    severity: str
    title: str
    message: str
    is_active: bool
    is_resolved: bool
    notifications_sent: bool
    current_velocity: float | None
    velocity_trend: str | None
    days_until_stockout: int | None
    suggested_action: str | None
    created_at: datetime
    resolved_at: datetime | None

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[AlertResponse])
async def list_alerts(
    shop_id: UUID,
    active_only: bool = Query(True),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    query = select(Alert).where(Alert.shop_id == shop_id)
    if active_only:
        query = query.where(Alert.is_active.is_(True), Alert.is_resolved.is_(False))
    result = await db.execute(query.order_by(Alert.created_at.desc()).limit(limit))
    return result.scalars().all()


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve(alert_id: UUID, db: AsyncSession = Depends(get_db)):
    alert = await resolve_alert(db, alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    await db.commit()
    await db.refresh(alert)
    return alert

"""
Alert Engine — deduplicated alert store and first-time notification.

Dedup key: (shop_id, product_id, alert_type) among rows that are
active and unresolved. At most one such row exists; the partial unique
index `uq_alerts_open_per_key` backs this at the database level.

Lifecycle:
  created → updated in place while still triggering → notified once
  → resolved (is_active=false, is_resolved=true)

Only creation dispatches notifications, so repeated analysis runs do not
grow notification volume.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.channels import Notification
from alerts.dispatcher import DispatchResult, NotificationDispatcher
from alerts.risk import RiskAssessment
from db.models import Alert
from ml.velocity import VelocityForecast

logger = structlog.get_logger()

URGENT_REORDER_DAYS = 3
EXPEDITE_REORDER_DAYS = 7

ALERT_TITLES = {
    "VELOCITY_SPIKE": "Sales Spike: {p}",
    "FAST_SELLING_WARNING": "Fast Selling: {p}",
    "IMMINENT_STOCKOUT": "Stockout Alert: {p}",
    "VELOCITY_TREND_CHANGE": "Sales Accelerating: {p}",
}
DEFAULT_TITLE = "Velocity Alert: {p}"

# Fields refreshed when an open alert keeps triggering.
MUTABLE_FIELDS = (
    "current_velocity",
    "days_until_stockout",
    "predicted_stockout",
    "velocity_trend",
    "ai_recommendation",
)


@dataclass(frozen=True)
class AlertKey:
    shop_id: uuid.UUID
    product_id: uuid.UUID
    alert_type: str


@dataclass
class AlertUpsertResult:
    alert: Alert
    created: bool
    dispatch: DispatchResult | None = None


# ──────────────────────────────────────────────────────────────────────────
# Templates
# ──────────────────────────────────────────────────────────────────────────


def generate_alert_title(alert_type: str, product_title: str) -> str:
    return ALERT_TITLES.get(alert_type, DEFAULT_TITLE).format(p=product_title)


def generate_alert_message(product_title: str, forecast: VelocityForecast) -> str:
    message = f"{product_title} is selling at {forecast.daily_velocity:.1f} units/day ({forecast.trend.lower()})."
    days = forecast.days_until_stockout
    if days is not None and days <= EXPEDITE_REORDER_DAYS:
        message += f" Predicted stockout in {days} days."
    if forecast.trend == "ACCELERATING":
        message += " Sales are accelerating rapidly!"
    return message


def generate_suggested_action(days_until_stockout: int | None, trend: str) -> str:
    if days_until_stockout is not None and days_until_stockout <= URGENT_REORDER_DAYS:
        return "URGENT: Place emergency reorder immediately"
    if days_until_stockout is not None and days_until_stockout <= EXPEDITE_REORDER_DAYS:
        return "Consider expedited reordering to prevent stockout"
    if trend == "ACCELERATING":
        return "Monitor closely and prepare for increased demand"
    return "Review inventory levels and consider reordering"


# ──────────────────────────────────────────────────────────────────────────
# Store
# ──────────────────────────────────────────────────────────────────────────


async def find_active_alert(db: AsyncSession, key: AlertKey) -> Alert | None:
    result = await db.execute(
        select(Alert).where(
            Alert.shop_id == key.shop_id,
            Alert.product_id == key.product_id,
            Alert.alert_type == key.alert_type,
            Alert.is_active.is_(True),
            Alert.is_resolved.is_(False),
        )
    )
    return result.scalars().first()


def _apply_updates(alert: Alert, fields: dict[str, Any]) -> None:
    """Refresh only the mutable fields; identity, severity and text stay as created."""
    for name in MUTABLE_FIELDS:
        if name in fields:
            setattr(alert, name, fields[name])
    alert.updated_at = datetime.utcnow()


async def upsert_active_alert(db: AsyncSession, key: AlertKey, fields: dict[str, Any]) -> tuple[Alert, bool]:
    """
    Update the open alert for `key` in place, or insert a new one.

    The insert runs in a SAVEPOINT; if a concurrent writer created the
    open row first, the unique index rejects ours and we fall back to
    updating theirs.
    """
    existing = await find_active_alert(db, key)
    if existing is not None:
        _apply_updates(existing, fields)
        await db.flush()
        return existing, False

    alert = Alert(
        alert_id=uuid.uuid4(),
        shop_id=key.shop_id,
        product_id=key.product_id,
        alert_type=key.alert_type,
        is_active=True,
        is_resolved=False,
        **fields,
    )
    try:
        async with db.begin_nested():
            db.add(alert)
    except IntegrityError:
        logger.info("alerts.upsert_conflict", alert_type=key.alert_type, product_id=str(key.product_id))
        existing = await find_active_alert(db, key)
        if existing is None:
            raise
        _apply_updates(existing, fields)
        await db.flush()
        return existing, False
    return alert, True


async def mark_notified(db: AsyncSession, alert: Alert) -> None:
    alert.notifications_sent = True
    alert.last_notified = datetime.utcnow()
    await db.flush()


async def resolve_alert(db: AsyncSession, alert_id: uuid.UUID) -> Alert | None:
    """Close an alert so the next triggering run opens a fresh one."""
    alert = await db.get(Alert, alert_id)
    if alert is None:
        return None
    alert.is_active = False
    alert.is_resolved = True
    alert.resolved_at = datetime.utcnow()
    await db.flush()
    return alert


# ──────────────────────────────────────────────────────────────────────────
# Create-or-update + notify
# ──────────────────────────────────────────────────────────────────────────


async def upsert_fast_selling_alert(
    db: AsyncSession,
    *,
    shop,
    product,
    forecast: VelocityForecast,
    assessment: RiskAssessment,
    insight: str,
) -> AlertUpsertResult | None:
    """Store the alert for a triggering assessment without notifying anyone."""
    if not assessment.should_alert:
        return None

    key = AlertKey(shop_id=shop.shop_id, product_id=product.product_id, alert_type=assessment.alert_type)
    mutable = {
        "current_velocity": forecast.daily_velocity,
        "days_until_stockout": forecast.days_until_stockout,
        "predicted_stockout": forecast.predicted_stockout_date,
        "velocity_trend": forecast.trend,
        "ai_recommendation": insight,
    }
    alert, created = await upsert_active_alert(
        db,
        key,
        {
            **mutable,
            "severity": assessment.severity,
            "title": generate_alert_title(assessment.alert_type, product.title),
            "message": generate_alert_message(product.title, forecast),
            "suggested_action": generate_suggested_action(forecast.days_until_stockout, forecast.trend),
            "alert_metadata": {
                "confidence_score": forecast.confidence_score,
                "risk_level": assessment.risk_level,
                "automated_alert": True,
                "analysis_timestamp": datetime.utcnow().isoformat(),
            },
        },
    )

    if not created:
        logger.info("alerts.updated", alert_id=str(alert.alert_id), alert_type=alert.alert_type)
    return AlertUpsertResult(alert=alert, created=created)


async def notify_new_alert(
    db: AsyncSession,
    alert: Alert,
    *,
    shop,
    product,
    setting,
    forecast: VelocityForecast,
    insight: str,
    dispatcher: NotificationDispatcher,
    threshold: int | None = None,
) -> DispatchResult:
    """
    Send a freshly created alert to every enabled channel and mark it notified.

    The alert row must already be committed: its existence is what keeps
    later runs from sending the same alert again.
    """
    notification = Notification(
        shop_id=shop.shop_id,
        shop_domain=shop.domain,
        product_id=product.product_id,
        product_title=product.title,
        alert_id=alert.alert_id,
        alert_type=alert.alert_type,
        severity=alert.severity,
        title=alert.title,
        message=alert.message,
        current_quantity=forecast.current_stock or 0,
        threshold=threshold,
        metadata={
            "velocity": forecast.daily_velocity,
            "trend": forecast.trend,
            "daysUntilStockout": forecast.days_until_stockout,
            "aiInsights": insight,
        },
    )
    dispatch = await dispatcher.dispatch(setting, notification)
    alert.alert_metadata = {**(alert.alert_metadata or {}), "dispatch": dispatch.message}
    await mark_notified(db, alert)
    logger.info(
        "alerts.created",
        alert_id=str(alert.alert_id),
        alert_type=alert.alert_type,
        severity=alert.severity,
        dispatch=dispatch.message,
    )
    return dispatch


async def create_fast_selling_alert(
    db: AsyncSession,
    *,
    shop,
    product,
    setting,
    forecast: VelocityForecast,
    assessment: RiskAssessment,
    insight: str,
    dispatcher: NotificationDispatcher,
    threshold: int | None = None,
) -> AlertUpsertResult | None:
    """Upsert the alert and dispatch in the caller's transaction; dispatch only when new."""
    upsert = await upsert_fast_selling_alert(
        db, shop=shop, product=product, forecast=forecast, assessment=assessment, insight=insight
    )
    if upsert is None or not upsert.created:
        return upsert
    upsert.dispatch = await notify_new_alert(
        db,
        upsert.alert,
        shop=shop,
        product=product,
        setting=setting,
        forecast=forecast,
        insight=insight,
        dispatcher=dispatcher,
        threshold=threshold,
    )
    return upsert

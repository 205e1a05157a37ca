"""Shop-aware scheduler helpers for Celery beat fan-out."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_ACTIVE_STATUSES = ("active",)


def build_shop_query(statuses: tuple[str, ...], require_predictions: bool):
    from db.models import Shop

    query = select(Shop.shop_id).where(Shop.status.in_(statuses))
    if require_predictions:
        query = query.where(Shop.ai_predictions_enabled.is_(True))
    return query.order_by(Shop.created_at)


@celery_app.task(
    name="workers.scheduler.dispatch_active_shops",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_shops(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
    require_predictions: bool = True,
):
    """
    Dispatch a shop-scoped task to every active shop.

    With `require_predictions`, shops that have AI predictions turned off
    are left out.
    """
    from core.config import get_settings

    run_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})
    selected_statuses = tuple(statuses or DEFAULT_ACTIVE_STATUSES)

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _dispatch():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                result = await db.execute(build_shop_query(selected_statuses, require_predictions))
                shops = [str(row.shop_id) for row in result.all()]

            for shop_id in shops:
                celery_app.send_task(task_name, kwargs={**payload, "shop_id": shop_id})

            summary = {
                "status": "success",
                "task_name": task_name,
                "shop_count": len(shops),
                "dispatched_count": len(shops),
                "statuses": list(selected_statuses),
                "triggered_at": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
            }
            logger.info("scheduler.dispatch_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

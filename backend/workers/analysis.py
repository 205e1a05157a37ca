"""
Velocity Analysis Worker — per-shop batch run of the risk pipeline.

For every product of a shop, in sequence:
  1. Load stock and trailing sales samples
  2. Velocity forecast → insight text → risk assessment
  3. Upsert the velocity prediction, append a velocity analytics row
  4. Recompute the product snapshot (status, stockout days, trend flags)
  5. If the assessment triggers, upsert the alert
  6. Commit, then notify a newly created alert once and commit the mark

Each product's analysis runs in its own SAVEPOINT: a failure rolls back
that product and the loop continues. Commit and other store failures
propagate.

Schedule: See celery_app.py beat_schedule
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.delivery_log import DeliveryLog
from alerts.dispatcher import DispatchResult, NotificationDispatcher
from alerts.engine import notify_new_alert, upsert_fast_selling_alert
from alerts.risk import RiskAssessment, classify_risk
from core.config import get_settings
from inventory.metrics import StockThresholds, calculate_product_metrics, load_current_stock, resolve_thresholds
from ml.insights import InsightContext, InsightGenerator, build_insight_generator
from ml.velocity import VelocityForecast, load_velocity_samples, predict_velocity
from workers.celery_app import celery_app

logger = structlog.get_logger()

ANALYSIS_DISABLED_REASON = "AI predictions not enabled for this shop"


class ProductNotFoundError(LookupError):
    pass


@dataclass
class AnalysisSummary:
    fast_selling_products: int = 0
    imminent_stockouts: int = 0
    velocity_spikes: int = 0


@dataclass
class AnalysisResult:
    success: bool
    products_analyzed: int = 0
    products_failed: int = 0
    alerts_generated: int = 0
    alerts_created: int = 0
    critical_alerts: int = 0
    summary: AnalysisSummary = field(default_factory=AnalysisSummary)
    by_alert_type: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Batch-trigger response body."""
        payload: dict[str, Any] = {
            "success": self.success,
            "productsAnalyzed": self.products_analyzed,
            "productsFailed": self.products_failed,
            "alertsGenerated": self.alerts_generated,
            "alertsCreated": self.alerts_created,
            "criticalAlerts": self.critical_alerts,
            "summary": {
                "fastSellingProducts": self.summary.fast_selling_products,
                "imminentStockouts": self.summary.imminent_stockouts,
                "velocitySpikes": self.summary.velocity_spikes,
            },
            "byAlertType": dict(self.by_alert_type),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class ProductAnalysis:
    product_id: uuid.UUID
    forecast: VelocityForecast
    assessment: RiskAssessment
    insight: str
    status: str
    alert_created: bool = False
    # Newly created alert awaiting its one notification.
    alert: Any = None
    dispatch: DispatchResult | None = None


async def _save_prediction(db: AsyncSession, product_id: uuid.UUID, forecast: VelocityForecast, assessment: RiskAssessment, insight: str, now: datetime) -> None:
    from db.models import VelocityAnalytics, VelocityPrediction

    prediction = (
        await db.execute(select(VelocityPrediction).where(VelocityPrediction.product_id == product_id))
    ).scalar_one_or_none()
    if prediction is None:
        prediction = VelocityPrediction(product_id=product_id)
        db.add(prediction)

    prediction.current_velocity = forecast.daily_velocity
    prediction.predicted_velocity = forecast.predicted_velocity
    prediction.velocity_trend = forecast.trend
    prediction.predicted_stockout_date = forecast.predicted_stockout_date
    prediction.days_until_stockout = forecast.days_until_stockout
    prediction.confidence_score = forecast.confidence_score
    prediction.risk_level = assessment.risk_level
    prediction.ai_insights = insight
    prediction.last_calculated = now

    db.add(
        VelocityAnalytics(
            product_id=product_id,
            date=now,
            daily_velocity=forecast.metrics.daily_velocity,
            weekly_velocity=forecast.metrics.weekly_velocity,
            monthly_velocity=forecast.metrics.monthly_velocity,
            velocity_acceleration=forecast.metrics.acceleration,
            stock_level=forecast.current_stock or 0,
            is_weekend=now.weekday() >= 5,
        )
    )


async def analyze_product(
    db: AsyncSession,
    *,
    shop,
    setting,
    product,
    thresholds: StockThresholds,
    insight_generator: InsightGenerator,
    now: datetime,
) -> ProductAnalysis:
    """Forecast, classify and store one product. Nothing is sent from here."""
    settings = get_settings()

    stock = await load_current_stock(db, product.product_id)
    samples = await load_velocity_samples(db, product.product_id, now)
    forecast = predict_velocity(samples, stock, now)

    insight = await insight_generator.generate_insight(
        InsightContext(
            product_title=product.title,
            current_stock=stock or 0,
            daily_velocity=forecast.daily_velocity,
            weekly_velocity=forecast.metrics.weekly_velocity,
            trend=forecast.trend,
            acceleration=forecast.acceleration,
            history_points=forecast.sample_count,
        )
    )
    assessment = classify_risk(forecast, settings.risk_resolution)
    await _save_prediction(db, product.product_id, forecast, assessment, insight, now)

    # No samples means velocity is unknown, not zero.
    velocity = forecast.daily_velocity if forecast.sample_count else None
    metrics = calculate_product_metrics(stock, velocity, thresholds)
    trending_threshold = (
        setting.sales_velocity_threshold
        if setting is not None and setting.sales_velocity_threshold is not None
        else settings.default_sales_velocity_threshold
    )
    product.status = metrics.status
    product.stockout_days = metrics.stockout_days
    product.sales_velocity = velocity
    product.trending = velocity is not None and velocity > trending_threshold
    product.is_fast_selling = forecast.daily_velocity > settings.fast_selling_velocity
    product.velocity_trend = forecast.trend
    product.ai_risk_score = forecast.confidence_score
    product.predicted_stockout_date = forecast.predicted_stockout_date
    product.last_velocity_update = now

    analysis = ProductAnalysis(
        product_id=product.product_id,
        forecast=forecast,
        assessment=assessment,
        insight=insight,
        status=metrics.status,
    )
    upsert = await upsert_fast_selling_alert(
        db, shop=shop, product=product, forecast=forecast, assessment=assessment, insight=insight
    )
    if upsert is not None and upsert.created:
        analysis.alert_created = True
        analysis.alert = upsert.alert
    await db.flush()
    return analysis


async def notify_product_alert(
    db: AsyncSession,
    analysis: ProductAnalysis,
    *,
    shop,
    product,
    setting,
    thresholds: StockThresholds,
    dispatcher: NotificationDispatcher,
) -> None:
    if analysis.alert is None:
        return
    analysis.dispatch = await notify_new_alert(
        db,
        analysis.alert,
        shop=shop,
        product=product,
        setting=setting,
        forecast=analysis.forecast,
        insight=analysis.insight,
        dispatcher=dispatcher,
        threshold=thresholds.low_units,
    )


async def analyze_product_by_id(
    db: AsyncSession,
    product_id: uuid.UUID,
    *,
    insight_generator: InsightGenerator | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> ProductAnalysis:
    """Analyze one product outside a batch run."""
    from db.models import NotificationSetting, Product, Shop

    product = await db.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(f"Product {product_id} not found")
    shop = await db.get(Shop, product.shop_id)
    setting = (
        await db.execute(select(NotificationSetting).where(NotificationSetting.shop_id == product.shop_id))
    ).scalar_one_or_none()
    thresholds = resolve_thresholds(shop, setting)
    analysis = await analyze_product(
        db,
        shop=shop,
        setting=setting,
        product=product,
        thresholds=thresholds,
        insight_generator=insight_generator or build_insight_generator(),
        now=now or datetime.utcnow(),
    )
    await db.commit()
    await notify_product_alert(
        db,
        analysis,
        shop=shop,
        product=product,
        setting=setting,
        thresholds=thresholds,
        dispatcher=dispatcher or NotificationDispatcher.with_default_channels(DeliveryLog(db)),
    )
    await db.commit()
    return analysis


async def run_predictive_analysis(
    db: AsyncSession,
    shop_id: uuid.UUID,
    *,
    insight_generator: InsightGenerator | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> AnalysisResult:
    """Run the velocity/risk/alert pipeline over every product of a shop."""
    from db.models import NotificationSetting, Product, Shop

    now = now or datetime.utcnow()
    shop = await db.get(Shop, shop_id)
    if shop is None:
        return AnalysisResult(success=False, error=f"Shop {shop_id} not found")
    if not shop.ai_predictions_enabled:
        logger.info("analysis.skipped", shop_id=str(shop_id), reason=ANALYSIS_DISABLED_REASON)
        return AnalysisResult(success=False, error=ANALYSIS_DISABLED_REASON)

    setting = (
        await db.execute(select(NotificationSetting).where(NotificationSetting.shop_id == shop_id))
    ).scalar_one_or_none()
    thresholds = resolve_thresholds(shop, setting)
    insight_generator = insight_generator or build_insight_generator()
    dispatcher = dispatcher or NotificationDispatcher.with_default_channels(DeliveryLog(db))

    products = (
        (await db.execute(select(Product).where(Product.shop_id == shop_id).order_by(Product.created_at)))
        .scalars()
        .all()
    )
    logger.info("analysis.started", shop_id=str(shop_id), product_count=len(products))

    result = AnalysisResult(success=True)
    by_type: Counter[str] = Counter()
    for product in products:
        product_id = product.product_id
        try:
            async with db.begin_nested():
                analysis = await analyze_product(
                    db,
                    shop=shop,
                    setting=setting,
                    product=product,
                    thresholds=thresholds,
                    insight_generator=insight_generator,
                    now=now,
                )
        except Exception as exc:  # noqa: BLE001
            result.products_failed += 1
            logger.error("analysis.product_failed", shop_id=str(shop_id), product_id=str(product_id), error=str(exc), exc_info=True)
            continue

        # The product's work, including a new alert row, is committed before anything is sent.
        await db.commit()
        await notify_product_alert(
            db, analysis, shop=shop, product=product, setting=setting, thresholds=thresholds, dispatcher=dispatcher
        )
        await db.commit()

        result.products_analyzed += 1
        assessment = analysis.assessment
        if not assessment.should_alert:
            continue
        result.alerts_generated += 1
        result.alerts_created += int(analysis.alert_created)
        by_type[assessment.alert_type] += 1
        if assessment.severity == "CRITICAL":
            result.critical_alerts += 1
        if assessment.alert_type == "FAST_SELLING_WARNING":
            result.summary.fast_selling_products += 1
        elif assessment.alert_type == "IMMINENT_STOCKOUT":
            result.summary.imminent_stockouts += 1
        elif assessment.alert_type == "VELOCITY_SPIKE":
            result.summary.velocity_spikes += 1

    result.by_alert_type = dict(by_type)
    shop.last_velocity_analysis = now
    await db.commit()

    logger.info("analysis.completed", shop_id=str(shop_id), **result.to_dict())
    return result


async def run_analysis(shop_id: str | uuid.UUID, session_factory=None, **kwargs) -> AnalysisResult:
    """
    Batch trigger: open a session, run the shop analysis, and report a
    shop-level failure as an unsuccessful result instead of raising.
    """
    if session_factory is None:
        from db.session import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    try:
        shop_uuid = shop_id if isinstance(shop_id, uuid.UUID) else uuid.UUID(str(shop_id))
    except ValueError:
        return AnalysisResult(success=False, error=f"Invalid shop id: {shop_id}")

    try:
        async with session_factory() as db:
            return await run_predictive_analysis(db, shop_uuid, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.error("analysis.failed", shop_id=str(shop_id), error=str(exc), exc_info=True)
        return AnalysisResult(success=False, error=str(exc) or exc.__class__.__name__)


# ──────────────────────────────────────────────────────────────────────────
# Celery tasks
# ──────────────────────────────────────────────────────────────────────────


def _lock_name(shop_id: str) -> str:
    return f"analysis-lock:{shop_id}"


@celery_app.task(
    name="workers.analysis.run_velocity_analysis",
    bind=True,
    max_retries=1,
    default_retry_delay=300,
    acks_late=True,
)
def run_velocity_analysis(self, shop_id: str):
    """
    Daily job: run the velocity analysis for one shop.

    Holds a per-shop Redis lock for the run so two workers never analyze
    the same shop at once.
    """
    import redis
    from redis.exceptions import LockError

    run_id = self.request.id or "manual"
    settings = get_settings()
    client = redis.Redis.from_url(settings.redis_url)
    lock = client.lock(_lock_name(shop_id), timeout=settings.analysis_lock_timeout_seconds, blocking=False)
    if not lock.acquire(blocking=False):
        logger.info("analysis.lock_held", shop_id=shop_id, run_id=run_id)
        return {"status": "skipped", "reason": "already_running", "shop_id": shop_id}

    logger.info("analysis.task_started", shop_id=shop_id, run_id=run_id)

    async def _run():
        from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with session_factory() as db:
                return await run_predictive_analysis(db, uuid.UUID(shop_id))
        finally:
            await engine.dispose()

    try:
        result = asyncio.run(_run())
        return {
            "status": "success" if result.success else "skipped",
            "shop_id": shop_id,
            "run_id": run_id,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            **result.to_dict(),
        }
    except Exception as exc:
        logger.error("analysis.task_failed", shop_id=shop_id, error=str(exc))
        raise
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning("analysis.lock_expired", shop_id=shop_id)


@celery_app.task(
    name="workers.analysis.refresh_product_metrics",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
)
def refresh_product_metrics(self, shop_id: str):
    """Recompute stock status for a shop from stored velocities."""
    from inventory.metrics import update_all_product_metrics_for_shop

    async def _refresh():
        from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with session_factory() as db:
                return await update_all_product_metrics_for_shop(db, uuid.UUID(shop_id))
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_refresh())
    except Exception as exc:
        logger.error("metrics.refresh_failed", shop_id=shop_id, error=str(exc))
        raise

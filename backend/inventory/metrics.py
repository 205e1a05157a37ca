"""
Product Metrics — stock status and stockout-days estimate.

Turns a product's total stock and its sales velocity into one of
Healthy / Low / Critical / Unknown plus the number of days until the
shelf is empty at the current rate.

Decision (first match wins):
  1. stock == 0                                  → Critical, 0 days
  2. stock ≤ critical units                      → Critical
  3. velocity > 0 and stock/velocity ≤ crit days → Critical
  4. stock ≤ low units                           → Low
  5. velocity > 0 and stock/velocity ≤ low/vel   → Low
  6. otherwise                                   → Healthy

Stockout days:
  velocity > 0          → stock / velocity (2 dp)
  velocity == 0         → never (stored as null)
  velocity unknown      → cannot estimate (null)
  stock == 0            → 0
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings

logger = structlog.get_logger()

DEFAULT_CRITICAL_UNITS_CAP = 5
CRITICAL_UNITS_RATIO = 0.3


@dataclass(frozen=True)
class StockThresholds:
    """Per-shop stock thresholds used by the status decision."""

    low_units: int
    critical_units: int | None = None
    critical_days: float = 3

    @property
    def effective_critical_units(self) -> int:
        if self.critical_units is not None:
            return self.critical_units
        return min(DEFAULT_CRITICAL_UNITS_CAP, math.floor(self.low_units * CRITICAL_UNITS_RATIO))


@dataclass(frozen=True)
class ProductMetrics:
    status: str
    stockout_days: float | None


def _estimate_stockout_days(stock: int, velocity: float | None) -> float | None:
    if stock == 0:
        return 0.0
    if velocity is None:
        return None
    if velocity > 0:
        return round(stock / velocity, 2)
    # Zero velocity with stock on hand never runs out.
    return None


def calculate_product_metrics(
    stock: int | None,
    velocity: float | None,
    thresholds: StockThresholds,
) -> ProductMetrics:
    """Classify stock health and estimate days until stockout."""
    if stock is None:
        return ProductMetrics(status="Unknown", stockout_days=None)

    stockout_days = _estimate_stockout_days(stock, velocity)
    critical_units = thresholds.effective_critical_units
    selling = velocity is not None and velocity > 0

    if stock == 0:
        status = "Critical"
    elif stock <= critical_units:
        status = "Critical"
    elif selling and stock / velocity <= thresholds.critical_days:
        status = "Critical"
    elif stock <= thresholds.low_units:
        status = "Low"
    elif selling and stock / velocity <= thresholds.low_units / velocity:
        status = "Low"
    else:
        status = "Healthy"

    return ProductMetrics(status=status, stockout_days=stockout_days)


def resolve_thresholds(shop, setting) -> StockThresholds:
    """Build thresholds from a shop and its (optional) notification setting."""
    settings = get_settings()
    low_units = None
    if setting is not None and setting.low_stock_threshold is not None:
        low_units = setting.low_stock_threshold
    elif shop is not None and shop.low_stock_threshold is not None:
        low_units = shop.low_stock_threshold
    if low_units is None:
        low_units = settings.default_low_stock_threshold

    critical_units = setting.critical_stock_threshold_units if setting is not None else None
    critical_days = None
    if setting is not None:
        critical_days = setting.critical_stockout_days
    if critical_days is None:
        critical_days = settings.default_critical_stockout_days

    return StockThresholds(low_units=low_units, critical_units=critical_units, critical_days=critical_days)


async def load_current_stock(db: AsyncSession, product_id: uuid.UUID) -> int | None:
    """Sum stock across locations. None when the product has no stock record."""
    from db.models import InventoryLevel

    result = await db.execute(
        select(func.count(InventoryLevel.id), func.coalesce(func.sum(InventoryLevel.quantity), 0)).where(
            InventoryLevel.product_id == product_id
        )
    )
    row_count, total = result.one()
    if row_count == 0:
        return None
    return int(total)


async def update_all_product_metrics_for_shop(db: AsyncSession, shop_id: uuid.UUID) -> dict:
    """
    Recompute status, stockout days and trending for every product in a shop
    from the stored sales velocity, without running the velocity pipeline.
    """
    from db.models import NotificationSetting, Product, Shop

    shop = await db.get(Shop, shop_id)
    if shop is None:
        return {"success": False, "message": f"Shop {shop_id} not found", "updated_count": 0}

    setting = (
        await db.execute(select(NotificationSetting).where(NotificationSetting.shop_id == shop_id))
    ).scalar_one_or_none()
    thresholds = resolve_thresholds(shop, setting)
    trending_threshold = (
        setting.sales_velocity_threshold
        if setting is not None and setting.sales_velocity_threshold is not None
        else get_settings().default_sales_velocity_threshold
    )

    products = (await db.execute(select(Product).where(Product.shop_id == shop_id))).scalars().all()
    for product in products:
        stock = await load_current_stock(db, product.product_id)
        metrics = calculate_product_metrics(stock, product.sales_velocity, thresholds)
        product.status = metrics.status
        product.stockout_days = metrics.stockout_days
        product.trending = product.sales_velocity is not None and product.sales_velocity > trending_threshold
        product.updated_at = datetime.utcnow()

    await db.commit()
    logger.info("metrics.shop_updated", shop_id=str(shop_id), updated_count=len(products))
    return {
        "success": True,
        "message": f"Updated metrics for {len(products)} products in shop {shop.domain}.",
        "updated_count": len(products),
    }

"""
Tests for Product Metrics — stock status and stockout-days estimate.

Covers:
  - Ordered status decision (Critical / Low / Healthy / Unknown)
  - Stockout days for known, zero and unknown velocity
  - Threshold resolution from settings, shop and defaults
  - Stock aggregation and the shop-wide refresh
"""

from types import SimpleNamespace

import pytest

from inventory.metrics import (
    StockThresholds,
    calculate_product_metrics,
    load_current_stock,
    resolve_thresholds,
    update_all_product_metrics_for_shop,
)

DEFAULT_THRESHOLDS = StockThresholds(low_units=10, critical_units=5, critical_days=3)


# ── Status decision ────────────────────────────────────────────────────


class TestStatusDecision:
    def test_unknown_stock_is_unknown(self):
        metrics = calculate_product_metrics(None, 4.0, DEFAULT_THRESHOLDS)
        assert metrics.status == "Unknown"
        assert metrics.stockout_days is None

    def test_zero_stock_is_critical_with_zero_days(self):
        metrics = calculate_product_metrics(0, 2.0, DEFAULT_THRESHOLDS)
        assert metrics.status == "Critical"
        assert metrics.stockout_days == 0.0

    def test_zero_stock_without_velocity(self):
        metrics = calculate_product_metrics(0, None, DEFAULT_THRESHOLDS)
        assert metrics.status == "Critical"
        assert metrics.stockout_days == 0.0

    def test_at_critical_units_is_critical(self):
        metrics = calculate_product_metrics(5, 0.5, DEFAULT_THRESHOLDS)
        assert metrics.status == "Critical"
        assert metrics.stockout_days == 10.0

    def test_days_of_cover_within_critical_days(self):
        metrics = calculate_product_metrics(7, 3.0, DEFAULT_THRESHOLDS)
        assert metrics.status == "Critical"
        assert metrics.stockout_days == 2.33

    def test_below_low_threshold_without_sales(self):
        metrics = calculate_product_metrics(8, 0.0, DEFAULT_THRESHOLDS)
        assert metrics.status == "Low"
        assert metrics.stockout_days is None

    def test_below_low_threshold_unknown_velocity(self):
        metrics = calculate_product_metrics(8, None, DEFAULT_THRESHOLDS)
        assert metrics.status == "Low"
        assert metrics.stockout_days is None

    def test_plenty_of_stock_is_healthy(self):
        metrics = calculate_product_metrics(100, 1.0, DEFAULT_THRESHOLDS)
        assert metrics.status == "Healthy"
        assert metrics.stockout_days == 100.0

    def test_high_velocity_pushes_healthy_stock_to_critical(self):
        metrics = calculate_product_metrics(50, 20.0, DEFAULT_THRESHOLDS)
        assert metrics.status == "Critical"
        assert metrics.stockout_days == 2.5


# ── Thresholds ─────────────────────────────────────────────────────────


class TestThresholds:
    def test_derived_critical_units_is_thirty_percent_of_low(self):
        assert StockThresholds(low_units=10).effective_critical_units == 3

    def test_derived_critical_units_is_capped_at_five(self):
        assert StockThresholds(low_units=40).effective_critical_units == 5

    def test_explicit_critical_units_wins(self):
        assert StockThresholds(low_units=40, critical_units=0).effective_critical_units == 0

    def test_derived_critical_units_drive_status(self):
        # low=10 → critical=3, so 4 units is only Low.
        metrics = calculate_product_metrics(4, None, StockThresholds(low_units=10))
        assert metrics.status == "Low"

    def test_setting_overrides_shop(self):
        shop = SimpleNamespace(low_stock_threshold=10)
        setting = SimpleNamespace(low_stock_threshold=25, critical_stock_threshold_units=4, critical_stockout_days=5)
        thresholds = resolve_thresholds(shop, setting)
        assert thresholds == StockThresholds(low_units=25, critical_units=4, critical_days=5)

    def test_shop_then_defaults(self):
        shop = SimpleNamespace(low_stock_threshold=12)
        thresholds = resolve_thresholds(shop, None)
        assert thresholds.low_units == 12
        assert thresholds.critical_units is None
        assert thresholds.critical_days == 3

    def test_no_shop_no_setting_uses_defaults(self):
        thresholds = resolve_thresholds(None, None)
        assert thresholds.low_units == 10


# ── Persistence ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_load_current_stock_sums_locations(test_db, seeded_shop, make_product):
    from db.models import InventoryLevel

    product = await make_product("Split Stock", stock=4)
    test_db.add(InventoryLevel(product_id=product.product_id, location_name="Warehouse", quantity=9))
    await test_db.commit()

    assert await load_current_stock(test_db, product.product_id) == 13


@pytest.mark.asyncio
async def test_load_current_stock_without_record_is_none(test_db, seeded_shop, make_product):
    product = await make_product("No Stock Record")
    assert await load_current_stock(test_db, product.product_id) is None


@pytest.mark.asyncio
async def test_update_all_product_metrics_for_shop(test_db, seeded_shop, make_product):
    hot = await make_product("Hot Seller", stock=500)
    hot.sales_velocity = 60.0
    low = await make_product("Almost Gone", stock=8)
    low.sales_velocity = 0.0
    unknown = await make_product("Unstocked")
    await test_db.commit()

    result = await update_all_product_metrics_for_shop(test_db, seeded_shop["shop"].shop_id)
    assert result["success"] is True
    assert result["updated_count"] == 3

    assert hot.status == "Healthy"
    assert hot.trending is True
    assert low.status == "Low"
    assert low.stockout_days is None
    assert unknown.status == "Unknown"
    assert unknown.trending is False


@pytest.mark.asyncio
async def test_update_all_product_metrics_for_missing_shop(test_db):
    import uuid

    result = await update_all_product_metrics_for_shop(test_db, uuid.uuid4())
    assert result["success"] is False
    assert result["updated_count"] == 0

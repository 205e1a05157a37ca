"""
Tests for the Velocity Predictor.

Covers:
  - Trend classification thresholds
  - Trailing-window aggregation (last 7 / previous 7 / 30 days)
  - Stockout projection and confidence
  - Loading samples from the database
"""

from datetime import timedelta

import pytest

from ml.velocity import SalesSample, calculate_velocity, classify_trend, load_velocity_samples, predict_velocity


def _daily(now, units_by_offset):
    """units_by_offset[i] is the quantity sold i+1 days before now."""
    return [SalesSample(date=now - timedelta(days=i), units_sold=u) for i, u in enumerate(units_by_offset, start=1)]


# ── Trend ──────────────────────────────────────────────────────────────


class TestTrend:
    def test_accelerating_above_twenty_percent(self):
        assert classify_trend(10, 2.5) == "ACCELERATING"

    def test_exactly_twenty_percent_is_only_increasing(self):
        assert classify_trend(10, 2.0) == "INCREASING"

    def test_small_positive_acceleration_is_increasing(self):
        assert classify_trend(10, 1.5) == "INCREASING"

    def test_drop_beyond_ten_percent_is_decreasing(self):
        assert classify_trend(10, -2) == "DECREASING"

    def test_small_drop_is_stable(self):
        assert classify_trend(10, -0.5) == "STABLE"

    def test_no_sales_is_stable(self):
        assert classify_trend(0, 0) == "STABLE"


# ── Aggregation ────────────────────────────────────────────────────────


class TestCalculateVelocity:
    def test_windows(self, now):
        samples = _daily(now, [14] * 7 + [7] * 7 + [1] * 16)
        metrics = calculate_velocity(samples, now)
        assert metrics.daily_velocity == 14
        assert metrics.weekly_velocity == 98
        assert metrics.monthly_velocity == 98 + 49 + 16
        assert metrics.acceleration == 7
        assert metrics.trend == "ACCELERATING"

    def test_stable_sales(self, now):
        metrics = calculate_velocity(_daily(now, [1] * 14), now)
        assert metrics.daily_velocity == 1
        assert metrics.acceleration == 0
        assert metrics.trend == "STABLE"

    def test_samples_outside_window_are_ignored(self, now):
        samples = [
            SalesSample(date=now - timedelta(days=31), units_sold=100),
            SalesSample(date=now, units_sold=100),
            SalesSample(date=now - timedelta(days=2), units_sold=7),
        ]
        metrics = calculate_velocity(samples, now)
        assert metrics.weekly_velocity == 7
        assert metrics.monthly_velocity == 7


# ── Forecast ───────────────────────────────────────────────────────────


class TestPredictVelocity:
    def test_projects_stockout_in_whole_days(self, now):
        forecast = predict_velocity(_daily(now, [14] * 7 + [7] * 7), 30, now)
        assert forecast.days_until_stockout == 3
        assert forecast.predicted_stockout_date == now + timedelta(days=3)
        assert forecast.predicted_velocity == pytest.approx(15.4)
        assert forecast.confidence_score == 0.8
        assert forecast.sample_count == 14

    def test_no_samples_degrades_to_defaults(self, now):
        forecast = predict_velocity([], 50, now)
        assert forecast.daily_velocity == 0
        assert forecast.trend == "STABLE"
        assert forecast.days_until_stockout is None
        assert forecast.predicted_stockout_date is None
        assert forecast.confidence_score == 0.3

    def test_unknown_stock_has_no_stockout(self, now):
        forecast = predict_velocity(_daily(now, [5] * 14), None, now)
        assert forecast.daily_velocity == 5
        assert forecast.days_until_stockout is None

    def test_zero_stock_with_sales_is_out_now(self, now):
        forecast = predict_velocity(_daily(now, [2] * 14), 0, now)
        assert forecast.days_until_stockout == 0


@pytest.mark.asyncio
async def test_load_velocity_samples_reads_trailing_month(test_db, seeded_shop, make_product, now):
    product = await make_product("Long History", stock=10, daily_units=[3] * 40)

    samples = await load_velocity_samples(test_db, product.product_id, now)
    assert len(samples) == 30
    assert all(now - timedelta(days=30) <= s.date < now for s in samples)
    assert samples[0].date > samples[-1].date

"""
Velocity Predictor — trailing-window sales velocity, acceleration, trend.

Windows (relative to `now`):
  last7  = units sold in [now-7d,  now)
  prev7  = units sold in [now-14d, now-7d)
  month  = units sold in [now-30d, now)

  daily velocity  = last7 / 7
  acceleration    = daily velocity − prev7 / 7

Trend:
  ACCELERATING  acceleration >  daily × 0.2
  INCREASING    acceleration >  0
  DECREASING    acceleration < −daily × 0.1
  STABLE        otherwise

No samples is not an error: everything degrades to 0 / STABLE / None.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

SAMPLE_WINDOW_DAYS = 30
PREDICTION_SMOOTHING = 1.1
ACCELERATING_RATIO = 0.2
DECREASING_RATIO = 0.1
CONFIDENCE_WITH_DATA = 0.8
CONFIDENCE_FLOOR = 0.3
CONFIDENCE_CEILING = 0.95


@dataclass(frozen=True)
class SalesSample:
    date: datetime
    units_sold: int


@dataclass(frozen=True)
class VelocityMetrics:
    daily_velocity: float
    weekly_velocity: float
    monthly_velocity: float
    acceleration: float
    trend: str


@dataclass(frozen=True)
class VelocityForecast:
    """Everything the risk classifier and the prediction record need."""

    metrics: VelocityMetrics
    current_stock: int | None
    predicted_velocity: float
    days_until_stockout: int | None
    predicted_stockout_date: datetime | None
    confidence_score: float
    sample_count: int

    @property
    def daily_velocity(self) -> float:
        return self.metrics.daily_velocity

    @property
    def acceleration(self) -> float:
        return self.metrics.acceleration

    @property
    def trend(self) -> str:
        return self.metrics.trend


def classify_trend(daily_velocity: float, acceleration: float) -> str:
    if acceleration > daily_velocity * ACCELERATING_RATIO:
        return "ACCELERATING"
    if acceleration > 0:
        return "INCREASING"
    if acceleration < -daily_velocity * DECREASING_RATIO:
        return "DECREASING"
    return "STABLE"


def calculate_velocity(samples: Iterable[SalesSample], now: datetime) -> VelocityMetrics:
    one_week_ago = now - timedelta(days=7)
    two_weeks_ago = now - timedelta(days=14)
    one_month_ago = now - timedelta(days=SAMPLE_WINDOW_DAYS)

    last7 = prev7 = month = 0
    for sample in samples:
        units = sample.units_sold or 0
        if not one_month_ago <= sample.date < now:
            continue
        month += units
        if sample.date >= one_week_ago:
            last7 += units
        elif sample.date >= two_weeks_ago:
            prev7 += units

    daily_velocity = last7 / 7
    acceleration = daily_velocity - prev7 / 7
    return VelocityMetrics(
        daily_velocity=daily_velocity,
        weekly_velocity=float(last7),
        monthly_velocity=float(month),
        acceleration=acceleration,
        trend=classify_trend(daily_velocity, acceleration),
    )


def confidence_score(sample_count: int) -> float:
    """Presence-of-data confidence, not a statistical fit."""
    raw = CONFIDENCE_WITH_DATA if sample_count > 0 else CONFIDENCE_FLOOR
    return max(CONFIDENCE_FLOOR, min(CONFIDENCE_CEILING, raw))


def predict_velocity(samples: Iterable[SalesSample], current_stock: int | None, now: datetime) -> VelocityForecast:
    """
    Aggregate trailing samples into a velocity forecast for one product.

    `current_stock=None` means no stock record: velocity is still computed
    but no stockout is predicted.
    """
    window_start = now - timedelta(days=SAMPLE_WINDOW_DAYS)
    in_window = [s for s in samples if window_start <= s.date < now]
    metrics = calculate_velocity(in_window, now)

    days_until_stockout = None
    predicted_stockout_date = None
    if current_stock is not None and metrics.daily_velocity > 0:
        days_until_stockout = math.ceil(current_stock / metrics.daily_velocity)
        predicted_stockout_date = now + timedelta(days=days_until_stockout)

    return VelocityForecast(
        metrics=metrics,
        current_stock=current_stock,
        predicted_velocity=metrics.daily_velocity * PREDICTION_SMOOTHING,
        days_until_stockout=days_until_stockout,
        predicted_stockout_date=predicted_stockout_date,
        confidence_score=confidence_score(len(in_window)),
        sample_count=len(in_window),
    )


async def load_velocity_samples(db: AsyncSession, product_id: uuid.UUID, now: datetime) -> list[SalesSample]:
    """Read the trailing 30 days of daily sales for one product."""
    from db.models import VelocitySample

    result = await db.execute(
        select(VelocitySample.date, VelocitySample.units_sold)
        .where(
            VelocitySample.product_id == product_id,
            VelocitySample.date >= now - timedelta(days=SAMPLE_WINDOW_DAYS),
            VelocitySample.date < now,
        )
        .order_by(VelocitySample.date.desc())
    )
    return [SalesSample(date=row.date, units_sold=row.units_sold) for row in result.all()]

"""
StockPulse Database Models

Tables for the inventory risk and notification engine.
Multi-tenant via shop_id on all shop-owned tables.

Tables:
  1. shops                  - Tenant storefronts
  2. notification_settings  - Per-shop channel toggles and stock thresholds
  3. products               - Product snapshot (status, velocity, trend)
  4. inventory_levels       - Per-location stock quantities
  5. velocity_samples       - Daily units sold (written by sales ingestion)
  6. velocity_predictions   - Latest prediction per product (upserted)
  7. velocity_analytics     - Append-only velocity series, one row per run
  8. fast_selling_alerts    - Deduplicated risk alerts
  9. notification_logs      - Append-only delivery audit trail
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base

PRODUCT_STATUSES = ("Healthy", "Low", "Critical", "Unknown")
VELOCITY_TRENDS = ("STABLE", "INCREASING", "DECREASING", "ACCELERATING")
RISK_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
ALERT_TYPES = (
    "VELOCITY_SPIKE",
    "FAST_SELLING_WARNING",
    "IMMINENT_STOCKOUT",
    "REORDER_SUGGESTION",
    "VELOCITY_TREND_CHANGE",
    "AI_PREDICTION_ALERT",
)
ALERT_SEVERITIES = ("INFO", "LOW", "MEDIUM", "HIGH", "CRITICAL")
NOTIFICATION_CHANNELS = ("Email", "Slack", "Webhook", "SMS")
NOTIFICATION_STATUSES = ("Pending", "Sent", "Failed", "Error", "Delivered")


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ─── 1. Shops ──────────────────────────────────────────────────────────────


class Shop(Base):
    __tablename__ = "shops"

    shop_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    domain = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="active")
    ai_predictions_enabled = Column(Boolean, nullable=False, default=False)
    low_stock_threshold = Column(Integer, default=10)
    last_velocity_analysis = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    notification_setting = relationship("NotificationSetting", back_populates="shop", uselist=False)
    products = relationship("Product", back_populates="shop")


# ─── 2. Notification Settings ──────────────────────────────────────────────


class NotificationSetting(Base):
    __tablename__ = "notification_settings"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    shop_id = Column(GUID(), ForeignKey("shops.shop_id"), nullable=False, unique=True)

    email_enabled = Column(Boolean, nullable=False, default=False)
    email_address = Column(String(255))
    slack_enabled = Column(Boolean, nullable=False, default=False)
    slack_webhook_url = Column(Text)
    webhook_enabled = Column(Boolean, nullable=False, default=False)
    webhook_url = Column(Text)
    webhook_secret = Column(String(255))
    sms_enabled = Column(Boolean, nullable=False, default=False)
    sms_phone_number = Column(String(32))

    low_stock_threshold = Column(Integer)
    critical_stock_threshold_units = Column(Integer)
    critical_stockout_days = Column(Integer)
    sales_velocity_threshold = Column(Float)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    shop = relationship("Shop", back_populates="notification_setting")


# ─── 3. Products ───────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    shop_id = Column(GUID(), ForeignKey("shops.shop_id"), nullable=False)
    title = Column(String(255), nullable=False)
    vendor = Column(String(255))

    # Snapshot written by the analysis run
    status = Column(String(20), nullable=False, default="Unknown")
    sales_velocity = Column(Float)  # units/day, null = unknown
    stockout_days = Column(Float)  # null = cannot estimate / never
    trending = Column(Boolean, nullable=False, default=False)
    is_fast_selling = Column(Boolean, nullable=False, default=False)
    velocity_trend = Column(String(20))
    ai_risk_score = Column(Float)
    predicted_stockout_date = Column(DateTime)
    last_velocity_update = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_products_shop", "shop_id"),
        CheckConstraint(_in_clause("status", PRODUCT_STATUSES), name="ck_product_status"),
    )

    shop = relationship("Shop", back_populates="products")
    inventory_levels = relationship("InventoryLevel", back_populates="product", cascade="all, delete-orphan")


# ─── 4. Inventory Levels ───────────────────────────────────────────────────


class InventoryLevel(Base):
    __tablename__ = "inventory_levels"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    location_name = Column(String(255), nullable=False, default="default")
    quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("ix_inventory_product", "product_id"),)

    product = relationship("Product", back_populates="inventory_levels")


# ─── 5. Velocity Samples ───────────────────────────────────────────────────


class VelocitySample(Base):
    __tablename__ = "velocity_samples"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    date = Column(DateTime, nullable=False)
    units_sold = Column(Integer, nullable=False, default=0)

    __table_args__ = (Index("ix_velocity_samples_product_date", "product_id", "date"),)


# ─── 6. Velocity Predictions ───────────────────────────────────────────────


class VelocityPrediction(Base):
    __tablename__ = "velocity_predictions"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False, unique=True)
    current_velocity = Column(Float, nullable=False, default=0.0)
    predicted_velocity = Column(Float, nullable=False, default=0.0)
    velocity_trend = Column(String(20), nullable=False, default="STABLE")
    predicted_stockout_date = Column(DateTime)
    days_until_stockout = Column(Integer)
    confidence_score = Column(Float, nullable=False, default=0.3)
    risk_level = Column(String(20), nullable=False, default="LOW")
    ai_insights = Column(Text)
    last_calculated = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(_in_clause("velocity_trend", VELOCITY_TRENDS), name="ck_prediction_trend"),
        CheckConstraint(_in_clause("risk_level", RISK_LEVELS), name="ck_prediction_risk"),
        CheckConstraint("confidence_score >= 0 AND confidence_score <= 1", name="ck_prediction_confidence"),
    )


# ─── 7. Velocity Analytics ─────────────────────────────────────────────────


class VelocityAnalytics(Base):
    __tablename__ = "velocity_analytics"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    date = Column(DateTime, nullable=False, default=datetime.utcnow)
    daily_velocity = Column(Float, nullable=False)
    weekly_velocity = Column(Float, nullable=False)
    monthly_velocity = Column(Float, nullable=False)
    velocity_acceleration = Column(Float, nullable=False)
    stock_level = Column(Integer, nullable=False)
    is_weekend = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("ix_velocity_analytics_product_date", "product_id", "date"),)


# ─── 8. Fast Selling Alerts ────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "fast_selling_alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    shop_id = Column(GUID(), ForeignKey("shops.shop_id"), nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    alert_type = Column(String(40), nullable=False)
    severity = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)
    is_resolved = Column(Boolean, nullable=False, default=False)
    notifications_sent = Column(Boolean, nullable=False, default=False)
    last_notified = Column(DateTime)

    current_velocity = Column(Float)
    velocity_trend = Column(String(20))
    days_until_stockout = Column(Integer)
    predicted_stockout = Column(DateTime)
    suggested_action = Column(Text)
    ai_recommendation = Column(Text)
    alert_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    resolved_at = Column(DateTime)

    __table_args__ = (
        # At most one open alert per (shop, product, type).
        Index(
            "uq_alerts_open_per_key",
            "shop_id",
            "product_id",
            "alert_type",
            unique=True,
            postgresql_where=text("is_active AND NOT is_resolved"),
            sqlite_where=text("is_active = 1 AND is_resolved = 0"),
        ),
        Index("ix_alerts_shop_active", "shop_id", "is_active"),
        CheckConstraint(_in_clause("alert_type", ALERT_TYPES), name="ck_alert_type"),
        CheckConstraint(_in_clause("severity", ALERT_SEVERITIES), name="ck_alert_severity"),
    )


# ─── 9. Notification Logs ──────────────────────────────────────────────────


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    log_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    shop_id = Column(GUID(), ForeignKey("shops.shop_id"), nullable=False)
    delivery_id = Column(GUID(), nullable=False)  # groups Pending + terminal rows of one attempt
    channel = Column(String(20), nullable=False)
    recipient = Column(Text)
    subject = Column(Text)
    message = Column(Text, nullable=False)
    status = Column(String(20), nullable=False)
    product_id = Column(GUID())
    product_title = Column(String(255))
    alert_type = Column(String(40))
    alert_id = Column(GUID())
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    sent_at = Column(DateTime)
    delivered_at = Column(DateTime)
    log_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_notification_logs_shop_time", "shop_id", "created_at"),
        Index("ix_notification_logs_delivery", "delivery_id"),
        CheckConstraint(_in_clause("channel", NOTIFICATION_CHANNELS), name="ck_notification_channel"),
        CheckConstraint(_in_clause("status", NOTIFICATION_STATUSES), name="ck_notification_status"),
    )

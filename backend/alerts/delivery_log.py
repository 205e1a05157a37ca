"""
Notification delivery audit log.

Each logical delivery attempt writes a `Pending` row before the send and
one terminal row (`Sent`, `Failed`, `Error`) after it. Both rows share a
`delivery_id`. Rows are never updated.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

STATUS_PENDING = "Pending"
STATUS_SENT = "Sent"
STATUS_FAILED = "Failed"
STATUS_ERROR = "Error"
STATUS_DELIVERED = "Delivered"


class DeliveryMetadata(BaseModel):
    """Versioned metadata stored on every log row."""

    version: int = 1
    payload_size: int = 0
    has_signature: bool = False
    status_code: int | None = None
    attempts: int | None = None
    duration_ms: int | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


@dataclass
class DeliveryRecord:
    shop_id: uuid.UUID
    channel: str
    recipient: str | None
    message: str
    subject: str | None = None
    product_id: uuid.UUID | None = None
    product_title: str | None = None
    alert_type: str | None = None
    alert_id: uuid.UUID | None = None


class DeliveryLog:
    """Writes notification_logs rows. A None session only emits log events."""

    def __init__(self, db: AsyncSession | None = None):
        self.db = db
        # AsyncSession is not safe for concurrent flushes from bulk sends.
        self._lock = asyncio.Lock()

    async def pending(self, record: DeliveryRecord, metadata: DeliveryMetadata | None = None) -> uuid.UUID:
        delivery_id = uuid.uuid4()
        await self._write(delivery_id, record, STATUS_PENDING, metadata=metadata)
        return delivery_id

    async def complete(
        self,
        delivery_id: uuid.UUID,
        record: DeliveryRecord,
        status: str,
        *,
        error: str | None = None,
        retry_count: int = 0,
        metadata: DeliveryMetadata | None = None,
    ) -> None:
        await self._write(delivery_id, record, status, error=error, retry_count=retry_count, metadata=metadata)

    async def _write(
        self,
        delivery_id: uuid.UUID,
        record: DeliveryRecord,
        status: str,
        *,
        error: str | None = None,
        retry_count: int = 0,
        metadata: DeliveryMetadata | None = None,
    ) -> None:
        logger.info(
            "delivery.logged",
            channel=record.channel,
            status=status,
            delivery_id=str(delivery_id),
            retry_count=retry_count,
            error=error,
        )
        if self.db is None:
            return

        from db.models import NotificationLog

        now = datetime.utcnow()
        row = NotificationLog(
            delivery_id=delivery_id,
            shop_id=record.shop_id,
            channel=record.channel,
            recipient=record.recipient,
            subject=record.subject,
            message=record.message,
            status=status,
            product_id=record.product_id,
            product_title=record.product_title,
            alert_type=record.alert_type,
            alert_id=record.alert_id,
            error_message=error,
            retry_count=retry_count,
            sent_at=now if status == STATUS_SENT else None,
            delivered_at=now if status == STATUS_DELIVERED else None,
            log_metadata=(metadata or DeliveryMetadata()).model_dump(),
        )
        async with self._lock:
            # A rejected row rolls back its own SAVEPOINT only; the session stays usable.
            try:
                async with self.db.begin_nested():
                    self.db.add(row)
            except SQLAlchemyError as exc:
                if row in self.db:
                    self.db.expunge(row)
                logger.error("delivery.log_write_failed", channel=record.channel, status=status, error=str(exc))

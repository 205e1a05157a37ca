"""
StockPulse API Dependencies

Dependency injection for DB sessions and the cron trigger secret.
"""

import hmac
from collections.abc import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.session import AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def verify_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    """Reject trigger calls that don't carry the configured cron secret."""
    expected = get_settings().cron_secret
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )

import asyncio
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base
from workers.scheduler import dispatch_active_shops

ACTIVE_ENABLED = "00000000-0000-0000-0000-000000000101"
ACTIVE_DISABLED = "00000000-0000-0000-0000-000000000102"
INACTIVE_ENABLED = "00000000-0000-0000-0000-000000000103"


def _seed_shops(db_url: str) -> None:
    from db.models import Shop

    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_factory() as db:
            db.add_all(
                [
                    Shop(shop_id=ACTIVE_ENABLED, domain="a.myshopify.com", status="active", ai_predictions_enabled=True),
                    Shop(shop_id=ACTIVE_DISABLED, domain="b.myshopify.com", status="active", ai_predictions_enabled=False),
                    Shop(shop_id=INACTIVE_ENABLED, domain="c.myshopify.com", status="inactive", ai_predictions_enabled=True),
                ]
            )
            await db.commit()
        await engine.dispose()

    asyncio.run(_seed())


def _capture(monkeypatch, db_url: str) -> list[tuple[str, dict]]:
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))
    dispatched_calls: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict):
        dispatched_calls.append((task_name, kwargs))
        return None

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _capture_send_task)
    return dispatched_calls


def test_dispatch_active_shops_only_with_predictions_enabled(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"
    _seed_shops(db_url)
    dispatched_calls = _capture(monkeypatch, db_url)

    result = dispatch_active_shops.run(task_name="workers.analysis.run_velocity_analysis")
    assert result["status"] == "success"
    assert result["shop_count"] == 1
    assert result["dispatched_count"] == 1
    assert dispatched_calls == [("workers.analysis.run_velocity_analysis", {"shop_id": ACTIVE_ENABLED})]


def test_dispatch_metrics_refresh_covers_all_active_shops(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"
    _seed_shops(db_url)
    dispatched_calls = _capture(monkeypatch, db_url)

    result = dispatch_active_shops.run(
        task_name="workers.analysis.refresh_product_metrics",
        require_predictions=False,
    )
    assert result["shop_count"] == 2
    assert {kwargs["shop_id"] for _, kwargs in dispatched_calls} == {ACTIVE_ENABLED, ACTIVE_DISABLED}


def test_dispatch_rejects_non_worker_task_names():
    result = dispatch_active_shops.run(task_name="os.system")
    assert result == {"status": "failed", "reason": "invalid_task_name", "task_name": "os.system"}

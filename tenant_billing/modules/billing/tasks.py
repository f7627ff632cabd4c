"""Celery tasks for the billing engine."""

import asyncio

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenant_billing.core.celery_app import celery_app
from tenant_billing.core.config import settings


@celery_app.task(
    name="tenant_billing.billing.run_daily_scheduler",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
)
def run_daily_scheduler(self) -> dict:
    """Run the daily billing sweep.

    Per-subscription failures are absorbed by the sweep itself; only a
    failure of the whole run (e.g. database unreachable) is retried.

    Returns:
        dict: Sweep summary
    """
    from tenant_billing.modules.billing.scheduler import DailyScheduler

    async def _run():
        # Each asyncio.run gets its own loop, so it gets its own engine too
        engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        try:
            session_factory = async_sessionmaker(
                engine, class_=AsyncSession, expire_on_commit=False
            )
            summary = await DailyScheduler(session_factory=session_factory).run()
            return summary.to_dict()
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_run())
    except Exception as exc:
        raise self.retry(exc=exc)

"""
Celery tasks releasing lapsed seat reservations.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .celery_app import celery_app
from ..config import get_settings
from ..database import create_database_engine, create_session_factory
from ..services.expiry_sweeper import ReservationExpirySweeper

logger = logging.getLogger(__name__)


async def run_expiry_sweep(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Run one sweep and return its report as a dict.

    Without a session factory a short-lived engine is created for the run,
    since each Celery invocation gets a fresh event loop.
    """
    settings = get_settings()
    batch_size = batch_size or settings.cleanup_batch_size

    if session_factory is not None:
        report = await ReservationExpirySweeper(session_factory, batch_size=batch_size).sweep()
        return report.to_dict()

    engine = create_database_engine()
    try:
        sweeper = ReservationExpirySweeper(create_session_factory(engine), batch_size=batch_size)
        report = await sweeper.sweep()
        return report.to_dict()
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="sweep_expired_reservations_task")
def sweep_expired_reservations_task(self):
    """
    Periodic task returning seats of unpaid, lapsed reservations to sale.

    Runs every ``sweep_interval_seconds`` from the beat schedule.
    """

    async def _sweep():
        try:
            logger.info("Starting reservation expiry sweep")
            result = await run_expiry_sweep()
            logger.info(
                f"Reservation expiry sweep released {result['seats_released']} seats, "
                f"expired {result['orders_expired']} orders"
            )
            return result
        except Exception as e:
            logger.error(f"Error in reservation expiry sweep: {e}")
            raise

    # Run the async function
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_sweep())
    finally:
        loop.close()

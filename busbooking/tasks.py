import asyncio
import uuid
from datetime import timedelta
from typing import Optional

from celery.utils.log import get_task_logger
from sqlalchemy.pool import NullPool

from busbooking.celery_app import celery_app
from busbooking.config import settings
from busbooking.db.session import build_engine, build_session_factory
from busbooking.logging_setup import TRACE_ID_CTX
from busbooking.metrics import SWEEP_FAILURES
from busbooking.services.lifecycle import BookingLifecycle, ExpirySweep
from busbooking.services.payment_gateway import build_payment_coordinator

logger = get_task_logger(__name__)


async def run_sweep(lifecycle: BookingLifecycle) -> Optional[ExpirySweep]:
    """One pass of the expiry sweep. Failures are logged and counted; the
    next scheduled run simply tries again."""
    try:
        sweep = await lifecycle.expire_abandoned()
    except Exception:
        SWEEP_FAILURES.inc()
        logger.exception("Expiry sweep failed")
        return None
    return sweep


async def _sweep_once() -> Optional[ExpirySweep]:
    # each task run gets its own loop, so pooled connections cannot be reused
    engine = build_engine(settings.DATABASE_URL, poolclass=NullPool)
    lifecycle = BookingLifecycle(
        build_session_factory(engine),
        build_payment_coordinator(),
        hold_ttl=timedelta(seconds=settings.HOLD_TTL_SECONDS),
        cash_hold_ttl=timedelta(seconds=settings.CASH_HOLD_TTL_SECONDS),
    )
    try:
        return await run_sweep(lifecycle)
    finally:
        await lifecycle.payments.aclose()
        await engine.dispose()


@celery_app.task(name="busbooking.tasks.expire_abandoned_bookings")
def expire_abandoned_bookings():
    TRACE_ID_CTX.set(f"sweep-{uuid.uuid4().hex[:12]}")
    try:
        sweep = asyncio.run(_sweep_once())
    except Exception:
        # engine or provider setup failed before the sweep itself ran
        SWEEP_FAILURES.inc()
        logger.exception("Expiry sweep could not start")
        sweep = None
    if sweep is None:
        return {"ok": False}
    return {"ok": True, "released_holds": sweep.released_holds, "cancelled_bookings": len(sweep.cancelled_bookings)}

"""Reservation ledger: at most one live holder per seat of a trip instance.

All functions run inside the caller's transaction so a hold and the booking
that owns it commit or roll back together. The partial unique index on
seat_holds (trip_instance_id, seat_key) WHERE state IN (HELD, CONFIRMED) is
what makes the guarantee hold across processes; the reads here only make the
conflict report precise.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Iterable, List

from sqlalchemy import select as sa_select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from busbooking.errors import InvalidState, SeatUnavailable, ValidationError
from busbooking.metrics import SEAT_HOLD_ATTEMPTS, SEAT_HOLD_LATENCY, HOLDS_EXPIRED
from busbooking.models.models import SeatHold, HoldState
from busbooking.services.inventory import TripInstance, active_hold_clause

logger = logging.getLogger(__name__)


async def _contested(db: AsyncSession, trip: TripInstance, seat_keys: Iterable[str], now: datetime) -> List[str]:
    wanted = list(seat_keys)
    stmt = (
        sa_select(SeatHold.seat_key)
        .where(SeatHold.trip_instance_id == trip.key)
        .where(SeatHold.seat_key.in_(wanted))
        .where(active_hold_clause(now))
    )
    res = await db.execute(stmt)
    taken = set(res.scalars().all())
    return [k for k in wanted if k in taken]


async def _expire_trip(db: AsyncSession, trip: TripInstance, now: datetime) -> int:
    upd = (
        sa_update(SeatHold)
        .where(SeatHold.trip_instance_id == trip.key)
        .where(SeatHold.state == HoldState.HELD)
        .where(SeatHold.expires_at <= now)
        .values(state=HoldState.RELEASED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(upd)
    if res.rowcount:
        HOLDS_EXPIRED.inc(res.rowcount)
        logger.info("Released %s expired holds on %s", res.rowcount, trip.key)
    return res.rowcount


async def try_hold(
    db: AsyncSession,
    trip: TripInstance,
    seat_keys: List[str],
    booking_id: str,
    hold_duration: timedelta,
    now: datetime,
) -> List[SeatHold]:
    """Hold every seat in seat_keys for booking_id, or none of them.

    Raises SeatUnavailable listing the seats someone else holds.
    """
    if not seat_keys:
        raise ValidationError("At least one seat is required")
    if len(set(seat_keys)) != len(seat_keys):
        raise ValidationError("Duplicate seats in request", details={"seat_keys": list(seat_keys)})

    start = time.perf_counter()
    # expired holds must never block a new request
    await _expire_trip(db, trip, now)

    taken = await _contested(db, trip, seat_keys, now)
    if taken:
        SEAT_HOLD_ATTEMPTS.labels(result="conflict").inc()
        raise SeatUnavailable(taken)

    expires_at = now + hold_duration
    holds = [
        SeatHold(
            trip_instance_id=trip.key,
            vehicle_id=trip.vehicle_id,
            service_date=trip.service_date,
            seat_key=key,
            booking_id=booking_id,
            position=pos,
            state=HoldState.HELD,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        # inserted in seat_key order so overlapping requests lock index entries
        # in the same order; position keeps the order the caller asked for
        for pos, key in sorted(enumerate(seat_keys), key=lambda p: p[1])
    ]
    try:
        async with db.begin_nested():
            db.add_all(holds)
    except IntegrityError:
        # lost the race to a concurrent writer between the read and the insert
        SEAT_HOLD_ATTEMPTS.labels(result="conflict").inc()
        taken = await _contested(db, trip, seat_keys, now)
        raise SeatUnavailable(taken or seat_keys)

    SEAT_HOLD_ATTEMPTS.labels(result="held").inc()
    SEAT_HOLD_LATENCY.observe(time.perf_counter() - start)
    return sorted(holds, key=lambda h: h.position)


async def holds_for(db: AsyncSession, booking_id: str) -> List[SeatHold]:
    stmt = (
        sa_select(SeatHold)
        .where(SeatHold.booking_id == booking_id)
        .order_by(SeatHold.position)
        .execution_options(populate_existing=True)
    )
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def confirm(db: AsyncSession, booking_id: str, now: datetime) -> int:
    """Turn every HELD hold of the booking into CONFIRMED.

    Raises InvalidState if any hold is not HELD or has expired. The update is
    guarded on state and expiry, so a concurrent expiry sweep makes the row
    count come up short and the whole transaction is abandoned.
    """
    holds = await holds_for(db, booking_id)
    if not holds:
        raise InvalidState(f"Booking {booking_id} holds no seats", details={"booking_id": booking_id})
    stale = [h.seat_key for h in holds if h.state != HoldState.HELD or h.expires_at is None or h.expires_at <= now]
    if stale:
        raise InvalidState(
            "Seat holds are no longer held: %s" % ", ".join(stale),
            details={"booking_id": booking_id, "seat_keys": stale},
        )

    upd = (
        sa_update(SeatHold)
        .where(SeatHold.booking_id == booking_id)
        .where(SeatHold.state == HoldState.HELD)
        .where(SeatHold.expires_at > now)
        .values(state=HoldState.CONFIRMED, expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(upd)
    if res.rowcount != len(holds):
        raise InvalidState(
            f"Seat holds for booking {booking_id} expired while confirming",
            details={"booking_id": booking_id},
        )
    return res.rowcount


async def release(db: AsyncSession, booking_id: str, now: datetime) -> int:
    upd = (
        sa_update(SeatHold)
        .where(SeatHold.booking_id == booking_id)
        .where(SeatHold.state.in_([HoldState.HELD, HoldState.CONFIRMED]))
        .values(state=HoldState.RELEASED, expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(upd)
    return res.rowcount


async def expire_stale_holds(db: AsyncSession, now: datetime) -> int:
    upd = (
        sa_update(SeatHold)
        .where(SeatHold.state == HoldState.HELD)
        .where(SeatHold.expires_at <= now)
        .values(state=HoldState.RELEASED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(upd)
    if res.rowcount:
        HOLDS_EXPIRED.inc(res.rowcount)
    return res.rowcount

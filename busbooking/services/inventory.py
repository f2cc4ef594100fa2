"""Seat inventory: which seats a vehicle has, and which are taken on a date."""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Set

from sqlalchemy import select as sa_select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from busbooking.errors import NotFound
from busbooking.models.models import Vehicle, BusLayout, SeatHold, HoldState


def utcnow() -> datetime:
    # naive UTC, matching how hold timestamps are stored
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class TripInstance:
    vehicle_id: str
    service_date: date

    @property
    def key(self) -> str:
        return f"{self.vehicle_id}@{self.service_date.isoformat()}"


@dataclass(frozen=True)
class SeatDescriptor:
    seat_key: str
    seat_number: str
    deck: str
    category: str
    base_price: Decimal


async def get_vehicle(db: AsyncSession, vehicle_id: str) -> Vehicle:
    stmt = (
        sa_select(Vehicle)
        .where(Vehicle.id == vehicle_id)
        .options(selectinload(Vehicle.layout).selectinload(BusLayout.seats))
    )
    res = await db.execute(stmt)
    vehicle = res.scalars().first()
    if not vehicle:
        raise NotFound(f"Vehicle {vehicle_id} not found", details={"vehicle_id": vehicle_id})
    if not vehicle.layout:
        raise NotFound(f"Vehicle {vehicle_id} has no seat layout", details={"vehicle_id": vehicle_id})
    return vehicle


async def list_seats(db: AsyncSession, vehicle_id: str) -> List[SeatDescriptor]:
    vehicle = await get_vehicle(db, vehicle_id)
    return [
        SeatDescriptor(
            seat_key=s.seat_key,
            seat_number=s.seat_number,
            deck=s.deck.value,
            category=s.category.value,
            base_price=Decimal(s.base_price),
        )
        for s in vehicle.layout.seats
    ]


def active_hold_clause(now: datetime):
    """Holds that currently block a seat: CONFIRMED, or HELD and not yet expired."""
    return or_(
        SeatHold.state == HoldState.CONFIRMED,
        and_(SeatHold.state == HoldState.HELD, SeatHold.expires_at > now),
    )


async def list_unavailable(db: AsyncSession, trip: TripInstance, now: datetime = None) -> Set[str]:
    now = now or utcnow()
    stmt = (
        sa_select(SeatHold.seat_key)
        .where(SeatHold.trip_instance_id == trip.key)
        .where(active_hold_clause(now))
    )
    res = await db.execute(stmt)
    return set(res.scalars().all())

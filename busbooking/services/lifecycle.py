"""Booking lifecycle: the only code that changes a booking's status.

Each operation opens its own session and transaction. Provider calls are made
between transactions, never while one is open.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select as sa_select, func, exists, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from busbooking.errors import Forbidden, InvalidState, NotFound, PaymentProviderError, ValidationError
from busbooking.metrics import BOOKING_TRANSITIONS
from busbooking.models.models import (
    Booking,
    BookingStatus,
    HoldState,
    PaymentMethod,
    PaymentStatus,
    SeatHold,
)
from busbooking.schemas.booking import CreateBookingRequest
from busbooking.services import inventory, ledger
from busbooking.services.audit import log_audit
from busbooking.services.inventory import SeatDescriptor, TripInstance, utcnow
from busbooking.services.payment_gateway import PaymentCoordinator, PaymentOutcome
from busbooking.services.policy import Actor, Operation, authorize, listing_scope

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    BookingStatus.CREATED: {BookingStatus.PENDING, BookingStatus.AWAITING_PAYMENT},
    BookingStatus.PENDING: {BookingStatus.PROCESSING, BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.AWAITING_PAYMENT: {BookingStatus.PROCESSING, BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.PROCESSING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
}

# statuses whose seats are only held, waiting on payment
UNPAID_STATUSES = (BookingStatus.PENDING, BookingStatus.AWAITING_PAYMENT, BookingStatus.PROCESSING)


@dataclass(frozen=True)
class CreatedBooking:
    booking: Booking
    client_secret: Optional[str]


@dataclass(frozen=True)
class ExpirySweep:
    released_holds: int
    cancelled_bookings: List[str]


@dataclass(frozen=True)
class SeatAvailability:
    seat: SeatDescriptor
    available: bool


def transition(booking: Booking, target: BookingStatus, now: datetime) -> None:
    current = BookingStatus(booking.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidState(
            f"Booking {booking.id} cannot go from {current.value} to {target.value}",
            details={"booking_id": booking.id, "from": current.value, "to": target.value},
        )
    booking.status = target
    booking.updated_at = now
    BOOKING_TRANSITIONS.labels(status=target.value).inc()


class BookingLifecycle:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        payments: PaymentCoordinator,
        hold_ttl: timedelta,
        cash_hold_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = session_factory
        self.payments = payments
        self.hold_ttl = hold_ttl
        self.cash_hold_ttl = cash_hold_ttl
        self.clock = clock

    async def _load(self, db: AsyncSession, booking_id: str, for_update: bool = False) -> Booking:
        stmt = (
            sa_select(Booking)
            .where(Booking.id == booking_id)
            .options(selectinload(Booking.holds))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        res = await db.execute(stmt)
        booking = res.scalars().first()
        if not booking:
            raise NotFound(f"Booking {booking_id} not found", details={"booking_id": booking_id})
        return booking

    async def _reload(self, db: AsyncSession, booking_id: str) -> Booking:
        async with db.begin():
            return await self._load(db, booking_id)

    # -- creation ---------------------------------------------------------

    async def create(self, actor: Actor, request: CreateBookingRequest) -> CreatedBooking:
        seat_keys = list(request.seat_keys or [])
        if not seat_keys:
            raise ValidationError("At least one seat is required")
        if len(set(seat_keys)) != len(seat_keys):
            raise ValidationError("Duplicate seats in request", details={"seat_keys": seat_keys})
        now = self.clock()
        if request.service_date < now.date():
            raise ValidationError("Service date is in the past", details={"service_date": request.service_date.isoformat()})
        trip = TripInstance(vehicle_id=request.vehicle_id, service_date=request.service_date)
        method = PaymentMethod(request.payment_method)

        async with self._sessions() as db:
            async with db.begin():
                vehicle = await inventory.get_vehicle(db, request.vehicle_id)
                authorize(actor, Operation.CREATE_BOOKING, vendor_id=vehicle.vendor_id)
                if request.user_id not in (None, actor.caller_id):
                    authorize(actor, Operation.BOOK_ON_BEHALF, user_id=request.user_id, vendor_id=vehicle.vendor_id)
                seats = {s.seat_key: s for s in await inventory.list_seats(db, request.vehicle_id)}
                unknown = [k for k in seat_keys if k not in seats]
                if unknown:
                    raise ValidationError(
                        "Seats not on this vehicle: %s" % ", ".join(unknown),
                        details={"seat_keys": unknown},
                    )
                total = sum((seats[k].base_price for k in seat_keys), Decimal("0"))
                discount = Decimal(request.discount_amount or 0)
                if discount > total:
                    raise ValidationError("Discount exceeds total amount")

                booking = Booking(
                    user_id=request.user_id or actor.caller_id,
                    vendor_id=vehicle.vendor_id,
                    vehicle_id=trip.vehicle_id,
                    service_date=trip.service_date,
                    trip_instance_id=trip.key,
                    route_id=request.route_id,
                    boarding_point_id=request.boarding_point_id,
                    dropping_point_id=request.dropping_point_id,
                    total_amount=total,
                    discount_amount=discount,
                    final_amount=total - discount,
                    payment_method=method,
                    status=BookingStatus.CREATED,
                    payment_status=PaymentStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
                db.add(booking)
                await db.flush()

                ttl = self.cash_hold_ttl if method == PaymentMethod.CASH else self.hold_ttl
                await ledger.try_hold(db, trip, seat_keys, booking.id, ttl, now)

                if method == PaymentMethod.CASH:
                    transition(booking, BookingStatus.PENDING, now)
                    booking.payment_status = PaymentStatus.PENDING
                else:
                    transition(booking, BookingStatus.AWAITING_PAYMENT, now)
                    booking.payment_status = PaymentStatus.AWAITING_PAYMENT
            booking_id = booking.id
            logger.info("Booking %s holds %s on %s", booking_id, seat_keys, trip.key)

            client_secret = None
            if method == PaymentMethod.CARD:
                client_secret = await self._start_payment(db, booking, seat_keys)
            return CreatedBooking(booking=await self._reload(db, booking_id), client_secret=client_secret)

    async def _start_payment(self, db: AsyncSession, booking: Booking, seat_keys: List[str]) -> Optional[str]:
        try:
            handle = await self.payments.initiate(
                booking.final_amount,
                metadata={
                    "booking_id": booking.id,
                    "user_id": booking.user_id,
                    "vehicle_id": booking.vehicle_id,
                    "seats": ",".join(seat_keys),
                },
            )
        except PaymentProviderError:
            # a held seat nobody can pay for must not linger until expiry
            async with db.begin():
                current = await self._load(db, booking.id, for_update=True)
                now = self.clock()
                await ledger.release(db, current.id, now)
                transition(current, BookingStatus.CANCELLED, now)
                current.payment_status = PaymentStatus.FAILED
                current.cancellation_reason = "payment provider unavailable"
                current.cancelled_at = now
            logger.warning("Booking %s cancelled: payment could not be initiated", booking.id)
            raise

        async with db.begin():
            current = await self._load(db, booking.id, for_update=True)
            current.payment_intent_ref = handle.handle_ref
            current.updated_at = self.clock()
            await self.payments.record_intent(db, current.id, handle, current.final_amount)
        return handle.client_secret

    # -- payment ----------------------------------------------------------

    async def confirm_payment(self, actor: Actor, booking_id: str, payment_ref: str) -> Booking:
        async with self._sessions() as db:
            async with db.begin():
                booking = await self._load(db, booking_id)
                authorize(actor, Operation.CONFIRM_PAYMENT, user_id=booking.user_id, vendor_id=booking.vendor_id)
                if booking.payment_method != PaymentMethod.CARD:
                    raise InvalidState("Cash bookings are confirmed at the counter", details={"booking_id": booking_id})
                if booking.payment_intent_ref != payment_ref:
                    raise ValidationError(
                        "Payment reference does not belong to this booking",
                        details={"booking_id": booking_id},
                    )
                if booking.status == BookingStatus.CONFIRMED:
                    return booking
                if booking.status not in (BookingStatus.AWAITING_PAYMENT, BookingStatus.PROCESSING):
                    raise InvalidState(
                        f"Booking {booking_id} is {booking.status.value}",
                        details={"booking_id": booking_id, "status": booking.status.value},
                    )

            outcome = await self.payments.check_status(payment_ref)

            async with db.begin():
                # re-read under lock: a webhook may have got here first
                booking = await self._load(db, booking_id, for_update=True)
                if booking.status == BookingStatus.CONFIRMED:
                    return booking
                if booking.status not in (BookingStatus.AWAITING_PAYMENT, BookingStatus.PROCESSING):
                    raise InvalidState(
                        f"Booking {booking_id} is {booking.status.value}",
                        details={"booking_id": booking_id, "status": booking.status.value},
                    )
                now = self.clock()
                if outcome == PaymentOutcome.SUCCEEDED:
                    try:
                        await ledger.confirm(db, booking_id, now)
                    except InvalidState:
                        logger.warning("Booking %s paid after its holds lapsed; refund required", booking_id)
                        raise
                    transition(booking, BookingStatus.CONFIRMED, now)
                    booking.payment_status = PaymentStatus.PAID
                elif outcome == PaymentOutcome.FAILED:
                    await ledger.release(db, booking_id, now)
                    transition(booking, BookingStatus.CANCELLED, now)
                    booking.payment_status = PaymentStatus.FAILED
                    booking.cancellation_reason = "payment failed"
                    booking.cancelled_at = now
                elif booking.status != BookingStatus.PROCESSING:
                    transition(booking, BookingStatus.PROCESSING, now)
                    booking.payment_status = PaymentStatus.PROCESSING
                await self.payments.record_status(db, payment_ref, outcome)
            logger.info("Booking %s payment %s -> %s", booking_id, outcome.value, booking.status.value)
            return await self._reload(db, booking_id)

    async def confirm_cash(self, actor: Actor, booking_id: str) -> Booking:
        async with self._sessions() as db:
            async with db.begin():
                booking = await self._load(db, booking_id, for_update=True)
                authorize(actor, Operation.CONFIRM_CASH, user_id=booking.user_id, vendor_id=booking.vendor_id)
                if booking.payment_method != PaymentMethod.CASH:
                    raise InvalidState("Card bookings are confirmed by the payment provider", details={"booking_id": booking_id})
                if booking.status == BookingStatus.CONFIRMED:
                    return booking
                if booking.status != BookingStatus.PENDING:
                    raise InvalidState(
                        f"Booking {booking_id} is {booking.status.value}",
                        details={"booking_id": booking_id, "status": booking.status.value},
                    )
                now = self.clock()
                await ledger.confirm(db, booking_id, now)
                transition(booking, BookingStatus.CONFIRMED, now)
                booking.payment_status = PaymentStatus.PAID
                await log_audit(db, actor_id=actor.caller_id, action="confirm_cash", object_type="booking", object_id=booking_id)
            return await self._reload(db, booking_id)

    async def booking_id_for_payment(self, payment_ref: str) -> Optional[str]:
        async with self._sessions() as db:
            stmt = sa_select(Booking.id).where(Booking.payment_intent_ref == payment_ref)
            res = await db.execute(stmt)
            return res.scalars().first()

    # -- cancellation and later states -------------------------------------

    def trip_started(self, booking: Booking, now: datetime) -> bool:
        return now.date() >= booking.service_date

    async def cancel(
        self,
        actor: Actor,
        booking_id: str,
        reason: Optional[str] = None,
        cancellation_charge: Optional[Decimal] = None,
        refund_amount: Optional[Decimal] = None,
    ) -> Booking:
        """Cancel a booking and free its seats.

        Charge and refund are recorded as given; no fee policy is applied here.
        """
        for label, amount in (("cancellation_charge", cancellation_charge), ("refund_amount", refund_amount)):
            if amount is not None and Decimal(amount) < 0:
                raise ValidationError(f"{label} must not be negative")
        async with self._sessions() as db:
            async with db.begin():
                booking = await self._load(db, booking_id, for_update=True)
                authorize(actor, Operation.CANCEL_BOOKING, user_id=booking.user_id, vendor_id=booking.vendor_id)
                now = self.clock()
                if booking.status in (BookingStatus.CANCELLED, BookingStatus.COMPLETED):
                    raise InvalidState(
                        f"Booking {booking_id} is already {booking.status.value}",
                        details={"booking_id": booking_id, "status": booking.status.value},
                    )
                if booking.status == BookingStatus.CONFIRMED and self.trip_started(booking, now):
                    raise InvalidState("Trip has already started", details={"booking_id": booking_id})
                if refund_amount is not None and Decimal(refund_amount) > booking.final_amount:
                    raise ValidationError("Refund exceeds the amount paid")

                await ledger.release(db, booking_id, now)
                transition(booking, BookingStatus.CANCELLED, now)
                booking.cancellation_reason = reason
                booking.cancellation_charge = cancellation_charge
                booking.refund_amount = refund_amount
                booking.cancelled_at = now
                if booking.payment_status == PaymentStatus.PAID and refund_amount:
                    booking.payment_status = PaymentStatus.REFUNDED
                await log_audit(
                    db,
                    actor_id=actor.caller_id,
                    action="cancel_booking",
                    object_type="booking",
                    object_id=booking_id,
                    detail={"reason": reason, "cancellation_charge": cancellation_charge, "refund_amount": refund_amount},
                )
            logger.info("Booking %s cancelled by %s", booking_id, actor.caller_id)
            return await self._reload(db, booking_id)

    async def complete(self, actor: Actor, booking_id: str) -> Booking:
        async with self._sessions() as db:
            async with db.begin():
                booking = await self._load(db, booking_id, for_update=True)
                authorize(actor, Operation.COMPLETE_BOOKING, user_id=booking.user_id, vendor_id=booking.vendor_id)
                now = self.clock()
                if not self.trip_started(booking, now):
                    raise InvalidState(
                        "Trip has not run yet",
                        details={"booking_id": booking_id, "service_date": booking.service_date.isoformat()},
                    )
                transition(booking, BookingStatus.COMPLETED, now)
                await log_audit(db, actor_id=actor.caller_id, action="complete_booking", object_type="booking", object_id=booking_id)
            return await self._reload(db, booking_id)

    async def delete(self, actor: Actor, booking_id: str) -> None:
        async with self._sessions() as db:
            async with db.begin():
                booking = await self._load(db, booking_id, for_update=True)
                authorize(actor, Operation.DELETE_BOOKING, user_id=booking.user_id, vendor_id=booking.vendor_id)
                released = await ledger.release(db, booking_id, self.clock())
                await db.delete(booking)
                await log_audit(
                    db,
                    actor_id=actor.caller_id,
                    action="delete_booking",
                    object_type="booking",
                    object_id=booking_id,
                    detail={"released_holds": released, "status": booking.status.value},
                )
            logger.info("Booking %s deleted by %s", booking_id, actor.caller_id)

    async def expire_abandoned(self, now: datetime = None) -> ExpirySweep:
        """Release lapsed holds, then cancel unpaid bookings left with no live hold."""
        now = now or self.clock()
        async with self._sessions() as db:
            async with db.begin():
                released = await ledger.expire_stale_holds(db, now)
                live_hold = exists().where(
                    and_(
                        SeatHold.booking_id == Booking.id,
                        SeatHold.state.in_([HoldState.HELD, HoldState.CONFIRMED]),
                    )
                )
                stmt = sa_select(Booking).where(Booking.status.in_(UNPAID_STATUSES)).where(~live_hold).with_for_update()
                res = await db.execute(stmt)
                cancelled = []
                for booking in res.scalars().all():
                    transition(booking, BookingStatus.CANCELLED, now)
                    booking.payment_status = PaymentStatus.FAILED
                    booking.cancellation_reason = "seat hold expired"
                    booking.cancelled_at = now
                    cancelled.append(booking.id)
        if released or cancelled:
            logger.info("Expiry sweep released %s holds, cancelled %s bookings", released, len(cancelled))
        return ExpirySweep(released_holds=released, cancelled_bookings=cancelled)

    # -- reads --------------------------------------------------------------

    async def get_booking(self, actor: Actor, booking_id: str) -> Booking:
        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
            authorize(actor, Operation.VIEW_BOOKING, user_id=booking.user_id, vendor_id=booking.vendor_id)
            return booking

    async def list_bookings(
        self,
        actor: Actor,
        status: Optional[BookingStatus] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Booking], int]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        conditions = []
        scope = listing_scope(actor)
        if scope.vendor_id is not None:
            conditions.append(Booking.vendor_id == scope.vendor_id)
        if scope.user_id is not None:
            conditions.append(Booking.user_id == scope.user_id)
        if status:
            conditions.append(Booking.status == BookingStatus(status))
        if from_date:
            conditions.append(Booking.service_date >= from_date)
        if to_date:
            conditions.append(Booking.service_date <= to_date)

        async with self._sessions() as db:
            count_stmt = sa_select(func.count()).select_from(Booking).where(*conditions)
            total = (await db.execute(count_stmt)).scalar_one()
            stmt = (
                sa_select(Booking)
                .where(*conditions)
                .options(selectinload(Booking.holds))
                .order_by(Booking.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            res = await db.execute(stmt)
            return list(res.scalars().all()), total

    async def list_unavailable(self, vehicle_id: str, service_date: date) -> List[str]:
        async with self._sessions() as db:
            await inventory.get_vehicle(db, vehicle_id)
            taken = await inventory.list_unavailable(db, TripInstance(vehicle_id, service_date), self.clock())
            return sorted(taken)

    async def seat_map(self, vehicle_id: str, service_date: date) -> List[SeatAvailability]:
        async with self._sessions() as db:
            seats = await inventory.list_seats(db, vehicle_id)
            taken = await inventory.list_unavailable(db, TripInstance(vehicle_id, service_date), self.clock())
            return [SeatAvailability(seat=s, available=s.seat_key not in taken) for s in seats]

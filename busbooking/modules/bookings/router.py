from fastapi import APIRouter, Depends, Query, status
from datetime import date
from typing import Optional

from busbooking.auth.deps import get_current_actor
from busbooking.dependencies import get_lifecycle
from busbooking.models.models import BookingStatus
from busbooking.schemas.booking import (
    BookingListResponse,
    BookingResponse,
    CancelBookingRequest,
    ConfirmPaymentRequest,
    CreateBookingRequest,
    CreateBookingResponse,
    Pagination,
    SeatMapResponse,
    SeatResponse,
    UnavailableSeatsResponse,
)
from busbooking.services.lifecycle import BookingLifecycle
from busbooking.services.policy import Actor

router = APIRouter(tags=["bookings"])


@router.post("", response_model=CreateBookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    req: CreateBookingRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Hold the requested seats and open a booking; card bookings also get a client secret."""
    created = await lifecycle.create(actor, req)
    return CreateBookingResponse(
        booking=BookingResponse.model_validate(created.booking),
        client_secret=created.client_secret,
    )


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status: Optional[BookingStatus] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    bookings, total = await lifecycle.list_bookings(actor, status=status, from_date=from_date, to_date=to_date, page=page, limit=limit)
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        pagination=Pagination(total=total, page=page, limit=limit, total_pages=(total + limit - 1) // limit),
    )


# Public seat availability, no auth
@router.get("/vehicles/{vehicle_id}/unavailable", response_model=UnavailableSeatsResponse)
async def unavailable_seats(vehicle_id: str, date: date, lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    seat_keys = await lifecycle.list_unavailable(vehicle_id, date)
    return UnavailableSeatsResponse(vehicle_id=vehicle_id, service_date=date, seat_keys=seat_keys)


@router.get("/vehicles/{vehicle_id}/seats", response_model=SeatMapResponse)
async def seat_map(vehicle_id: str, date: date, lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    seats = await lifecycle.seat_map(vehicle_id, date)
    return SeatMapResponse(
        vehicle_id=vehicle_id,
        service_date=date,
        seats=[
            SeatResponse(
                seat_key=s.seat.seat_key,
                seat_number=s.seat.seat_number,
                deck=s.seat.deck,
                category=s.seat.category,
                base_price=s.seat.base_price,
                available=s.available,
            )
            for s in seats
        ],
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, actor: Actor = Depends(get_current_actor), lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    return BookingResponse.model_validate(await lifecycle.get_booking(actor, booking_id))


@router.post("/{booking_id}/confirm-payment", response_model=BookingResponse)
async def confirm_payment(
    booking_id: str,
    req: ConfirmPaymentRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Check the payment with the provider and confirm (or cancel) the booking."""
    booking = await lifecycle.confirm_payment(actor, booking_id, req.payment_intent_ref)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/confirm-cash", response_model=BookingResponse)
async def confirm_cash(booking_id: str, actor: Actor = Depends(get_current_actor), lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    return BookingResponse.model_validate(await lifecycle.confirm_cash(actor, booking_id))


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    req: CancelBookingRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    booking = await lifecycle.cancel(
        actor,
        booking_id,
        reason=req.reason,
        cancellation_charge=req.cancellation_charge,
        refund_amount=req.refund_amount,
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(booking_id: str, actor: Actor = Depends(get_current_actor), lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    return BookingResponse.model_validate(await lifecycle.complete(actor, booking_id))

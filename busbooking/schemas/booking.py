from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional
from datetime import date, datetime
from decimal import Decimal

from busbooking.models.models import BookingStatus, PaymentMethod, PaymentStatus


class CreateBookingRequest(BaseModel):
    vehicle_id: str
    service_date: date
    seat_keys: List[str] = Field(..., min_length=1, description="Seat keys from the vehicle layout, in display order")
    boarding_point_id: str
    dropping_point_id: str
    route_id: Optional[str] = None
    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    payment_method: PaymentMethod
    # admins and vendors may book on behalf of a passenger
    user_id: Optional[str] = None

    @field_validator("seat_keys")
    @classmethod
    def _unique_seats(cls, v):
        if len(set(v)) != len(v):
            raise ValueError("seat_keys must not repeat")
        return v


class ConfirmPaymentRequest(BaseModel):
    payment_intent_ref: str


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = None
    cancellation_charge: Optional[Decimal] = Field(None, ge=0)
    refund_amount: Optional[Decimal] = Field(None, ge=0)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    vendor_id: str
    vehicle_id: str
    service_date: date
    trip_instance_id: str
    route_id: Optional[str] = None
    seat_keys: List[str]
    boarding_point_id: str
    dropping_point_id: str
    total_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    payment_method: PaymentMethod
    status: BookingStatus
    payment_status: PaymentStatus
    payment_intent_ref: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancellation_charge: Optional[Decimal] = None
    refund_amount: Optional[Decimal] = None
    created_at: datetime
    updated_at: datetime


class CreateBookingResponse(BaseModel):
    booking: BookingResponse
    client_secret: Optional[str] = None


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class BookingListResponse(BaseModel):
    bookings: List[BookingResponse]
    pagination: Pagination


class UnavailableSeatsResponse(BaseModel):
    vehicle_id: str
    service_date: date
    seat_keys: List[str]


class SeatResponse(BaseModel):
    seat_key: str
    seat_number: str
    deck: str
    category: str
    base_price: Decimal
    available: bool


class SeatMapResponse(BaseModel):
    vehicle_id: str
    service_date: date
    seats: List[SeatResponse]

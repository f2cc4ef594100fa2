"""Role x operation authorization table, checked once per lifecycle call."""
import enum
from dataclasses import dataclass
from typing import Optional

from busbooking.errors import Forbidden


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    VENDOR = "VENDOR"
    USER = "USER"


@dataclass(frozen=True)
class Actor:
    caller_id: str
    role: Role


# used by the payment webhook, which acts on behalf of the provider
SYSTEM_ACTOR = Actor(caller_id="system", role=Role.ADMIN)


class Operation(str, enum.Enum):
    CREATE_BOOKING = "create_booking"
    VIEW_BOOKING = "view_booking"
    CONFIRM_PAYMENT = "confirm_payment"
    CONFIRM_CASH = "confirm_cash"
    CANCEL_BOOKING = "cancel_booking"
    COMPLETE_BOOKING = "complete_booking"
    DELETE_BOOKING = "delete_booking"
    BOOK_ON_BEHALF = "book_on_behalf"
    LIST_BOOKINGS = "list_bookings"


class Scope(str, enum.Enum):
    ANY = "any"
    OWNER = "owner"      # booking.user_id == caller
    VENDOR = "vendor"    # booking.vendor_id == caller
    DENY = "deny"


POLICY = {
    (Role.ADMIN, Operation.CREATE_BOOKING): Scope.ANY,
    (Role.ADMIN, Operation.VIEW_BOOKING): Scope.ANY,
    (Role.ADMIN, Operation.CONFIRM_PAYMENT): Scope.ANY,
    (Role.ADMIN, Operation.CONFIRM_CASH): Scope.ANY,
    (Role.ADMIN, Operation.CANCEL_BOOKING): Scope.ANY,
    (Role.ADMIN, Operation.COMPLETE_BOOKING): Scope.ANY,
    (Role.ADMIN, Operation.DELETE_BOOKING): Scope.ANY,
    (Role.ADMIN, Operation.BOOK_ON_BEHALF): Scope.ANY,
    (Role.ADMIN, Operation.LIST_BOOKINGS): Scope.ANY,
    (Role.VENDOR, Operation.CREATE_BOOKING): Scope.VENDOR,
    (Role.VENDOR, Operation.VIEW_BOOKING): Scope.VENDOR,
    (Role.VENDOR, Operation.CONFIRM_PAYMENT): Scope.VENDOR,
    (Role.VENDOR, Operation.CONFIRM_CASH): Scope.VENDOR,
    (Role.VENDOR, Operation.CANCEL_BOOKING): Scope.VENDOR,
    (Role.VENDOR, Operation.COMPLETE_BOOKING): Scope.VENDOR,
    (Role.VENDOR, Operation.BOOK_ON_BEHALF): Scope.VENDOR,
    (Role.VENDOR, Operation.LIST_BOOKINGS): Scope.VENDOR,
    (Role.USER, Operation.CREATE_BOOKING): Scope.ANY,
    (Role.USER, Operation.VIEW_BOOKING): Scope.OWNER,
    (Role.USER, Operation.CONFIRM_PAYMENT): Scope.OWNER,
    (Role.USER, Operation.CANCEL_BOOKING): Scope.OWNER,
    (Role.USER, Operation.LIST_BOOKINGS): Scope.OWNER,
}


def scope_for(actor: Actor, operation: Operation) -> Scope:
    return POLICY.get((Role(actor.role), operation), Scope.DENY)


def authorize(actor: Actor, operation: Operation, user_id: Optional[str] = None, vendor_id: Optional[str] = None) -> None:
    """Raise Forbidden unless the policy lets actor perform operation on the
    booking (or booking-to-be) owned by user_id and sold by vendor_id."""
    scope = scope_for(actor, operation)
    if scope == Scope.ANY:
        return
    if scope == Scope.OWNER and user_id is not None and user_id == actor.caller_id:
        return
    if scope == Scope.VENDOR and vendor_id is not None and vendor_id == actor.caller_id:
        return
    raise Forbidden(
        "%s may not %s" % (Role(actor.role).value.lower(), operation.value.replace("_", " ")),
        details={"operation": operation.value},
    )


@dataclass(frozen=True)
class ListingScope:
    """Filters a listing must apply; None means unrestricted."""

    user_id: Optional[str] = None
    vendor_id: Optional[str] = None


def listing_scope(actor: Actor) -> ListingScope:
    scope = scope_for(actor, Operation.LIST_BOOKINGS)
    if scope == Scope.ANY:
        return ListingScope()
    if scope == Scope.OWNER:
        return ListingScope(user_id=actor.caller_id)
    if scope == Scope.VENDOR:
        return ListingScope(vendor_id=actor.caller_id)
    raise Forbidden(
        "%s may not list bookings" % Role(actor.role).value.lower(),
        details={"operation": Operation.LIST_BOOKINGS.value},
    )

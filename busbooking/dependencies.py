from fastapi import Request

from busbooking.services.lifecycle import BookingLifecycle


def get_lifecycle(request: Request) -> BookingLifecycle:
    return request.app.state.lifecycle

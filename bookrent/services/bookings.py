# FILE: bookrent/services/bookings.py
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.models.booking import Booking
from bookrent.services.errors import BookingNotFound, BookingNotPayable


async def get_booking(db: AsyncSession, booking_id: str) -> Booking:
    booking = (await db.execute(select(Booking).where(Booking.id == booking_id))).scalar_one_or_none()
    if not booking:
        raise BookingNotFound(booking_id)
    return booking


async def get_booking_by_token(db: AsyncSession, token: str) -> Booking:
    booking = None
    if token:
        booking = (await db.execute(select(Booking).where(Booking.access_token == token))).scalar_one_or_none()
    if not booking:
        raise BookingNotFound("invalid access token")
    return booking


def ensure_payable(booking: Booking) -> None:
    if booking.status == "cancelled":
        raise BookingNotPayable(f"Cannot create payment for cancelled booking {booking.reference_code}")

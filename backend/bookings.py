"""Booking engine.

A booking holds its laptop exclusively from the moment it is created until it
is cancelled. The laptop's ``available`` flag mirrors that: it is false exactly
when one confirmed booking references the laptop. Every transition that
touches the flag runs inside a unit of work on both the ``bookings`` and
``laptops`` collections, so the two are persisted together or not at all.

Status lifecycle::

    confirmed --cancel (owner, within the cancellation window)--> cancelled

``cancelled`` is terminal.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Callable, List

from database import Repository, UnitOfWork
from errors import Conflict, Forbidden, InvalidRequest, NotFound
from inventory import InventoryStore
from schemas import Booking, BookingUpdate

logger = logging.getLogger(__name__)


def inclusive_day_count(start: date, end: date) -> int:
    """Whole days from ``start`` to ``end``, counting both ends."""
    if end < start:
        raise InvalidRequest("end_date must not be before start_date")
    return (end - start).days + 1


def compute_price(daily_price: float, start: date, end: date) -> float:
    return daily_price * inclusive_day_count(start, end)


class BookingEngine:
    def __init__(
        self,
        uow: UnitOfWork,
        inventory: InventoryStore,
        cancellation_window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.uow = uow
        self.inventory = inventory
        self.bookings: Repository[Booking] = uow.register(Repository("bookings", Booking))
        self.cancellation_window = cancellation_window
        self._clock = clock

    def _owned(self, user_id: int, booking_id: int) -> Booking:
        booking = self.bookings.find(booking_id)
        if booking is None or booking.user_id != user_id:
            raise NotFound("Booking not found or you don't have permission")
        return booking

    def list_for_user(self, user_id: int) -> List[Booking]:
        return [b for b in self.bookings if b.user_id == user_id]

    async def create(self, user_id: int, device_id: int, start_date: date, end_date: date) -> Booking:
        async with self.uow.transaction("bookings", "laptops"):
            laptop = self.inventory.laptops.find(device_id)
            if laptop is None or not laptop.available:
                raise Conflict("Laptop not available")
            total_price = compute_price(laptop.daily_price, start_date, end_date)
            booking = Booking(
                id=self.bookings.next_id(),
                device_id=device_id,
                user_id=user_id,
                start_date=start_date,
                end_date=end_date,
                status="confirmed",
                total_price=total_price,
                created_at=self._clock(),
            )
            self.bookings.add(booking)
            self.inventory.set_available(device_id, False)
        logger.info("Booking %s: user %s holds laptop %s", booking.id, user_id, device_id)
        return booking

    async def cancel(self, user_id: int, booking_id: int) -> Booking:
        async with self.uow.transaction("bookings", "laptops"):
            booking = self._cancel(user_id, booking_id)
        logger.info("Booking %s cancelled, laptop %s released", booking.id, booking.device_id)
        return booking

    def _cancel(self, user_id: int, booking_id: int) -> Booking:
        booking = self._owned(user_id, booking_id)
        if booking.status == "cancelled":
            raise Conflict("Booking is already cancelled")
        if self._clock() - booking.created_at > self.cancellation_window:
            hours = int(self.cancellation_window.total_seconds() // 3600)
            raise Forbidden(f"Booking cannot be cancelled after {hours} hours")
        booking.status = "cancelled"
        if self.inventory.laptops.find(booking.device_id) is not None:
            self.inventory.set_available(booking.device_id, True)
        return booking

    async def update(self, user_id: int, booking_id: int, changes: BookingUpdate) -> Booking:
        async with self.uow.transaction("bookings", "laptops"):
            booking = self._owned(user_id, booking_id)
            if booking.status == "cancelled":
                raise Conflict("Booking is already cancelled")
            start_date = changes.start_date or booking.start_date
            end_date = changes.end_date or booking.end_date
            laptop = self.inventory.laptops.find(booking.device_id)
            if laptop is not None:
                booking.total_price = compute_price(laptop.daily_price, start_date, end_date)
            else:
                inclusive_day_count(start_date, end_date)
            booking.start_date = start_date
            booking.end_date = end_date
            if changes.status == "cancelled":
                self._cancel(user_id, booking_id)
        logger.info("Booking %s updated", booking.id)
        return booking

    async def reconcile(self) -> List[int]:
        """Make every laptop's flag match the confirmed bookings; returns the ids fixed."""
        held = {b.device_id for b in self.bookings if b.status == "confirmed"}
        stale = [laptop.id for laptop in self.inventory.laptops if laptop.available == (laptop.id in held)]
        if not stale:
            return []
        async with self.uow.transaction("laptops"):
            for laptop_id in stale:
                available = laptop_id not in held
                logger.warning("Laptop %s availability corrected to %s", laptop_id, available)
                self.inventory.set_available(laptop_id, available)
        return stale

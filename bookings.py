"""
Booking lifecycle.

    pending  -> accepted | declined | cancelled
    accepted -> active | cancelled
    active   -> completed

declined, cancelled and completed are terminal. Every transition is written
as a conditional update on the status it starts from, so a transition that
lost a race with another device fails instead of overwriting newer state.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from availability import is_available
from database import DocumentStore
from errors import AuthError, InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from ledger import CreditLedger
from schemas import BOOKINGS, CHARGERS, Booking, BookingStatus, Charger, ChargerStatus, PaymentMode

_LOGGER = logging.getLogger(__name__)

TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.ACCEPTED, BookingStatus.DECLINED, BookingStatus.CANCELLED},
    BookingStatus.ACCEPTED: {BookingStatus.ACTIVE, BookingStatus.CANCELLED},
    BookingStatus.ACTIVE: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.DECLINED: set(),
    BookingStatus.CANCELLED: set(),
}

PAST_STATUSES = {BookingStatus.ACCEPTED, BookingStatus.ACTIVE, BookingStatus.COMPLETED, BookingStatus.DECLINED}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def assert_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move booking from {current.value} to {target.value}")


def estimate_cost(charger: Charger, duration: float) -> float:
    return charger.price_per_hour * (duration / 3600)


def estimate_credits(charger: Charger, duration: float) -> int:
    # Credits are charged per whole hour.
    return charger.credits_per_hour * int(math.floor(duration / 3600))


class BookingService:
    """Creates bookings and applies lifecycle transitions.

    The acting user is always passed in by the caller; the service never
    resolves who is signed in.
    """

    def __init__(self, store: DocumentStore, ledger: Optional[CreditLedger] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.ledger = ledger or CreditLedger(store)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ---------------------------
    # Reads
    # ---------------------------
    async def get_booking(self, booking_id: str) -> Booking:
        data = await self.store.get_document(BOOKINGS, booking_id)
        if data is None:
            raise NotFoundError("Booking not found")
        return Booking.from_document(booking_id, data)

    async def get_charger(self, charger_id: str) -> Charger:
        data = await self.store.get_document(CHARGERS, charger_id)
        if data is None:
            raise NotFoundError("Charger not found")
        return Charger.from_document(charger_id, data)

    async def bookings_for(self, user_id: str, role: str) -> List[Booking]:
        field = "driver_id" if role == "driver" else "host_id"
        docs = await self.store.query(BOOKINGS, {field: user_id})
        bookings = [Booking.from_document(doc_id, data) for doc_id, data in docs]
        return sorted(bookings, key=lambda b: b.requested_at, reverse=True)

    async def past_bookings(self, user_id: str) -> List[Booking]:
        as_host = await self.store.query(BOOKINGS, {"host_id": user_id})
        as_driver = await self.store.query(BOOKINGS, {"driver_id": user_id})
        seen: Dict[str, Booking] = {}
        for doc_id, data in as_host + as_driver:
            seen[doc_id] = Booking.from_document(doc_id, data)
        past = [b for b in seen.values() if b.status in PAST_STATUSES]
        return sorted(past, key=lambda b: b.requested_at, reverse=True)

    # ---------------------------
    # Creation
    # ---------------------------
    async def create_booking(self, charger: Charger, driver_id: Optional[str], duration: float,
                             payment_mode: PaymentMode = PaymentMode.CREDITS,
                             scheduled_start_time: Optional[datetime] = None) -> Booking:
        if not driver_id:
            raise AuthError("Sign in to request a booking")
        if not charger.id:
            raise ValidationError("Invalid charger")
        if not duration or duration <= 0:
            raise ValidationError("Duration must be positive")
        if charger.host_id == driver_id:
            raise ValidationError("You cannot book your own charger")
        if charger.status != ChargerStatus.AVAILABLE:
            raise ValidationError("This charger is not accepting bookings right now")

        now = self.clock()
        effective_time = scheduled_start_time or now
        if not is_available(charger, effective_time):
            raise ValidationError(
                "This charger is not available at the requested time. Please choose a different time."
            )

        use_credits = PaymentMode(payment_mode) == PaymentMode.CREDITS
        booking = Booking(
            charger_id=charger.id,
            host_id=charger.host_id,
            driver_id=driver_id,
            status=BookingStatus.PENDING,
            requested_at=now,
            estimated_duration=duration,
            credits_used=estimate_credits(charger, duration) if use_credits else None,
            amount_paid=None if use_credits else estimate_cost(charger, duration),
            scheduled_start_time=scheduled_start_time,
        )
        booking.id = await self.store.add_document(BOOKINGS, booking.to_document())
        _LOGGER.info("Booking %s requested by %s on charger %s", booking.id, driver_id, charger.id)
        return booking

    # ---------------------------
    # Transitions
    # ---------------------------
    async def _transition(self, booking: Booking, target: BookingStatus, **fields) -> Booking:
        if not booking.id:
            raise ValidationError("Booking has not been saved")
        assert_transition(booking.status, target)
        update = {"status": target.value, **fields}
        applied = await self.store.update_document(
            BOOKINGS, booking.id, update, expected={"status": booking.status.value}
        )
        if not applied:
            current = await self.get_booking(booking.id)
            raise InvalidTransitionError(
                f"Booking is {current.status.value}; cannot move it to {target.value}"
            )
        _LOGGER.info("Booking %s %s -> %s", booking.id, booking.status.value, target.value)
        return booking.model_copy(update={"status": target, **fields})

    @staticmethod
    def _require_host(booking: Booking, actor_id: Optional[str]) -> None:
        if not actor_id:
            raise AuthError("Sign in first")
        if actor_id != booking.host_id:
            raise PermissionDeniedError("Only the host can do this")

    @staticmethod
    def _require_driver(booking: Booking, actor_id: Optional[str]) -> None:
        if not actor_id:
            raise AuthError("Sign in first")
        if actor_id != booking.driver_id:
            raise PermissionDeniedError("Only the driver can do this")

    @staticmethod
    def _require_participant(booking: Booking, actor_id: Optional[str]) -> None:
        if not actor_id:
            raise AuthError("Sign in first")
        if actor_id not in (booking.host_id, booking.driver_id):
            raise PermissionDeniedError("Not your booking")

    async def accept_booking(self, booking: Booking, actor_id: Optional[str]) -> Booking:
        self._require_host(booking, actor_id)
        updated = await self._transition(booking, BookingStatus.ACCEPTED, accepted_at=self.clock())
        await self.ledger.credit_host(updated)
        return updated

    async def decline_booking(self, booking: Booking, actor_id: Optional[str]) -> Booking:
        self._require_host(booking, actor_id)
        return await self._transition(booking, BookingStatus.DECLINED)

    async def cancel_booking(self, booking: Booking, actor_id: Optional[str]) -> Booking:
        # Credits already granted to the host on accept are left in place.
        self._require_driver(booking, actor_id)
        return await self._transition(booking, BookingStatus.CANCELLED)

    async def start_booking(self, booking: Booking, actor_id: Optional[str]) -> Booking:
        self._require_participant(booking, actor_id)
        return await self._transition(booking, BookingStatus.ACTIVE, started_at=self.clock())

    async def complete_booking(self, booking: Booking, actor_id: Optional[str]) -> Booking:
        self._require_participant(booking, actor_id)
        return await self._transition(booking, BookingStatus.COMPLETED, ended_at=self.clock())

    async def rate_booking(self, booking: Booking, actor_id: Optional[str], rating: int) -> Booking:
        self._require_participant(booking, actor_id)
        if booking.status != BookingStatus.COMPLETED:
            raise InvalidTransitionError("Only completed sessions can be rated")
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")
        field = "driver_rating" if actor_id == booking.driver_id else "host_rating"
        if getattr(booking, field) is not None:
            raise InvalidTransitionError("You already rated this session")
        applied = await self.store.update_document(
            BOOKINGS, booking.id, {field: rating}, expected={"status": BookingStatus.COMPLETED.value, field: None}
        )
        if not applied:
            raise InvalidTransitionError("You already rated this session")
        return booking.model_copy(update={field: rating})

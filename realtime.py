"""
Real-time propagation.

Store subscriptions deliver full snapshots, possibly the same one more than
once, so every consumer here is idempotent. Each logical observer owns one
``ListenerSlot`` and re-subscribing always cancels the previous
subscription first.
"""
import asyncio
import inspect
import logging
import os
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Type, TypeVar, Union

from chargers import ChargerFilter, filter_chargers
from database import DocumentStore, Snapshot, Subscription
from errors import DecodeError, TransientBackendError
from ledger import DebitGuard
from schemas import BOOKINGS, CHARGERS, Booking, BookingStatus, Charger, ChargerStatus, Entity

_LOGGER = logging.getLogger(__name__)

DECLINED_NOTICE = "Host declined your request"

# Statuses that imply the host accepted, so the driver owes the credits.
SETTLED_STATUSES = {BookingStatus.ACCEPTED, BookingStatus.ACTIVE, BookingStatus.COMPLETED}

E = TypeVar("E", bound=Entity)
Handler = Callable[[Any], Union[None, Awaitable[None]]]


def first_snapshot_timeout() -> float:
    return float(os.getenv("FIRST_SNAPSHOT_TIMEOUT", "15"))


async def _call(handler: Optional[Handler], value: Any) -> None:
    if handler is None:
        return
    result = handler(value)
    if inspect.isawaitable(result):
        await result


def decode_snapshot(cls: Type[E], snapshot: Snapshot) -> List[E]:
    """Decode a list snapshot, skipping (and logging) malformed documents."""
    items = []
    for doc_id, data in snapshot:
        try:
            items.append(cls.from_document(doc_id, data))
        except DecodeError as e:
            _LOGGER.warning("Skipping undecodable %s: %s", cls.__name__, e)
    _LOGGER.debug("Snapshot of %d %s(s)", len(items), cls.__name__)
    return items


# ---------------------------
# Subscriptions
# ---------------------------

async def subscribe_to_booking_status(store: DocumentStore, booking_id: str, on_update: Handler) -> Subscription:
    """``on_update`` receives the current Booking, or None when it is gone."""
    async def handle(snapshot: Snapshot):
        if not snapshot:
            await _call(on_update, None)
            return
        doc_id, data = snapshot[0]
        try:
            booking = Booking.from_document(doc_id, data)
        except DecodeError as e:
            _LOGGER.warning("Ignoring undecodable booking update: %s", e)
            return
        _LOGGER.debug("Booking %s is %s", doc_id, booking.status.value)
        await _call(on_update, booking)

    return await store.subscribe(BOOKINGS, None, handle, doc_id=booking_id)


async def subscribe_to_incoming_requests(store: DocumentStore, host_id: str, on_update: Handler) -> Subscription:
    async def handle(snapshot: Snapshot):
        await _call(on_update, decode_snapshot(Booking, snapshot))

    filters = {"host_id": host_id, "status": BookingStatus.PENDING.value}
    return await store.subscribe(BOOKINGS, filters, handle)


async def subscribe_to_host_chargers(store: DocumentStore, host_id: str, on_update: Handler) -> Subscription:
    async def handle(snapshot: Snapshot):
        await _call(on_update, decode_snapshot(Charger, snapshot))

    return await store.subscribe(CHARGERS, {"host_id": host_id}, handle)


async def subscribe_to_available_chargers(store: DocumentStore, on_update: Handler) -> Subscription:
    async def handle(snapshot: Snapshot):
        await _call(on_update, decode_snapshot(Charger, snapshot))

    return await store.subscribe(CHARGERS, {"status": ChargerStatus.AVAILABLE.value}, handle)


class ListenerSlot:
    """Holds at most one live subscription."""

    def __init__(self):
        self.subscription: Optional[Subscription] = None

    @property
    def active(self) -> bool:
        return self.subscription is not None and self.subscription.active

    async def replace(self, subscribe: Callable[[], Awaitable[Subscription]]) -> Subscription:
        self.cancel()
        self.subscription = await subscribe()
        return self.subscription

    def cancel(self) -> None:
        if self.subscription is not None:
            self.subscription.cancel()
            self.subscription = None


# ---------------------------
# Feeds
# ---------------------------

class _Feed:
    def __init__(self, store: DocumentStore, on_change: Optional[Handler] = None):
        self.store = store
        self.on_change = on_change
        self.slot = ListenerSlot()
        self.items: List[Any] = []
        self.is_loading = True

    async def _listen(self, subscribe: Callable[[], Awaitable[Subscription]]) -> None:
        self.is_loading = True
        try:
            await self.slot.replace(subscribe)
        except TransientBackendError as e:
            _LOGGER.warning("%s could not subscribe: %s", type(self).__name__, e)
            await self._update([])

    async def _update(self, items: List[Any]) -> None:
        self.items = items
        self.is_loading = False
        await _call(self.on_change, items)

    def close(self) -> None:
        self.slot.cancel()


class IncomingRequestsFeed(_Feed):
    """Host side: pending requests for the host's chargers."""

    async def ensure_listening(self, host_id: str) -> None:
        await self._listen(lambda: subscribe_to_incoming_requests(self.store, host_id, self._update))


class HostChargersFeed(_Feed):
    async def ensure_listening(self, host_id: str) -> None:
        await self._listen(lambda: subscribe_to_host_chargers(self.store, host_id, self._update))


class AvailableChargersFeed(_Feed):
    """Driver map: available chargers narrowed by a ChargerFilter on every snapshot."""

    def __init__(self, store: DocumentStore, on_change: Optional[Handler] = None,
                 filt: Optional[ChargerFilter] = None, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(store, on_change)
        self.filter = filt or ChargerFilter()
        self.clock = clock
        self.all_chargers: List[Charger] = []

    async def ensure_listening(self) -> None:
        await self._listen(lambda: subscribe_to_available_chargers(self.store, self._receive))

    async def _receive(self, chargers: List[Charger]) -> None:
        self.all_chargers = chargers
        await self.apply_filter()

    async def apply_filter(self, filt: Optional[ChargerFilter] = None) -> None:
        if filt is not None:
            self.filter = filt
        now = self.clock() if self.clock else None
        await self._update(filter_chargers(self.all_chargers, self.filter, now))


# ---------------------------
# Driver booking observer
# ---------------------------

class DriverBookingObserver:
    """Follows the driver's current booking and settles the driver's side.

    Once the booking is past acceptance (``SETTLED_STATUSES``) the driver is debited through the
    session's DebitGuard, once per booking however often the update is
    delivered. A decline leaves a notice and clears the awaited booking.
    """

    def __init__(self, store: DocumentStore, guard: DebitGuard,
                 on_change: Optional[Handler] = None):
        self.store = store
        self.guard = guard
        self.on_change = on_change
        self.slot = ListenerSlot()
        self.current_booking: Optional[Booking] = None
        self.status: Optional[BookingStatus] = None
        self.notice: Optional[str] = None
        self._first: Optional[asyncio.Future] = None

    async def watch(self, booking_id: str) -> None:
        self._first = asyncio.get_running_loop().create_future()
        await self.slot.replace(lambda: subscribe_to_booking_status(self.store, booking_id, self.observe_transition))

    async def observe_transition(self, booking: Optional[Booking]) -> None:
        if booking is None:
            return
        if self._first is not None and not self._first.done():
            self._first.set_result(booking)

        self.current_booking = booking
        self.status = booking.status

        if booking.status in SETTLED_STATUSES:
            # Snapshots can skip states; a session may first see the booking already active.
            await self.guard.debit_driver(booking)
        elif booking.status == BookingStatus.DECLINED:
            self.notice = DECLINED_NOTICE
            self.current_booking = None
        elif booking.status == BookingStatus.CANCELLED:
            self.current_booking = None

        await _call(self.on_change, booking)

    async def wait_for_booking(self, timeout: Optional[float] = None) -> Booking:
        """Wait for the first snapshot after ``watch``."""
        if self._first is None:
            raise TransientBackendError("Not watching any booking")
        timeout = first_snapshot_timeout() if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(self._first), timeout)
        except asyncio.TimeoutError:
            raise TransientBackendError("Timed out waiting for booking updates")

    def close(self) -> None:
        self.slot.cancel()

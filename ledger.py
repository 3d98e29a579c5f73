"""Green credit ledger.

A booking's credits move in two independent writes: the host credits
themselves when accepting, and the driver's session debits the driver once
it observes the acceptance. The store only lets a user change their own
balance, so the two halves run in different sessions and may complete in
either order. Every balance change is an atomic increment.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from pydantic import BaseModel

from database import DocumentStore
from errors import NotFoundError, PlugInError, ValidationError
from schemas import BOOKINGS, USERS, Booking, User

_LOGGER = logging.getLogger(__name__)


class CreditPackage(BaseModel):
    id: str
    credits: int
    price: float
    bonus: int = 0
    is_popular: bool = False

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(id="starter", credits=10, price=4.99),
    CreditPackage(id="popular", credits=25, price=9.99, bonus=5, is_popular=True),
    CreditPackage(id="value", credits=50, price=19.99, bonus=15),
    CreditPackage(id="power", credits=100, price=34.99, bonus=35),
]


class CreditLedger:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def apply_credit_delta(self, user_id: str, delta: int) -> None:
        await self.store.increment_field(USERS, user_id, "green_credits", delta)

    async def balance(self, user_id: str) -> int:
        data = await self.store.get_document(USERS, user_id)
        if data is None:
            raise NotFoundError("User not found")
        return int(data.get("green_credits") or 0)

    async def credit_host(self, booking: Booking) -> bool:
        """Host half of the transfer. Failures are logged, never raised."""
        if not booking.credits_used:
            return False
        try:
            await self.apply_credit_delta(booking.host_id, booking.credits_used)
        except PlugInError:
            _LOGGER.exception("Host credit of %s for booking %s failed", booking.credits_used, booking.id)
            return False
        _LOGGER.info("Credited host %s with %s for booking %s", booking.host_id, booking.credits_used, booking.id)
        return True

    async def purchase_credits(self, user_id: str, package_id: str) -> User:
        """Simulated purchase: no payment is taken, the package total is added."""
        package = next((p for p in CREDIT_PACKAGES if p.id == package_id), None)
        if package is None:
            raise ValidationError("Unknown credit package")
        await self.apply_credit_delta(user_id, package.total_credits)
        data = await self.store.get_document(USERS, user_id)
        if data is None:
            raise NotFoundError("User not found")
        _LOGGER.info("User %s purchased %s credits", user_id, package.total_credits)
        return User.from_document(user_id, data)


class DebitGuard:
    """Driver half of the transfer, applied at most once per booking.

    The booking id is claimed twice before the balance changes: in this
    guard's own set, which absorbs duplicate notifications inside one
    process, and on the booking document itself (``driver_debited_at``),
    which holds across server processes and reconnects. Both claims
    are released if the debit fails, so a later notification retries.
    """

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger
        self._debited: Set[str] = set()

    def has_debited(self, booking_id: Optional[str]) -> bool:
        return booking_id in self._debited

    async def debit_driver(self, booking: Booking) -> bool:
        if not booking.id or not booking.credits_used or booking.id in self._debited:
            return False
        self._debited.add(booking.id)
        store = self.ledger.store
        try:
            claimed = await store.update_document(
                BOOKINGS, booking.id, {"driver_debited_at": datetime.now(timezone.utc)},
                expected={"driver_debited_at": None},
            )
        except PlugInError:
            self._debited.discard(booking.id)
            _LOGGER.exception("Could not claim driver debit for booking %s; will retry on next update", booking.id)
            return False
        if not claimed:
            _LOGGER.debug("Driver debit for booking %s already applied", booking.id)
            return False

        try:
            await self.ledger.apply_credit_delta(booking.driver_id, -booking.credits_used)
        except PlugInError:
            _LOGGER.exception("Driver debit for booking %s failed; will retry on next update", booking.id)
            await self._release(booking.id)
            return False
        _LOGGER.info("Debited driver %s by %s for booking %s", booking.driver_id, booking.credits_used, booking.id)
        return True

    async def _release(self, booking_id: str) -> None:
        try:
            await self.ledger.store.update_document(BOOKINGS, booking_id, {"driver_debited_at": None})
        except PlugInError:
            _LOGGER.exception("Could not release driver debit claim on booking %s", booking_id)
        finally:
            self._debited.discard(booking_id)


class DebitGuards:
    """Keeps one DebitGuard per driver for the lifetime of the process."""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger
        self._guards: Dict[str, DebitGuard] = {}

    def for_driver(self, driver_id: str) -> DebitGuard:
        if driver_id not in self._guards:
            self._guards[driver_id] = DebitGuard(self.ledger)
        return self._guards[driver_id]

"""Test the green credit ledger."""
from unittest.mock import AsyncMock

import pytest

from errors import NotFoundError, TransientBackendError, ValidationError
from ledger import CREDIT_PACKAGES, CreditLedger, DebitGuard, DebitGuards
from schemas import BOOKINGS, Booking, BookingStatus


def accepted_booking(booking_id="b-1", credits=6):
    return Booking(
        id=booking_id,
        charger_id="c-1",
        host_id="host-1",
        driver_id="driver-1",
        status=BookingStatus.ACCEPTED,
        estimated_duration=7200,
        credits_used=credits,
    )


async def saved(store, booking):
    await store.set_document(BOOKINGS, booking.id, booking.to_document())
    return booking


@pytest.mark.asyncio
async def test_apply_credit_delta_is_an_increment(ledger, users):
    await ledger.apply_credit_delta("driver-1", -6)
    await ledger.apply_credit_delta("driver-1", 2)
    assert await ledger.balance("driver-1") == 16


@pytest.mark.asyncio
async def test_apply_credit_delta_uses_store_increment(ledger):
    ledger.store.increment_field = AsyncMock()
    await ledger.apply_credit_delta("host-1", 6)
    ledger.store.increment_field.assert_awaited_once_with("users", "host-1", "green_credits", 6)


@pytest.mark.asyncio
async def test_unknown_user(ledger):
    with pytest.raises(NotFoundError):
        await ledger.apply_credit_delta("nobody", 1)


@pytest.mark.asyncio
async def test_credit_host(ledger, users):
    assert await ledger.credit_host(accepted_booking())
    assert await ledger.balance("host-1") == 26


@pytest.mark.asyncio
async def test_credit_host_swallows_backend_failure(ledger, users):
    ledger.apply_credit_delta = AsyncMock(side_effect=TransientBackendError("offline"))
    assert not await ledger.credit_host(accepted_booking())


@pytest.mark.asyncio
async def test_credit_host_skips_currency_bookings(ledger, users):
    booking = accepted_booking().model_copy(update={"credits_used": None, "amount_paid": 6.0})
    assert not await ledger.credit_host(booking)
    assert await ledger.balance("host-1") == 20


class TestDebitGuard:
    @pytest.mark.asyncio
    async def test_applied_once_for_duplicates(self, store, ledger, users):
        guard = DebitGuard(ledger)
        booking = await saved(store, accepted_booking())

        results = [await guard.debit_driver(booking) for _ in range(5)]

        assert results == [True, False, False, False, False]
        assert guard.has_debited("b-1")
        assert await ledger.balance("driver-1") == 14
        assert (await store.get_document(BOOKINGS, "b-1"))["driver_debited_at"] is not None

    @pytest.mark.asyncio
    async def test_claim_on_booking_holds_across_guards(self, store, users):
        booking = await saved(store, accepted_booking())

        assert await DebitGuards(CreditLedger(store)).for_driver("driver-1").debit_driver(booking)
        # A restarted server or another worker starts with empty guards.
        assert not await DebitGuards(CreditLedger(store)).for_driver("driver-1").debit_driver(booking)

        assert await CreditLedger(store).balance("driver-1") == 14

    @pytest.mark.asyncio
    async def test_failed_debit_is_retried(self, store, ledger, users):
        guard = DebitGuard(ledger)
        booking = await saved(store, accepted_booking())
        real = ledger.apply_credit_delta
        calls = []

        async def flaky(user_id, delta):
            calls.append(delta)
            if len(calls) == 1:
                raise TransientBackendError("offline")
            await real(user_id, delta)

        ledger.apply_credit_delta = flaky

        assert not await guard.debit_driver(booking)
        assert not guard.has_debited("b-1")
        assert (await store.get_document(BOOKINGS, "b-1"))["driver_debited_at"] is None
        assert await guard.debit_driver(booking)
        assert await guard.debit_driver(booking) is False
        assert calls == [-6, -6]
        assert await ledger.balance("driver-1") == 14

    @pytest.mark.asyncio
    async def test_failed_claim_is_retried(self, store, ledger, users):
        guard = DebitGuard(ledger)
        booking = await saved(store, accepted_booking())
        real = store.update_document
        store.update_document = AsyncMock(side_effect=TransientBackendError("offline"))

        assert not await guard.debit_driver(booking)
        assert not guard.has_debited("b-1")
        assert await ledger.balance("driver-1") == 20

        store.update_document = real
        assert await guard.debit_driver(booking)
        assert await ledger.balance("driver-1") == 14

    @pytest.mark.asyncio
    async def test_debits_are_tracked_per_booking(self, store, ledger, users):
        guard = DebitGuard(ledger)
        first = await saved(store, accepted_booking("b-1", 6))
        second = await saved(store, accepted_booking("b-2", 3))
        await guard.debit_driver(first)
        await guard.debit_driver(second)
        await guard.debit_driver(first)
        assert await ledger.balance("driver-1") == 11


def test_guards_are_per_driver(ledger):
    guards = DebitGuards(ledger)
    assert guards.for_driver("driver-1") is guards.for_driver("driver-1")
    assert guards.for_driver("driver-1") is not guards.for_driver("driver-2")


@pytest.mark.asyncio
async def test_purchase_credits(ledger, users):
    user = await ledger.purchase_credits("driver-1", "popular")
    assert user.green_credits == 50
    with pytest.raises(ValidationError):
        await ledger.purchase_credits("driver-1", "free-money")


def test_package_totals():
    assert [p.total_credits for p in CREDIT_PACKAGES] == [10, 30, 65, 135]
    assert [p.id for p in CREDIT_PACKAGES if p.is_popular] == ["popular"]

"""Fixtures for testing."""
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from bookings import BookingService
from database import MemoryStore
from ledger import CreditLedger
from schemas import (
    CHARGERS,
    USERS,
    Charger,
    ChargerType,
    ConnectorType,
    DayAvailability,
    GeoPoint,
    User,
    UserRole,
)

# Monday 2024-01-15 12:00 UTC
MONDAY_NOON = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def utc_calendar(monkeypatch):
    """Evaluate availability in UTC regardless of the host machine."""
    monkeypatch.setenv("PLUGIN_TIMEZONE", "UTC")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store):
    return CreditLedger(store)


@pytest.fixture
def clock():
    return lambda: MONDAY_NOON


@pytest.fixture
def service(store, ledger, clock):
    return BookingService(store, ledger=ledger, clock=clock)


def make_charger(**overrides) -> Charger:
    fields = dict(
        host_id="host-1",
        location=GeoPoint(latitude=37.7749, longitude=-122.4194),
        address="1 Market St, San Francisco",
        type=ChargerType.LEVEL2,
        connector_type=ConnectorType.J1772,
        price_per_hour=3.0,
        credits_per_hour=3,
        max_speed=7.2,
        has_tethered_cable=True,
    )
    fields.update(overrides)
    return Charger(**fields)


@pytest_asyncio.fixture
async def users(store):
    """A host and a driver, each with 20 credits."""
    for user_id, email, roles in (
        ("host-1", "host@example.com", [UserRole.DRIVER, UserRole.HOST]),
        ("driver-1", "driver@example.com", [UserRole.DRIVER]),
    ):
        user = User(email=email, name=user_id, roles=roles, green_credits=20)
        await store.set_document(USERS, user_id, user.to_document())
    return "host-1", "driver-1"


@pytest_asyncio.fixture
async def charger(store, users):
    charger = make_charger()
    charger.id = await store.add_document(CHARGERS, charger.to_document())
    return charger


@pytest.fixture
def weekday_schedule():
    """Open 08-22 Monday to Saturday, closed on Sunday."""
    week = DayAvailability.default_week()
    week[0] = DayAvailability(day=0, start_hour=0, end_hour=24, is_available=False)
    return week

"""Test charger management and filtering."""
from datetime import datetime, timezone

import pytest

from auth import AccountService
from chargers import ChargerFilter, ChargerInput, ChargerService, filter_chargers
from conftest import MONDAY_NOON, make_charger
from errors import PermissionDeniedError, ValidationError
from schemas import ChargerStatus, ChargerType, ConnectorType, DayAvailability, GeoPoint, UserRole


def charger_input(**overrides):
    fields = dict(
        location=GeoPoint(latitude=51.5, longitude=-0.12),
        address="10 Downing St",
        type=ChargerType.LEVEL2,
        connector_type=ConnectorType.CCS,
        price_per_hour=2.5,
        credits_per_hour=2,
        max_speed=11,
    )
    fields.update(overrides)
    return ChargerInput(**fields)


class TestFilterChargers:
    def test_filters_combine(self):
        own = make_charger(host_id="me")
        fast = make_charger(host_id="h2", type=ChargerType.DC_FAST, connector_type=ConnectorType.CCS,
                            credits_per_hour=8)
        tesla = make_charger(host_id="h3", connector_type=ConnectorType.TESLA_NACS, credits_per_hour=2)
        chargers = [own, fast, tesla]

        assert filter_chargers(chargers, ChargerFilter(exclude_host_id="me"), MONDAY_NOON) == [fast, tesla]
        assert filter_chargers(chargers, ChargerFilter(charger_types={ChargerType.DC_FAST}), MONDAY_NOON) == [fast]
        assert filter_chargers(
            chargers, ChargerFilter(connector_types={ConnectorType.TESLA_NACS}), MONDAY_NOON
        ) == [tesla]
        assert filter_chargers(chargers, ChargerFilter(max_credits_per_hour=3), MONDAY_NOON) == [own, tesla]

    def test_availability_time(self, weekday_schedule):
        charger = make_charger(availability_schedule=weekday_schedule)
        sunday = datetime(2024, 1, 14, 12, tzinfo=timezone.utc)
        assert filter_chargers([charger], ChargerFilter(), MONDAY_NOON) == [charger]
        assert filter_chargers([charger], ChargerFilter(), sunday) == []
        assert filter_chargers([charger], ChargerFilter(available_at=sunday), MONDAY_NOON) == []

    def test_is_active(self):
        assert not ChargerFilter(exclude_host_id="me").is_active
        assert ChargerFilter(max_credits_per_hour=0).is_active


class TestChargerService:
    @pytest.mark.asyncio
    async def test_register_adds_host_role_once(self, store):
        accounts = AccountService(store)
        user, _token = await accounts.signup("new@example.com", "secret1", "New Host")
        service = ChargerService(store)

        first = await service.register_charger(user.id, charger_input())
        await service.register_charger(user.id, charger_input(address="Second"))

        assert first.status == ChargerStatus.AVAILABLE
        refreshed = await accounts.get_user(user.id)
        assert refreshed.roles == [UserRole.DRIVER, UserRole.HOST]
        assert len(await service.host_chargers(user.id)) == 2

    @pytest.mark.asyncio
    async def test_register_validates_inputs(self, store, users):
        service = ChargerService(store)
        with pytest.raises(ValidationError):
            await service.register_charger("host-1", charger_input(price_per_hour=-1))
        with pytest.raises(ValidationError):
            await service.register_charger("host-1", charger_input(credits_per_hour=-2))
        with pytest.raises(ValidationError):
            await service.register_charger("host-1", charger_input(address="  "))
        with pytest.raises(ValidationError):
            await service.register_charger("host-1", charger_input(availability_schedule=[
                DayAvailability(day=1), DayAvailability(day=1),
            ]))

    @pytest.mark.asyncio
    async def test_update_toggle_delete_owner_only(self, store, users):
        service = ChargerService(store)
        charger = await service.register_charger("host-1", charger_input())

        with pytest.raises(PermissionDeniedError):
            await service.update_charger(charger.id, "driver-1", charger_input())

        updated = await service.update_charger(charger.id, "host-1", charger_input(
            price_per_hour=4.0, availability_schedule=list(reversed(DayAvailability.default_week())),
        ))
        assert updated.price_per_hour == 4.0
        assert [e.day for e in updated.availability_schedule] == list(range(7))
        assert updated.host_id == "host-1"

        toggled = await service.toggle_availability(charger.id, "host-1")
        assert toggled.status == ChargerStatus.OFFLINE
        assert await service.available_chargers() == []
        toggled = await service.toggle_availability(charger.id, "host-1")
        assert toggled.status == ChargerStatus.AVAILABLE

        with pytest.raises(PermissionDeniedError):
            await service.delete_charger(charger.id, "driver-1")
        await service.delete_charger(charger.id, "host-1")
        assert await service.host_chargers("host-1") == []


"""Host charger management and driver-side charger filtering."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from auth import AccountService
from availability import is_available, normalize_schedule
from database import DocumentStore, create_document
from errors import NotFoundError, PermissionDeniedError, ValidationError
from schemas import CHARGERS, Charger, ChargerStatus, ChargerType, ConnectorType, DayAvailability, GeoPoint

_LOGGER = logging.getLogger(__name__)


class ChargerInput(BaseModel):
    location: GeoPoint
    address: str
    type: ChargerType
    connector_type: ConnectorType
    price_per_hour: float
    credits_per_hour: int
    max_speed: float = Field(..., ge=0)
    has_tethered_cable: bool = False
    access_instructions: Optional[str] = None
    availability_schedule: Optional[List[DayAvailability]] = None


class ChargerFilter(BaseModel):
    exclude_host_id: Optional[str] = None
    charger_types: Set[ChargerType] = Field(default_factory=set)
    connector_types: Set[ConnectorType] = Field(default_factory=set)
    max_credits_per_hour: Optional[int] = None
    available_at: Optional[datetime] = Field(None, description="Null means now")

    @property
    def is_active(self) -> bool:
        return bool(self.charger_types or self.connector_types
                    or self.max_credits_per_hour is not None or self.available_at is not None)


def filter_chargers(chargers: Iterable[Charger], filt: ChargerFilter,
                    now: Optional[datetime] = None) -> List[Charger]:
    when = filt.available_at or now or datetime.now(timezone.utc)
    result = []
    for charger in chargers:
        if filt.exclude_host_id and charger.host_id == filt.exclude_host_id:
            continue
        if filt.charger_types and charger.type not in filt.charger_types:
            continue
        if filt.connector_types and charger.connector_type not in filt.connector_types:
            continue
        if filt.max_credits_per_hour is not None and charger.credits_per_hour > filt.max_credits_per_hour:
            continue
        if not is_available(charger, when):
            continue
        result.append(charger)
    return result


def _validate_input(data: ChargerInput) -> Dict[str, Any]:
    if not data.address.strip():
        raise ValidationError("Address is required")
    if data.price_per_hour < 0:
        raise ValidationError("Price per hour must not be negative")
    if data.credits_per_hour < 0:
        raise ValidationError("Credits per hour must not be negative")
    fields = data.model_dump()
    schedule = normalize_schedule(data.availability_schedule)
    fields["availability_schedule"] = schedule
    return fields


class ChargerService:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_charger(self, charger_id: str) -> Charger:
        data = await self.store.get_document(CHARGERS, charger_id)
        if data is None:
            raise NotFoundError("Charger not found")
        return Charger.from_document(charger_id, data)

    async def _owned(self, charger_id: str, host_id: str) -> Charger:
        charger = await self.get_charger(charger_id)
        if charger.host_id != host_id:
            raise PermissionDeniedError("Not your charger")
        return charger

    async def register_charger(self, host_id: str, data: ChargerInput) -> Charger:
        charger = Charger(host_id=host_id, status=ChargerStatus.AVAILABLE, **_validate_input(data))
        charger.id = await create_document(self.store, CHARGERS, charger)
        await AccountService(self.store).add_host_role(host_id)
        _LOGGER.info("Host %s registered charger %s", host_id, charger.id)
        return charger

    async def update_charger(self, charger_id: str, host_id: str, data: ChargerInput) -> Charger:
        await self._owned(charger_id, host_id)
        fields = _validate_input(data)
        document = Charger(host_id=host_id, **fields).to_document()
        update = {k: document[k] for k in fields}
        update["updated_at"] = datetime.now(timezone.utc)
        await self.store.update_document(CHARGERS, charger_id, update)
        return await self.get_charger(charger_id)

    async def delete_charger(self, charger_id: str, host_id: str) -> None:
        await self._owned(charger_id, host_id)
        await self.store.delete_document(CHARGERS, charger_id)
        _LOGGER.info("Host %s deleted charger %s", host_id, charger_id)

    async def toggle_availability(self, charger_id: str, host_id: str) -> Charger:
        charger = await self._owned(charger_id, host_id)
        status = ChargerStatus.OFFLINE if charger.status == ChargerStatus.AVAILABLE else ChargerStatus.AVAILABLE
        await self.store.update_document(CHARGERS, charger_id, {"status": status.value})
        return charger.model_copy(update={"status": status})

    async def host_chargers(self, host_id: str) -> List[Charger]:
        docs = await self.store.query(CHARGERS, {"host_id": host_id})
        return [Charger.from_document(doc_id, data) for doc_id, data in docs]

    async def available_chargers(self, filt: Optional[ChargerFilter] = None) -> List[Charger]:
        docs = await self.store.query(CHARGERS, {"status": ChargerStatus.AVAILABLE.value})
        chargers = [Charger.from_document(doc_id, data) for doc_id, data in docs]
        return filter_chargers(chargers, filt or ChargerFilter())

import logging
import os
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from auth import AccountService, bearer_token
from bookings import BookingService
from chargers import ChargerFilter, ChargerInput, ChargerService
from database import DocumentStore, connect
from errors import PermissionDeniedError, PlugInError
from ledger import CREDIT_PACKAGES, CreditLedger, DebitGuards
from realtime import AvailableChargersFeed, DriverBookingObserver, HostChargersFeed, IncomingRequestsFeed
from schemas import Booking, ChargerType, ConnectorType, PaymentMode

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
_LOGGER = logging.getLogger(__name__)

app = FastAPI(title="Plug-In API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.store = connect()

UNSET_TIMEZONE = "UTC (PLUGIN_TIMEZONE not set)"
if not os.getenv("PLUGIN_TIMEZONE"):
    _LOGGER.warning("PLUGIN_TIMEZONE not set; charger schedules are evaluated in UTC")


@app.exception_handler(PlugInError)
async def plugin_error_handler(request: Request, exc: PlugInError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# ---------------------------
# Dependencies
# ---------------------------

def get_store(request: Request) -> DocumentStore:
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return store


async def get_current_user_id(authorization: Optional[str] = Header(None),
                              store: DocumentStore = Depends(get_store)) -> str:
    return await AccountService(store).user_id_for_token(bearer_token(authorization))


async def get_optional_user_id(authorization: Optional[str] = Header(None),
                               store: DocumentStore = Depends(get_store)) -> Optional[str]:
    if not authorization:
        return None
    return await AccountService(store).user_id_for_token(bearer_token(authorization))


def debit_guards(application: FastAPI, store: DocumentStore) -> DebitGuards:
    guards = getattr(application.state, "debit_guards", None)
    if guards is None or guards.ledger.store is not store:
        guards = application.state.debit_guards = DebitGuards(CreditLedger(store))
    return guards


# ---------------------------
# Models (requests/responses)
# ---------------------------
class SignupRequest(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    profile_image_url: Optional[str] = None
    phone_number: Optional[str] = None


class PurchaseRequest(BaseModel):
    package_id: str


class BookingCreateRequest(BaseModel):
    charger_id: str
    estimated_duration: float = Field(7200, gt=0, description="Seconds")
    payment_mode: PaymentMode = PaymentMode.CREDITS
    scheduled_start_time: Optional[datetime] = Field(None, description="Omit to charge as soon as possible")


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)


# ---------------------------
# Health & Utility
# ---------------------------
@app.get("/")
def read_root():
    return {"message": "Plug-In API running"}


@app.get("/test")
async def test_database(request: Request):
    store = request.app.state.store
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "availability_timezone": os.getenv("PLUGIN_TIMEZONE") or UNSET_TIMEZONE,
    }
    if store is None:
        return response
    response["database"] = "✅ Available"
    response["database_name"] = store.name
    try:
        response["collections"] = (await store.collection_names())[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except PlugInError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


# ---------------------------
# Accounts
# ---------------------------
@app.post("/auth/signup")
async def signup(payload: SignupRequest, store: DocumentStore = Depends(get_store)):
    user, token = await AccountService(store).signup(payload.email, payload.password, payload.name)
    return {"user": user, "token": token}


@app.post("/auth/login")
async def login(payload: LoginRequest, store: DocumentStore = Depends(get_store)):
    user, token = await AccountService(store).login(payload.email, payload.password)
    return {"user": user, "token": token}


@app.get("/me")
async def me(store: DocumentStore = Depends(get_store), user_id: str = Depends(get_current_user_id)):
    return await AccountService(store).get_user(user_id)


@app.patch("/me")
async def update_me(payload: ProfileUpdateRequest, store: DocumentStore = Depends(get_store),
                    user_id: str = Depends(get_current_user_id)):
    return await AccountService(store).update_profile(user_id, payload.model_dump())


@app.post("/me/host-role")
async def add_host_role(store: DocumentStore = Depends(get_store), user_id: str = Depends(get_current_user_id)):
    return await AccountService(store).add_host_role(user_id)


# ---------------------------
# Credits
# ---------------------------
@app.get("/credits/packages")
def list_credit_packages():
    return [dict(p.model_dump(), total_credits=p.total_credits) for p in CREDIT_PACKAGES]


@app.post("/credits/purchase")
async def purchase_credits(payload: PurchaseRequest, store: DocumentStore = Depends(get_store),
                           user_id: str = Depends(get_current_user_id)):
    return await CreditLedger(store).purchase_credits(user_id, payload.package_id)


# ---------------------------
# Chargers
# ---------------------------
@app.post("/chargers")
async def register_charger(data: ChargerInput, store: DocumentStore = Depends(get_store),
                           user_id: str = Depends(get_current_user_id)):
    return await ChargerService(store).register_charger(user_id, data)


@app.get("/chargers")
async def list_chargers(charger_type: Optional[List[ChargerType]] = Query(None),
                        connector_type: Optional[List[ConnectorType]] = Query(None),
                        max_credits_per_hour: Optional[int] = None,
                        available_at: Optional[datetime] = None,
                        store: DocumentStore = Depends(get_store),
                        user_id: Optional[str] = Depends(get_optional_user_id)):
    filt = ChargerFilter(
        exclude_host_id=user_id,
        charger_types=set(charger_type or []),
        connector_types=set(connector_type or []),
        max_credits_per_hour=max_credits_per_hour,
        available_at=available_at,
    )
    return await ChargerService(store).available_chargers(filt)


@app.get("/chargers/mine")
async def my_chargers(store: DocumentStore = Depends(get_store), user_id: str = Depends(get_current_user_id)):
    return await ChargerService(store).host_chargers(user_id)


@app.get("/chargers/{charger_id}")
async def get_charger(charger_id: str, store: DocumentStore = Depends(get_store)):
    return await ChargerService(store).get_charger(charger_id)


@app.put("/chargers/{charger_id}")
async def update_charger(charger_id: str, data: ChargerInput, store: DocumentStore = Depends(get_store),
                         user_id: str = Depends(get_current_user_id)):
    return await ChargerService(store).update_charger(charger_id, user_id, data)


@app.delete("/chargers/{charger_id}")
async def delete_charger(charger_id: str, store: DocumentStore = Depends(get_store),
                         user_id: str = Depends(get_current_user_id)):
    await ChargerService(store).delete_charger(charger_id, user_id)
    return {"deleted": True}


@app.post("/chargers/{charger_id}/toggle")
async def toggle_charger(charger_id: str, store: DocumentStore = Depends(get_store),
                         user_id: str = Depends(get_current_user_id)):
    return await ChargerService(store).toggle_availability(charger_id, user_id)


# ---------------------------
# Bookings
# ---------------------------
@app.post("/bookings")
async def create_booking(data: BookingCreateRequest, store: DocumentStore = Depends(get_store),
                         user_id: str = Depends(get_current_user_id)):
    service = BookingService(store)
    charger = await service.get_charger(data.charger_id)
    return await service.create_booking(
        charger, user_id, data.estimated_duration, data.payment_mode, data.scheduled_start_time
    )


@app.get("/bookings")
async def list_bookings(role: str = Query("driver", pattern="^(driver|host)$"),
                        store: DocumentStore = Depends(get_store), user_id: str = Depends(get_current_user_id)):
    return await BookingService(store).bookings_for(user_id, role)


@app.get("/bookings/history")
async def booking_history(store: DocumentStore = Depends(get_store), user_id: str = Depends(get_current_user_id)):
    return await BookingService(store).past_bookings(user_id)


@app.get("/bookings/{booking_id}")
async def get_booking(booking_id: str, store: DocumentStore = Depends(get_store),
                      user_id: str = Depends(get_current_user_id)):
    booking = await BookingService(store).get_booking(booking_id)
    if user_id not in (booking.host_id, booking.driver_id):
        raise PermissionDeniedError("Not your booking")
    return booking


async def _apply(store: DocumentStore, booking_id: str,
                 action: Callable[[BookingService, Booking], Awaitable[Booking]]) -> Booking:
    service = BookingService(store)
    booking = await service.get_booking(booking_id)
    return await action(service, booking)


@app.post("/bookings/{booking_id}/accept")
async def accept_booking(booking_id: str, store: DocumentStore = Depends(get_store),
                         user_id: str = Depends(get_current_user_id)):
    return await _apply(store, booking_id, lambda s, b: s.accept_booking(b, user_id))


@app.post("/bookings/{booking_id}/decline")
async def decline_booking(booking_id: str, store: DocumentStore = Depends(get_store),
                          user_id: str = Depends(get_current_user_id)):
    return await _apply(store, booking_id, lambda s, b: s.decline_booking(b, user_id))


@app.post("/bookings/{booking_id}/cancel")
async def cancel_booking(booking_id: str, store: DocumentStore = Depends(get_store),
                         user_id: str = Depends(get_current_user_id)):
    return await _apply(store, booking_id, lambda s, b: s.cancel_booking(b, user_id))


@app.post("/bookings/{booking_id}/start")
async def start_booking(booking_id: str, store: DocumentStore = Depends(get_store),
                        user_id: str = Depends(get_current_user_id)):
    return await _apply(store, booking_id, lambda s, b: s.start_booking(b, user_id))


@app.post("/bookings/{booking_id}/complete")
async def complete_booking(booking_id: str, store: DocumentStore = Depends(get_store),
                           user_id: str = Depends(get_current_user_id)):
    return await _apply(store, booking_id, lambda s, b: s.complete_booking(b, user_id))


@app.post("/bookings/{booking_id}/rate")
async def rate_booking(booking_id: str, req: RatingRequest, store: DocumentStore = Depends(get_store),
                       user_id: str = Depends(get_current_user_id)):
    return await _apply(store, booking_id, lambda s, b: s.rate_booking(b, user_id, req.rating))


# ---------------------------
# Real-time feeds
# ---------------------------

def _as_json(items: List[Any]) -> Dict[str, Any]:
    return {"items": [item.model_dump(mode="json") for item in items]}


async def _ws_user(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    store = websocket.app.state.store
    if store is None:
        await websocket.close(code=1011)
        return None
    try:
        return await AccountService(store).user_id_for_token(token)
    except PlugInError:
        await websocket.close(code=4401)
        return None


async def _hold_open(websocket: WebSocket, close: Callable[[], None]) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        close()


@app.websocket("/ws/bookings/{booking_id}")
async def booking_updates(websocket: WebSocket, booking_id: str, token: Optional[str] = None):
    """Driver session for one booking: pushes every update and settles the driver's credits."""
    await websocket.accept()
    user_id = await _ws_user(websocket, token)
    if user_id is None:
        return
    store = websocket.app.state.store
    try:
        booking = await BookingService(store).get_booking(booking_id)
    except PlugInError:
        await websocket.close(code=4404)
        return
    if booking.driver_id != user_id:
        await websocket.close(code=4403)
        return

    async def push(updated: Booking):
        await websocket.send_json({"booking": updated.model_dump(mode="json"), "notice": observer.notice})

    observer = DriverBookingObserver(store, debit_guards(websocket.app, store).for_driver(user_id), on_change=push)
    await observer.watch(booking_id)
    await _hold_open(websocket, observer.close)


@app.websocket("/ws/requests")
async def incoming_requests(websocket: WebSocket, token: Optional[str] = None):
    await websocket.accept()
    user_id = await _ws_user(websocket, token)
    if user_id is None:
        return
    feed = IncomingRequestsFeed(websocket.app.state.store, on_change=lambda items: websocket.send_json(_as_json(items)))
    await feed.ensure_listening(user_id)
    await _hold_open(websocket, feed.close)


@app.websocket("/ws/chargers/mine")
async def host_charger_updates(websocket: WebSocket, token: Optional[str] = None):
    await websocket.accept()
    user_id = await _ws_user(websocket, token)
    if user_id is None:
        return
    feed = HostChargersFeed(websocket.app.state.store, on_change=lambda items: websocket.send_json(_as_json(items)))
    await feed.ensure_listening(user_id)
    await _hold_open(websocket, feed.close)


@app.websocket("/ws/chargers/available")
async def available_charger_updates(websocket: WebSocket, token: Optional[str] = None):
    await websocket.accept()
    user_id = await _ws_user(websocket, token)
    if user_id is None:
        return
    feed = AvailableChargersFeed(
        websocket.app.state.store,
        on_change=lambda items: websocket.send_json(_as_json(items)),
        filt=ChargerFilter(exclude_host_id=user_id),
    )
    await feed.ensure_listening()
    await _hold_open(websocket, feed.close)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

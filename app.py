import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

import analytics
from db.db import get_conn
from db.store import PgStore
from errors import NotFound
from logging_config import get_logger, setup_logging
from memory_store import InMemoryStore
from notifications import EARNINGS_UPDATE_EVENT, NotificationHub
from purchase_engine import record_purchase
from registration import register_user
from settings import settings

setup_logging()
logger = get_logger(__name__)

app = FastAPI(title=settings.app_name, version="0.1.0")

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

memory_store = InMemoryStore()
hub = NotificationHub()


def get_store():
    """one store per request; postgres requests get their own autocommit connection."""
    if settings.store_backend == "memory":
        yield memory_store
        return
    with get_conn(autocommit=True) as conn:
        yield PgStore(conn)


def get_notifier():
    return hub


# ---------
# pydantic models (requests)
# ---------

class UserRegisterRequest(BaseModel):
    username: str = Field(..., description="Display name, 3-50 characters")
    email: str = Field(..., description="Contact address")
    parent_referral_code: Optional[str] = Field(
        None, description="Referral code of the referrer (omit for a root user)"
    )

class UserActiveRequest(BaseModel):
    is_active: bool = Field(..., description="Whether the user may receive commissions")

class PurchaseRequest(BaseModel):
    user_id: int = Field(..., description="ID of the purchasing user")
    amount: Decimal = Field(..., description="Purchase amount")
    description: Optional[str] = None


# ---------
# helpers
# ---------

def _serialize(value: Any) -> Any:
    """decimals serialize as exact fixed-point strings; datetimes as ISO 8601."""
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


# ---------
# endpoints
# ---------


@app.get("/api/health")
def health():
    return {"status": "OK", "message": "Referral system is running"}


@app.post("/api/users/register", status_code=201)
def users_register(payload: UserRegisterRequest, store=Depends(get_store)):
    """
    register a user, optionally under a referrer's code.
    business rule violations (duplicate, bad code, referrer full) -> 400.
    """
    try:
        user = register_user(
            store,
            username=payload.username,
            email=payload.email,
            parent_referral_code=payload.parent_referral_code,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("registration_failed", username=payload.username)
        raise HTTPException(status_code=500, detail="Internal server error")

    return {"message": "User registered successfully", "user": _serialize(user)}


@app.get("/api/users")
def users_list(store=Depends(get_store)):
    return _serialize(store.list_users())


@app.get("/api/users/{user_id}")
def users_get(user_id: int, store=Depends(get_store)):
    """user profile with parent and direct referrals resolved."""
    try:
        profile = analytics.user_profile(store, user_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _serialize(profile)


@app.put("/api/users/{user_id}/active")
def users_set_active(user_id: int, payload: UserActiveRequest, store=Depends(get_store)):
    """toggle whether the user is eligible to receive commissions."""
    try:
        user = store.set_user_active(user_id, payload.is_active)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info("user_active_changed", user_id=user_id, is_active=payload.is_active)
    return _serialize(user)


@app.get("/api/users/{user_id}/network")
def users_network(user_id: int, store=Depends(get_store)):
    try:
        network = analytics.referral_network(store, user_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _serialize(network)


@app.post("/api/transactions", status_code=201)
def transactions_create(
    payload: PurchaseRequest,
    store=Depends(get_store),
    notifier=Depends(get_notifier),
):
    """
    record a purchase. above the payout threshold this also pays the
    purchaser's parent / grandparent and pushes earnings-update events.
    """
    try:
        result = record_purchase(
            store,
            notifier,
            purchaser_id=payload.user_id,
            amount=payload.amount,
            description=payload.description,
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("purchase_failed", user_id=payload.user_id)
        raise HTTPException(status_code=500, detail="Failed to create transaction")

    return {
        "message": "Transaction created successfully",
        "transaction": _serialize(result["transaction"]),
        "distributed": result["distributed"],
        "earnings": _serialize(result["earnings"]),
    }


@app.get("/api/transactions")
def transactions_list(store=Depends(get_store)):
    usernames = {u["id"]: u["username"] for u in store.list_users()}
    return _serialize(
        [dict(t, username=usernames.get(t["user_id"])) for t in store.list_transactions()]
    )


@app.get("/api/transactions/user/{user_id}")
def transactions_for_user(user_id: int, store=Depends(get_store)):
    return _serialize(store.list_transactions(user_id=user_id))


@app.get("/api/earnings")
def earnings_list(store=Depends(get_store)):
    usernames = {u["id"]: u["username"] for u in store.list_users()}
    return _serialize(
        [
            dict(
                e,
                username=usernames.get(e["user_id"]),
                from_username=usernames.get(e["from_user_id"]),
            )
            for e in store.list_earnings()
        ]
    )


@app.get("/api/earnings/user/{user_id}")
def earnings_for_user(user_id: int, store=Depends(get_store)):
    usernames = {u["id"]: u["username"] for u in store.list_users()}
    return _serialize(
        [
            dict(e, from_username=usernames.get(e["from_user_id"]))
            for e in store.list_earnings(user_id=user_id)
        ]
    )


@app.get("/api/earnings/stats/{user_id}")
def earnings_stats(user_id: int, store=Depends(get_store)):
    try:
        stats = analytics.earnings_stats(store, user_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _serialize(stats)


@app.get("/api/analytics/user/{user_id}")
def analytics_user(user_id: int, store=Depends(get_store)):
    try:
        data = analytics.user_analytics(store, user_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _serialize(data)


@app.get("/api/analytics/system")
def analytics_system(store=Depends(get_store)):
    return _serialize(analytics.system_analytics(store))


@app.websocket("/ws")
async def earnings_feed(websocket: WebSocket):
    """
    live earnings feed.

    client -> {"action": "join", "user_id": 7}
    server -> {"event": "joined", "user_id": 7}
    server -> {"event": "earnings-update", "payload": {...}}   (per commission)

    purchases are handled on worker threads, so deliveries are handed to this
    socket's event loop and never awaited by the payout path.
    """
    await websocket.accept()
    loop = asyncio.get_running_loop()

    def deliver(payload):
        message = {"event": EARNINGS_UPDATE_EVENT, "payload": _serialize(payload)}
        asyncio.run_coroutine_threadsafe(websocket.send_json(message), loop)

    tokens = []
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "detail": "invalid JSON"})
                continue
            if not isinstance(message, dict) or message.get("action") != "join":
                await websocket.send_json({"event": "error", "detail": "unknown action"})
                continue
            try:
                user_id = int(message["user_id"])
            except (KeyError, TypeError, ValueError):
                await websocket.send_json({"event": "error", "detail": "user_id is required"})
                continue

            tokens.append(hub.subscribe(user_id, deliver))
            logger.info("ws_joined", user_id=user_id)
            await websocket.send_json({"event": "joined", "user_id": user_id})
    except WebSocketDisconnect:
        logger.info("ws_disconnected", subscriptions=len(tokens))
    finally:
        for token in tokens:
            hub.unsubscribe(token)

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import config
from auth import TokenAuth, User
from algorithms.priority import (
    AID_TYPE_SCORES,
    VULNERABILITY_SCORES,
    calculate_full_priority,
    get_urgency_score,
    get_vulnerability_score,
)
from algorithms.priority_heap import DuplicateEntryError, Entry, InvalidEntryError
from services import notifications
from services.notifications import EventPublisher
from services.queue_service import DELIVERED, IN_TRANSIT, PENDING, WITHDRAWN, QueueService
from storage.document_store import DocumentStoreSimulator
from storage.errors import StoreUnavailableError
from storage.snapshot_store import SnapshotStore, create_snapshot_client

logger = logging.getLogger(__name__)

AidType = Literal["life-saving-medicine", "serious-injury", "regular-medicine", "food-water", "shelter"]
VulnerabilityCategory = Literal["pregnant", "elderly", "child", "disabled", "adult"]
Status = Literal["PENDING", "IN_TRANSIT", "DELIVERED"]


class Location(BaseModel):
    district: str = Field(min_length=1)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: str = ""


class ReliefRequestCreate(BaseModel):
    name: str = Field(min_length=1)
    location: Location
    aid_type: AidType
    vulnerability_category: VulnerabilityCategory
    description: str = Field(default="", max_length=500)
    contact_phone: str = ""


class ReliefRequestUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    location: Optional[Location] = None
    aid_type: Optional[AidType] = None
    vulnerability_category: Optional[VulnerabilityCategory] = None
    description: Optional[str] = Field(default=None, max_length=500)
    contact_phone: Optional[str] = None


class StatusUpdate(BaseModel):
    status: Status


class QueueResponse(BaseModel):
    queue: List[Dict[str, Any]]
    size: int
    highest_priority: Optional[Dict[str, Any]] = None


class RequestResponse(BaseModel):
    request: Dict[str, Any]
    queue_size: Optional[int] = None


class RequestListResponse(BaseModel):
    requests: List[Dict[str, Any]]
    count: int


app_state = {
    "store": None,
    "queue": None,
    "publisher": None,
    "tokens": {},
}


def init_state(store=None, snapshot_client=None, tokens=None, clock=time.time):
    """Build the process-wide collaborators and hang them on app_state."""
    publisher = EventPublisher()
    snapshot_store = SnapshotStore(snapshot_client, key=config.SNAPSHOT_KEY) if snapshot_client is not None else None
    app_state["store"] = store if store is not None else DocumentStoreSimulator()
    app_state["publisher"] = publisher
    app_state["queue"] = QueueService(snapshot_store=snapshot_store, publisher=publisher, clock=clock)
    app_state["tokens"] = tokens if tokens is not None else {}
    return app_state


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    init_state(
        snapshot_client=create_snapshot_client(config.REDIS_URL),
        tokens=config.parse_api_tokens(config.API_TOKENS),
    )

    queue = get_queue()
    await queue.recover_from_store(get_store())
    queue.start_sweeper(config.SWEEP_INTERVAL_SECONDS)

    yield

    await queue.stop_sweeper()
    await queue.snapshot_all()
    await queue.flush_snapshots()


app = FastAPI(title="Relief Dispatch Queue", lifespan=lifespan)
token_auth = TokenAuth(lambda: app_state["tokens"])


def get_queue() -> QueueService:
    return app_state["queue"]


def get_store() -> DocumentStoreSimulator:
    return app_state["store"]


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Record store unavailable"})


async def invalid_entry_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


app.add_exception_handler(InvalidEntryError, invalid_entry_handler)
app.add_exception_handler(DuplicateEntryError, invalid_entry_handler)


@app.post("/v1/requests", response_model=RequestResponse, status_code=201)
async def create_request(payload: ReliefRequestCreate,
                         user: User = Depends(token_auth.require_role("victim", "admin"))):
    created_at = time.time()
    vulnerability_score, urgency_score, priority_score = calculate_full_priority(
        payload.vulnerability_category, payload.aid_type, created_at, created_at
    )

    doc = payload.model_dump()
    doc.update({
        "vulnerability_score": vulnerability_score,
        "urgency_score": urgency_score,
        "priority_score": priority_score,
        "status": PENDING,
        "requested_by": user.id,
        "assigned_to": None,
        "delivered_at": None,
        "created_at": created_at,
    })
    stored = await get_store().create(doc)

    queue = get_queue()
    queued = await queue.enqueue(Entry.from_dict(stored))
    return RequestResponse(request=queued.to_dict(), queue_size=await queue.size())


@app.get("/v1/queue", response_model=QueueResponse)
async def get_queue_view(user: User = Depends(token_auth.require_role("volunteer", "admin"))):
    queue = get_queue()
    requests = await queue.get_all_ordered()
    highest = await queue.peek()
    return QueueResponse(
        queue=[entry.to_dict() for entry in requests],
        size=len(requests),
        highest_priority=highest.to_dict() if highest is not None else None,
    )


@app.post("/v1/dequeue", response_model=RequestResponse)
async def dequeue_request(user: User = Depends(token_auth.require_role("volunteer", "admin"))):
    queue = get_queue()
    recorded = {}

    async def mark_in_transit(entry: Entry):
        recorded["request"] = await get_store().update_by_id(
            entry.id, {"status": IN_TRANSIT, "assigned_to": user.id}
        )

    # a StoreUnavailableError from mark_in_transit leaves the request queued
    entry = await queue.dequeue(commit=mark_in_transit)
    if entry is None:
        raise HTTPException(status_code=404, detail="Queue is empty. No pending requests.")

    updated = recorded["request"]
    if updated is None:
        raise HTTPException(status_code=404, detail="Request not found in database")

    logger.info("Request %s dispatched to %s", entry.id, user.name)
    return RequestResponse(request=updated, queue_size=await queue.size())


@app.put("/v1/requests/{request_id}/status", response_model=RequestResponse)
async def update_status(request_id: str, body: StatusUpdate,
                        user: User = Depends(token_auth.require_role("volunteer", "admin"))):
    changes: Dict[str, Any] = {"status": body.status}
    if body.status == DELIVERED:
        changes["delivered_at"] = time.time()

    updated = await get_store().update_by_id(request_id, changes)
    if updated is None:
        raise HTTPException(status_code=404, detail="Request not found")

    queue = get_queue()
    if body.status == PENDING:
        await queue.requeue(Entry.from_dict(updated))
    else:
        await queue.remove_by_id(request_id)

    app_state["publisher"].publish(notifications.STATUS_UPDATED, {
        "request_id": request_id,
        "status": body.status,
        "request": updated,
    })
    return RequestResponse(request=updated, queue_size=await queue.size())


@app.patch("/v1/requests/{request_id}", response_model=RequestResponse)
async def edit_request(request_id: str, body: ReliefRequestUpdate,
                       user: User = Depends(token_auth.require_role("admin"))):
    # explicit nulls mean "leave unchanged", never "erase"
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if changes.get("aid_type"):
        changes["urgency_score"] = get_urgency_score(changes["aid_type"])
    if changes.get("vulnerability_category"):
        changes["vulnerability_score"] = get_vulnerability_score(changes["vulnerability_category"])

    store = get_store()
    updated = await store.update_by_id(request_id, changes)
    if updated is None:
        raise HTTPException(status_code=404, detail="Request not found")

    queue = get_queue()
    queued = await queue.update_by_id(request_id, changes)
    if queued is not None:
        updated = await store.update_by_id(request_id, {"priority_score": queued.priority_score})
    return RequestResponse(request=updated, queue_size=await queue.size())


@app.delete("/v1/requests/{request_id}", response_model=RequestResponse)
async def withdraw_request(request_id: str,
                           user: User = Depends(token_auth.require_role("victim", "admin"))):
    store = get_store()
    doc = await store.find_by_id(request_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Request not found")
    if user.role != "admin" and doc.get("requested_by") != user.id:
        raise HTTPException(status_code=403, detail="Access denied. Not your request.")
    if doc.get("status") != PENDING:
        raise HTTPException(status_code=409, detail="Only pending requests can be withdrawn")

    queue = get_queue()
    await queue.remove_by_id(request_id)
    updated = await store.update_by_id(request_id, {"status": WITHDRAWN})
    return RequestResponse(request=updated, queue_size=await queue.size())


@app.get("/v1/my-requests", response_model=RequestListResponse)
async def my_requests(user: User = Depends(token_auth)):
    requests = await get_store().find(requested_by=user.id)
    return RequestListResponse(requests=requests, count=len(requests))


@app.get("/v1/assigned-requests", response_model=RequestListResponse)
async def assigned_requests(user: User = Depends(token_auth.require_role("volunteer", "admin"))):
    requests = [
        doc for doc in await get_store().find(assigned_to=user.id)
        if doc.get("status") in (IN_TRANSIT, DELIVERED)
    ]
    return RequestListResponse(requests=requests, count=len(requests))


@app.get("/v1/stats")
async def stats(user: User = Depends(token_auth.require_role("admin"))):
    store = get_store()
    return {
        "overview": {
            "total": await store.count(),
            "pending": await store.count(status=PENDING),
            "in_transit": await store.count(status=IN_TRANSIT),
            "delivered": await store.count(status=DELIVERED),
        },
        "queue_size": await get_queue().size(),
        "aid_type_distribution": await store.aggregate_count("aid_type"),
        "vulnerability_distribution": await store.aggregate_count("vulnerability_category"),
    }


@app.get("/v1/config")
async def get_config():
    return {
        "vulnerability_categories": [
            {"value": key, "label": key.capitalize(), "score": score}
            for key, score in VULNERABILITY_SCORES.items()
        ],
        "aid_types": [
            {"value": key, "label": " ".join(word.capitalize() for word in key.split("-")), "score": score}
            for key, score in AID_TYPE_SCORES.items()
        ],
    }


@app.get("/health")
async def health():
    return {"status": "healthy", "queue_size": await get_queue().size()}

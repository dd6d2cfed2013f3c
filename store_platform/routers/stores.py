"""
Store API routes.

Features:
  - Identity layer: X-User-Id header for per-owner quota
  - Rate limiting per-IP via slowapi on mutating endpoints
  - Live cluster snapshot on store detail
  - WebSocket for dashboard live updates (Redis pub/sub, polling fallback)
"""

import asyncio
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from slowapi import Limiter
from slowapi.util import get_remote_address

from store_platform.config import settings
from store_platform.models import (
    AuditLogResponse,
    DeleteResponse,
    ErrorResponse,
    EventListResponse,
    MetricsResponse,
    StoreCreateRequest,
    StoreDetailResponse,
    StoreListResponse,
    StoreResponse,
)
from store_platform.exceptions import NotFoundError
from store_platform.services import metrics as prom
from store_platform.services.events import EVENTS_CHANNEL
from store_platform.services.store_manager import StoreManager

logger = logging.getLogger("stores")

router = APIRouter(tags=["stores"])
limiter = Limiter(key_func=get_remote_address)

ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
}


def get_manager(request: Request) -> StoreManager:
    return request.app.state.manager


def _get_user_id(request: Request) -> str:
    """
    Extract user identity from X-User-Id header.
    Falls back to 'anonymous' if not provided.
    """
    return request.headers.get("x-user-id", "anonymous")


def _client_ip(request: Request):
    return request.client.host if request.client else None


# =========================================================================
# Stores
# =========================================================================

@router.get("/stores", response_model=StoreListResponse)
async def list_stores_endpoint(manager: StoreManager = Depends(get_manager)):
    """List all non-deleted stores, newest first."""
    stores = manager.repository.list_active()
    return StoreListResponse(stores=stores, total=len(stores))


@router.post("/stores", response_model=StoreResponse, status_code=201, responses=ERRORS)
@limiter.limit(settings.RATE_LIMIT)
async def create_store_endpoint(
    req: StoreCreateRequest,
    request: Request,
    manager: StoreManager = Depends(get_manager),
):
    """Create a store. Returns immediately with status Provisioning."""
    store = await manager.create_store(
        name=req.name,
        engine=req.engine,
        owner=_get_user_id(request),
        ip_address=_client_ip(request),
    )
    return StoreResponse(store=store)


@router.websocket("/stores/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket for real-time store events.

    Priority: Redis PubSub > Polling fallback
    """
    await websocket.accept()
    logger.info("WebSocket client connected")
    manager: StoreManager = websocket.app.state.manager
    r = manager.publisher.client()

    if r:
        pubsub = r.pubsub()
        try:
            pubsub.subscribe(EVENTS_CHANNEL)
            while True:
                message = pubsub.get_message(ignore_subscribe_messages=True, timeout=0)
                if message and message["type"] == "message":
                    await websocket.send_text(message["data"])
                else:
                    await asyncio.sleep(0.5)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected (Redis mode)")
        finally:
            pubsub.close()
    else:
        try:
            while True:
                stores = manager.repository.list_active()
                await websocket.send_text(json.dumps({
                    "type": "store_list",
                    "stores": [s.model_dump(mode="json") for s in stores],
                    "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                }))
                await asyncio.sleep(3)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected (polling mode)")


@router.get("/stores/{store_id}", response_model=StoreDetailResponse, responses=ERRORS)
async def get_store_endpoint(store_id: str, manager: StoreManager = Depends(get_manager)):
    """Store details plus live pod and cluster event snapshot."""
    return StoreDetailResponse(store=await manager.get_store_details(store_id))


@router.delete("/stores/{store_id}", response_model=DeleteResponse, responses=ERRORS)
@limiter.limit(settings.RATE_LIMIT)
async def delete_store_endpoint(
    store_id: str,
    request: Request,
    manager: StoreManager = Depends(get_manager),
):
    """Delete a store. Teardown runs in the background."""
    return await manager.delete_store(store_id, ip_address=_client_ip(request))


@router.get("/stores/{store_id}/events", response_model=EventListResponse, responses=ERRORS)
async def get_store_events(store_id: str, manager: StoreManager = Depends(get_manager)):
    if manager.repository.get(store_id) is None:
        raise NotFoundError("Store not found")
    return EventListResponse(events=manager.repository.list_events(store_id))


# =========================================================================
# Platform
# =========================================================================

@router.get("/events", response_model=EventListResponse)
async def get_all_events(
    limit: int = Query(100, ge=1, le=1000),
    manager: StoreManager = Depends(get_manager),
):
    return EventListResponse(events=manager.repository.list_all_events(limit))


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(manager: StoreManager = Depends(get_manager)):
    snapshot = manager.metrics()
    prom.update_gauges(snapshot)
    return MetricsResponse(metrics=snapshot)


@router.get("/audit-log", response_model=AuditLogResponse)
async def get_audit_log(
    limit: int = Query(100, ge=1, le=1000),
    manager: StoreManager = Depends(get_manager),
):
    return AuditLogResponse(auditLog=manager.repository.list_audit(limit))


@router.get("/health")
async def health(manager: StoreManager = Depends(get_manager)):
    """Health check with Redis connectivity status."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "redis": manager.publisher.status(),
        "version": "1.0.0",
    }

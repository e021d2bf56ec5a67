import os
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from cpsync.config import DEFAULT_CONFIG_PATH, DEFAULT_ENVIRONMENT
from cpsync.sync.error_tracker import (
    ForbiddenError, MissingCoordinateError, NotFoundError, SourceFetchError, SyncAlreadyRunningError,
    SyncException,
)
from cpsync.sync.models import ObjectIdentifiers, SyncType, WebhookNotification
from cpsync.sync.orchestrator import SyncOrchestrator, load_orchestrator

app = FastAPI(openapi_url=None, redirect_slashes=False)

# Enable CORS:
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_orchestrator() -> SyncOrchestrator:
    """Broker built from CPSYNC_CONFIG / CPSYNC_ENVIRONMENT, once per process."""
    config_path = os.getenv('CPSYNC_CONFIG', str(DEFAULT_CONFIG_PATH))
    environment = os.getenv('CPSYNC_ENVIRONMENT', DEFAULT_ENVIRONMENT)
    return load_orchestrator(config_path, environment)


class ObjectIdsRequest(BaseModel):
    object_id: str = ""
    site_id: str = ""
    list_id: str = ""
    list_item_id: str = ""
    drive_id: str = ""
    drive_item_id: str = ""
    external_reference_list_id: str = ""
    additional_object_id: str = ""


class SubscriptionRequest(BaseModel):
    list_id: str


webhook_router = APIRouter(prefix="/webhook")


@webhook_router.post("/notifications")
async def handle_sharepoint_notification(
    payload: Optional[Dict[str, Any]] = Body(None),
    validationtoken: Optional[str] = Query(None),
    client_state: Optional[str] = Header(None, alias="ClientState"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Response:
    """SharePoint webhook endpoint
    - answers the subscription validation handshake by echoing the token
    - otherwise queues the notification batch for the drop-off worker
    """
    expected = orchestrator.config.webhooks.client_state
    if not client_state or client_state != expected:
        raise HTTPException(status_code=403)
    try:
        message = orchestrator.handle_webhook(validationtoken, payload)
    except SyncException as e:
        raise HTTPException(status_code=500, detail=e.message or "Error while handling notification")
    return Response(content=message or "", media_type="text/plain")


@webhook_router.put("/dropoff")
def handle_dropoff_notification(
    notification: Dict[str, Any] = Body(...),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Process one drop-off notification immediately and return the textual summary"""
    try:
        result = orchestrator.webhook_pipeline.process_with_resync(WebhookNotification.from_dict(notification))
    except SyncException as e:
        raise HTTPException(status_code=500, detail=e.message or "Error while handling notification")
    return Response(content=result.summary(), media_type="text/plain")


@webhook_router.post("/subscriptions")
def create_subscription(
    request: SubscriptionRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        states = orchestrator.subscribe(request.list_id)
    except SyncException as e:
        raise HTTPException(status_code=500, detail=e.message or "Error while creating webhook")
    state = states[0]
    return {
        'feed': state.feed,
        'subscription_id': state.subscription_id,
        'expiration': state.expiration.isoformat() if state.expiration else None,
    }


export_router = APIRouter(prefix="/export")


@export_router.get("/publication")
def drain_publication(orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    result = orchestrator.drain_publication()
    return {'succeeded': result.succeeded, 'failed': result.failed}


@export_router.get("/{sync_type}")
def export_documents(sync_type: SyncType, orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """Run one delta feed
    Args:
        sync_type: new, updated or deleted
    Returns:
        the export response, including the token map as ``key1=val1;key2=val2``
    """
    try:
        response = orchestrator.run_feed(sync_type)
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except SourceFetchError as e:
        raise HTTPException(status_code=500, detail=e.message)
    return response.to_dict()


files_router = APIRouter(prefix="/files")


@files_router.put("/objectid")
def create_object_id(
    request: ObjectIdsRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Response:
    try:
        object_id = orchestrator.mint(ObjectIdentifiers(**request.model_dump()))
    except ForbiddenError:
        raise HTTPException(status_code=401)
    except (MissingCoordinateError, NotFoundError) as e:
        raise HTTPException(status_code=400, detail=e.message)
    except SyncException as e:
        raise HTTPException(status_code=500, detail=e.message)
    return Response(content=object_id, media_type="text/plain")


@app.get("/status")
def get_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.get_status()


app.include_router(webhook_router)
app.include_router(export_router)
app.include_router(files_router)


# Run the server with:
# uvicorn cpsync.api.server:app

"""api.py

FastAPI service for launching and operating Meta lead-generation campaigns.

Endpoints
---------
- GET  /                              -> basic root info
- GET  /health                        -> basic health check
- POST /campaigns/{id}/launch         -> create Campaign/Ad Set/Lead Form/Creative/Ad and activate
- POST /campaigns/{id}/pause          -> pause or resume ({"action": "pause"|"resume"})
- GET  /campaigns/{id}/performance    -> lifetime insights + health classification
- POST /campaigns/{id}/conversions    -> lead quality feedback to the Conversion API

Authentication
--------------
Every /campaigns route requires:
  Authorization: Bearer <api_key>
Keys are created with `python cli.py create-key`.

Every response carries permissive CORS headers; any OPTIONS request gets a bare 200.
See config.py for environment variables.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import authenticate_request
from campaign_control import CampaignController
from campaign_store import CampaignStore
from config import Settings, configure_logging
from conversions import ConversionFeedbackSender
from deps import get_graph_client, get_settings, get_store
from errors import InternalError, ServiceError
from graph_client import GraphClient
from launch import LaunchOrchestrator, LaunchRequest
from models import ApiKeyRecord
from performance import PerformanceSync

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "content-type, authorization",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings())
    yield


app = FastAPI(title="Lead Launcher API", version="1.0.0", lifespan=lifespan)


class LaunchBody(BaseModel):
    """Request body for /campaigns/{id}/launch.

    Meta credentials are passed per call:
    {
      "meta_access_token": "EAAB...",
      "meta_ad_account_id": "act_123456789",
      "meta_page_id": "1234567890",
      "variant_index": 0,
      "daily_budget_cents": 2500
    }
    """

    meta_access_token: Optional[str] = None
    meta_ad_account_id: Optional[str] = None
    meta_page_id: Optional[str] = None
    variant_index: int = Field(default=0, ge=0)
    daily_budget_cents: Optional[int] = Field(default=None, gt=0)
    radius_km: Optional[int] = Field(default=None, gt=0)


class PauseBody(BaseModel):
    action: Optional[str] = "pause"
    meta_access_token: Optional[str] = None


class ConversionBody(BaseModel):
    lead_id: Optional[str] = None
    quality: Optional[str] = None
    meta_access_token: Optional[str] = None
    pixel_id: Optional[str] = None
    user_data: Optional[Dict[str, Any]] = None


# -----------------------------
# Error rendering
# -----------------------------


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=exc.headers or None)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {
            "error": {
                "code": "validation_error",
                "message": "Invalid request",
                "details": jsonable_encoder(exc.errors()),
            }
        },
        status_code=400,
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = {404: "not_found", 405: "method_not_allowed"}.get(exc.status_code, "http_error")
    return JSONResponse(
        {"error": {"code": code, "message": str(exc.detail)}},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


def _run(fn: Callable[[], Any], doing: str) -> Any:
    """Service errors pass through; anything else becomes a 500 internal_error."""
    try:
        return fn()
    except ServiceError:
        raise
    except Exception as e:
        logger.exception("Unexpected error while %s", doing)
        raise InternalError(f"An unexpected error occurred while {doing}", details=str(e))


# -----------------------------
# Middleware: CORS + usage
# -----------------------------


def _log_usage(request: Request, status_code: int, started: float) -> None:
    key: Optional[ApiKeyRecord] = getattr(request.state, "api_key", None)
    store: Optional[CampaignStore] = getattr(request.state, "usage_store", None)
    if key is None or store is None:
        return
    route = request.scope.get("route")
    endpoint = getattr(route, "path", None) or request.url.path
    try:
        store.log_usage(
            api_key_id=key.id,
            endpoint=endpoint,
            method=request.method,
            status_code=status_code,
            response_time_ms=int((time.perf_counter() - started) * 1000),
        )
    except Exception as e:
        logger.warning("Failed to log API usage for key %s: %s", key.id, e)


@app.middleware("http")
async def cors_and_usage(request: Request, call_next):
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)

    started = time.perf_counter()
    response = await call_next(request)

    response.headers.update(CORS_HEADERS)
    for k, v in (getattr(request.state, "rate_limit_headers", None) or {}).items():
        response.headers[k] = v

    await run_in_threadpool(_log_usage, request, response.status_code, started)
    return response


# -----------------------------
# Routes
# -----------------------------


@app.get("/")
def root() -> JSONResponse:
    return JSONResponse({"ok": True, "docs": "/docs", "health": "/health"})


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"ok": True}


@app.post("/campaigns/{campaign_id}/launch")
def launch_campaign(
    campaign_id: str,
    body: Optional[LaunchBody] = None,
    key: ApiKeyRecord = Depends(authenticate_request),
    settings: Settings = Depends(get_settings),
    store: CampaignStore = Depends(get_store),
    graph: GraphClient = Depends(get_graph_client),
) -> Dict[str, Any]:
    req = LaunchRequest(**(body or LaunchBody()).model_dump())
    orchestrator = LaunchOrchestrator(settings, store, graph)
    return _run(lambda: orchestrator.launch(campaign_id, key, req), "launching the campaign")


@app.post("/campaigns/{campaign_id}/pause")
def pause_campaign(
    campaign_id: str,
    body: Optional[PauseBody] = None,
    key: ApiKeyRecord = Depends(authenticate_request),
    settings: Settings = Depends(get_settings),
    store: CampaignStore = Depends(get_store),
    graph: GraphClient = Depends(get_graph_client),
) -> Dict[str, Any]:
    b = body or PauseBody()
    controller = CampaignController(settings, store, graph)
    return _run(
        lambda: controller.set_status(
            campaign_id,
            key,
            action=b.action,
            meta_access_token=b.meta_access_token,
        ),
        "updating the campaign status",
    )


@app.get("/campaigns/{campaign_id}/performance")
def campaign_performance(
    campaign_id: str,
    background_tasks: BackgroundTasks,
    meta_access_token: Optional[str] = None,
    key: ApiKeyRecord = Depends(authenticate_request),
    settings: Settings = Depends(get_settings),
    store: CampaignStore = Depends(get_store),
    graph: GraphClient = Depends(get_graph_client),
) -> Dict[str, Any]:
    sync = PerformanceSync(settings, store, graph)
    report = _run(lambda: sync.sync(campaign_id, key, query_token=meta_access_token), "syncing performance")

    # The mirror write must never fail the response.
    background_tasks.add_task(sync.save_snapshot, report)
    return report.to_dict()


@app.post("/campaigns/{campaign_id}/conversions")
def campaign_conversions(
    campaign_id: str,
    body: Optional[ConversionBody] = None,
    key: ApiKeyRecord = Depends(authenticate_request),
    settings: Settings = Depends(get_settings),
    store: CampaignStore = Depends(get_store),
    graph: GraphClient = Depends(get_graph_client),
) -> Dict[str, Any]:
    b = body or ConversionBody()
    sender = ConversionFeedbackSender(settings, store, graph)
    return _run(
        lambda: sender.send(
            campaign_id,
            key,
            lead_id=b.lead_id,
            quality=b.quality,
            meta_access_token=b.meta_access_token,
            pixel_id=b.pixel_id,
            user_data=b.user_data,
        ),
        "sending conversion feedback",
    )

"""
FastAPI application for the village guide coordinator.

Exposes process_input and the maintenance operations over HTTP for the
visitor app and the admin panel.

Endpoints:
    POST /process        Answer one visitor turn
    GET  /metrics        Performance metrics (hit rates, breakers, hot list)
    POST /cache/clear    Drop every cached answer
    POST /cache/notify   Knowledge-base change from the admin panel
    GET  /health         Health check

Environment:
    VILLAGE_GUIDE_CONFIG   YAML config path (defaults when unset)
    VILLAGE_GUIDE_API_KEY  When set, requests need a matching X-API-Key
                           header (/health stays public)
    VILLAGE_GUIDE_ENV      "production" hides exception details
"""

from __future__ import annotations

import logging
import os
import time
import traceback
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from village_guide import __version__
from village_guide.config import InputType, OutputFormat, load_config
from village_guide.coordinator import CoordinationManager, InputContext
from village_guide.llm_client import LLMProviderChain, WebhookNotifier
from village_guide.notifications import (
    CacheNotificationService,
    CacheUpdateNotification,
    CacheUpdateType,
)

logger = logging.getLogger("village_guide.app")

# ---------------------------------------------------------------------------
# Pydantic models for API
# ---------------------------------------------------------------------------


class ProcessRequest(BaseModel):
    """Request body for /process."""
    content: str = Field(..., description="Question text or speech transcript")
    type: InputType = Field(InputType.TEXT, description="text, voice or photo")
    output_format: OutputFormat = Field(OutputFormat.TEXT, description="text or voice")
    session_id: str = Field("default", description="Visitor session id")
    user_id: str = Field("anonymous", description="Visitor id for usage stats")
    spot: str = Field("", description="Spot the visitor is at")


class ProcessResponseModel(BaseModel):
    """Response body for /process."""
    content: str
    strategy: str
    cached: bool
    response_time_ms: float
    input_type: str
    output_format: str
    similarity: Optional[float] = None
    original_query: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class NotifyRequest(BaseModel):
    """Request body for /cache/notify."""
    type: CacheUpdateType
    knowledge_ids: List[str] = Field(default_factory=list)
    content: Optional[Any] = None
    source: str = "admin"


class HealthResponse(BaseModel):
    """Response body for /health."""
    status: str
    version: str
    uptime_seconds: float
    open_circuits: List[str]
    llm_configured: bool


# ---------------------------------------------------------------------------
# Application state (initialized at startup)
# ---------------------------------------------------------------------------

class AppState:
    """Mutable application state, initialized during lifespan."""
    coordinator: Optional[CoordinationManager] = None
    notifications: Optional[CacheNotificationService] = None
    start_time: float = 0.0


_state = AppState()


def build_coordinator(config_path: Optional[str] = None) -> CoordinationManager:
    config = load_config(config_path)
    llm = LLMProviderChain(
        providers=config.providers,
        notifier=WebhookNotifier(config.webhook_url),
    )
    return CoordinationManager(config, llm=llm)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the coordinator and run its background preload task."""
    _state.start_time = time.time()
    if _state.coordinator is None:
        _state.coordinator = build_coordinator(os.environ.get("VILLAGE_GUIDE_CONFIG"))
    _state.notifications = CacheNotificationService(_state.coordinator)
    await _state.coordinator.start()

    logger.info("Village guide ready (version %s)", __version__)

    yield

    try:
        await _state.coordinator.shutdown()
    except Exception as e:
        logger.warning("Coordinator shutdown failed: %s", e)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Village Guide",
    description=(
        "Question routing for the 东里村 visitor guide: similarity and hot "
        "caches, quick answers, knowledge tools and LLM fallback."
    ),
    version=__version__,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Middleware: Optional API key auth
# ---------------------------------------------------------------------------

_API_KEY = os.environ.get("VILLAGE_GUIDE_API_KEY")


@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    """Enforce API key auth when VILLAGE_GUIDE_API_KEY is set."""
    if _API_KEY:
        if request.url.path != "/health":
            key = request.headers.get("X-API-Key", "")
            if key != _API_KEY:
                return JSONResponse(
                    status_code=401,
                    content={"detail": "Invalid or missing API key"},
                )
    return await call_next(request)


# ---------------------------------------------------------------------------
# Exception handler: suppress traces in production
# ---------------------------------------------------------------------------

_IS_PRODUCTION = os.environ.get("VILLAGE_GUIDE_ENV", "").lower() == "production"


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    if _IS_PRODUCTION:
        logger.error("Unhandled exception on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
    logger.error(
        "Unhandled exception on %s: %s\n%s",
        request.url.path, exc, traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc)},
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/process", response_model=ProcessResponseModel)
async def process(req: ProcessRequest) -> ProcessResponseModel:
    """Answer one visitor turn."""
    response = await _state.coordinator.process_input(InputContext(
        content=req.content,
        type=req.type,
        output_format=req.output_format,
        session_id=req.session_id,
        user_id=req.user_id,
        spot=req.spot,
    ))
    data = response.to_dict()
    core = {
        "content", "strategy", "cached", "response_time_ms",
        "input_type", "output_format", "similarity", "original_query",
    }
    return ProcessResponseModel(
        content=data["content"],
        strategy=data["strategy"],
        cached=data["cached"],
        response_time_ms=data["response_time_ms"],
        input_type=data["input_type"],
        output_format=data["output_format"],
        similarity=data.get("similarity"),
        original_query=data.get("original_query"),
        details={k: v for k, v in data.items() if k not in core},
    )


@app.get("/metrics")
async def metrics() -> Dict[str, Any]:
    return _state.coordinator.get_performance_metrics()


@app.post("/cache/clear")
async def clear_cache() -> Dict[str, Any]:
    await _state.coordinator.clear_cache()
    return {"cleared": True}


@app.post("/cache/notify")
async def notify_cache_update(req: NotifyRequest) -> Dict[str, Any]:
    """Apply a knowledge-base change to the caches."""
    notification = CacheUpdateNotification(
        type=req.type,
        knowledge_ids=req.knowledge_ids,
        content=req.content,
        source=req.source,
    )
    await _state.notifications.notify_cache_update(notification)
    return notification.to_dict()


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    coordinator = _state.coordinator
    health = coordinator.dispatcher.get_system_health()
    return HealthResponse(
        status="healthy" if not health["open_circuits"] else "degraded",
        version=__version__,
        uptime_seconds=time.time() - _state.start_time,
        open_circuits=health["open_circuits"],
        llm_configured=coordinator.llm is not None,
    )

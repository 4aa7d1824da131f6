"""
Assistant API.

The browser page talks to the pipeline through these endpoints:
- recognition callbacks in, engine commands out
- connectivity notifications (online/offline events)
- text commands, manual retry, start
- read API: status, queued output, recorded events

Errors are returned as stable `detail` strings, never internal traces.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from command_pipeline.assistant import VoiceAssistant
from command_pipeline.directives import DirectiveOp, interpret
from command_pipeline.models import (
    CoordinatorEvent,
    ManualRetry,
    RecognitionEnded,
    RecognitionError,
    RecognitionErrorKind,
    RecognitionResult,
    RecognitionStarted,
    StartRequested,
)
from logging_setup import Component, get_logger
from observability.events import Component as ObsComponent, EventEmitter
from observability.event_store import event_store
from .adapters import BufferedOutputSink, QueuedRecognitionEngine

router = APIRouter(prefix="/assistant", tags=["assistant"])
logger = get_logger(Component.API)
emitter = EventEmitter(ObsComponent.API)


class RecognitionEventRequest(BaseModel):
    type: Literal["start", "result", "error", "end"]
    text: Optional[str] = None
    is_final: bool = True
    error: Optional[str] = Field(None, description="Engine error kind (network, not-allowed, no-speech, ...)")


class ConnectivityRequest(BaseModel):
    online: bool


class CommandRequest(BaseModel):
    text: str = Field(..., min_length=1, description="What the user said")


class CommandResponse(BaseModel):
    text: str
    directive: Optional[str] = None
    operations: List[DirectiveOp] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)
    source: str
    degraded: bool = False


class RetryStatus(BaseModel):
    attempt: int
    next_delay_ms: int
    max_attempts: int
    frozen: bool


class StatusResponse(BaseModel):
    connectivity: str
    recognition_state: str
    engine_active: bool
    permission_denied: bool
    offline_reason: Optional[str] = None
    retry: RetryStatus
    last_status: Optional[str] = None


def _assistant(request: Request) -> VoiceAssistant:
    return request.app.state.assistant


def _engine(request: Request) -> QueuedRecognitionEngine:
    return request.app.state.engine


def _sink(request: Request) -> BufferedOutputSink:
    return request.app.state.sink


def _status(request: Request) -> StatusResponse:
    snapshot = _assistant(request).coordinator.snapshot()
    return StatusResponse(**snapshot, last_status=_sink(request).last_status)


def _to_coordinator_event(req: RecognitionEventRequest) -> CoordinatorEvent:
    if req.type == "start":
        return RecognitionStarted()
    if req.type == "end":
        return RecognitionEnded()
    if req.type == "result":
        if req.text is None:
            raise HTTPException(status_code=400, detail="result event requires text")
        return RecognitionResult(text=req.text, is_final=req.is_final)
    if not req.error:
        raise HTTPException(status_code=400, detail="error event requires error")
    return RecognitionError(kind=RecognitionErrorKind.parse(req.error))


@router.post("/recognition/events", response_model=StatusResponse)
async def post_recognition_event(req: RecognitionEventRequest, request: Request) -> StatusResponse:
    """Forward one browser recognition callback into the coordinator."""
    event = _to_coordinator_event(req)
    logger.debug("Recognition event", type=req.type, is_final=req.is_final, error=req.error)
    _assistant(request).coordinator.post(event)
    return _status(request)


@router.get("/recognition/commands")
async def drain_recognition_commands(request: Request) -> Dict[str, List[str]]:
    """Engine commands (start/stop/abort) the page must apply, oldest first."""
    return {"commands": _engine(request).drain()}


@router.post("/connectivity")
async def post_connectivity(req: ConnectivityRequest, request: Request) -> Dict[str, Any]:
    connectivity = _assistant(request).connectivity
    changed = connectivity.notify(req.online, source="notification")
    return {"changed": changed, "connectivity": connectivity.current_state().value}


@router.post("/command", response_model=CommandResponse)
async def post_command(req: CommandRequest, request: Request) -> CommandResponse:
    """Process a typed (or externally transcribed) command."""
    result = await _assistant(request).process_command(req.text)
    if result is None:
        raise HTTPException(status_code=400, detail="empty_command")

    parsed = interpret(result.directive) if result.directive else None
    return CommandResponse(
        text=result.text,
        directive=result.directive,
        operations=parsed.operations if parsed else [],
        rejected=parsed.rejected if parsed else [],
        source=result.source.value,
        degraded=result.degraded,
    )


@router.post("/retry", response_model=StatusResponse)
async def post_retry(request: Request) -> StatusResponse:
    emitter.emit("api.control_received", command="retry")
    _assistant(request).coordinator.post(ManualRetry())
    return _status(request)


@router.post("/start", response_model=StatusResponse)
async def post_start(request: Request) -> StatusResponse:
    emitter.emit("api.control_received", command="start")
    _assistant(request).coordinator.post(StartRequested())
    return _status(request)


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request) -> StatusResponse:
    return _status(request)


@router.get("/output")
async def drain_output(request: Request) -> Dict[str, Any]:
    """Spoken text, status lines and directives produced since the last call."""
    messages = _sink(request).drain()
    return {"messages": messages, "count": len(messages)}


@router.get("/events")
async def get_events(
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    component: Optional[str] = Query(None, description="Filter by component"),
    correlation_id: Optional[str] = Query(None, description="Filter by command correlation id"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> Dict[str, Any]:
    """Query recorded structured events."""
    since_dt: Optional[datetime] = None
    if since:
        try:
            # "+" in a query string may arrive as a space
            since_clean = since.replace(" ", "+").replace("Z", "+00:00")
            if "+" not in since_clean and "-" not in since_clean[-6:]:
                since_clean += "+00:00"
            since_dt = datetime.fromisoformat(since_clean)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid since timestamp: {since}")

    events = event_store.query(
        event_type=event_type,
        component=component,
        correlation_id=correlation_id,
        since=since_dt,
        limit=limit,
    )
    return {"events": events, "count": len(events)}

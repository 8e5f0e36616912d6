"""API endpoints for VPN session lifecycle."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from vpnpool.api.auth import get_current_owner, get_source_ip
from vpnpool.common.db.models import EventOutcome, EventType, Owner
from vpnpool.common.orchestrator import SessionOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vpn", tags=["vpn"])


class StartRequest(BaseModel):
    idle_timeout_minutes: int | None = Field(
        None, description="Minutes of inactivity before the session is reclaimed"
    )


class StopRequest(BaseModel):
    session_id: str


@router.post("/start", status_code=201)
def start_session(
    request: Request,
    data: StartRequest | None = None,
    owner: Owner = Depends(get_current_owner),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Provision a VPN endpoint for the caller.

    Any session of the caller still provisioning is superseded. Returns the
    endpoint, the client address and a time-limited config download link.
    """
    data = data or StartRequest()
    result = orchestrator.start(
        owner.id,
        idle_timeout_minutes=data.idle_timeout_minutes,
        source_ip=get_source_ip(request),
    )
    return result.as_payload()


@router.post("/stop")
def stop_session(
    data: StopRequest,
    request: Request,
    owner: Owner = Depends(get_current_owner),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = orchestrator.terminate(
        data.session_id,
        reason="user request",
        owner_id=owner.id,
        source_ip=get_source_ip(request),
    )
    return result.as_payload()


@router.get("/status/{session_id}")
def session_status(
    session_id: str,
    owner: Owner = Depends(get_current_owner),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return orchestrator.status(session_id, owner_id=owner.id)


@router.get("/status")
def list_sessions(
    owner: Owner = Depends(get_current_owner),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    status: str | None = Query(None, description="Filter by session status"),
) -> dict[str, Any]:
    return orchestrator.list_sessions(owner.id, status)


@router.post("/activity/{session_id}")
def record_activity(
    session_id: str,
    owner: Owner = Depends(get_current_owner),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Heartbeat from the client; keeps an active session from going idle."""
    refreshed = orchestrator.record_activity(session_id, owner_id=owner.id)
    return {"session_id": session_id, "refreshed": refreshed}


@router.get("/capacity")
def capacity(
    owner: Owner = Depends(get_current_owner),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return orchestrator.capacity()


@router.get("/configs/{session_id}", response_class=PlainTextResponse)
def download_config(
    session_id: str,
    request: Request,
    token: str = Query(..., description="Signed download token"),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> PlainTextResponse:
    """Download a client config. The signed token stands in for the API key."""
    content = orchestrator.publisher.open(session_id, token)
    orchestrator.audit_event(
        EventType.CONFIG_DOWNLOADED,
        EventOutcome.SUCCESS,
        f"Client config downloaded for session {session_id}",
        session_id=session_id,
        source_ip=get_source_ip(request),
    )
    return PlainTextResponse(
        content,
        headers={"Content-Disposition": f'attachment; filename="{session_id}.conf"'},
    )

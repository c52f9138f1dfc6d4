from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel

from shesafe.capture import ReportDraft
from shesafe.errors import SessionNotFound, ValidationError
from shesafe.incident_logic import Incident, Location
from shesafe.lifecycle import IncidentLifecycleManager, ReportingSession

router = APIRouter(prefix="/sessions", tags=["report"])


class SessionResponse(BaseModel):
    session_id: str
    current: Optional[Incident] = None


class CreateIncidentRequest(BaseModel):
    text: str = ""
    audio_reference: Optional[str] = None
    location: Optional[Location] = None


class FollowUpRequest(BaseModel):
    text: str


def get_manager(request: Request) -> IncidentLifecycleManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="incident manager not ready")
    return manager


def get_session_or_404(manager: IncidentLifecycleManager, session_id: str) -> ReportingSession:
    try:
        return manager.get_session(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="session not found")


@router.post("", response_model=SessionResponse)
async def open_session(manager: IncidentLifecycleManager = Depends(get_manager)) -> SessionResponse:
    session = manager.open_session()
    return SessionResponse(session_id=session.session_id)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, manager: IncidentLifecycleManager = Depends(get_manager)) -> SessionResponse:
    session = get_session_or_404(manager, session_id)
    return SessionResponse(session_id=session.session_id, current=session.current)


@router.post("/{session_id}/incidents", response_model=Incident)
async def submit_incident(
    session_id: str,
    body: CreateIncidentRequest,
    background_tasks: BackgroundTasks,
    manager: IncidentLifecycleManager = Depends(get_manager),
) -> Incident:
    session = get_session_or_404(manager, session_id)

    draft = ReportDraft(body.text)
    if body.audio_reference is not None:
        draft.on_audio_saved(body.audio_reference)
    if body.location is not None:
        draft.on_location_captured(body.location)

    try:
        incident = draft.submit(manager, session)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    # Runs after the response is sent; the record is already persisted as Pending.
    background_tasks.add_task(manager.submit_for_analysis, incident)
    return incident


@router.post("/{session_id}/follow-ups", response_model=Incident)
async def ask_follow_up(
    session_id: str,
    body: FollowUpRequest,
    manager: IncidentLifecycleManager = Depends(get_manager),
) -> Incident:
    session = get_session_or_404(manager, session_id)
    if session.current is None:
        raise HTTPException(status_code=409, detail="no incident reported in this session")

    await manager.ask_follow_up(session.current, body.text)
    return session.current

from __future__ import annotations

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from shesafe.errors import IncidentNotFound
from shesafe.incident_api import get_manager
from shesafe.incident_logic import Incident, IncidentStatus
from shesafe.lifecycle import IncidentLifecycleManager

router = APIRouter(prefix="/incidents", tags=["operator"])


class IncidentListResponse(BaseModel):
    count: int
    incidents: List[Incident]


class StatusUpdateRequest(BaseModel):
    status: IncidentStatus


@router.get("", response_model=IncidentListResponse)
async def list_incidents(
    status: Optional[IncidentStatus] = Query(None, description="Only incidents with this status"),
    order: Literal["newest", "oldest"] = Query("newest", description="Sort by report time"),
    manager: IncidentLifecycleManager = Depends(get_manager),
) -> IncidentListResponse:
    incidents = manager.list_incidents(status=status, newest_first=(order == "newest"))
    return IncidentListResponse(count=len(incidents), incidents=incidents)


@router.get("/{incident_id}", response_model=Incident)
async def get_incident(incident_id: str, manager: IncidentLifecycleManager = Depends(get_manager)) -> Incident:
    try:
        return manager.get_incident(incident_id)
    except IncidentNotFound:
        raise HTTPException(status_code=404, detail="incident not found")


@router.post("/{incident_id}/status", response_model=Incident)
async def set_status(
    incident_id: str,
    body: StatusUpdateRequest,
    manager: IncidentLifecycleManager = Depends(get_manager),
) -> Incident:
    try:
        return manager.set_status(incident_id, body.status)
    except IncidentNotFound:
        raise HTTPException(status_code=404, detail="incident not found")

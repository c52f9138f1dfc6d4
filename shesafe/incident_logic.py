from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

IncidentStatus = Literal["Pending", "AIResolved", "Escalated"]
Severity = Literal["low", "medium", "high"]
Sender = Literal["user", "assistant"]

STATUSES = ("Pending", "AIResolved", "Escalated")
SEVERITIES = ("low", "medium", "high")


def new_incident_id() -> str:
    return f"INC-{uuid4().hex[:8].upper()}"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float


class Message(BaseModel):
    sender: Sender
    text: str


class Incident(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_incident_id, frozen=True)
    text: str = ""
    audio_reference: Optional[str] = Field(None, alias="audioReference")
    location: Optional[Location] = Field(None, frozen=True)
    created_at: datetime = Field(default_factory=now_utc, alias="createdAt", frozen=True)
    status: IncidentStatus = "Pending"
    conversation: List[Message] = Field(default_factory=list)
    severity: Optional[Severity] = None
    recommendation: Optional[str] = None
    summary: Optional[str] = None

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def has_something_to_report(text: Optional[str], audio_reference: Optional[str]) -> bool:
    return bool(text) or bool(audio_reference)


def user_message(text: str) -> Message:
    return Message(sender="user", text=text)


def assistant_message(text: str) -> Message:
    return Message(sender="assistant", text=text)


def render_analysis(summary: str, severity: str, recommendation: str) -> str:
    # Shown as the assistant turn when the service returns no conversational reply.
    return f"{summary}\nSeverity: {severity}\nNext Steps: {recommendation}"

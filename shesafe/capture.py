"""
Capture collaborators (contract only) and the report draft that receives them.

Audio and location capture happen outside this service (browser/device). The
core only ever sees an opaque audio reference and a {lat, lon} snapshot.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Union

from pydantic import BaseModel

from shesafe.incident_logic import Incident, Location
from shesafe.lifecycle import IncidentLifecycleManager, ReportingSession

logger = logging.getLogger(__name__)

LOCATION_UNAVAILABLE = "Unable to fetch location"


class CaptureFailure(BaseModel):
    message: str


class AudioCapture(Protocol):
    def start(self) -> None:
        ...

    async def stop(self) -> str:
        """Resolves with the audio reference once recording has stopped."""
        ...


class LocationCapture(Protocol):
    async def capture(self) -> Union[Location, CaptureFailure]:
        ...


class ReportDraft:
    def __init__(self, text: str = ""):
        self.text = text
        self.audio_reference: Optional[str] = None
        self.location: Optional[Location] = None

    def on_audio_saved(self, audio_reference: str) -> None:
        self.audio_reference = audio_reference

    def on_location_captured(self, location: Location) -> None:
        self.location = location

    async def stop_recording(self, audio: AudioCapture) -> str:
        audio_reference = await audio.stop()
        self.on_audio_saved(audio_reference)
        return audio_reference

    async def capture_location(self, locator: LocationCapture) -> Optional[str]:
        """Single shot, no retry. Returns an alert message on failure."""
        outcome = await locator.capture()
        if isinstance(outcome, CaptureFailure):
            logger.info("Location capture failed: %s", outcome.message)
            return LOCATION_UNAVAILABLE
        self.on_location_captured(outcome)
        return None

    def submit(self, manager: IncidentLifecycleManager, session: ReportingSession) -> Incident:
        """
        Creates the incident and resets the draft. Analysis is left to the caller;
        a rejected draft (ValidationError) keeps its contents.
        """
        incident = manager.create_incident(session, self.text, self.audio_reference, self.location)

        self.text = ""
        self.audio_reference = None
        self.location = None
        return incident

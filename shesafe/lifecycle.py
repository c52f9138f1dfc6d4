"""Incident lifecycle: creation, analysis, follow-up conversation and operator status."""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Dict, List, Optional, Union

from shesafe.analysis import (
    AnalysisClient,
    AnalysisFailure,
    AnalysisResult,
    FollowUpResult,
)
from shesafe.errors import IncidentNotFound, SessionNotFound, ValidationError
from shesafe.incident_logic import (
    STATUSES,
    Incident,
    IncidentStatus,
    Location,
    assistant_message,
    has_something_to_report,
    now_utc,
    render_analysis,
    user_message,
)
from shesafe.store import IncidentStore, StoreResult

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR = "unexpected error"

SESSION_TTL_MINUTES = int(os.getenv("SHESAFE_SESSION_TTL_MINUTES", "120"))
MAX_SESSIONS = int(os.getenv("SHESAFE_MAX_SESSIONS", "10000"))


@dataclass
class ReportingSession:
    """One reporter's flow. `current` is the incident their conversation is about."""

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    current: Optional[Incident] = None
    expires_at: datetime = field(default_factory=lambda: now_utc() + timedelta(minutes=SESSION_TTL_MINUTES))

    def is_expired(self) -> bool:
        return now_utc() > self.expires_at


class IncidentLifecycleManager:
    """
    Owns the per-incident state machine (Pending -> AIResolved | Escalated).

    Incidents created here are tracked in `self.incidents` and mutated in place;
    the same object is what gets persisted. Analysis calls for one incident run
    one at a time in call order, and every persist patches only the target
    record in the latest stored collection.
    """

    def __init__(
        self,
        store: IncidentStore,
        client: AnalysisClient,
        session_ttl: timedelta = timedelta(minutes=SESSION_TTL_MINUTES),
        max_sessions: int = MAX_SESSIONS,
    ):
        self.store = store
        self.client = client
        self.incidents: List[Incident] = store.load_all()
        self.sessions: Dict[str, ReportingSession] = {}
        self.session_ttl = session_ttl
        self.max_sessions = max_sessions

        self._flights: Dict[str, asyncio.Lock] = {}
        self._flight_users: Dict[str, int] = {}
        self._analysis_tokens: Dict[str, int] = {}
        self._token_seq = itertools.count(1)

    # ----------------------------
    # Sessions
    # ----------------------------

    def open_session(self) -> ReportingSession:
        self.cleanup_expired_sessions()
        if len(self.sessions) >= self.max_sessions:
            oldest = min(self.sessions.values(), key=lambda s: s.expires_at)
            logger.warning("Session limit reached, evicting %s", oldest.session_id)
            del self.sessions[oldest.session_id]

        session = ReportingSession(expires_at=now_utc() + self.session_ttl)
        self.sessions[session.session_id] = session
        return session

    def get_session(self, session_id: str) -> ReportingSession:
        """Looks up a live session and pushes its expiry forward by one TTL."""
        session = self.sessions.get(session_id)
        if session is not None and session.is_expired():
            logger.info("Session %s has expired, removing", session_id)
            del self.sessions[session_id]
            session = None
        if session is None:
            raise SessionNotFound(session_id)

        session.expires_at = now_utc() + self.session_ttl
        return session

    def cleanup_expired_sessions(self) -> int:
        expired = [sid for sid, s in self.sessions.items() if s.is_expired()]
        for sid in expired:
            del self.sessions[sid]
        if expired:
            logger.info("Cleaned up %d expired sessions", len(expired))
        return len(expired)

    # ----------------------------
    # Helpers
    # ----------------------------

    def _tracked(self, incident_id: str) -> Optional[Incident]:
        return next((i for i in self.incidents if i.id == incident_id), None)

    @asynccontextmanager
    async def _single_flight(self, incident_id: str) -> AsyncIterator[None]:
        # The lock lives only while some call for this incident holds or awaits it.
        lock = self._flights.setdefault(incident_id, asyncio.Lock())
        self._flight_users[incident_id] = self._flight_users.get(incident_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._flight_users[incident_id] -= 1
            if not self._flight_users[incident_id]:
                del self._flight_users[incident_id]
                del self._flights[incident_id]

    def _persist(self, incident: Incident) -> StoreResult:
        # Runs on the event loop thread. Each upsert is one short local SQLite
        # transaction with no await inside, so writes never interleave.
        result = self.store.upsert(incident)
        logger.debug("Persisted %s (created=%s, count=%d)", incident.id, result.created, result.count)
        return result

    async def _call(self, incident_id: str, call: Awaitable) -> Union[AnalysisResult, FollowUpResult, AnalysisFailure]:
        try:
            return await call
        except Exception:
            logger.exception("Analysis client raised for %s", incident_id)
            return AnalysisFailure(message=UNEXPECTED_ERROR)

    # ----------------------------
    # Reporter operations
    # ----------------------------

    def create_incident(
        self,
        session: ReportingSession,
        text: str,
        audio_reference: Optional[str] = None,
        location: Optional[Location] = None,
    ) -> Incident:
        text = text or ""
        if not has_something_to_report(text.strip(), audio_reference):
            raise ValidationError("nothing to report")

        # Audio-only reports still open with an (empty) user turn.
        incident = Incident(
            text=text,
            audio_reference=audio_reference,
            location=location,
            conversation=[user_message(text)],
        )
        self.incidents.append(incident)
        self._persist(incident)
        session.current = incident

        logger.info(
            "Created incident %s (audio=%s, location=%s)",
            incident.id,
            audio_reference is not None,
            location is not None,
        )
        return incident

    async def submit_for_analysis(self, incident: Incident) -> None:
        # A newer submission for the same incident supersedes this one.
        token = next(self._token_seq)
        self._analysis_tokens[incident.id] = token

        async with self._single_flight(incident.id):
            if self._analysis_tokens.get(incident.id) != token:
                logger.info("Skipping superseded analysis for %s", incident.id)
                return

            outcome = await self._call(incident.id, self.client.analyze_initial(incident.text))

            if self._analysis_tokens.get(incident.id) != token:
                logger.info("Discarding superseded analysis result for %s", incident.id)
                return
            del self._analysis_tokens[incident.id]

            self._apply_initial(incident, outcome)
            self._persist(incident)

    def _apply_initial(self, incident: Incident, outcome: Union[AnalysisResult, AnalysisFailure]) -> None:
        if isinstance(outcome, AnalysisFailure):
            incident.conversation.append(assistant_message(f"AI analysis failed: {outcome.message}"))
            logger.warning("Analysis failed for %s: %s", incident.id, outcome.message)
            return

        incident.summary = outcome.summary
        incident.severity = outcome.severity
        incident.recommendation = outcome.recommendation
        incident.conversation.append(
            assistant_message(
                outcome.assistant_reply
                or render_analysis(outcome.summary, outcome.severity, outcome.recommendation)
            )
        )

        if incident.status == "Pending":
            incident.status = "AIResolved"
            logger.info("Incident %s -> AIResolved (severity=%s)", incident.id, outcome.severity)
        else:
            logger.info("Incident %s analysed but kept status %s", incident.id, incident.status)

    async def ask_follow_up(self, incident: Optional[Incident], follow_up_text: str) -> None:
        if incident is None or not follow_up_text or not follow_up_text.strip():
            return

        # Visible (and persisted) before the analysis call is issued.
        incident.conversation.append(user_message(follow_up_text))
        position = len(incident.conversation) - 1
        self._persist(incident)

        async with self._single_flight(incident.id):
            # Answers to earlier queued questions can land after our turn; questions
            # queued behind us are left out. Our question always closes the history.
            conversation = incident.conversation
            answered_since = [m for m in conversation[position + 1 :] if m.sender == "assistant"]
            history = conversation[:position] + answered_since + [conversation[position]]
            outcome = await self._call(
                incident.id,
                self.client.analyze_follow_up(incident.id, follow_up_text, history),
            )

            if isinstance(outcome, AnalysisFailure):
                incident.conversation.append(assistant_message(f"Follow-up failed: {outcome.message}"))
                logger.warning("Follow-up failed for %s: %s", incident.id, outcome.message)
            else:
                incident.conversation.append(assistant_message(outcome.reply))

            self._persist(incident)

    # ----------------------------
    # Operator operations
    # ----------------------------

    def set_status(self, incident_id: str, new_status: IncidentStatus) -> Incident:
        if new_status not in STATUSES:
            raise ValidationError(f"unknown status {new_status!r}")

        tracked = self._tracked(incident_id)
        if tracked is not None:
            tracked.status = new_status
            self._persist(tracked)
            logger.info("Operator set %s -> %s", incident_id, new_status)
            return tracked

        result = self.store.update_status(incident_id, new_status)
        if not result.ok:
            raise IncidentNotFound(incident_id)
        logger.info("Operator set %s -> %s", incident_id, new_status)
        return self.get_incident(incident_id)

    def get_incident(self, incident_id: str) -> Incident:
        incident = self._tracked(incident_id) or self.store.get(incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)
        return incident

    def list_incidents(self, status: Optional[IncidentStatus] = None, newest_first: bool = True) -> List[Incident]:
        incidents = self.store.load_all()
        if status is not None:
            incidents = [i for i in incidents if i.status == status]
        # Store order breaks ties between equal timestamps.
        ordered = sorted(enumerate(incidents), key=lambda p: (p[1].created_at, p[0]), reverse=newest_first)
        return [incident for _, incident in ordered]

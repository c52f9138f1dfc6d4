from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Protocol, Sequence, Union

import requests
from pydantic import BaseModel, Field

from shesafe.errors import TransportFailure
from shesafe.incident_logic import SEVERITIES, Message, Severity

logger = logging.getLogger(__name__)

ANALYSIS_MODE = os.getenv("SHESAFE_ANALYSIS_MODE", "text")
ANALYSIS_URL = os.getenv("SHESAFE_ANALYSIS_URL", "http://localhost:8000")
ANALYSIS_TIMEOUT = int(os.getenv("SHESAFE_ANALYSIS_TIMEOUT", "20"))
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

MODES = ("text", "conversational")

TRANSPORT_ERROR = "transport error"
MALFORMED_PAYLOAD = "malformed analysis payload"
NOT_CONFIGURED = "analysis service not configured"

DEFAULT_SUMMARY = "Summary unavailable."
DEFAULT_SEVERITY: Severity = "medium"
DEFAULT_RECOMMENDATION = "Recommendation unavailable."


SYSTEM_PROMPT = (
    "You are a calm safety assistant helping someone who is reporting a personal safety incident. "
    "Reply to the person directly and triage the report. "
    "Return ONLY a JSON object with the exact fields:\n"
    "{\n"
    '  "user_response": string,\n'
    '  "summary": string,\n'
    '  "severity": "low" | "medium" | "high",\n'
    '  "recommendation": string\n'
    "}\n"
    "Do not include extra keys or text."
)

FOLLOW_UP_PROMPT = (
    "You are a calm safety assistant continuing a conversation about a reported safety incident. "
    "Answer the person's latest message in plain text. Be brief and practical."
)


# ----------------------------
# Request / Result types
# ----------------------------

class TextSubmission(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ConversationalSubmission(BaseModel):
    kind: Literal["conversational"] = "conversational"
    text: str


InitialAnalysisRequest = Annotated[
    Union[TextSubmission, ConversationalSubmission],
    Field(discriminator="kind"),
]


class ChatFollowUp(BaseModel):
    message: str
    history: List[Message] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    summary: str
    severity: Severity
    recommendation: str
    assistant_reply: Optional[str] = None


class FollowUpResult(BaseModel):
    reply: str


class AnalysisFailure(BaseModel):
    message: str


InitialOutcome = Union[AnalysisResult, AnalysisFailure]
FollowUpOutcome = Union[FollowUpResult, AnalysisFailure]


class AnalysisClient(Protocol):
    async def analyze_initial(self, text: str) -> InitialOutcome:
        ...

    async def analyze_follow_up(
        self,
        incident_id: str,
        follow_up_text: str,
        conversation: Sequence[Message],
    ) -> FollowUpOutcome:
        ...


# ----------------------------
# Payload normalization
# ----------------------------

def _coerce_severity(value: Any) -> Optional[Severity]:
    if isinstance(value, str) and value.strip().lower() in SEVERITIES:
        return value.strip().lower()  # type: ignore[return-value]
    return None


def _text_field(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_json(text: str) -> Any:
    """Pull a JSON value out of a model reply, tolerating a markdown code fence."""
    text = (text or "").strip()
    m = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if m:
        text = m.group(1).strip()
    return json.loads(text)


def normalize_text_result(payload: Any) -> InitialOutcome:
    if not isinstance(payload, dict):
        return AnalysisFailure(message=MALFORMED_PAYLOAD)
    if payload.get("status") != "success":
        return AnalysisFailure(message=str(payload.get("message") or "unknown error"))

    severity = _coerce_severity(payload.get("severity"))
    summary = _text_field(payload, "summary")
    recommendation = _text_field(payload, "recommendation")
    if severity is None or summary is None or recommendation is None:
        return AnalysisFailure(message=MALFORMED_PAYLOAD)

    return AnalysisResult(summary=summary, severity=severity, recommendation=recommendation)


def parse_conversational_reply(text: str) -> AnalysisResult:
    """
    Parse the model turn of a conversational submission.

    Never fails: a reply that is not a JSON object falls back to placeholder
    values and, when non-empty, the raw text is kept as the assistant reply.
    """
    try:
        data = extract_json(text)
    except json.JSONDecodeError:
        data = None

    if not isinstance(data, dict):
        logger.warning("Conversational analysis reply was not a JSON object, using defaults")
        return AnalysisResult(
            summary=DEFAULT_SUMMARY,
            severity=DEFAULT_SEVERITY,
            recommendation=DEFAULT_RECOMMENDATION,
            assistant_reply=(text or "").strip() or None,
        )

    return AnalysisResult(
        summary=_text_field(data, "summary") or DEFAULT_SUMMARY,
        severity=_coerce_severity(data.get("severity")) or DEFAULT_SEVERITY,
        recommendation=_text_field(data, "recommendation") or DEFAULT_RECOMMENDATION,
        assistant_reply=_text_field(data, "user_response"),
    )


def normalize_follow_up(payload: Any) -> FollowUpOutcome:
    if not isinstance(payload, dict):
        return AnalysisFailure(message=MALFORMED_PAYLOAD)
    if payload.get("status") != "success":
        return AnalysisFailure(message=str(payload.get("message") or "unknown error"))

    reply = payload.get("answer")
    if not isinstance(reply, str):
        reply = payload.get("reply")
    if not isinstance(reply, str):
        return AnalysisFailure(message=MALFORMED_PAYLOAD)
    return FollowUpResult(reply=reply)


# ----------------------------
# HTTP transport
# ----------------------------

def _openai_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _post_json(url: str, timeout: float, **kwargs: Any) -> Any:
    """
    Single POST attempt. Returns the decoded JSON body, or None when the
    service answered 2xx with a body that is not JSON.
    """
    try:
        resp = requests.post(url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise TransportFailure(f"{type(e).__name__}: {e}") from e

    try:
        return resp.json()
    except ValueError as e:
        if not resp.ok:
            raise TransportFailure(f"HTTP {resp.status_code} from {url}") from e
        return None


def _chat_message_text(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else None


def _chat_role(sender: str) -> str:
    return "assistant" if sender == "assistant" else "user"


class HttpAnalysisClient:
    """
    Analysis client over HTTP, one attempt per call, no retries.

    mode="text" talks to the analysis service endpoints (multipart form for the
    first report, JSON for follow-ups). mode="conversational" talks to an
    OpenAI-compatible chat completions endpoint.

    The blocking requests call runs in a worker thread so the event loop is
    only suspended at this boundary.
    """

    def __init__(
        self,
        mode: str = ANALYSIS_MODE,
        base_url: str = ANALYSIS_URL,
        timeout: float = ANALYSIS_TIMEOUT,
        openai_base_url: str = OPENAI_BASE_URL,
        openai_model: str = OPENAI_MODEL,
        api_key: Optional[str] = None,
    ):
        if mode not in MODES:
            raise ValueError(f"unknown analysis mode {mode!r}, expected one of {MODES}")
        self.mode = mode
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.openai_base_url = openai_base_url.rstrip("/")
        self.openai_model = openai_model
        self.api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY")

    def build_initial_request(self, text: str) -> InitialAnalysisRequest:
        if self.mode == "conversational":
            return ConversationalSubmission(text=text)
        return TextSubmission(text=text)

    async def analyze_initial(self, text: str) -> InitialOutcome:
        request = self.build_initial_request(text)
        return await asyncio.to_thread(self.run_initial, request)

    async def analyze_follow_up(
        self,
        incident_id: str,
        follow_up_text: str,
        conversation: Sequence[Message],
    ) -> FollowUpOutcome:
        return await asyncio.to_thread(self.run_follow_up, incident_id, follow_up_text, list(conversation))

    # -- blocking halves --

    def run_initial(self, request: InitialAnalysisRequest) -> InitialOutcome:
        try:
            if isinstance(request, ConversationalSubmission):
                return self._submit_conversational(request)
            return self._submit_text(request)
        except TransportFailure as e:
            logger.warning("Initial analysis could not reach the service: %s", e)
            return AnalysisFailure(message=TRANSPORT_ERROR)

    def run_follow_up(self, incident_id: str, follow_up_text: str, conversation: List[Message]) -> FollowUpOutcome:
        try:
            if self.mode == "conversational":
                history = list(conversation)
                # The question goes out once, as the final user turn.
                for i in range(len(history) - 1, -1, -1):
                    if history[i].sender == "user" and history[i].text == follow_up_text:
                        del history[i]
                        break
                return self._chat_follow_up(ChatFollowUp(message=follow_up_text, history=history))

            payload = _post_json(
                f"{self.base_url}/incident/follow-up",
                self.timeout,
                json={
                    "incidentId": incident_id,
                    "followUp": follow_up_text,
                    "conversation": [m.model_dump() for m in conversation],
                },
            )
            return normalize_follow_up(payload)
        except TransportFailure as e:
            logger.warning("Follow-up for %s could not reach the service: %s", incident_id, e)
            return AnalysisFailure(message=TRANSPORT_ERROR)

    def _submit_text(self, request: TextSubmission) -> InitialOutcome:
        payload = _post_json(
            f"{self.base_url}/incident/analyze-text",
            self.timeout,
            files={"text": (None, request.text)},
        )
        return normalize_text_result(payload)

    def _chat_completion(self, messages: List[Dict[str, str]]) -> Optional[str]:
        payload = _post_json(
            f"{self.openai_base_url}/chat/completions",
            self.timeout,
            headers=_openai_headers(self.api_key or ""),
            json={"model": self.openai_model, "messages": messages},
        )
        return _chat_message_text(payload)

    def _submit_conversational(self, request: ConversationalSubmission) -> InitialOutcome:
        if not self.api_key:
            return AnalysisFailure(message=NOT_CONFIGURED)

        content = self._chat_completion(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": request.text},
            ]
        )
        if content is None:
            return AnalysisFailure(message=MALFORMED_PAYLOAD)
        return parse_conversational_reply(content)

    def _chat_follow_up(self, request: ChatFollowUp) -> FollowUpOutcome:
        if not self.api_key:
            return AnalysisFailure(message=NOT_CONFIGURED)

        messages = [{"role": "system", "content": FOLLOW_UP_PROMPT}]
        messages.extend({"role": _chat_role(m.sender), "content": m.text} for m in request.history)
        messages.append({"role": "user", "content": request.message})

        content = self._chat_completion(messages)
        if not content or not content.strip():
            return AnalysisFailure(message=MALFORMED_PAYLOAD)
        return FollowUpResult(reply=content.strip())

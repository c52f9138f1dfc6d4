import asyncio
from typing import List, Optional

import pytest
from sqlmodel import create_engine

from shesafe.analysis import AnalysisResult, FollowUpResult
from shesafe.lifecycle import IncidentLifecycleManager
from shesafe.store import IncidentStore


class FakeAnalysisClient:
    """
    Scripted analysis client. Outcomes are consumed in call order; a call
    blocks on its gate (if one was queued) before returning.
    """

    def __init__(self, initial=None, follow_ups=None):
        self.initial = list(initial or [])
        self.follow_ups = list(follow_ups or [])
        self.initial_gates: List[asyncio.Event] = []
        self.follow_up_gates: List[asyncio.Event] = []
        self.initial_calls: List[str] = []
        self.follow_up_calls: List[tuple] = []

    async def analyze_initial(self, text):
        self.initial_calls.append(text)
        outcome = self.initial.pop(0) if self.initial else AnalysisResult(
            summary="Report received", severity="low", recommendation="Stay in a public place"
        )
        gate: Optional[asyncio.Event] = self.initial_gates.pop(0) if self.initial_gates else None
        if gate is not None:
            await gate.wait()
        return outcome

    async def analyze_follow_up(self, incident_id, follow_up_text, conversation):
        self.follow_up_calls.append((incident_id, follow_up_text, [m.text for m in conversation]))
        outcome = self.follow_ups.pop(0) if self.follow_ups else FollowUpResult(reply=f"re: {follow_up_text}")
        gate: Optional[asyncio.Event] = self.follow_up_gates.pop(0) if self.follow_up_gates else None
        if gate is not None:
            await gate.wait()
        return outcome


class RaisingAnalysisClient:
    async def analyze_initial(self, text):
        raise RuntimeError("boom")

    async def analyze_follow_up(self, incident_id, follow_up_text, conversation):
        raise RuntimeError("boom")


@pytest.fixture
def engine(tmp_path):
    return create_engine(f"sqlite:///{tmp_path / 'incidents.db'}", echo=False)


@pytest.fixture
def store(engine):
    return IncidentStore(engine=engine, key="test.incidents")


@pytest.fixture
def client():
    return FakeAnalysisClient()


@pytest.fixture
def manager(store, client):
    return IncidentLifecycleManager(store=store, client=client)


@pytest.fixture
def session(manager):
    return manager.open_session()


@pytest.fixture
def raising_manager(store):
    return IncidentLifecycleManager(store=store, client=RaisingAnalysisClient())

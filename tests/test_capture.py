import pytest

from shesafe.capture import LOCATION_UNAVAILABLE, CaptureFailure, ReportDraft
from shesafe.errors import ValidationError
from shesafe.incident_logic import Location


class FakeRecorder:
    def __init__(self, reference):
        self.reference = reference
        self.started = False

    def start(self):
        self.started = True

    async def stop(self):
        return self.reference


class FakeLocator:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = 0

    async def capture(self):
        self.calls += 1
        return self.outcome


class TestReportDraft:
    @pytest.mark.asyncio
    async def test_audio_callback_feeds_submission(self, manager, session):
        recorder = FakeRecorder("blob:audio/42")
        draft = ReportDraft()

        recorder.start()
        await draft.stop_recording(recorder)
        inc = draft.submit(manager, session)
        await manager.submit_for_analysis(inc)

        assert inc.audio_reference == "blob:audio/42"
        assert inc.text == ""
        assert inc.status == "AIResolved"
        assert session.current is inc

    @pytest.mark.asyncio
    async def test_location_snapshot(self, manager, session):
        draft = ReportDraft("Someone is outside my door")

        alert = await draft.capture_location(FakeLocator(Location(lat=40.7128, lon=-74.006)))
        inc = draft.submit(manager, session)
        await manager.submit_for_analysis(inc)

        assert alert is None
        assert inc.location == Location(lat=40.7128, lon=-74.006)

    @pytest.mark.asyncio
    async def test_location_failure_is_single_shot(self, manager, session):
        locator = FakeLocator(CaptureFailure(message="permission denied"))
        draft = ReportDraft("help")

        alert = await draft.capture_location(locator)

        assert alert == LOCATION_UNAVAILABLE
        assert locator.calls == 1
        assert draft.location is None

    def test_submit_clears_draft(self, manager, session):
        draft = ReportDraft("help")
        draft.on_audio_saved("blob:1")

        inc = draft.submit(manager, session)

        assert inc.audio_reference == "blob:1"
        assert inc.status == "Pending"
        assert draft.text == ""
        assert draft.audio_reference is None
        assert draft.location is None

    def test_empty_draft_is_rejected(self, manager, session, client):
        draft = ReportDraft("   ")

        with pytest.raises(ValidationError):
            draft.submit(manager, session)

        assert draft.text == "   "
        assert session.current is None
        assert client.initial_calls == []

    def test_submit_does_not_start_analysis(self, manager, session, client):
        draft = ReportDraft("I am being followed")
        draft.on_location_captured(Location(lat=1.0, lon=2.0))

        inc = draft.submit(manager, session)

        assert inc.status == "Pending"
        assert inc.location == Location(lat=1.0, lon=2.0)
        assert client.initial_calls == []

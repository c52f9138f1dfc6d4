import json

from sqlmodel import Session

from shesafe.incident_logic import Incident, Location, Message
from shesafe.models import StoredCollection
from shesafe.store import IncidentStore, decode_collection


def _incident(text="help", **kwargs) -> Incident:
    return Incident(text=text, conversation=[Message(sender="user", text=text)], **kwargs)


def _write_raw(engine, key, payload_json):
    with Session(engine) as session:
        session.add(StoredCollection(key=key, payload_json=payload_json, updated_at="2026-01-01T00:00:00+00:00"))
        session.commit()


class TestLoadSave:
    def test_empty_store_loads_nothing(self, store):
        assert store.load_all() == []

    def test_round_trip(self, store):
        xs = [
            _incident("I am being followed", location=Location(lat=51.5072, lon=-0.1276)),
            _incident("", audio_reference="blob:audio/1"),
        ]
        xs[0].status = "AIResolved"
        xs[0].severity = "high"
        xs[0].summary = "Stalking report"

        store.save_all(xs)

        assert store.load_all() == xs

    def test_save_replaces_whole_collection(self, store):
        store.save_all([_incident("a"), _incident("b")])
        only = _incident("c")
        store.save_all([only])

        assert store.load_all() == [only]

    def test_records_use_camel_case_field_names(self, store, engine):
        store.save_all([_incident("x", audio_reference="blob:1")])

        with Session(engine) as session:
            row = session.get(StoredCollection, "test.incidents")
        record = json.loads(row.payload_json)[0]

        assert "audioReference" in record
        assert "createdAt" in record
        assert "audio_reference" not in record

    def test_non_ascii_text_survives(self, store):
        inc = _incident("Jemand folgt mir — bitte hilf")
        store.save_all([inc])
        assert store.load_all()[0].text == "Jemand folgt mir — bitte hilf"

    def test_keys_are_namespaced(self, engine):
        a = IncidentStore(engine=engine, key="a.incidents")
        b = IncidentStore(engine=engine, key="b.incidents")
        a.save_all([_incident("only in a")])

        assert b.load_all() == []
        assert len(a.load_all()) == 1


class TestCorruption:
    def test_invalid_json_fails_soft(self, store, engine):
        _write_raw(engine, "test.incidents", "{not json")
        assert store.load_all() == []

    def test_wrong_shape_fails_soft(self, store, engine):
        _write_raw(engine, "test.incidents", json.dumps({"incidents": []}))
        assert store.load_all() == []

    def test_invalid_record_fails_soft(self, store, engine):
        _write_raw(engine, "test.incidents", json.dumps([{"id": "INC-1", "status": "Unknown"}]))
        assert store.load_all() == []

    def test_store_is_writable_after_corruption(self, store, engine):
        _write_raw(engine, "test.incidents", "garbage")
        inc = _incident("after")
        store.upsert(inc)
        assert store.load_all() == [inc]

    def test_decode_collection_accepts_empty_list(self):
        assert decode_collection("[]") == []


class TestKeyedUpdates:
    def test_upsert_appends_new_incident(self, store):
        result = store.upsert(_incident("first"))
        assert result.ok and result.created
        assert result.count == 1

    def test_upsert_replaces_by_id(self, store):
        inc = _incident("first")
        store.upsert(inc)
        inc.conversation.append(Message(sender="assistant", text="ok"))

        result = store.upsert(inc)

        assert result.ok and not result.created
        stored = store.load_all()
        assert len(stored) == 1
        assert len(stored[0].conversation) == 2

    def test_upsert_keeps_other_records_written_by_another_writer(self, store):
        mine = _incident("mine")
        store.upsert(mine)
        # another writer adds a record behind our back
        theirs = _incident("theirs")
        store.save_all(store.load_all() + [theirs])

        mine.summary = "patched"
        store.upsert(mine)

        stored = {i.id: i for i in store.load_all()}
        assert set(stored) == {mine.id, theirs.id}
        assert stored[mine.id].summary == "patched"

    def test_update_status(self, store):
        inc = _incident("x")
        store.upsert(inc)

        result = store.update_status(inc.id, "Escalated")

        assert result.ok
        assert store.get(inc.id).status == "Escalated"

    def test_update_status_unknown_id(self, store):
        result = store.update_status("INC-MISSING", "Escalated")
        assert not result.ok
        assert result.reason == "incident not found"

    def test_get_unknown_returns_none(self, store):
        assert store.get("INC-NOPE") is None

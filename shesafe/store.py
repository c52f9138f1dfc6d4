from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as RecordValidationError
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel

from shesafe.db import engine as default_engine
from shesafe.errors import PersistenceCorruption
from shesafe.incident_logic import Incident, IncidentStatus
from shesafe.models import StoredCollection

logger = logging.getLogger(__name__)

STORE_KEY = os.getenv("SHESAFE_STORE_KEY", "shesafe.incidents")

_INCIDENT_LIST = TypeAdapter(List[Incident])


class StoreResult(BaseModel):
    ok: bool
    incident_id: str
    created: bool = False
    count: int = 0
    reason: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def decode_collection(payload_json: str) -> List[Incident]:
    try:
        raw = json.loads(payload_json)
    except json.JSONDecodeError as e:
        raise PersistenceCorruption(f"not valid JSON ({e.msg})") from e
    if not isinstance(raw, list):
        raise PersistenceCorruption(f"expected a list, got {type(raw).__name__}")
    try:
        return _INCIDENT_LIST.validate_python(raw)
    except RecordValidationError as e:
        raise PersistenceCorruption(f"{e.error_count()} invalid field(s) in stored records") from e


def encode_collection(incidents: Iterable[Incident]) -> str:
    return json.dumps([i.to_record() for i in incidents], ensure_ascii=False)


class IncidentStore:
    """
    Whole-collection persistence of incidents under one namespaced key.

    load_all/save_all read and replace the entire collection. The keyed
    operations (upsert, update_status) re-read the latest stored collection
    and patch only the target record inside one session/transaction.
    """

    def __init__(self, engine: Engine = default_engine, key: str = STORE_KEY):
        self.engine = engine
        self.key = key
        SQLModel.metadata.create_all(self.engine)

    def _read(self, session: Session) -> List[Incident]:
        row = session.get(StoredCollection, self.key)
        if row is None:
            return []
        try:
            return decode_collection(row.payload_json)
        except PersistenceCorruption as e:
            logger.warning("Stored collection %r is unreadable, treating as empty: %s", self.key, e)
            return []

    def _write(self, session: Session, incidents: Iterable[Incident]) -> None:
        payload_json = encode_collection(incidents)
        row = session.get(StoredCollection, self.key)
        if row is None:
            row = StoredCollection(key=self.key, payload_json=payload_json, updated_at=_now_iso())
        else:
            row.payload_json = payload_json
            row.updated_at = _now_iso()
        session.add(row)
        session.commit()

    def load_all(self) -> List[Incident]:
        with Session(self.engine) as session:
            return self._read(session)

    def save_all(self, incidents: Iterable[Incident]) -> None:
        with Session(self.engine) as session:
            self._write(session, incidents)

    def get(self, incident_id: str) -> Optional[Incident]:
        for inc in self.load_all():
            if inc.id == incident_id:
                return inc
        return None

    def upsert(self, incident: Incident) -> StoreResult:
        with Session(self.engine) as session:
            incidents = self._read(session)
            created = True
            for idx, existing in enumerate(incidents):
                if existing.id == incident.id:
                    incidents[idx] = incident
                    created = False
                    break
            else:
                incidents.append(incident)
            self._write(session, incidents)

        return StoreResult(ok=True, incident_id=incident.id, created=created, count=len(incidents))

    def update_status(self, incident_id: str, status: IncidentStatus) -> StoreResult:
        with Session(self.engine) as session:
            incidents = self._read(session)
            target = next((i for i in incidents if i.id == incident_id), None)
            if target is None:
                return StoreResult(ok=False, incident_id=incident_id, count=len(incidents), reason="incident not found")
            target.status = status
            self._write(session, incidents)

        return StoreResult(ok=True, incident_id=incident_id, count=len(incidents))

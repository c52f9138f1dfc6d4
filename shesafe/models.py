from __future__ import annotations

from sqlmodel import SQLModel, Field as SQLField


class StoredCollection(SQLModel, table=True):
    key: str = SQLField(primary_key=True, index=True)
    payload_json: str  # serialized list[Incident], camelCase keys
    updated_at: str

from __future__ import annotations

import json
from datetime import UTC, datetime
from uuid import uuid4

from chat_relay.memory.store import MemoryStore

SESSION_STARTED = "session.started"
TURN_APPENDED = "turn.appended"
TURN_DELETED = "turn.deleted"
TURN_ROLLED_BACK = "turn.rolled_back"
RELAY_FINISHED = "relay.finished"
VARIANT_CREATED = "variant.created"
VARIANT_ACTIVATED = "variant.activated"


def utc_now() -> str:
    # Microseconds: turns created within the same second must still sort apart.
    return datetime.now(UTC).isoformat(timespec="microseconds")


class EventEmitter:
    """Append-only audit trail of what happened to a session's turns and variants."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def emit(self, session_id: str, event_type: str, payload: dict) -> None:
        self._store.execute(
            "INSERT INTO events (id, session_id, type, payload_json, created_at) VALUES (?, ?, ?, ?, ?)",
            (str(uuid4()), session_id, event_type, json.dumps(payload, ensure_ascii=False), utc_now()),
        )
        self._store.commit()

    def list_events(self, session_id: str, event_type: str | None = None) -> list[dict]:
        """Events for one session, oldest first, with their payloads decoded."""
        query = "SELECT type, payload_json, created_at FROM events WHERE session_id = ?"
        params: tuple = (session_id,)
        if event_type is not None:
            query += " AND type = ?"
            params = (session_id, event_type)
        rows = self._store.execute(f"{query} ORDER BY created_at ASC, rowid ASC", params).fetchall()
        return [
            {"type": row["type"], "payload": json.loads(row["payload_json"]), "created_at": row["created_at"]}
            for row in rows
        ]

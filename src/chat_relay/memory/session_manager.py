from __future__ import annotations

import json
from uuid import uuid4

from chat_relay.memory.events import SESSION_STARTED, TURN_APPENDED, TURN_DELETED, EventEmitter, utc_now
from chat_relay.memory.models import SessionRecord, TurnRecord
from chat_relay.memory.store import MemoryStore


class SessionManager:
    """Sessions, their ordered turns and the per-session debug snapshots.

    Methods are coroutines so callers treat every store access as a suspension
    point; the SQLite calls themselves complete inline.
    """

    def __init__(self, store: MemoryStore, events: EventEmitter):
        self._store = store
        self._events = events

    async def get_session(self, session_id: str) -> SessionRecord | None:
        row = self._store.execute(
            "SELECT id, created_at, updated_at, summary FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return SessionRecord.from_row(row)

    async def create_session(self, session_id: str | None = None, *, summary: str | None = None) -> str:
        sid = session_id or str(uuid4())
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO sessions (id, created_at, updated_at, summary)
            VALUES (?, ?, ?, ?)
            """,
            (sid, now, now, summary),
        )
        self._store.commit()
        self._events.emit(sid, SESSION_STARTED, {"session_id": sid})
        return sid

    async def touch_session(self, session_id: str) -> None:
        self._store.execute(
            "UPDATE sessions SET updated_at = ? WHERE id = ?",
            (utc_now(), session_id),
        )
        self._store.commit()

    async def set_summary(self, session_id: str, summary: str | None) -> None:
        cursor = self._store.execute(
            "UPDATE sessions SET summary = ?, updated_at = ? WHERE id = ?",
            (summary, utc_now(), session_id),
        )
        self._store.commit()
        if cursor.rowcount == 0:
            raise ValueError(f"Session does not exist: {session_id}")

    async def append_turn(self, session_id: str, role: str, content: str) -> TurnRecord:
        row = self._store.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM turns WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        next_seq = int(row["max_seq"]) + 1
        turn_id = str(uuid4())
        now = utc_now()
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO turns (id, session_id, seq, role, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (turn_id, session_id, next_seq, role, content, now),
            )
            self._store.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?",
                (now, session_id),
            )
        self._events.emit(
            session_id,
            TURN_APPENDED,
            {"session_id": session_id, "turn_id": turn_id, "seq": next_seq, "role": role},
        )
        return TurnRecord(
            id=turn_id,
            session_id=session_id,
            seq=next_seq,
            role=role,
            content=content,
            created_at=now,
        )

    async def get_turn(self, turn_id: str) -> TurnRecord | None:
        row = self._store.execute(
            "SELECT * FROM turns WHERE id = ? LIMIT 1",
            (turn_id,),
        ).fetchone()
        if row is None:
            return None
        return TurnRecord.from_row(row)

    async def load_turns(self, session_id: str, *, before_seq: int | None = None) -> list[TurnRecord]:
        if before_seq is None:
            rows = self._store.execute(
                "SELECT * FROM turns WHERE session_id = ? ORDER BY seq ASC",
                (session_id,),
            ).fetchall()
        else:
            rows = self._store.execute(
                "SELECT * FROM turns WHERE session_id = ? AND seq < ? ORDER BY seq ASC",
                (session_id, before_seq),
            ).fetchall()
        return [TurnRecord.from_row(row) for row in rows]

    async def latest_turn(self, session_id: str) -> TurnRecord | None:
        row = self._store.execute(
            "SELECT * FROM turns WHERE session_id = ? ORDER BY seq DESC LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return TurnRecord.from_row(row)

    async def update_turn_content(self, turn_id: str, content: str) -> None:
        self._store.execute(
            "UPDATE turns SET content = ? WHERE id = ?",
            (content, turn_id),
        )
        self._store.commit()

    async def append_to_turn(self, turn_id: str, content: str, *, separator: str = "\n\n") -> None:
        # Concatenate in SQL so a concurrent append is never overwritten.
        self._store.execute(
            "UPDATE turns SET content = content || ? || ? WHERE id = ?",
            (separator, content, turn_id),
        )
        self._store.commit()

    async def delete_turn(self, turn_id: str) -> bool:
        row = self._store.execute(
            "SELECT session_id FROM turns WHERE id = ? LIMIT 1",
            (turn_id,),
        ).fetchone()
        cursor = self._store.execute("DELETE FROM turns WHERE id = ?", (turn_id,))
        self._store.commit()
        deleted = cursor.rowcount > 0
        if deleted and row is not None:
            self._events.emit(str(row["session_id"]), TURN_DELETED, {"turn_id": turn_id})
        return deleted

    async def record_api_request(self, session_id: str, payload: dict) -> None:
        self._store.execute(
            "UPDATE sessions SET last_api_request = ? WHERE id = ?",
            (json.dumps(payload, ensure_ascii=False), session_id),
        )
        self._store.commit()

    async def record_api_response(self, session_id: str, payload: dict) -> None:
        self._store.execute(
            "UPDATE sessions SET last_api_response = ? WHERE id = ?",
            (json.dumps(payload, ensure_ascii=False), session_id),
        )
        self._store.commit()

    async def get_api_request(self, session_id: str) -> dict | None:
        return self._load_snapshot(session_id, "last_api_request")

    async def get_api_response(self, session_id: str) -> dict | None:
        return self._load_snapshot(session_id, "last_api_response")

    def _load_snapshot(self, session_id: str, column: str) -> dict | None:
        row = self._store.execute(
            f"SELECT {column} AS snapshot FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None or not row["snapshot"]:
            return None
        try:
            parsed = json.loads(row["snapshot"])
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None

from __future__ import annotations

import sqlite3
from dataclasses import dataclass


@dataclass(frozen=True)
class SessionRecord:
    id: str
    created_at: str
    updated_at: str
    summary: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SessionRecord:
        return cls(
            id=row["id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            summary=row["summary"],
        )


@dataclass(frozen=True)
class TurnRecord:
    id: str
    session_id: str
    seq: int
    role: str
    content: str
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> TurnRecord:
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            seq=int(row["seq"]),
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class VariantRecord:
    id: str
    turn_id: str
    version: int
    content: str
    is_active: bool
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> VariantRecord:
        return cls(
            id=row["id"],
            turn_id=row["turn_id"],
            version=int(row["version"]),
            content=row["content"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "messageId": self.turn_id,
            "version": self.version,
            "content": self.content,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        }

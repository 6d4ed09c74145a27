from __future__ import annotations

import sqlite3
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar, runtime_checkable
from uuid import uuid4

from loguru import logger
from tenacity.wait import wait_base

from chat_relay.api_errors import VariantVersionConflict, VersionAllocationFailed
from chat_relay.memory.events import VARIANT_ACTIVATED, VARIANT_CREATED, EventEmitter, utc_now
from chat_relay.memory.models import VariantRecord
from chat_relay.memory.store import MemoryStore
from chat_relay.retry import RetryExhausted, bounded_retry, fixed_backoff, linear_backoff

T = TypeVar("T")


@runtime_checkable
class VariantRepository(Protocol):
    async def max_version(self, turn_id: str) -> int: ...
    async def version_exists(self, turn_id: str, version: int) -> bool: ...


class VersionRace(Exception):
    def __init__(self, turn_id: str, version: int):
        super().__init__(f"Version {version} already exists for message {turn_id}")
        self.turn_id = turn_id
        self.version = version


class VersionAllocator:
    """Picks the next free variant version for a turn.

    The existence check only narrows the race window; the UNIQUE(turn_id,
    version) constraint enforced at write time remains the authority.
    """

    def __init__(
        self,
        variants: VariantRepository,
        *,
        max_attempts: int = 3,
        wait: wait_base | None = None,
    ):
        self._variants = variants
        self._max_attempts = max_attempts
        self._wait = wait or linear_backoff(50, 25)

    async def allocate(self, turn_id: str) -> int:
        async def attempt(n: int) -> int:
            last_version = await self._variants.max_version(turn_id)
            candidate = last_version + 1
            logger.info(
                f"[Variant] Attempt {n}: next version {candidate} for message {turn_id}. "
                f"Last version found: {last_version or 'none'}"
            )
            if await self._variants.version_exists(turn_id, candidate):
                logger.info(f"[Variant] Version {candidate} already exists for message {turn_id}, retrying...")
                raise VersionRace(turn_id, candidate)
            return candidate

        try:
            version = await bounded_retry(
                attempt,
                max_attempts=self._max_attempts,
                wait=self._wait,
                retry_on=(VersionRace,),
                label="Variant",
            )
        except RetryExhausted as ex:
            logger.error(f"[Variant] Failed to find available version after {ex.attempts} attempts")
            raise VersionAllocationFailed(turn_id, ex.attempts) from ex
        logger.info(f"[Variant] Version {version} is available for message {turn_id}")
        return version

    async def allocate_and_write(
        self,
        turn_id: str,
        write: Callable[[int], Awaitable[T]],
        *,
        first_version: int | None = None,
    ) -> T:
        """Run ``write(version)`` until a version sticks.

        ``first_version`` (the number announced before the upstream call) is
        tried first. A write rejected by the UNIQUE constraint is retried
        with a freshly allocated version; the last conflict is raised once
        the attempts run out.
        """
        last_version = first_version

        async def attempt(n: int) -> T:
            nonlocal last_version
            if n == 1 and first_version is not None:
                version = first_version
            else:
                version = await self.allocate(turn_id)
            last_version = version
            return await write(version)

        try:
            return await bounded_retry(
                attempt,
                max_attempts=self._max_attempts,
                wait=self._wait,
                retry_on=(VariantVersionConflict,),
                label="Variant",
            )
        except RetryExhausted as ex:
            logger.error(
                f"[Variant] Version {last_version} still taken for message {turn_id} after {ex.attempts} writes"
            )
            raise VariantVersionConflict(turn_id, last_version or 0) from ex


class VariantManager:
    def __init__(self, store: MemoryStore, events: EventEmitter):
        self._store = store
        self._events = events

    async def list_variants(self, turn_id: str) -> list[VariantRecord]:
        rows = self._store.execute(
            "SELECT * FROM variants WHERE turn_id = ? ORDER BY version ASC",
            (turn_id,),
        ).fetchall()
        return [VariantRecord.from_row(row) for row in rows]

    async def get_variant(self, variant_id: str) -> VariantRecord | None:
        row = self._store.execute(
            "SELECT * FROM variants WHERE id = ? LIMIT 1",
            (variant_id,),
        ).fetchone()
        return VariantRecord.from_row(row) if row is not None else None

    async def latest_variant(self, turn_id: str) -> VariantRecord | None:
        row = self._store.execute(
            "SELECT * FROM variants WHERE turn_id = ? ORDER BY version DESC LIMIT 1",
            (turn_id,),
        ).fetchone()
        return VariantRecord.from_row(row) if row is not None else None

    async def latest_variant_with_retry(
        self,
        turn_id: str,
        *,
        max_attempts: int = 3,
        wait: wait_base | None = None,
    ) -> VariantRecord | None:
        """Latest variant, retried briefly while a concurrent save may still be landing."""

        async def attempt(_n: int) -> VariantRecord | None:
            return await self.latest_variant(turn_id)

        try:
            return await bounded_retry(
                attempt,
                max_attempts=max_attempts,
                wait=wait or fixed_backoff(50),
                retry_if=lambda found: found is None,
                label="Variant",
            )
        except RetryExhausted:
            return None

    async def max_version(self, turn_id: str) -> int:
        row = self._store.execute(
            "SELECT COALESCE(MAX(version), 0) AS max_version FROM variants WHERE turn_id = ?",
            (turn_id,),
        ).fetchone()
        return int(row["max_version"])

    async def version_exists(self, turn_id: str, version: int) -> bool:
        row = self._store.execute(
            "SELECT 1 FROM variants WHERE turn_id = ? AND version = ? LIMIT 1",
            (turn_id, version),
        ).fetchone()
        return row is not None

    async def create_variant(
        self,
        session_id: str,
        turn_id: str,
        version: int,
        content: str,
        *,
        is_active: bool = False,
    ) -> VariantRecord:
        variant_id = str(uuid4())
        now = utc_now()
        try:
            with self._store.transaction():
                self._store.execute(
                    """
                    INSERT INTO variants (id, turn_id, version, content, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (variant_id, turn_id, version, content, 1 if is_active else 0, now),
                )
                self._store.execute(
                    "UPDATE sessions SET updated_at = ? WHERE id = ?",
                    (now, session_id),
                )
        except sqlite3.IntegrityError as ex:
            if "UNIQUE" not in str(ex).upper():
                raise
            logger.error(f"[Variant] Version {version} already exists for message {turn_id} due to race condition")
            raise VariantVersionConflict(turn_id, version) from ex

        self._events.emit(
            session_id,
            VARIANT_CREATED,
            {"turn_id": turn_id, "variant_id": variant_id, "version": version},
        )
        return VariantRecord(
            id=variant_id,
            turn_id=turn_id,
            version=version,
            content=content,
            is_active=is_active,
            created_at=now,
        )

    async def update_content(self, session_id: str, variant_id: str, content: str) -> VariantRecord | None:
        now = utc_now()
        with self._store.transaction():
            cursor = self._store.execute(
                "UPDATE variants SET content = ? WHERE id = ?",
                (content.strip(), variant_id),
            )
            if cursor.rowcount == 0:
                return None
            self._store.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id))
        return await self.get_variant(variant_id)

    async def activate(self, session_id: str, turn_id: str, variant_id: str) -> VariantRecord | None:
        """Make one variant active and copy its content onto the parent turn.

        Siblings are deactivated first, all inside one transaction, so no
        reader ever observes two active variants for the same turn.
        """
        now = utc_now()
        with self._store.transaction():
            row = self._store.execute(
                "SELECT * FROM variants WHERE id = ? AND turn_id = ? LIMIT 1",
                (variant_id, turn_id),
            ).fetchone()
            if row is None:
                return None
            self._store.execute("UPDATE variants SET is_active = 0 WHERE turn_id = ?", (turn_id,))
            self._store.execute("UPDATE variants SET is_active = 1 WHERE id = ?", (variant_id,))
            self._store.execute("UPDATE turns SET content = ? WHERE id = ?", (row["content"], turn_id))
            self._store.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id))

        self._events.emit(
            session_id,
            VARIANT_ACTIVATED,
            {"turn_id": turn_id, "variant_id": variant_id, "version": int(row["version"])},
        )
        return await self.get_variant(variant_id)

    async def delete_all(self, session_id: str, turn_id: str) -> int:
        with self._store.transaction():
            cursor = self._store.execute("DELETE FROM variants WHERE turn_id = ?", (turn_id,))
            self._store.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (utc_now(), session_id))
        return cursor.rowcount

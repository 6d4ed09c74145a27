"""Character-budget truncation of the turn list sent upstream."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger

DEFAULT_TRUNCATION_LIMIT = 150_000

TRUNCATION_NOTE = (
    "<truncation_note>The earliest messages of this conversation have been truncated "
    "for token count reasons, please see summary section above for any lost detail</truncation_note>"
)


@dataclass
class TruncationResult:
    turns: list[dict] = field(default_factory=list)
    was_truncated: bool = False
    removed_count: int = 0


def total_characters(turns: Sequence[dict]) -> int:
    return sum(len(t.get("content") or "") for t in turns)


def truncate(turns: Sequence[dict], limit: int = DEFAULT_TRUNCATION_LIMIT) -> TruncationResult:
    """Drop the oldest non-system turns until the total content length fits ``limit``.

    The first turn is treated as the system turn and always kept. The input
    sequence is never modified; the result holds a new list of the same turn
    objects.
    """
    kept = list(turns)
    if len(kept) <= 1:
        return TruncationResult(turns=kept)

    total = total_characters(kept)
    if total <= limit:
        return TruncationResult(turns=kept)

    logger.info(f"[Truncation] Total characters ({total}) exceeds limit ({limit}), truncating messages...")
    removed = 0
    while total > limit and len(kept) > 1:
        dropped = kept.pop(1)
        total -= len(dropped.get("content") or "")
        removed += 1

    logger.info(f"[Truncation] Removed {removed} messages, {len(kept)} remain ({total} characters)")
    return TruncationResult(turns=kept, was_truncated=removed > 0, removed_count=removed)


def with_truncation_note(result: TruncationResult) -> list[dict]:
    """Turns with the truncation marker appended to the system turn, when anything was removed."""
    if not result.was_truncated or not result.turns:
        return list(result.turns)
    system = result.turns[0]
    if system.get("role") != "system":
        return list(result.turns)
    noted = {**system, "content": f"{system.get('content') or ''}\n\n{TRUNCATION_NOTE}"}
    return [noted, *result.turns[1:]]

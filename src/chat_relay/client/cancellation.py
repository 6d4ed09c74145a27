from __future__ import annotations

import asyncio


class CancellationToken:
    """Handle the caller holds to cancel one in-flight streaming request.

    The orchestrator binds the task running the request to the token; the
    token is cleared again once that request has finished.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def clear(self) -> None:
        self._task = None

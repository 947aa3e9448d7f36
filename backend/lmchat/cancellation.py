from __future__ import annotations

import asyncio
import contextlib
import enum
from typing import Awaitable, TypeVar

T = TypeVar("T")


class TokenState(str, enum.Enum):
    ACTIVE = "active"
    ABORTED = "aborted"
    COMPLETED = "completed"


class TurnAborted(Exception):
    """Raised by ``CancellationToken.race`` when the token is aborted first."""


class CancellationToken:
    """One per in-flight turn. ``ACTIVE`` moves to ``ABORTED`` or ``COMPLETED`` exactly once."""

    def __init__(self) -> None:
        self._state = TokenState.ACTIVE
        self._aborted = asyncio.Event()

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is TokenState.ACTIVE

    @property
    def is_aborted(self) -> bool:
        return self._state is TokenState.ABORTED

    def abort(self) -> bool:
        if self._state is not TokenState.ACTIVE:
            return False
        self._state = TokenState.ABORTED
        self._aborted.set()
        return True

    def complete(self) -> bool:
        if self._state is not TokenState.ACTIVE:
            return False
        self._state = TokenState.COMPLETED
        return True

    async def wait(self) -> None:
        await self._aborted.wait()

    async def race(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token is aborted first; then cancel it and raise ``TurnAborted``."""
        task = asyncio.ensure_future(aw)
        if self.is_aborted:
            task.cancel()
            raise TurnAborted()
        waiter = asyncio.ensure_future(self._aborted.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise TurnAborted()


class TurnGuard:
    """Enforces at most one active token per conversation."""

    def __init__(self) -> None:
        self._current: CancellationToken | None = None

    @property
    def current(self) -> CancellationToken | None:
        return self._current

    def start(self) -> CancellationToken:
        if self._current is not None:
            self._current.abort()
        self._current = CancellationToken()
        return self._current

    def stop(self) -> bool:
        if self._current is None:
            return False
        return self._current.abort()

    def release(self, token: CancellationToken) -> None:
        if self._current is token:
            self._current = None

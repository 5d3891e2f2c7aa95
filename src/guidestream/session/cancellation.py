"""Cooperative cancellation and pause primitives shared by one session."""

from __future__ import annotations

import asyncio


class CancelSignal:
    """One-way flag checked at every suspension point of a session.

    Raising the signal never interrupts a coroutine; work in progress stops the
    next time it checks ``cancelled``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class PauseGate:
    """Blocks the relay between events while the listener has paused.

    ``wait()`` returns immediately when open, otherwise it sleeps on a
    condition until ``resume()`` or ``release()`` is called.
    ``release()`` opens the gate for good so that a waiting coroutine can
    observe cancellation and exit.
    """

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._paused = False
        self._released = False

    @property
    def paused(self) -> bool:
        return self._paused and not self._released

    async def pause(self) -> None:
        async with self._condition:
            if not self._released:
                self._paused = True

    async def resume(self) -> None:
        async with self._condition:
            self._paused = False
            self._condition.notify_all()

    async def release(self) -> None:
        async with self._condition:
            self._released = True
            self._paused = False
            self._condition.notify_all()

    async def wait(self) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._paused or self._released)


__all__ = ["CancelSignal", "PauseGate"]

"""
Gapless playback of streamed audio chunks.

Chunks arrive as raw bytes, are decoded in submission order by a single
consumer task, and are scheduled back to back on an :class:`AudioOutput`:

    enqueue ─▶ intake queue ─▶ decode ─▶ buffers ─▶ schedule(start = max(now, next_play_time))
                                                        │
                                                        └─ on_ended ─▶ schedule next

Only one buffer is scheduled at a time; its end callback schedules the next,
so a slow decode of chunk N+1 never lets it jump ahead of chunk N.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, Optional

from .audio import AudioDecoder, DecodedAudio
from .output import AudioOutput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaybackState:
    is_playing: bool
    is_paused: bool
    queue_length: int
    current_caption: Optional[str]


@dataclass(frozen=True)
class _BufferEntry:
    audio: DecodedAudio
    caption: Optional[str]


StateCallback = Callable[[PlaybackState], None]
CaptionCallback = Callable[[str], None]


class AudioPlaybackQueue:
    """FIFO audio scheduler with pause, resume and stop."""

    def __init__(
        self,
        output: AudioOutput,
        decoder: AudioDecoder,
        *,
        on_state_change: Optional[StateCallback] = None,
        on_caption: Optional[CaptionCallback] = None,
    ):
        self._output = output
        self._decoder = decoder
        self._on_state_change = on_state_change
        self._on_caption = on_caption
        self._intake: asyncio.Queue[tuple[bytes, Optional[str]]] = asyncio.Queue()
        self._buffers: deque[_BufferEntry] = deque()
        self._consumer: Optional[asyncio.Task[None]] = None
        self._next_play_time = 0.0
        self._playing = False
        self._paused = False
        self._stopped = False
        self._caption: Optional[str] = None

    @property
    def state(self) -> PlaybackState:
        return PlaybackState(
            is_playing=self._playing,
            is_paused=self._paused,
            queue_length=len(self._buffers),
            current_caption=self._caption,
        )

    @property
    def stopped(self) -> bool:
        return self._stopped

    def enqueue(self, data: bytes, caption: Optional[str] = None) -> None:
        """Submit one encoded chunk; ``caption`` is shown when it starts playing."""
        if self._stopped:
            raise RuntimeError("Playback queue has been stopped")
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())
        self._intake.put_nowait((data, caption))

    async def drain(self) -> None:
        """Wait until every submitted chunk has been decoded."""
        if self._stopped:
            return
        await self._intake.join()

    async def pause(self) -> None:
        if self._stopped or self._paused:
            return
        self._paused = True
        await self._output.suspend()
        self._notify()

    async def resume(self) -> None:
        if self._stopped or not self._paused:
            return
        self._paused = False
        await self._output.resume()
        if not self._playing and self._buffers:
            self._play_next()
        self._notify()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        if self._consumer is not None:
            self._consumer.cancel()
            with suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None

        while not self._intake.empty():
            self._intake.get_nowait()
            self._intake.task_done()
        self._buffers.clear()
        self._playing = False
        self._paused = False
        self._caption = None
        self._next_play_time = 0.0

        await self._output.close()
        self._notify()

    def set_voice_volume(self, value: float) -> None:
        self._output.mixer.set_voice_volume(value)

    def set_ambient_volume(self, value: float) -> None:
        self._output.mixer.set_ambient_volume(value)

    async def _consume(self) -> None:
        while True:
            data, caption = await self._intake.get()
            try:
                audio = await self._decoder.decode(data)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Skipping undecodable audio chunk (%d bytes): %s", len(data), exc)
            else:
                self._buffers.append(_BufferEntry(audio, caption))
                if not self._playing and not self._paused:
                    self._play_next()
                else:
                    self._notify()
            finally:
                self._intake.task_done()

    def _play_next(self) -> None:
        if self._stopped:
            return
        if not self._buffers:
            self._playing = False
            self._notify()
            return

        entry = self._buffers.popleft()
        start = max(self._output.current_time, self._next_play_time)
        self._next_play_time = start + entry.audio.duration
        self._playing = True
        self._output.schedule(entry.audio, start, self._on_ended)

        if entry.caption is not None:
            self._caption = entry.caption
            if self._on_caption is not None:
                self._on_caption(entry.caption)
        self._notify()

    def _on_ended(self) -> None:
        if self._stopped:
            return
        self._playing = False
        if self._paused:
            self._notify()
            return
        self._play_next()

    def _notify(self) -> None:
        if self._on_state_change is not None:
            self._on_state_change(self.state)


__all__ = ["AudioPlaybackQueue", "PlaybackState"]

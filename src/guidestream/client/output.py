"""Audio outputs the playback queue can schedule buffers on.

Every output exposes a clock in seconds that stops while the output is
suspended, so buffers scheduled against it resume exactly where they left off.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import numpy as np

from .audio import DEFAULT_SAMPLE_RATE, DecodedAudio
from .mixer import AmbientLayer, VolumeMixer

logger = logging.getLogger(__name__)

EndedCallback = Callable[[], None]


class AudioOutput(Protocol):
    mixer: VolumeMixer

    @property
    def current_time(self) -> float: ...

    def schedule(
        self, audio: DecodedAudio, start_time: float, on_ended: EndedCallback
    ) -> None: ...

    async def suspend(self) -> None: ...

    async def resume(self) -> None: ...

    async def close(self) -> None: ...


@dataclass
class _Timer:
    end_time: float
    callback: EndedCallback
    handle: Optional[asyncio.TimerHandle] = None


class LoopAudioOutput:
    """A silent output timed by the event loop.

    Used for headless runs and tests: buffers "play" for their duration and
    fire their end callbacks without touching an audio device.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._origin = self._loop.time()
        self._suspended_at: Optional[float] = None
        self._suspended_total = 0.0
        self._timers: list[_Timer] = []
        self._closed = False
        self.mixer = VolumeMixer(lambda: self.current_time)

    @property
    def current_time(self) -> float:
        now = self._suspended_at if self._suspended_at is not None else self._loop.time()
        return now - self._origin - self._suspended_total

    @property
    def suspended(self) -> bool:
        return self._suspended_at is not None

    def schedule(
        self, audio: DecodedAudio, start_time: float, on_ended: EndedCallback
    ) -> None:
        if self._closed:
            raise RuntimeError("Output is closed")
        timer = _Timer(end_time=start_time + audio.duration, callback=on_ended)
        self._timers.append(timer)
        if not self.suspended:
            self._arm(timer)

    async def suspend(self) -> None:
        if self.suspended or self._closed:
            return
        self._suspended_at = self._loop.time()
        for timer in self._timers:
            if timer.handle is not None:
                timer.handle.cancel()
                timer.handle = None

    async def resume(self) -> None:
        if self._suspended_at is None or self._closed:
            return
        self._suspended_total += self._loop.time() - self._suspended_at
        self._suspended_at = None
        for timer in self._timers:
            self._arm(timer)

    async def close(self) -> None:
        self._closed = True
        for timer in self._timers:
            if timer.handle is not None:
                timer.handle.cancel()
        self._timers.clear()

    def _arm(self, timer: _Timer) -> None:
        delay = max(0.0, timer.end_time - self.current_time)
        timer.handle = self._loop.call_later(delay, self._fire, timer)

    def _fire(self, timer: _Timer) -> None:
        if timer in self._timers:
            self._timers.remove(timer)
        timer.callback()


@dataclass
class _Voice:
    start_frame: int
    samples: np.ndarray
    on_ended: EndedCallback
    notified: bool = False

    @property
    def end_frame(self) -> int:
        return self.start_frame + len(self.samples)


class SoundDeviceOutput:
    """Render scheduled buffers and an ambient layer through PortAudio.

    The clock is the number of frames the device callback has rendered, so it
    only advances while the stream is running. A buffer's end callback fires
    once its end falls within the next block, so the buffer that follows can
    be scheduled on the exact frame where this one stops.
    """

    def __init__(
        self,
        *,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        ambient: Optional[AmbientLayer] = None,
        blocksize: int = 1024,
        device: Optional[int | str] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
    ):
        if stream_factory is None:
            import sounddevice as sd

            stream_factory = sd.OutputStream

        self.sample_rate = sample_rate
        self.blocksize = blocksize
        self._loop = loop or asyncio.get_running_loop()
        self._ambient = ambient or AmbientLayer("silence")
        self._lock = threading.Lock()
        self._voices: list[_Voice] = []
        self._rendered = 0
        self._closed = False
        self.mixer = VolumeMixer(lambda: self.current_time)
        self._stream = stream_factory(
            samplerate=sample_rate,
            channels=1,
            dtype="float32",
            blocksize=blocksize,
            device=device,
            callback=self._callback,
        )
        self._stream.start()

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._rendered / float(self.sample_rate)

    def schedule(
        self, audio: DecodedAudio, start_time: float, on_ended: EndedCallback
    ) -> None:
        if self._closed:
            raise RuntimeError("Output is closed")
        start_frame = int(round(start_time * self.sample_rate))
        with self._lock:
            start_frame = max(start_frame, self._rendered)
            voice = _Voice(start_frame, audio.samples, on_ended)
            # Ends inside the next block: report now, the callback would be too late.
            voice.notified = voice.end_frame <= self._rendered + self.blocksize
            self._voices.append(voice)
        if voice.notified:
            self._loop.call_soon(on_ended)

    async def suspend(self) -> None:
        if not self._closed and self._stream.active:
            await asyncio.to_thread(self._stream.stop)

    async def resume(self) -> None:
        if not self._closed and not self._stream.active:
            await asyncio.to_thread(self._stream.start)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(self._stream.stop)
        await asyncio.to_thread(self._stream.close)
        with self._lock:
            self._voices.clear()

    def _callback(self, outdata, frames, time_info, status) -> None:
        if status:
            logger.debug("Output stream status: %s", status)

        with self._lock:
            block_start = self._rendered
            block_end = block_start + frames
            block_time = block_start / float(self.sample_rate)
            lookahead_end = block_end + max(frames, self.blocksize)

            voice_mix = np.zeros(frames, dtype=np.float32)
            finished: list[_Voice] = []
            ending: list[_Voice] = []
            for voice in self._voices:
                lo = max(voice.start_frame, block_start)
                hi = min(voice.end_frame, block_end)
                if lo < hi:
                    voice_mix[lo - block_start : hi - block_start] += voice.samples[
                        lo - voice.start_frame : hi - voice.start_frame
                    ]
                if voice.end_frame <= block_end:
                    finished.append(voice)
                if not voice.notified and voice.end_frame <= lookahead_end:
                    voice.notified = True
                    ending.append(voice)
            for voice in finished:
                self._voices.remove(voice)

            mixed = voice_mix * self.mixer.voice.envelope(block_time, frames, self.sample_rate)
            if not self._ambient.silent:
                mixed += self._ambient.read(frames) * self.mixer.ambient.envelope(
                    block_time, frames, self.sample_rate
                )
            self._rendered = block_end

        outdata[:, 0] = np.clip(mixed, -1.0, 1.0)
        for voice in ending:
            self._loop.call_soon_threadsafe(voice.on_ended)


__all__ = ["AudioOutput", "EndedCallback", "LoopAudioOutput", "SoundDeviceOutput"]

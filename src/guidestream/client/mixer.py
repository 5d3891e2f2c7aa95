"""Gain control for the voice and ambient layers."""

from __future__ import annotations

from typing import Callable, Optional

import numpy as np

from .audio import DecodedAudio

DEFAULT_VOICE_GAIN = 1.0
DEFAULT_AMBIENT_GAIN = 0.3
DEFAULT_RAMP_SECONDS = 0.05

SOUNDSCAPES = ("rain", "ocean", "forest", "ambient", "silence")


class GainNode:
    """A gain value that can move linearly between two points in time.

    Times are in seconds on the owning output's clock.
    """

    def __init__(self, value: float = 1.0):
        self._start_value = value
        self._target_value = value
        self._start_time = 0.0
        self._end_time = 0.0

    def set_value(self, value: float) -> None:
        self._start_value = self._target_value = value
        self._start_time = self._end_time = 0.0

    def linear_ramp_to(self, target: float, duration: float, now: float) -> None:
        """Ramp from the current value at ``now`` to ``target`` over ``duration``."""
        current = self.value_at(now)
        if duration <= 0:
            self.set_value(target)
            return
        self._start_value = current
        self._target_value = target
        self._start_time = now
        self._end_time = now + duration

    def value_at(self, t: float) -> float:
        if t >= self._end_time:
            return self._target_value
        if t <= self._start_time:
            return self._start_value
        progress = (t - self._start_time) / (self._end_time - self._start_time)
        return self._start_value + (self._target_value - self._start_value) * progress

    def envelope(self, start: float, frames: int, sample_rate: int) -> np.ndarray:
        """Per-sample gain for a block of ``frames`` beginning at ``start``."""
        if start >= self._end_time or frames == 0:
            return np.full(frames, self.value_at(start), dtype=np.float32)
        times = start + np.arange(frames, dtype=np.float64) / sample_rate
        values = np.interp(
            times,
            [self._start_time, self._end_time],
            [self._start_value, self._target_value],
        )
        return values.astype(np.float32)


class VolumeMixer:
    """Independent voice and ambient volumes, ramped to avoid clicks."""

    def __init__(
        self,
        clock: Callable[[], float],
        *,
        voice: float = DEFAULT_VOICE_GAIN,
        ambient: float = DEFAULT_AMBIENT_GAIN,
        ramp_seconds: float = DEFAULT_RAMP_SECONDS,
    ):
        self._clock = clock
        self.ramp_seconds = ramp_seconds
        self.voice = GainNode(voice)
        self.ambient = GainNode(ambient)

    def set_voice_volume(self, value: float) -> None:
        self.voice.linear_ramp_to(_clamp(value), self.ramp_seconds, self._clock())

    def set_ambient_volume(self, value: float) -> None:
        self.ambient.linear_ramp_to(_clamp(value), self.ramp_seconds, self._clock())


class AmbientLayer:
    """Loops a soundscape forever, one block at a time."""

    def __init__(self, name: str, audio: Optional[DecodedAudio] = None):
        self.name = name
        self._samples = audio.samples if audio is not None else np.zeros(0, dtype=np.float32)
        self._position = 0

    @property
    def silent(self) -> bool:
        return len(self._samples) == 0

    def read(self, frames: int) -> np.ndarray:
        if self.silent:
            return np.zeros(frames, dtype=np.float32)
        length = len(self._samples)
        indices = (self._position + np.arange(frames)) % length
        self._position = (self._position + frames) % length
        return self._samples[indices]


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


__all__ = [
    "AmbientLayer",
    "DEFAULT_AMBIENT_GAIN",
    "DEFAULT_RAMP_SECONDS",
    "DEFAULT_VOICE_GAIN",
    "GainNode",
    "SOUNDSCAPES",
    "VolumeMixer",
]

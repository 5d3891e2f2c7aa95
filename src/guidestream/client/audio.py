"""Decoding of raw PCM frames received from the session channel."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

import numpy as np

DEFAULT_SAMPLE_RATE = 24000


@dataclass(frozen=True)
class DecodedAudio:
    """Mono float32 samples in [-1, 1] at ``sample_rate``."""

    samples: np.ndarray
    sample_rate: int

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.sample_rate)

    @property
    def frames(self) -> int:
        return len(self.samples)


class AudioDecoder(Protocol):
    async def decode(self, data: bytes) -> DecodedAudio: ...


class PcmDecoder:
    """Decode signed 16-bit little-endian mono PCM.

    The conversion runs in a worker thread so large chunks never stall the
    event loop.
    """

    def __init__(self, sample_rate: int = DEFAULT_SAMPLE_RATE):
        self.sample_rate = sample_rate

    async def decode(self, data: bytes) -> DecodedAudio:
        return await asyncio.to_thread(self.decode_sync, data)

    def decode_sync(self, data: bytes) -> DecodedAudio:
        if len(data) % 2:
            raise ValueError(f"PCM chunk of {len(data)} bytes is not 16-bit aligned")
        samples = np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0
        return DecodedAudio(samples=samples, sample_rate=self.sample_rate)


def load_pcm_file(path: str, sample_rate: int = DEFAULT_SAMPLE_RATE) -> DecodedAudio:
    """Read a headerless 16-bit PCM file, as used for ambient soundscapes."""
    samples = np.fromfile(path, dtype="<i2").astype(np.float32) / 32768.0
    return DecodedAudio(samples=samples, sample_rate=sample_rate)


__all__ = [
    "AudioDecoder",
    "DEFAULT_SAMPLE_RATE",
    "DecodedAudio",
    "PcmDecoder",
    "load_pcm_file",
]

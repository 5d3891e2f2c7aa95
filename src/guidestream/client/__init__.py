"""Terminal client: gapless playback of a streamed guided session."""

from .audio import DecodedAudio, PcmDecoder
from .mixer import AmbientLayer, GainNode, VolumeMixer
from .output import AudioOutput, LoopAudioOutput
from .playback import AudioPlaybackQueue, PlaybackState

__all__ = [
    "AmbientLayer",
    "AudioOutput",
    "AudioPlaybackQueue",
    "DecodedAudio",
    "GainNode",
    "LoopAudioOutput",
    "PcmDecoder",
    "PlaybackState",
    "VolumeMixer",
]

"""Speech synthesis for session sentences."""

from .synthesis import SAMPLE_WIDTH, SpeechSynthesizer

__all__ = ["SAMPLE_WIDTH", "SpeechSynthesizer"]

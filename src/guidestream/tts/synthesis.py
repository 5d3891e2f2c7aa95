import logging
from typing import Any, AsyncIterator, Optional

import httpx

from ..config import Settings
from ..session.cancellation import CancelSignal

logger = logging.getLogger(__name__)

# 16-bit mono PCM
SAMPLE_WIDTH = 2


class SpeechSynthesizer:
    """
    Turn one sentence into a stream of raw PCM audio chunks.

    Supports ElevenLabs and OpenAI speech endpoints. Uses a shared
    httpx.AsyncClient for connection pooling across sentences.

    Failure is never raised to the caller:
    - provider errors are logged and the stream simply ends
    - a sentence that produced zero chunks is a valid outcome
    - a raised cancel signal stops the stream between chunks
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        chunk_size: int = 16 * 1024,
    ):
        self._settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None
        self.chunk_size = chunk_size - (chunk_size % SAMPLE_WIDTH)
        self.provider = settings.tts_provider

        if self.provider == "elevenlabs" and settings.elevenlabs_api_key is None:
            logger.warning("No ElevenLabs API key configured. TTS will not be available.")
        elif self.provider == "openai" and settings.llm_api_key is None:
            logger.warning("No OpenAI API key configured. TTS will not be available.")
        else:
            logger.info("TTS provider: %s", self.provider)

    @property
    def sample_rate(self) -> int:
        if self.provider == "openai":
            return 24000
        return _elevenlabs_output_format(self._settings.tts_sample_rate)[1]

    def get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
            logger.info("Created httpx.AsyncClient for TTS")
        return self._http_client

    async def aclose(self) -> None:
        """Close the HTTP client. Call on app shutdown."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            logger.info("Closed TTS HTTP client")
        self._http_client = None

    async def synthesize(
        self,
        sentence: str,
        previous_text: Optional[str] = None,
        cancel: Optional[CancelSignal] = None,
        voice_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """
        Stream audio for ``sentence``.

        ``previous_text`` is the text already spoken in this session; only the
        tail (``previous_text_limit`` characters) is sent as prosody context.
        """
        if not sentence.strip():
            return
        context = (
            previous_text[-self._settings.previous_text_limit :]
            if previous_text
            else None
        )

        if self.provider == "openai":
            stream = self._stream_openai(sentence, voice_id)
        else:
            stream = self._stream_elevenlabs(sentence, context, voice_id)

        buffered = self._buffered_stream(stream)
        try:
            async for chunk in buffered:
                if cancel is not None and cancel.cancelled:
                    return
                yield chunk
        finally:
            await buffered.aclose()
            await stream.aclose()

    async def _buffered_stream(self, stream: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """
        Re-chunk provider bytes into ``chunk_size`` pieces.
        The first chunk goes out as soon as one whole sample is available.
        Every chunk is a whole number of 16-bit samples.
        """
        buffer = bytearray()
        first_chunk_sent = False

        async for chunk in stream:
            buffer.extend(chunk)

            if not first_chunk_sent:
                send_len = len(buffer) - (len(buffer) % SAMPLE_WIDTH)
                if send_len > 0:
                    yield bytes(buffer[:send_len])
                    del buffer[:send_len]
                    first_chunk_sent = True

            while len(buffer) >= self.chunk_size:
                yield bytes(buffer[: self.chunk_size])
                del buffer[: self.chunk_size]

        if len(buffer) % SAMPLE_WIDTH:
            logger.warning("Dropping 1 byte from end of TTS stream to maintain 16-bit alignment")
            del buffer[-1]
        if buffer:
            yield bytes(buffer)

    async def _stream_elevenlabs(
        self, text: str, previous_text: Optional[str], voice_id: Optional[str]
    ) -> AsyncIterator[bytes]:
        if self._settings.elevenlabs_api_key is None:
            logger.error("ElevenLabs API key not configured for streaming")
            return

        voice = voice_id or self._settings.default_voice_id
        base_url = str(self._settings.elevenlabs_base_url).rstrip("/")
        url = f"{base_url}/text-to-speech/{voice}/stream"
        output_format, _ = _elevenlabs_output_format(self._settings.tts_sample_rate)

        headers = {
            "xi-api-key": self._settings.elevenlabs_api_key.get_secret_value(),
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "text": text,
            "model_id": self._settings.elevenlabs_model_id,
            "voice_settings": {
                "stability": 0.7,
                "similarity_boost": 0.75,
                "style": 0.3,
                "speed": self._settings.tts_speed,
            },
        }
        if previous_text:
            payload["previous_text"] = previous_text

        try:
            async with self.get_http_client().stream(
                "POST",
                url,
                params={"output_format": output_format},
                headers=headers,
                json=payload,
                timeout=30.0,
            ) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except Exception as exc:
            logger.error(f"ElevenLabs streaming TTS error: {exc}")

    async def _stream_openai(self, text: str, voice_id: Optional[str]) -> AsyncIterator[bytes]:
        if self._settings.llm_api_key is None:
            logger.error("OpenAI API key not configured for streaming")
            return

        headers = {
            "Authorization": f"Bearer {self._settings.llm_api_key.get_secret_value()}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self._settings.openai_tts_model,
            "input": text,
            "voice": voice_id or self._settings.openai_tts_voice,
            "response_format": "pcm",
            "speed": self._settings.tts_speed,
        }
        url = f"{str(self._settings.llm_base_url).rstrip('/')}/audio/speech"

        try:
            async with self.get_http_client().stream(
                "POST",
                url,
                headers=headers,
                json=payload,
                timeout=30.0,
            ) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except Exception as exc:
            logger.error(f"OpenAI streaming TTS error: {exc}")


def _elevenlabs_output_format(sample_rate: int) -> tuple[str, int]:
    """Map a requested sample rate to the closest ElevenLabs PCM format."""
    if sample_rate <= 16000:
        return "pcm_16000", 16000
    if sample_rate <= 22050:
        return "pcm_22050", 22050
    if sample_rate <= 24000:
        return "pcm_24000", 24000
    return "pcm_44100", 44100


__all__ = ["SAMPLE_WIDTH", "SpeechSynthesizer"]

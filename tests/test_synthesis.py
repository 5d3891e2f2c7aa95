from __future__ import annotations

import json

import httpx
import pytest

from guidestream.config import Settings
from guidestream.session.cancellation import CancelSignal
from guidestream.tts.synthesis import SpeechSynthesizer


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _settings(**overrides) -> Settings:
    values = {
        "elevenlabs_api_key": "xi-test",
        "llm_api_key": "sk-test",
        "tts_provider": "elevenlabs",
        "previous_text_limit": 10,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class ChunkedStream(httpx.AsyncByteStream):
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk


def _synthesizer(handler, chunk_size: int = 8, **overrides) -> SpeechSynthesizer:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SpeechSynthesizer(_settings(**overrides), http_client=http_client, chunk_size=chunk_size)


async def _collect(synthesizer: SpeechSynthesizer, *args, **kwargs) -> list[bytes]:
    try:
        return [chunk async for chunk in synthesizer.synthesize(*args, **kwargs)]
    finally:
        await synthesizer.get_http_client().aclose()


@pytest.mark.anyio
async def test_elevenlabs_request_and_rechunking() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, stream=ChunkedStream([b"\x01\x02\x03", b"\x04" * 20, b"\x05\x06"]))

    synthesizer = _synthesizer(handler)
    chunks = await _collect(
        synthesizer, "Let go.", previous_text="0123456789abcdef", voice_id="voice-9"
    )

    # First aligned bytes go out immediately, then fixed-size pieces, odd tail byte dropped
    assert chunks[0] == b"\x01\x02"
    assert all(len(chunk) % 2 == 0 for chunk in chunks)
    assert [len(chunk) for chunk in chunks[1:]] == [8, 8, 6]
    assert sum(len(chunk) for chunk in chunks) == 24

    request = captured[0]
    assert request.url.path == "/v1/text-to-speech/voice-9/stream"
    assert request.url.params["output_format"] == "pcm_24000"
    assert request.headers["xi-api-key"] == "xi-test"
    payload = json.loads(request.content)
    assert payload["text"] == "Let go."
    assert payload["previous_text"] == "6789abcdef"
    assert payload["voice_settings"]["speed"] == pytest.approx(0.95)


@pytest.mark.anyio
async def test_default_voice_and_no_previous_text() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=b"\x00\x00")

    synthesizer = _synthesizer(handler)
    chunks = await _collect(synthesizer, "Rest.")

    assert chunks == [b"\x00\x00"]
    assert "EXAVITQu4vr4xnSDxMaL" in captured[0].url.path
    assert "previous_text" not in json.loads(captured[0].content)


@pytest.mark.anyio
async def test_provider_error_yields_no_audio() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"detail": "boom"})

    synthesizer = _synthesizer(handler)
    assert await _collect(synthesizer, "Rest.") == []


@pytest.mark.anyio
async def test_missing_key_yields_no_audio() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    synthesizer = _synthesizer(handler, elevenlabs_api_key=None)
    assert await _collect(synthesizer, "Rest.") == []


@pytest.mark.anyio
async def test_blank_sentence_is_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    synthesizer = _synthesizer(handler)
    assert await _collect(synthesizer, "   ") == []


@pytest.mark.anyio
async def test_cancel_stops_between_chunks() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=ChunkedStream([b"\x00" * 8] * 5))

    cancel = CancelSignal()
    synthesizer = _synthesizer(handler)
    received: list[bytes] = []
    try:
        async for chunk in synthesizer.synthesize("Rest.", cancel=cancel):
            received.append(chunk)
            cancel.cancel()
    finally:
        await synthesizer.get_http_client().aclose()

    assert len(received) == 1


@pytest.mark.anyio
async def test_openai_provider_requests_raw_pcm() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=b"\x10\x00\x20\x00")

    synthesizer = _synthesizer(handler, tts_provider="openai")
    chunks = await _collect(synthesizer, "Rest.", voice_id="alloy")

    assert b"".join(chunks) == b"\x10\x00\x20\x00"
    assert synthesizer.sample_rate == 24000
    request = captured[0]
    assert request.url.path == "/v1/audio/speech"
    assert request.headers["Authorization"] == "Bearer sk-test"
    payload = json.loads(request.content)
    assert payload["response_format"] == "pcm"
    assert payload["voice"] == "alloy"


def test_sample_rate_follows_elevenlabs_format() -> None:
    assert SpeechSynthesizer(_settings(tts_sample_rate=16000)).sample_rate == 16000
    assert SpeechSynthesizer(_settings(tts_sample_rate=48000)).sample_rate == 44100

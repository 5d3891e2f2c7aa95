"""Tests for the streaming Responses client."""

from __future__ import annotations

import json

import httpx
import pytest

from guidestream.config import Settings
from guidestream.generation import (
    GenerationError,
    GenerationRequest,
    ResponsesClient,
    parse_sse_event,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _settings(**overrides) -> Settings:
    values = {"llm_api_key": "sk-test", "llm_base_url": "https://llm.example/v1"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _sse(*events: dict) -> bytes:
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}\ndata: {json.dumps(event)}\n\n")
    return "".join(lines).encode()


def _client(handler) -> tuple[ResponsesClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ResponsesClient(_settings(), http_client=http_client), http_client


@pytest.mark.anyio
async def test_streams_tokens_and_captures_continuation_token() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        body = _sse(
            {"type": "response.created", "response": {"id": "resp_42"}},
            {"type": "response.output_text.delta", "delta": "Close your "},
            {"type": "response.output_text.delta", "delta": "eyes."},
            {"type": "response.completed", "response": {"id": "resp_42"}},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    client, http_client = _client(handler)
    try:
        stream = client.stream(
            GenerationRequest(
                instructions="Be calm.",
                user_message="Continue.",
                continuation_token="resp_41",
            )
        )
        tokens = [token async for token in stream]
    finally:
        await http_client.aclose()

    assert tokens == ["Close your ", "eyes."]
    assert stream.continuation_token == "resp_42"

    request = captured[0]
    assert str(request.url) == "https://llm.example/v1/responses"
    assert request.headers["Authorization"] == "Bearer sk-test"
    payload = json.loads(request.content)
    assert payload["instructions"] == "Be calm."
    assert payload["input"] == [{"role": "user", "content": "Continue."}]
    assert payload["previous_response_id"] == "resp_41"
    assert payload["stream"] is True
    assert payload["store"] is True


def test_payload_omits_previous_response_id_on_first_call() -> None:
    client = ResponsesClient(_settings(llm_model="gpt-test", llm_temperature=0.5))
    payload = client.build_payload(GenerationRequest("Be calm.", "Begin the session."))
    assert "previous_response_id" not in payload
    assert payload["model"] == "gpt-test"
    assert payload["temperature"] == 0.5


@pytest.mark.anyio
async def test_http_error_status_raises_generation_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})

    client, http_client = _client(handler)
    try:
        with pytest.raises(GenerationError) as excinfo:
            [token async for token in client.stream(GenerationRequest("i", "u"))]
    finally:
        await http_client.aclose()

    assert excinfo.value.status_code == 429
    assert excinfo.value.detail == "Rate limit exceeded"


@pytest.mark.anyio
async def test_failed_event_raises_generation_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(
            {"type": "response.created", "response": {"id": "resp_1"}},
            {"type": "response.output_text.delta", "delta": "Hello."},
            {"type": "response.failed", "response": {"error": {"message": "model overloaded"}}},
        )
        return httpx.Response(200, content=body)

    client, http_client = _client(handler)
    tokens: list[str] = []
    stream = client.stream(GenerationRequest("i", "u"))
    try:
        with pytest.raises(GenerationError, match="model overloaded"):
            async for token in stream:
                tokens.append(token)
    finally:
        await http_client.aclose()

    assert tokens == ["Hello."]
    assert stream.continuation_token == "resp_1"


@pytest.mark.anyio
async def test_transport_error_maps_to_bad_gateway() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, http_client = _client(handler)
    try:
        with pytest.raises(GenerationError) as excinfo:
            [token async for token in client.stream(GenerationRequest("i", "u"))]
    finally:
        await http_client.aclose()
    assert excinfo.value.status_code == 502


@pytest.mark.anyio
async def test_early_close_keeps_continuation_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(
            {"type": "response.created", "response": {"id": "resp_7"}},
            {"type": "response.output_text.delta", "delta": "One."},
            {"type": "response.output_text.delta", "delta": "Two."},
        )
        return httpx.Response(200, content=body)

    client, http_client = _client(handler)
    try:
        stream = client.stream(GenerationRequest("i", "u"))
        assert await stream.__anext__() == "One."
        await stream.aclose()
    finally:
        await http_client.aclose()
    assert stream.continuation_token == "resp_7"


def test_parse_sse_event_joins_data_lines() -> None:
    event = parse_sse_event(["event: delta", "data: a", "data: b", "id: 3"])
    assert event.event == "delta"
    assert event.data == "a\nb"
    assert event.event_id == "3"

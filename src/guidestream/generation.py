"""Streaming client for the text-generation service.

The orchestrator only needs a narrow contract: send instructions, a user
message and an optional continuation token, then read text tokens as they
arrive. :class:`ResponsesClient` implements that contract against an
OpenAI-compatible ``/responses`` endpoint using server-sent events.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Optional, Protocol

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """Wrap transport or API failures when talking to the generation service."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class GenerationRequest:
    """One generation call."""

    instructions: str
    user_message: str
    continuation_token: Optional[str] = None


class TokenStream(Protocol):
    """Async iterator of text tokens that learns its continuation token."""

    continuation_token: Optional[str]

    def __aiter__(self) -> AsyncIterator[str]: ...

    async def __anext__(self) -> str: ...

    async def aclose(self) -> None: ...


class GenerationService(Protocol):
    def stream(self, request: GenerationRequest) -> TokenStream: ...


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[ServerSentEvent]:
    """Group the response lines into events separated by blank lines."""

    buffer: list[str] = []
    async for line in response.aiter_lines():
        if not line:
            if buffer:
                yield parse_sse_event(buffer)
                buffer.clear()
            continue
        if line.startswith(":"):
            continue
        buffer.append(line)
    if buffer:
        yield parse_sse_event(buffer)


def parse_sse_event(lines: Iterable[str]) -> ServerSentEvent:
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    data_lines: list[str] = []

    for line in lines:
        field, _, value = line.partition(":")
        value = value.lstrip(" ")
        if field == "event":
            event_name = value or None
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value or None

    return ServerSentEvent(
        data="\n".join(data_lines), event=event_name or "message", event_id=event_id
    )


def extract_error_detail(raw: bytes) -> Any:
    if not raw:
        return "Generation service returned an empty error response."
    text = raw.decode("utf-8", errors="ignore")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        return error or payload
    return payload


class ResponsesTokenStream:
    """Token iterator over one streamed ``/responses`` call.

    ``continuation_token`` is filled in from the ``response.created`` event and
    stays available after iteration ends or the stream is closed early.
    """

    def __init__(self, client: "ResponsesClient", payload: dict[str, Any]):
        self._client = client
        self._payload = payload
        self.continuation_token: Optional[str] = None
        self._iterator = self._iterate()

    def __aiter__(self) -> "ResponsesTokenStream":
        return self

    async def __anext__(self) -> str:
        return await self._iterator.__anext__()

    async def aclose(self) -> None:
        await self._iterator.aclose()

    async def _iterate(self) -> AsyncIterator[str]:
        http_client = await self._client.get_http_client()
        try:
            async with http_client.stream(
                "POST",
                self._client.url,
                headers=self._client.headers,
                json=self._payload,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise GenerationError(response.status_code, extract_error_detail(body))

                async for event in iter_sse_events(response):
                    token = self._handle_event(event)
                    if token:
                        yield token
        except httpx.HTTPError as exc:
            raise GenerationError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    def _handle_event(self, event: ServerSentEvent) -> Optional[str]:
        if not event.data or event.data == "[DONE]":
            return None
        try:
            chunk = json.loads(event.data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON generation event: %s", event.data[:200])
            return None
        if not isinstance(chunk, dict):
            return None

        event_type = chunk.get("type") or event.event
        if event_type == "response.created":
            response_id = (chunk.get("response") or {}).get("id")
            if response_id:
                self.continuation_token = response_id
            return None
        if event_type == "response.output_text.delta":
            delta = chunk.get("delta")
            return delta if isinstance(delta, str) else None
        if event_type == "error":
            raise GenerationError(
                status.HTTP_502_BAD_GATEWAY,
                chunk.get("message") or "Generation stream error",
            )
        if event_type == "response.failed":
            error = (chunk.get("response") or {}).get("error") or {}
            raise GenerationError(
                status.HTTP_502_BAD_GATEWAY,
                error.get("message") or "Generation failed",
            )
        return None


class ResponsesClient:
    """Client responsible for streaming text from an OpenAI-compatible Responses API."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None
        self._client_lock = asyncio.Lock()

    async def get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        async with self._client_lock:
            if self._http_client is None:
                self._http_client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self._settings.request_timeout, connect=10.0),
                    limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                )
        return self._http_client

    @property
    def url(self) -> str:
        return f"{str(self._settings.llm_base_url).rstrip('/')}/responses"

    @property
    def headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._settings.llm_api_key is not None:
            headers["Authorization"] = (
                f"Bearer {self._settings.llm_api_key.get_secret_value()}"
            )
        return headers

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.llm_model,
            "instructions": request.instructions,
            "input": [{"role": "user", "content": request.user_message}],
            "temperature": self._settings.llm_temperature,
            "max_output_tokens": self._settings.llm_max_output_tokens,
            "stream": True,
            "store": True,
        }
        if request.continuation_token:
            payload["previous_response_id"] = request.continuation_token
        return payload

    def stream(self, request: GenerationRequest) -> ResponsesTokenStream:
        return ResponsesTokenStream(self, self.build_payload(request))

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None


__all__ = [
    "GenerationError",
    "GenerationRequest",
    "GenerationService",
    "ResponsesClient",
    "ResponsesTokenStream",
    "ServerSentEvent",
    "TokenStream",
    "iter_sse_events",
    "parse_sse_event",
]

from __future__ import annotations

import json
from typing import Any, Iterator, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sse_starlette.sse import AppStatus

from guidestream.config import Settings, get_settings
from guidestream.generation import GenerationError, GenerationRequest
from guidestream.routers.session import router as session_router
from guidestream.session.orchestrator import FIRST_USER_MESSAGE, WIND_DOWN_USER_MESSAGE


class StubStream:
    def __init__(self, tokens: list[str], fail: bool = False) -> None:
        self._tokens = list(tokens)
        self._fail = fail
        self.continuation_token: Optional[str] = None
        self.closed = False

    def __aiter__(self) -> "StubStream":
        return self

    async def __anext__(self) -> str:
        self.continuation_token = "resp-new"
        if self._fail:
            raise GenerationError(503, "service unavailable")
        if not self._tokens:
            raise StopAsyncIteration
        return self._tokens.pop(0)

    async def aclose(self) -> None:
        self.closed = True


class StubGenerator:
    def __init__(self, sentences: int = 5, fail: bool = False) -> None:
        self.sentences = sentences
        self.fail = fail
        self.requests: list[GenerationRequest] = []
        self.streams: list[StubStream] = []

    def stream(self, request: GenerationRequest) -> StubStream:
        self.requests.append(request)
        stream = StubStream(
            [f"Sentence {index} flows gently by. " for index in range(self.sentences)],
            fail=self.fail,
        )
        self.streams.append(stream)
        return stream


class StubSynthesizer:
    sample_rate = 22050

    def __init__(self) -> None:
        self.calls: list[tuple[str, Optional[str], Optional[str]]] = []

    async def synthesize(self, sentence, previous_text=None, cancel=None, voice_id=None):
        self.calls.append((sentence, previous_text, voice_id))
        yield b"\x01\x00"
        yield b"\x02\x00"


class StubStore:
    def __init__(self) -> None:
        self.records: dict[str, Any] = {}

    async def upsert(self, record) -> None:
        self.records[record.session_id] = record

    async def delete(self, session_id: str) -> bool:
        return self.records.pop(session_id, None) is not None


@pytest.fixture(autouse=True)
def reset_sse_app_status() -> Iterator[None]:
    # The exit event is bound to the loop of the first TestClient that used it
    AppStatus.should_exit_event = None
    yield
    AppStatus.should_exit_event = None


def make_client(
    generator: Optional[StubGenerator] = None,
    store: Optional[StubStore] = None,
) -> TestClient:
    app = FastAPI()
    app.include_router(session_router)
    app.state.generation_client = generator or StubGenerator()
    app.state.synthesizer = StubSynthesizer()
    app.state.session_store = store
    app.dependency_overrides[get_settings] = lambda: Settings(
        _env_file=None, min_sentence_length=1
    )
    return TestClient(app)


def parse_sse(body: str) -> list[tuple[str, dict[str, Any]]]:
    events: list[tuple[str, dict[str, Any]]] = []
    name: Optional[str] = None
    data: list[str] = []
    for line in body.splitlines() + [""]:
        if not line:
            if data:
                events.append((name or "message", json.loads("\n".join(data))))
            name, data = None, []
            continue
        field, _, value = line.partition(":")
        if field == "event":
            name = value.strip()
        elif field == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    return events


def test_start_returns_session_id_and_budgets() -> None:
    store = StubStore()
    client = make_client(store=store)

    response = client.post(
        "/api/session/start", json={"sessionLength": 20, "mood": "anxious", "voiceId": "v3"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["phaseConfig"]["introduction"] == {"sentenceBudget": 31, "windDownAt": 26}
    assert set(body["phaseConfig"]) == {
        "introduction",
        "regulation",
        "deepening",
        "release",
        "closing",
    }
    record = store.records[body["sessionId"]]
    assert record.mood == "anxious"
    assert record.voice_id == "v3"
    assert record.session_length_minutes == 20


def test_start_falls_back_to_default_length() -> None:
    client = make_client()
    body = client.post("/api/session/start", json={"sessionLength": "forever"}).json()
    assert body["phaseConfig"]["introduction"] == {"sentenceBudget": 23, "windDownAt": 20}


def test_generate_rejects_unknown_phase() -> None:
    client = make_client()
    response = client.post("/api/session/generate", json={"phase": "hypnosis"})
    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid phase"}


def test_generate_streams_sentences_capped_by_remaining_budget() -> None:
    generator = StubGenerator(sentences=5)
    client = make_client(generator)

    response = client.post(
        "/api/session/generate",
        json={
            "phase": "introduction",
            "sessionLength": 15,
            "sentencesSoFar": 21,
            "previousResponseId": "resp-old",
        },
    )

    assert response.status_code == 200
    events = parse_sse(response.text)
    assert [name for name, _ in events] == ["sentence", "sentence", "done"]
    assert [payload["index"] for _, payload in events[:2]] == [21, 22]
    assert events[0][1]["sentence"] == "Sentence 0 flows gently by."
    assert events[-1][1] == {"done": True, "totalSentences": 23, "responseId": "resp-new"}

    request = generator.requests[0]
    assert request.continuation_token == "resp-old"
    assert request.user_message == "Continue. The session is now entering the introduction phase."
    assert generator.streams[0].closed


def test_generate_first_and_wind_down_messages() -> None:
    generator = StubGenerator(sentences=1)
    client = make_client(generator)

    client.post("/api/session/generate", json={"phase": "introduction"})
    client.post(
        "/api/session/generate",
        json={"phase": "release", "isWindDown": True, "mood": "sad", "sentencesSoFar": 3},
    )

    first, wind_down = generator.requests
    assert first.user_message == FIRST_USER_MESSAGE
    assert "TRANSITION:" not in first.instructions
    assert wind_down.user_message == WIND_DOWN_USER_MESSAGE
    assert "TRANSITION:" in wind_down.instructions
    assert "feeling sad" in wind_down.instructions


def test_generate_with_exhausted_budget_only_reports_done() -> None:
    generator = StubGenerator()
    client = make_client(generator)

    response = client.post(
        "/api/session/generate", json={"phase": "closing", "sentencesSoFar": 500}
    )

    assert parse_sse(response.text) == [
        ("done", {"done": True, "totalSentences": 500, "responseId": None})
    ]
    assert generator.requests == []


def test_generate_reports_generation_failure_as_event() -> None:
    client = make_client(StubGenerator(fail=True))
    response = client.post("/api/session/generate", json={"phase": "deepening"})
    assert parse_sse(response.text) == [("error", {"error": "service unavailable"})]


def test_tts_streams_pcm() -> None:
    client = make_client()
    response = client.post("/api/session/tts", json={"text": "Rest now.", "previousText": "Hi."})
    assert response.status_code == 200
    assert response.content == b"\x01\x00\x02\x00"
    assert response.headers["content-type"].startswith("audio/pcm")
    assert response.headers["x-sample-rate"] == "22050"


@pytest.mark.parametrize("payload", [{}, {"text": "   "}, {"text": 42}])
def test_tts_rejects_empty_text(payload) -> None:
    client = make_client()
    response = client.post("/api/session/tts", json=payload)
    assert response.status_code == 400
    assert response.json() == {"detail": "text must be a non-empty string"}


def test_complete_deletes_checkpoint() -> None:
    store = StubStore()
    client = make_client(store=store)
    session_id = client.post("/api/session/start", json={}).json()["sessionId"]

    response = client.post("/api/session/complete", json={"sessionId": session_id})

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert session_id not in store.records


@pytest.mark.parametrize("payload", [{}, {"sessionId": ""}, {"sessionId": 7}])
def test_complete_requires_session_id(payload) -> None:
    client = make_client()
    response = client.post("/api/session/complete", json=payload)
    assert response.status_code == 400
    assert response.json() == {"detail": "sessionId must be a non-empty string"}

from __future__ import annotations

from typing import Optional

import pytest

from guidestream.generation import GenerationError, GenerationRequest
from guidestream.session.budgets import compute_budgets
from guidestream.session.cancellation import CancelSignal
from guidestream.session.events import (
    PhaseStart,
    PhaseTransition,
    SentenceEvent,
    SessionComplete,
    SessionError,
    event_to_dict,
)
from guidestream.session.orchestrator import (
    FIRST_USER_MESSAGE,
    WIND_DOWN_USER_MESSAGE,
    SessionOrchestrator,
)
from guidestream.session.phases import SESSION_PHASES, SessionPhase
from guidestream.session.state import SessionRecord, SessionStateStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeTokenStream:
    def __init__(self, tokens: list[str], token: str, fail: bool = False) -> None:
        self._tokens = list(tokens)
        self._token = token
        self._fail = fail
        self.continuation_token: Optional[str] = None
        self.closed = False

    def __aiter__(self) -> "FakeTokenStream":
        return self

    async def __anext__(self) -> str:
        self.continuation_token = self._token
        if self._fail:
            raise GenerationError(502, "upstream unavailable")
        if not self._tokens:
            raise StopAsyncIteration
        return self._tokens.pop(0)

    async def aclose(self) -> None:
        self.closed = True


class FakeGenerator:
    def __init__(self, sentences_per_call: int = 500, fail_on_call: Optional[int] = None) -> None:
        self.sentences_per_call = sentences_per_call
        self.fail_on_call = fail_on_call
        self.requests: list[GenerationRequest] = []
        self.streams: list[FakeTokenStream] = []

    def stream(self, request: GenerationRequest) -> FakeTokenStream:
        self.requests.append(request)
        call = len(self.requests)
        tokens = [
            f"Sentence {call}-{index} is calm and slow. "
            for index in range(self.sentences_per_call)
        ]
        stream = FakeTokenStream(tokens, f"resp-{call}", fail=call == self.fail_on_call)
        self.streams.append(stream)
        return stream


async def _collect(orchestrator: SessionOrchestrator, cancel: Optional[CancelSignal] = None):
    return [event async for event in orchestrator.run(cancel or CancelSignal())]


@pytest.mark.anyio
async def test_full_session_fills_every_budget() -> None:
    generator = FakeGenerator()
    orchestrator = SessionOrchestrator(
        "s1", generator, session_length_minutes=10, min_sentence_length=1
    )

    events = await _collect(orchestrator)

    budgets = compute_budgets(10)
    sentences = [event for event in events if isinstance(event, SentenceEvent)]
    assert len(sentences) == sum(budget.sentence_budget for budget in budgets.values())
    assert [event.index for event in sentences] == list(range(len(sentences)))
    for phase in SESSION_PHASES:
        in_phase = [event for event in sentences if event.phase is phase]
        assert len(in_phase) == budgets[phase].sentence_budget

    starts = [event for event in events if isinstance(event, PhaseStart)]
    assert [(event.phase, event.phase_index) for event in starts] == [
        (phase, index) for index, phase in enumerate(SESSION_PHASES)
    ]
    transitions = [event for event in events if isinstance(event, PhaseTransition)]
    assert [(event.from_phase, event.to_phase) for event in transitions] == list(
        zip(SESSION_PHASES, SESSION_PHASES[1:])
    )
    assert isinstance(events[0], PhaseStart)
    assert isinstance(events[-1], SessionComplete)
    assert all(stream.closed for stream in generator.streams)


@pytest.mark.anyio
async def test_main_and_wind_down_calls_chain_continuation_tokens() -> None:
    generator = FakeGenerator()
    orchestrator = SessionOrchestrator(
        "s1", generator, session_length_minutes=10, min_sentence_length=1
    )
    await _collect(orchestrator)

    requests = generator.requests
    assert len(requests) == 2 * len(SESSION_PHASES)

    first, wind_down, second = requests[0], requests[1], requests[2]
    assert first.user_message == FIRST_USER_MESSAGE
    assert first.continuation_token is None
    assert "CURRENT PHASE: INTRODUCTION" in first.instructions
    assert "TRANSITION:" not in first.instructions

    assert wind_down.user_message == WIND_DOWN_USER_MESSAGE
    assert wind_down.continuation_token == "resp-1"
    assert "TRANSITION:" in wind_down.instructions

    assert second.user_message == (
        "Continue. The session is now entering the regulation phase."
    )
    assert second.continuation_token == "resp-2"
    assert "CURRENT PHASE: REGULATION" in second.instructions

    closing_wind_down = requests[-1]
    assert "CURRENT PHASE: CLOSING" in closing_wind_down.instructions
    assert "TRANSITION:" not in closing_wind_down.instructions
    assert orchestrator.continuation_token == f"resp-{len(requests)}"


@pytest.mark.anyio
async def test_short_calls_still_complete_the_session() -> None:
    generator = FakeGenerator(sentences_per_call=2)
    orchestrator = SessionOrchestrator(
        "s1", generator, session_length_minutes=15, min_sentence_length=1
    )

    events = await _collect(orchestrator)

    sentences = [event for event in events if isinstance(event, SentenceEvent)]
    assert len(sentences) == 4 * len(SESSION_PHASES)
    assert isinstance(events[-1], SessionComplete)


@pytest.mark.anyio
async def test_mood_context_reaches_instructions() -> None:
    generator = FakeGenerator(sentences_per_call=1)
    orchestrator = SessionOrchestrator(
        "s1", generator, mood="anxious", min_sentence_length=1
    )
    await _collect(orchestrator)
    assert all("feeling anxious" in request.instructions for request in generator.requests)


@pytest.mark.anyio
async def test_generation_failure_ends_with_single_error() -> None:
    generator = FakeGenerator(fail_on_call=1)
    orchestrator = SessionOrchestrator("s1", generator, min_sentence_length=1)

    events = await _collect(orchestrator)

    assert len(events) == 2
    assert isinstance(events[0], PhaseStart)
    assert events[1] == SessionError(message="upstream unavailable")
    assert event_to_dict(events[1]) == {"message": "upstream unavailable", "type": "error"}
    assert generator.streams[0].closed


@pytest.mark.anyio
async def test_cancel_stops_yielding_promptly() -> None:
    generator = FakeGenerator()
    orchestrator = SessionOrchestrator("s1", generator, min_sentence_length=1)
    cancel = CancelSignal()

    events = []
    async for event in orchestrator.run(cancel):
        events.append(event)
        if isinstance(event, SentenceEvent) and event.index == 2:
            cancel.cancel()

    assert isinstance(events[-1], SentenceEvent)
    assert events[-1].index == 2
    assert len(generator.requests) == 1
    assert generator.streams[0].closed


@pytest.mark.anyio
async def test_cancelled_before_start_yields_nothing() -> None:
    cancel = CancelSignal()
    cancel.cancel()
    generator = FakeGenerator()
    events = await _collect(SessionOrchestrator("s1", generator), cancel)
    assert events == []
    assert generator.requests == []


@pytest.mark.anyio
async def test_checkpoint_tracks_progress(tmp_path) -> None:
    store = SessionStateStore(tmp_path / "state.db")
    await store.initialize()
    try:
        await store.upsert(SessionRecord(session_id="s1", mood="sad", voice_id="v1"))
        generator = FakeGenerator(sentences_per_call=1)
        orchestrator = SessionOrchestrator(
            "s1", generator, mood="sad", store=store, min_sentence_length=1
        )

        await _collect(orchestrator)

        record = await store.get("s1")
        assert record is not None
        assert record.current_phase is SessionPhase.CLOSING
        assert record.total_sentences == 2 * len(SESSION_PHASES)
        assert record.sentences_in_phase == 2
        assert record.continuation_token == f"resp-{len(generator.requests)}"
        assert record.phase_budgets["deepening"] == 55
        assert record.voice_id == "v1"
    finally:
        await store.close()


@pytest.mark.anyio
async def test_missing_checkpoint_is_not_created(tmp_path) -> None:
    store = SessionStateStore(tmp_path / "state.db")
    await store.initialize()
    try:
        orchestrator = SessionOrchestrator(
            "s1", FakeGenerator(sentences_per_call=1), store=store, min_sentence_length=1
        )
        events = await _collect(orchestrator)
        assert isinstance(events[-1], SessionComplete)
        assert await store.get("s1") is None
    finally:
        await store.close()

"""REST fallback for clients that cannot hold the duplex channel open."""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import aclosing
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sse_starlette.sse import EventSourceResponse
from starlette.requests import HTTPConnection

from ..config import Settings, get_settings
from ..generation import GenerationError, GenerationRequest, GenerationService
from ..schemas.session import (
    CompleteSessionRequest,
    CompleteSessionResponse,
    GenerateRequest,
    SpeechRequest,
    StartSessionRequest,
    StartSessionResponse,
)
from ..session.budgets import budgets_to_dict, compute_budgets, resolve_session_length
from ..session.chunker import chunk_by_sentence
from ..session.orchestrator import FIRST_USER_MESSAGE, WIND_DOWN_USER_MESSAGE
from ..session.phases import InvalidPhaseError, SessionPhase, parse_phase
from ..session.prompts import build_phase_instructions, mood_context, resolve_mood, transition_hint
from ..session.state import SessionRecord, SessionStateStore
from ..tts.synthesis import SpeechSynthesizer

router = APIRouter(prefix="/api/session", tags=["session"])
logger = logging.getLogger(__name__)


def get_generation_service(connection: HTTPConnection) -> GenerationService:
    return connection.app.state.generation_client


def get_synthesizer(connection: HTTPConnection) -> SpeechSynthesizer:
    return connection.app.state.synthesizer


def get_session_store(connection: HTTPConnection) -> Optional[SessionStateStore]:
    return getattr(connection.app.state, "session_store", None)


def _session_length(value: Any, settings: Settings) -> int:
    return resolve_session_length(
        value, settings.allowed_session_lengths, settings.default_session_length
    )


@router.post("/start", response_model=StartSessionResponse, response_model_by_alias=True)
async def start_session(
    payload: StartSessionRequest,
    settings: Settings = Depends(get_settings),
    store: Optional[SessionStateStore] = Depends(get_session_store),
) -> dict[str, Any]:
    """Allocate a session id and return the phase budgets for the chosen length."""

    length = _session_length(payload.session_length, settings)
    budgets = compute_budgets(length, settings.sentences_per_minute)
    session_id = str(uuid.uuid4())

    if store is not None:
        record = SessionRecord(
            session_id=session_id,
            session_length_minutes=length,
            mood=resolve_mood(payload.mood),
            voice_id=payload.voice_id,
            phase_budgets={
                phase.value: budget.sentence_budget for phase, budget in budgets.items()
            },
        )
        try:
            await store.upsert(record)
        except Exception as exc:
            logger.warning("Failed to seed checkpoint for %s: %s", session_id, exc)

    return {"sessionId": session_id, "phaseConfig": budgets_to_dict(budgets)}


def _user_message(phase: SessionPhase, payload: GenerateRequest) -> str:
    if payload.is_wind_down:
        return WIND_DOWN_USER_MESSAGE
    if payload.previous_response_id is None and payload.sentences_so_far == 0:
        return FIRST_USER_MESSAGE
    return f"Continue. The session is now entering the {phase.value} phase."


@router.post("/generate", response_model=None)
async def generate_phase(
    payload: GenerateRequest,
    settings: Settings = Depends(get_settings),
    generator: GenerationService = Depends(get_generation_service),
) -> EventSourceResponse:
    """Stream one phase of sentences as server-sent events."""

    try:
        phase = parse_phase(payload.phase or "")
    except InvalidPhaseError as exc:
        raise HTTPException(status_code=400, detail="Invalid phase") from exc

    length = _session_length(payload.session_length, settings)
    budget = compute_budgets(length, settings.sentences_per_minute)[phase]
    remaining = max(0, budget.sentence_budget - payload.sentences_so_far)

    instructions = build_phase_instructions(
        phase,
        transition_hint=(transition_hint(phase) or None) if payload.is_wind_down else None,
        mood_context=mood_context(payload.mood) if payload.mood else None,
    )
    request = GenerationRequest(
        instructions=instructions,
        user_message=_user_message(phase, payload),
        continuation_token=payload.previous_response_id,
    )

    async def event_publisher():
        response_id = payload.previous_response_id
        emitted = 0
        try:
            if remaining > 0:
                stream = generator.stream(request)
                try:
                    sentences = chunk_by_sentence(stream, settings.min_sentence_length)
                    async with aclosing(sentences):
                        async for sentence in sentences:
                            response_id = stream.continuation_token or response_id
                            yield {
                                "event": "sentence",
                                "data": json.dumps(
                                    {
                                        "sentence": sentence,
                                        "index": payload.sentences_so_far + emitted,
                                        "responseId": response_id,
                                    }
                                ),
                            }
                            emitted += 1
                            if emitted >= remaining:
                                break
                finally:
                    await stream.aclose()
                    response_id = stream.continuation_token or response_id

            yield {
                "event": "done",
                "data": json.dumps(
                    {
                        "done": True,
                        "totalSentences": payload.sentences_so_far + emitted,
                        "responseId": response_id,
                    }
                ),
            }
        except GenerationError as exc:
            detail = exc.detail if isinstance(exc.detail, str) else json.dumps(exc.detail)
            logger.error("Generation failed for phase %s: %s", phase.value, detail)
            yield {"event": "error", "data": json.dumps({"error": detail})}
        except Exception as exc:
            logger.error("Pipeline error for phase %s: %s", phase.value, exc, exc_info=True)
            yield {"event": "error", "data": json.dumps({"error": str(exc) or "Generation failed"})}

    return EventSourceResponse(event_publisher())


@router.post("/tts", response_model=None)
async def synthesize_sentence(
    payload: SpeechRequest,
    synthesizer: SpeechSynthesizer = Depends(get_synthesizer),
) -> StreamingResponse:
    """Stream raw 16-bit PCM for one sentence."""

    if not isinstance(payload.text, str) or not payload.text.strip():
        raise HTTPException(status_code=400, detail="text must be a non-empty string")

    audio = synthesizer.synthesize(
        payload.text,
        previous_text=payload.previous_text,
        voice_id=payload.voice_id,
    )
    return StreamingResponse(
        audio,
        media_type="audio/pcm",
        headers={"X-Sample-Rate": str(synthesizer.sample_rate)},
    )


@router.post("/complete", response_model=CompleteSessionResponse)
async def complete_session(
    payload: CompleteSessionRequest,
    store: Optional[SessionStateStore] = Depends(get_session_store),
) -> CompleteSessionResponse:
    """Discard the checkpoint of a finished session."""

    session_id = payload.session_id
    if not isinstance(session_id, str) or not session_id.strip():
        raise HTTPException(status_code=400, detail="sessionId must be a non-empty string")

    if store is not None:
        await store.delete(session_id)
    return CompleteSessionResponse(ok=True)


__all__ = [
    "get_generation_service",
    "get_session_store",
    "get_synthesizer",
    "router",
]

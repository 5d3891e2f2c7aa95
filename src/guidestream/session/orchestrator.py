"""
Session orchestrator: drives phased generation for one session.

Each phase gets up to two generation calls:

1. A main call with the phase instructions, capped at the wind-down
   threshold.
2. A wind-down call whose instructions add the phase's transition hint,
   capped at whatever is left of the phase budget.

The continuation token returned by each call is passed to the next one so the
generation service keeps narrative context without resending history. The
orchestrator yields text-level events only; audio is produced downstream.

Cancellation is cooperative. The :class:`CancelSignal` is checked before every
generation call and for every sentence, and a cancelled run simply stops
yielding. A generation failure ends the run with a single
:class:`SessionError`.
"""

from __future__ import annotations

import logging
import time
from contextlib import aclosing
from typing import AsyncIterator, Optional

from ..generation import GenerationRequest, GenerationService
from .budgets import DEFAULT_SESSION_LENGTH, SENTENCES_PER_MINUTE, PhaseBudget, compute_budgets
from .cancellation import CancelSignal
from .chunker import DEFAULT_MIN_LENGTH, chunk_by_sentence
from .events import (
    OrchestratorEvent,
    PhaseStart,
    PhaseTransition,
    SentenceEvent,
    SessionComplete,
    SessionError,
)
from .phases import SESSION_PHASES, next_phase, phase_index
from .prompts import build_phase_instructions, mood_context, resolve_mood, transition_hint
from .state import SessionStateStore

logger = logging.getLogger(__name__)

FIRST_USER_MESSAGE = "Begin the session."
WIND_DOWN_USER_MESSAGE = "Continue."


class SessionOrchestrator:
    """Run a full session and yield :data:`OrchestratorEvent` values in order."""

    def __init__(
        self,
        session_id: str,
        generator: GenerationService,
        *,
        session_length_minutes: int = DEFAULT_SESSION_LENGTH,
        mood: Optional[str] = None,
        store: Optional[SessionStateStore] = None,
        min_sentence_length: int = DEFAULT_MIN_LENGTH,
        sentences_per_minute: int = SENTENCES_PER_MINUTE,
    ):
        self.session_id = session_id
        self.session_length_minutes = session_length_minutes
        self.mood = resolve_mood(mood)
        self.phase = SESSION_PHASES[0]
        self.continuation_token: Optional[str] = None
        self.sentences_in_phase = 0
        self.total_sentences = 0
        self.phase_budgets = compute_budgets(session_length_minutes, sentences_per_minute)
        self._generator = generator
        self._store = store
        self._min_sentence_length = min_sentence_length

    async def run(self, cancel: CancelSignal) -> AsyncIterator[OrchestratorEvent]:
        mood_text = mood_context(self.mood)

        try:
            while True:
                if cancel.cancelled:
                    return

                budget = self.phase_budgets[self.phase]
                yield PhaseStart(phase=self.phase, phase_index=phase_index(self.phase))
                await self._persist_state()

                main_message = (
                    FIRST_USER_MESSAGE
                    if self._is_first_call()
                    else f"Continue. The session is now entering the {self.phase.value} phase."
                )
                async with aclosing(
                    self._stream_phase_sentences(
                        build_phase_instructions(self.phase, mood_context=mood_text),
                        main_message,
                        budget.wind_down_at - self.sentences_in_phase,
                        budget,
                        cancel,
                    )
                ) as main_sentences:
                    async for event in main_sentences:
                        yield event

                if cancel.cancelled:
                    return

                if self.sentences_in_phase < budget.sentence_budget:
                    wind_down = self._stream_phase_sentences(
                        build_phase_instructions(
                            self.phase,
                            transition_hint=transition_hint(self.phase) or None,
                            mood_context=mood_text,
                        ),
                        WIND_DOWN_USER_MESSAGE,
                        budget.sentence_budget - self.sentences_in_phase,
                        budget,
                        cancel,
                    )
                    async with aclosing(wind_down) as wind_down_sentences:
                        async for event in wind_down_sentences:
                            yield event

                if cancel.cancelled:
                    return

                upcoming = next_phase(self.phase)
                if upcoming is None:
                    await self._persist_state()
                    logger.info(
                        "Session %s complete after %d sentences",
                        self.session_id,
                        self.total_sentences,
                    )
                    yield SessionComplete()
                    return

                previous = self.phase
                self.phase = upcoming
                self.sentences_in_phase = 0
                yield PhaseTransition(from_phase=previous, to_phase=upcoming)
                await self._persist_state()
        except Exception as exc:
            logger.error(
                "Session %s failed in phase %s: %s",
                self.session_id,
                self.phase.value,
                exc,
                exc_info=True,
            )
            yield SessionError(message=str(exc) or "Unknown orchestrator error")

    async def _stream_phase_sentences(
        self,
        instructions: str,
        user_message: str,
        max_sentences: int,
        budget: PhaseBudget,
        cancel: CancelSignal,
    ) -> AsyncIterator[SentenceEvent]:
        if max_sentences <= 0 or cancel.cancelled:
            return

        stream = self._generator.stream(
            GenerationRequest(
                instructions=instructions,
                user_message=user_message,
                continuation_token=self.continuation_token,
            )
        )
        sentences = chunk_by_sentence(stream, self._min_sentence_length)
        emitted = 0
        try:
            async for text in sentences:
                if cancel.cancelled:
                    return
                self.sentences_in_phase += 1
                self.total_sentences += 1
                emitted += 1
                yield SentenceEvent(
                    text=text, phase=self.phase, index=self.total_sentences - 1
                )
                if emitted >= max_sentences or self.sentences_in_phase >= budget.sentence_budget:
                    break
        finally:
            await sentences.aclose()
            await stream.aclose()
            if stream.continuation_token:
                self.continuation_token = stream.continuation_token

    def _is_first_call(self) -> bool:
        return self.total_sentences == 0 and self.continuation_token is None

    async def _persist_state(self) -> None:
        """Merge the run state into the stored checkpoint, if one exists."""
        if self._store is None:
            return
        try:
            record = await self._store.get(self.session_id)
            if record is None:
                return
            record.current_phase = self.phase
            record.phase_started_at = time.time()
            record.sentences_in_phase = self.sentences_in_phase
            record.total_sentences = self.total_sentences
            record.continuation_token = self.continuation_token
            record.phase_budgets = {
                phase.value: budget.sentence_budget
                for phase, budget in self.phase_budgets.items()
            }
            record.session_length_minutes = self.session_length_minutes
            await self._store.upsert(record)
        except Exception as exc:
            logger.warning(
                "Failed to checkpoint session %s: %s", self.session_id, exc
            )


__all__ = ["SessionOrchestrator", "FIRST_USER_MESSAGE", "WIND_DOWN_USER_MESSAGE"]

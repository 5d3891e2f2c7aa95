"""WebSocket route for the duplex session channel."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket

from ..config import Settings, get_settings
from ..generation import GenerationService
from ..session.orchestrator import SessionOrchestrator
from ..session.state import SessionStateStore
from ..tts.synthesis import SpeechSynthesizer
from ..ws.session_handler import OrchestratorFactory, SessionHandler
from .session import get_generation_service, get_session_store, get_synthesizer

router = APIRouter(prefix="/api/session", tags=["session"])
logger = logging.getLogger(__name__)


def build_orchestrator_factory(
    generator: GenerationService,
    settings: Settings,
    store: Optional[SessionStateStore],
) -> OrchestratorFactory:
    def factory(
        session_id: str, session_length: int, mood: Optional[str]
    ) -> SessionOrchestrator:
        return SessionOrchestrator(
            session_id,
            generator,
            session_length_minutes=session_length,
            mood=mood,
            store=store,
            min_sentence_length=settings.min_sentence_length,
            sentences_per_minute=settings.sentences_per_minute,
        )

    return factory


@router.websocket("/ws")
async def session_socket(
    websocket: WebSocket,
    settings: Settings = Depends(get_settings),
    generator: GenerationService = Depends(get_generation_service),
    synthesizer: SpeechSynthesizer = Depends(get_synthesizer),
    store: Optional[SessionStateStore] = Depends(get_session_store),
) -> None:
    handler = SessionHandler(
        websocket,
        orchestrator_factory=build_orchestrator_factory(generator, settings, store),
        synthesizer=synthesizer,
        settings=settings,
        store=store,
    )
    await handler.run()


__all__ = ["build_orchestrator_factory", "router"]

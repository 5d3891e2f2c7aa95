"""
Per-connection session handler for the duplex channel.

One :class:`SessionHandler` owns one WebSocket. It relays orchestrator events
to the client in order: ``text`` for a sentence, then that sentence's audio as
binary frames, then ``sentence_end``. Control messages from the client pause,
resume or end the stream while it runs.

States:

    idle ──start_session──▶ streaming ──complete/error──▶ idle
      │                         │
      └──────── end / disconnect ───────▶ ended

``paused`` is orthogonal to the states above and only holds the relay at the
next event boundary.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing, suppress
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Protocol, assert_never

from fastapi import WebSocket, WebSocketDisconnect

from ..config import Settings
from ..session.budgets import compute_budgets, resolve_session_length
from ..session.cancellation import CancelSignal, PauseGate
from ..session.events import (
    OrchestratorEvent,
    PhaseStart,
    PhaseTransition,
    SentenceEvent,
    SessionComplete,
    SessionError,
)
from ..session.prompts import resolve_mood
from ..session.state import SessionRecord, SessionStateStore
from .protocol import (
    ClientMessage,
    EndMessage,
    ErrorMessage,
    HeartbeatMessage,
    PauseMessage,
    PhaseStartMessage,
    PhaseTransitionMessage,
    ResumeMessage,
    SentenceEndMessage,
    SessionEndMessage,
    SessionStartMessage,
    StartSessionMessage,
    TextMessage,
    dump_message,
    parse_client_message,
)

logger = logging.getLogger(__name__)

INVALID_MESSAGE = "Invalid message format"
ALREADY_STREAMING = "Session already streaming"
CLIENT_END_REASON = "Session ended by client"
PIPELINE_ERROR = "Session pipeline error"


class HandlerState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    ENDED = "ended"


class SessionRunner(Protocol):
    def run(self, cancel: CancelSignal) -> AsyncIterator[OrchestratorEvent]: ...


class Synthesizer(Protocol):
    def synthesize(
        self,
        sentence: str,
        previous_text: Optional[str] = None,
        cancel: Optional[CancelSignal] = None,
        voice_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]: ...


OrchestratorFactory = Callable[[str, int, Optional[str]], SessionRunner]


class SessionHandler:
    """Drive one client connection from accept to close."""

    def __init__(
        self,
        websocket: WebSocket,
        *,
        orchestrator_factory: OrchestratorFactory,
        synthesizer: Synthesizer,
        settings: Settings,
        store: Optional[SessionStateStore] = None,
        session_id: Optional[str] = None,
        shutdown_timeout: float = 2.0,
    ):
        self.websocket = websocket
        self.session_id = session_id or str(uuid.uuid4())
        self.state = HandlerState.IDLE
        self._orchestrator_factory = orchestrator_factory
        self._synthesizer = synthesizer
        self._settings = settings
        self._store = store
        self._shutdown_timeout = shutdown_timeout
        self._cancel = CancelSignal()
        self._session_end_sent = False
        self._gate = PauseGate()
        self._send_lock = asyncio.Lock()
        self._closed = False
        self._stream_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    @property
    def paused(self) -> bool:
        return self._gate.paused

    async def run(self) -> None:
        """Accept the socket and process client messages until the session ends."""
        await self.websocket.accept()
        logger.info("Session %s connected", self.session_id)
        await self._send(SessionStartMessage(session_id=self.session_id))
        self._heartbeat_task = asyncio.create_task(self._heartbeat())

        try:
            while self.state is not HandlerState.ENDED:
                raw = await self._receive_text()
                message = parse_client_message(raw) if raw is not None else None
                if message is None:
                    await self._send(ErrorMessage(message=INVALID_MESSAGE))
                    continue
                await self._dispatch(message)
        except WebSocketDisconnect:
            logger.info("Session %s disconnected", self.session_id)
        except Exception as exc:
            logger.error("Unexpected error for session %s: %s", self.session_id, exc)
        finally:
            await self._shutdown()

    async def _receive_text(self) -> Optional[str]:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000))
        return message.get("text")

    async def _dispatch(self, message: ClientMessage) -> None:
        match message:
            case StartSessionMessage():
                await self._start(message)
            case PauseMessage():
                await self._gate.pause()
                logger.info("Session %s paused", self.session_id)
            case ResumeMessage():
                await self._gate.resume()
                logger.info("Session %s resumed", self.session_id)
            case EndMessage():
                await self._end()
            case _:
                assert_never(message)

    async def _start(self, message: StartSessionMessage) -> None:
        if self.state is HandlerState.STREAMING:
            await self._send(ErrorMessage(message=ALREADY_STREAMING))
            return

        session_length = resolve_session_length(
            message.session_length,
            self._settings.allowed_session_lengths,
            self._settings.default_session_length,
        )
        await self._seed_checkpoint(session_length, message)

        # One signal per run; a spent signal would end the next run immediately.
        self._cancel = CancelSignal()
        self._session_end_sent = False
        orchestrator = self._orchestrator_factory(
            self.session_id, session_length, message.mood
        )
        self.state = HandlerState.STREAMING
        logger.info(
            "Session %s streaming (%d minutes, mood=%s)",
            self.session_id,
            session_length,
            message.mood or "neutral",
        )
        self._stream_task = asyncio.create_task(
            self._relay(orchestrator, message.voice_id, self._cancel)
        )

    async def _seed_checkpoint(
        self, session_length: int, message: StartSessionMessage
    ) -> None:
        if self._store is None:
            return
        budgets = compute_budgets(session_length, self._settings.sentences_per_minute)
        record = SessionRecord(
            session_id=self.session_id,
            session_length_minutes=session_length,
            mood=resolve_mood(message.mood),
            voice_id=message.voice_id,
            phase_budgets={
                phase.value: budget.sentence_budget for phase, budget in budgets.items()
            },
        )
        try:
            await self._store.upsert(record)
        except Exception as exc:
            logger.warning("Failed to seed checkpoint for %s: %s", self.session_id, exc)

    async def _relay(
        self,
        orchestrator: SessionRunner,
        voice_id: Optional[str],
        cancel: CancelSignal,
    ) -> None:
        previous_text = ""
        try:
            async with aclosing(orchestrator.run(cancel)) as events:
                async for event in events:
                    await self._gate.wait()
                    if cancel.cancelled:
                        return

                    match event:
                        case PhaseStart():
                            await self._send(
                                PhaseStartMessage(
                                    phase=event.phase.value,
                                    phase_index=event.phase_index,
                                )
                            )
                        case SentenceEvent():
                            await self._send(TextMessage(data=event.text, index=event.index))
                            await self._relay_audio(event.text, previous_text, voice_id, cancel)
                            if cancel.cancelled:
                                return
                            await self._send(SentenceEndMessage(index=event.index))
                            previous_text = (
                                f"{previous_text} {event.text}" if previous_text else event.text
                            )
                        case PhaseTransition():
                            await self._send(
                                PhaseTransitionMessage(
                                    from_phase=event.from_phase.value,
                                    to_phase=event.to_phase.value,
                                )
                            )
                        case SessionComplete():
                            await self._send(SessionEndMessage())
                            self._session_end_sent = True
                        case SessionError():
                            await self._send(ErrorMessage(message=event.message))
                        case _:
                            assert_never(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Relay failed for session %s: %s", self.session_id, exc)
            cancel.cancel()
            try:
                await self._send(ErrorMessage(message=PIPELINE_ERROR))
            except Exception as send_exc:
                logger.debug("Could not report relay failure for %s: %s", self.session_id, send_exc)
        finally:
            if self.state is HandlerState.STREAMING:
                self.state = HandlerState.IDLE

    async def _relay_audio(
        self,
        text: str,
        previous_text: str,
        voice_id: Optional[str],
        cancel: CancelSignal,
    ) -> None:
        chunks = 0
        audio = self._synthesizer.synthesize(
            text, previous_text or None, cancel, voice_id
        )
        async with aclosing(audio) as stream:
            async for chunk in stream:
                await self._send_bytes(chunk)
                chunks += 1
        if chunks == 0 and not cancel.cancelled:
            logger.warning("No audio produced for sentence in session %s", self.session_id)

    async def _end(self) -> None:
        logger.info("Session %s ended by client", self.session_id)
        self._cancel.cancel()
        await self._gate.release()
        if not self._session_end_sent:
            await self._send(SessionEndMessage())
            self._session_end_sent = True
        self.state = HandlerState.ENDED
        await self._close(1000, CLIENT_END_REASON)

    async def _heartbeat(self) -> None:
        interval = self._settings.heartbeat_interval_seconds
        try:
            while not self._closed:
                await asyncio.sleep(interval)
                await self._send(HeartbeatMessage())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Heartbeat stopped for session %s: %s", self.session_id, exc)

    async def _shutdown(self) -> None:
        self._cancel.cancel()
        await self._gate.release()
        self.state = HandlerState.ENDED
        self._closed = True

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._heartbeat_task

        task = self._stream_task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self._shutdown_timeout)
            if not done:
                logger.warning("Relay for session %s did not stop in time", self.session_id)
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        logger.info("Session %s closed", self.session_id)

    async def _send(self, message: Any) -> None:
        await self._send_json(dump_message(message))

    async def _send_json(self, payload: dict[str, Any]) -> None:
        async with self._send_lock:
            if self._closed:
                return
            await self.websocket.send_json(payload)

    async def _send_bytes(self, data: bytes) -> None:
        async with self._send_lock:
            if self._closed:
                return
            await self.websocket.send_bytes(data)

    async def _close(self, code: int, reason: str) -> None:
        async with self._send_lock:
            if self._closed:
                return
            self._closed = True
            with suppress(RuntimeError):
                await self.websocket.close(code=code, reason=reason)


__all__ = [
    "ALREADY_STREAMING",
    "HandlerState",
    "INVALID_MESSAGE",
    "OrchestratorFactory",
    "PIPELINE_ERROR",
    "SessionHandler",
]

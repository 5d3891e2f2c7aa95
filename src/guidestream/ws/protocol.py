"""Message framing for the duplex session channel.

Text frames carry JSON objects tagged by ``type``. Binary frames carry raw
audio for the sentence most recently announced with a ``text`` message.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Client -> server


class StartSessionMessage(_Message):
    type: Literal["start_session"] = "start_session"
    prompt: Optional[str] = None
    # Untyped so a bad length falls back to the default instead of rejecting the message
    session_length: Any = Field(default=None, alias="sessionLength")
    mood: Optional[str] = None
    voice_id: Optional[str] = Field(default=None, alias="voiceId")


class PauseMessage(_Message):
    type: Literal["pause"] = "pause"


class ResumeMessage(_Message):
    type: Literal["resume"] = "resume"


class EndMessage(_Message):
    type: Literal["end"] = "end"


ClientMessage = Annotated[
    Union[StartSessionMessage, PauseMessage, ResumeMessage, EndMessage],
    Field(discriminator="type"),
]


# Server -> client


class SessionStartMessage(_Message):
    type: Literal["session_start"] = "session_start"
    session_id: str = Field(alias="sessionId")


class TextMessage(_Message):
    type: Literal["text"] = "text"
    data: str
    index: int


class SentenceEndMessage(_Message):
    type: Literal["sentence_end"] = "sentence_end"
    index: int


class PhaseStartMessage(_Message):
    type: Literal["phase_start"] = "phase_start"
    phase: str
    phase_index: int = Field(alias="phaseIndex")


class PhaseTransitionMessage(_Message):
    type: Literal["phase_transition"] = "phase_transition"
    from_phase: str = Field(alias="from")
    to_phase: str = Field(alias="to")


class SessionEndMessage(_Message):
    type: Literal["session_end"] = "session_end"


class ErrorMessage(_Message):
    type: Literal["error"] = "error"
    message: str


class HeartbeatMessage(_Message):
    type: Literal["heartbeat"] = "heartbeat"


ServerMessage = Annotated[
    Union[
        SessionStartMessage,
        TextMessage,
        SentenceEndMessage,
        PhaseStartMessage,
        PhaseTransitionMessage,
        SessionEndMessage,
        ErrorMessage,
        HeartbeatMessage,
    ],
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def _load(raw: Union[str, bytes, dict[str, Any]]) -> Any:
    if isinstance(raw, (str, bytes)):
        return json.loads(raw)
    return raw


def parse_client_message(
    raw: Union[str, bytes, dict[str, Any]],
) -> Optional[ClientMessage]:
    """Return the typed client message, or ``None`` when ``raw`` is not one."""

    try:
        return _client_adapter.validate_python(_load(raw))
    except (ValueError, ValidationError) as exc:
        logger.debug("Rejected client message: %s", exc)
        return None


def parse_server_message(
    raw: Union[str, bytes, dict[str, Any]],
) -> Optional[ServerMessage]:
    try:
        return _server_adapter.validate_python(_load(raw))
    except (ValueError, ValidationError) as exc:
        logger.debug("Rejected server message: %s", exc)
        return None


def dump_message(message: BaseModel) -> dict[str, Any]:
    """Serialise a protocol model with its wire field names."""

    return message.model_dump(by_alias=True, mode="json")


__all__ = [
    "ClientMessage",
    "EndMessage",
    "ErrorMessage",
    "HeartbeatMessage",
    "PauseMessage",
    "PhaseStartMessage",
    "PhaseTransitionMessage",
    "ResumeMessage",
    "SentenceEndMessage",
    "ServerMessage",
    "SessionEndMessage",
    "SessionStartMessage",
    "StartSessionMessage",
    "TextMessage",
    "dump_message",
    "parse_client_message",
    "parse_server_message",
]

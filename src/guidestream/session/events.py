"""Events produced by the session orchestrator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Union

from .phases import SessionPhase


@dataclass(frozen=True)
class PhaseStart:
    phase: SessionPhase
    phase_index: int
    type: Literal["phase_start"] = field(default="phase_start", init=False)


@dataclass(frozen=True)
class SentenceEvent:
    """One speakable sentence; ``index`` counts from zero across the session."""

    text: str
    phase: SessionPhase
    index: int
    type: Literal["sentence"] = field(default="sentence", init=False)


@dataclass(frozen=True)
class PhaseTransition:
    from_phase: SessionPhase
    to_phase: SessionPhase
    type: Literal["phase_transition"] = field(default="phase_transition", init=False)


@dataclass(frozen=True)
class SessionComplete:
    type: Literal["session_complete"] = field(default="session_complete", init=False)


@dataclass(frozen=True)
class SessionError:
    message: str
    type: Literal["error"] = field(default="error", init=False)


OrchestratorEvent = Union[
    PhaseStart, SentenceEvent, PhaseTransition, SessionComplete, SessionError
]


def event_to_dict(event: OrchestratorEvent) -> dict[str, Any]:
    """Return a JSON-friendly view of ``event`` for logs and debugging."""

    payload = asdict(event)
    for key, value in payload.items():
        if isinstance(value, SessionPhase):
            payload[key] = value.value
    return payload


__all__ = [
    "OrchestratorEvent",
    "PhaseStart",
    "PhaseTransition",
    "SentenceEvent",
    "SessionComplete",
    "SessionError",
    "event_to_dict",
]

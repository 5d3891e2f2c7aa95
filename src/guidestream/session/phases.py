"""Linear phase state machine for a guided session.

Phases only move forward: introduction, regulation, deepening, release,
closing. There is no branching and no way back. ``closing`` is terminal.
"""

from __future__ import annotations

from enum import Enum


class SessionPhase(str, Enum):
    """Ordered stages of a session."""

    INTRODUCTION = "introduction"
    REGULATION = "regulation"
    DEEPENING = "deepening"
    RELEASE = "release"
    CLOSING = "closing"


SESSION_PHASES: tuple[SessionPhase, ...] = tuple(SessionPhase)

_TRANSITIONS: dict[SessionPhase, SessionPhase | None] = {
    SessionPhase.INTRODUCTION: SessionPhase.REGULATION,
    SessionPhase.REGULATION: SessionPhase.DEEPENING,
    SessionPhase.DEEPENING: SessionPhase.RELEASE,
    SessionPhase.RELEASE: SessionPhase.CLOSING,
    SessionPhase.CLOSING: None,
}


class InvalidPhaseError(ValueError):
    """Raised when a phase name does not match any known phase."""


def next_phase(current: SessionPhase) -> SessionPhase | None:
    """Return the phase after ``current`` or ``None`` when it is terminal."""

    return _TRANSITIONS[current]


def is_terminal_phase(phase: SessionPhase) -> bool:
    return _TRANSITIONS[phase] is None


def phase_index(phase: SessionPhase) -> int:
    """Zero-based position of ``phase`` in the session order."""

    return SESSION_PHASES.index(phase)


def parse_phase(name: str) -> SessionPhase:
    """Convert a wire value into a :class:`SessionPhase`."""

    try:
        return SessionPhase(name)
    except ValueError as exc:
        raise InvalidPhaseError(f"Unknown phase: {name!r}") from exc


__all__ = [
    "InvalidPhaseError",
    "SESSION_PHASES",
    "SessionPhase",
    "is_terminal_phase",
    "next_phase",
    "parse_phase",
    "phase_index",
]

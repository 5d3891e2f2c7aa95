"""Per-phase sentence budgets derived from the session length.

Each phase receives a fixed share of the total sentence count. The wind-down
threshold marks where the orchestrator stops the main generation call and
asks for a transition instead.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from .phases import SESSION_PHASES, SessionPhase

PHASE_PROPORTIONS: dict[SessionPhase, float] = {
    SessionPhase.INTRODUCTION: 0.12,
    SessionPhase.REGULATION: 0.20,
    SessionPhase.DEEPENING: 0.28,
    SessionPhase.RELEASE: 0.25,
    SessionPhase.CLOSING: 0.15,
}

# Roughly 4.5 seconds per spoken sentence at a calm pace
SENTENCES_PER_MINUTE = 13

ALLOWED_SESSION_LENGTHS: tuple[int, ...] = (10, 15, 20, 30)
DEFAULT_SESSION_LENGTH = 15

MIN_WIND_DOWN_RESERVE = 3
WIND_DOWN_FRACTION = 0.15


@dataclass(frozen=True)
class PhaseBudget:
    """Sentence limit for one phase and the point where wind-down begins.

    ``wind_down_at`` is never negative; for very short phases it is 0 and the
    whole phase is spent in wind-down.
    """

    sentence_budget: int
    wind_down_at: int

    def to_dict(self) -> dict[str, int]:
        return {"sentenceBudget": self.sentence_budget, "windDownAt": self.wind_down_at}


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up, unlike ``round()``."""

    return math.floor(value + 0.5)


def compute_budgets(
    total_minutes: float, sentences_per_minute: int = SENTENCES_PER_MINUTE
) -> dict[SessionPhase, PhaseBudget]:
    """Return the budget of every phase for a session of ``total_minutes``.

    >>> compute_budgets(15)[SessionPhase.INTRODUCTION]
    PhaseBudget(sentence_budget=23, wind_down_at=20)
    """

    total_sentences = round_half_up(total_minutes * sentences_per_minute)
    budgets: dict[SessionPhase, PhaseBudget] = {}
    for phase in SESSION_PHASES:
        sentence_budget = round_half_up(total_sentences * PHASE_PROPORTIONS[phase])
        reserve = max(
            MIN_WIND_DOWN_RESERVE, round_half_up(sentence_budget * WIND_DOWN_FRACTION)
        )
        budgets[phase] = PhaseBudget(
            sentence_budget=sentence_budget,
            wind_down_at=max(0, sentence_budget - reserve),
        )
    return budgets


def budgets_to_dict(budgets: dict[SessionPhase, PhaseBudget]) -> dict[str, dict[str, int]]:
    """Serialise budgets for JSON payloads keyed by phase name."""

    return {phase.value: budget.to_dict() for phase, budget in budgets.items()}


def budgets_from_dict(payload: dict[str, dict[str, int]]) -> dict[SessionPhase, PhaseBudget]:
    return {
        SessionPhase(name): PhaseBudget(
            sentence_budget=int(item["sentenceBudget"]),
            wind_down_at=int(item["windDownAt"]),
        )
        for name, item in payload.items()
    }


def resolve_session_length(
    value: object,
    allowed: Iterable[int] = ALLOWED_SESSION_LENGTHS,
    default: int = DEFAULT_SESSION_LENGTH,
) -> int:
    """Return ``value`` when it is an allowed length, otherwise ``default``."""

    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value if value in tuple(allowed) else default


__all__ = [
    "ALLOWED_SESSION_LENGTHS",
    "DEFAULT_SESSION_LENGTH",
    "PHASE_PROPORTIONS",
    "PhaseBudget",
    "SENTENCES_PER_MINUTE",
    "budgets_from_dict",
    "budgets_to_dict",
    "compute_budgets",
    "resolve_session_length",
    "round_half_up",
]

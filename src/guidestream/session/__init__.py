"""
Session pipeline package.

- chunker: cuts streamed text into speakable sentences
- phases: linear phase state machine
- budgets: per-phase sentence budgets and wind-down thresholds
- prompts: phase and mood instructions for the generation service
- orchestrator: runs generation phase by phase and yields events
- state: SQLite checkpoint store for running sessions

Flow:

    generation tokens ──▶ chunker ──▶ orchestrator events ──▶ session handler
                                             │
                                             ▼
                                     checkpoint store
"""

from .budgets import PhaseBudget, compute_budgets, resolve_session_length
from .cancellation import CancelSignal, PauseGate
from .chunker import SentenceChunker, chunk_by_sentence, split_at_sentence_boundaries
from .orchestrator import SessionOrchestrator
from .phases import SESSION_PHASES, SessionPhase, is_terminal_phase, next_phase, phase_index
from .state import SessionRecord, SessionStateStore

__all__ = [
    "CancelSignal",
    "PauseGate",
    "PhaseBudget",
    "SESSION_PHASES",
    "SentenceChunker",
    "SessionOrchestrator",
    "SessionPhase",
    "SessionRecord",
    "SessionStateStore",
    "chunk_by_sentence",
    "compute_budgets",
    "is_terminal_phase",
    "next_phase",
    "phase_index",
    "resolve_session_length",
    "split_at_sentence_boundaries",
]

"""Pydantic models for the REST session endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class _SessionModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartSessionRequest(_SessionModel):
    """Options chosen before a session starts."""

    # Left untyped so out-of-range or wrongly typed lengths fall back to the default
    session_length: Any = Field(default=None, alias="sessionLength")
    mood: Optional[str] = None
    voice_id: Optional[str] = Field(default=None, alias="voiceId")


class PhaseConfigPayload(_SessionModel):
    sentence_budget: int = Field(alias="sentenceBudget")
    wind_down_at: int = Field(alias="windDownAt")


class StartSessionResponse(_SessionModel):
    session_id: str = Field(alias="sessionId")
    phase_config: Dict[str, PhaseConfigPayload] = Field(alias="phaseConfig")


class GenerateRequest(_SessionModel):
    """One phase worth of generation, driven by the client."""

    phase: Optional[str] = None
    session_length: Any = Field(default=None, alias="sessionLength")
    mood: Optional[str] = None
    previous_response_id: Optional[str] = Field(default=None, alias="previousResponseId")
    sentences_so_far: int = Field(default=0, alias="sentencesSoFar", ge=0)
    is_wind_down: bool = Field(default=False, alias="isWindDown")


class SpeechRequest(_SessionModel):
    text: Any = None
    voice_id: Optional[str] = Field(default=None, alias="voiceId")
    previous_text: Optional[str] = Field(default=None, alias="previousText")


class CompleteSessionRequest(_SessionModel):
    session_id: Any = Field(default=None, alias="sessionId")


class CompleteSessionResponse(BaseModel):
    ok: bool = True


__all__ = [
    "CompleteSessionRequest",
    "CompleteSessionResponse",
    "GenerateRequest",
    "PhaseConfigPayload",
    "SpeechRequest",
    "StartSessionRequest",
    "StartSessionResponse",
]

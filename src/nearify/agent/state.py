"""Exam state schema: router types and the dict that flows through the graph."""

from __future__ import annotations

from enum import Enum
from typing import Any, TypedDict

from pydantic import BaseModel

from nearify.core.jcc import JccState
from nearify.core.staircase import StaircaseState
from nearify.core.types import Calibration, Rx


class Stage(str, Enum):
    IDLE = "idle"
    CALIBRATION = "calibration"
    SPHERE_OD = "sphere_od"
    SPHERE_OS = "sphere_os"
    JCC_OD = "jcc_od"
    JCC_OS = "jcc_os"
    BALANCE = "balance"
    COMPLETE = "complete"


class Capability(str, Enum):
    """Closed set of things the router can ask the host to do next."""

    SPEECH_CAPTURE = "speech-capture"
    SPEECH_SYNTHESIS = "speech-synthesis"
    STAIRCASE_INIT = "staircase.init"
    STAIRCASE_NEXT = "staircase.next"
    JCC_INIT = "jcc.init"
    JCC_NEXT = "jcc.next"
    CALIBRATE = "calibrate"
    BALANCE = "balance"
    SUMMARY = "summary"


class ProcedureProgress(BaseModel):
    """Per-eye completion summary as seen by the router.

    ``reversals`` is set for staircases, ``stage`` for JCC procedures.
    """

    complete: bool = False
    reversals: int | None = None
    stage: str | None = None

    model_config = {"frozen": True}


class ExamContext(BaseModel):
    """The router's read-only view of the whole exam.

    ``stage`` is a plain string so that a corrupted or foreign session can
    still be routed; ``decide`` maps anything it does not recognise to its
    fallback branch.
    """

    calibrated: bool = False
    stage: str = Stage.IDLE.value
    sphere_od: ProcedureProgress | None = None
    sphere_os: ProcedureProgress | None = None
    jcc_od: ProcedureProgress | None = None
    jcc_os: ProcedureProgress | None = None
    awaiting_voice_input: bool = False

    model_config = {"frozen": True}


class ToolDecision(BaseModel):
    capability: Capability
    args: dict[str, Any] = {}
    rationale: str
    next_prompt: str | None = None

    model_config = {"frozen": True}


class ExamState(TypedDict, total=False):
    """State that flows through every node of the exam turn graph.

    Fields use ``total=False`` so nodes can return partial updates.
    """

    session_id: str

    # Set once calibration is received
    calibrated: bool
    calibration: Calibration

    stage: str

    # Keyed by eye code ("OD" / "OS")
    staircases: dict[str, StaircaseState]
    jcc: dict[str, JccState]

    # Stimulus currently on screen
    current_line: list[str]
    letter_size_px: int
    flip_axes: tuple[int, int]
    awaiting_response: bool

    # Input for this turn: {"calibration": {...}}, {"spoken": "..."},
    # {"was_correct": bool} or {"choice": 1 | 2 | "..."}; response events may
    # also carry "latency_ms"
    event: dict[str, Any] | None

    # After route
    decision: ToolDecision

    # After summarize
    prescription: dict[str, Rx]

    # Optional pacing advice for the last response
    hint: dict[str, Any]

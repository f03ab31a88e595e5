"""Jackson Cross Cylinder refinement of astigmatism axis and power.

Two phases of forced-choice comparisons. The axis phase rotates the probe
axis towards the preferred flip orientation and tightens its step
(15 -> 10 -> 5 degrees) each time the patient gives three identical answers
at the current step. The power phase then walks the cylinder in 0.25 D
steps until the answers settle or a limit is reached.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from nearify.core.types import Eye, ProcedureCompleteError, round_half_up, round_quarter

AXIS_STEPS: tuple[int, ...] = (15, 10, 5)
DEFAULT_START_AXIS = 90
START_CYL = -0.5
CYL_STEP = 0.25
MAX_CYL = -2.0
FLIP_OFFSET_DEG = 45
CONSISTENT_RUN = 3
CONFIDENCE_WINDOW = 4

Choice = Literal[1, 2]
AxisStep = Literal[15, 10, 5]

_CHOICE_WORDS = {
    "1": 1, "ONE": 1, "FIRST": 1,
    "2": 2, "TWO": 2, "SECOND": 2,
}


class JccStage(str, Enum):
    AXIS = "axis"
    POWER = "power"
    DONE = "done"


class JccTrial(BaseModel):
    """One comparison: the axis and cylinder shown and the patient's choice."""

    axis: int
    choice: Choice
    cyl: float = Field(ge=MAX_CYL, le=0, multiple_of=CYL_STEP)
    stage: JccStage
    step_deg: AxisStep

    model_config = {"frozen": True}


class JccState(BaseModel):
    """Immutable JCC state for one eye."""

    eye: Eye
    stage: JccStage = JccStage.AXIS
    axis_deg: int = Field(default=DEFAULT_START_AXIS, ge=0, lt=180)
    step_deg: AxisStep = AXIS_STEPS[0]
    cyl: float = Field(default=START_CYL, ge=MAX_CYL, le=0, multiple_of=CYL_STEP)
    history: tuple[JccTrial, ...] = ()

    model_config = {"frozen": True}


class JccResult(BaseModel):
    axis: int
    cyl: float

    model_config = {"frozen": True}


def init_jcc(eye: Eye, start_axis: int = DEFAULT_START_AXIS) -> JccState:
    return JccState(eye=eye, axis_deg=round_half_up(start_axis) % 180)


def _trailing_run(history: tuple[JccTrial, ...], stage: JccStage, step_deg: int | None = None) -> list[int]:
    """Choices of the trailing trials taken in *stage* (and at *step_deg*)."""
    run: list[int] = []
    for trial in reversed(history):
        if trial.stage is not stage or (step_deg is not None and trial.step_deg != step_deg):
            break
        run.append(trial.choice)
    return run


def _consistent(run: list[int]) -> bool:
    return len(run) >= CONSISTENT_RUN and len(set(run[:CONSISTENT_RUN])) == 1


def advance(state: JccState, choice: int) -> JccState:
    """Apply one "1 or 2" preference and return the next state.

    *choice* must already be 1 or 2; anything else raises ``ValueError`` and
    leaves the state untouched. Map spoken or free-form answers through
    ``parse_choice`` first and keep waiting when it returns ``None``.
    """
    if choice not in (1, 2):
        raise ValueError(f"JCC choice must be 1 or 2, got {choice!r}")
    if is_complete(state):
        raise ProcedureCompleteError(f"JCC for {state.eye.value} is already done")

    history = state.history + (
        JccTrial(
            axis=state.axis_deg,
            choice=choice,
            cyl=state.cyl,
            stage=state.stage,
            step_deg=state.step_deg,
        ),
    )
    axis_deg, step_deg, stage, cyl = state.axis_deg, state.step_deg, state.stage, state.cyl

    if stage is JccStage.AXIS:
        rotation = -step_deg if choice == 1 else step_deg
        axis_deg = (axis_deg + rotation) % 180

        if _consistent(_trailing_run(history, JccStage.AXIS, step_deg)):
            position = AXIS_STEPS.index(step_deg)
            if position + 1 < len(AXIS_STEPS):
                step_deg = AXIS_STEPS[position + 1]
            else:
                stage = JccStage.POWER
    else:
        # 1 = stronger (more minus), 2 = weaker
        cyl = cyl - CYL_STEP if choice == 1 else cyl + CYL_STEP

        settled = _consistent(_trailing_run(history, JccStage.POWER))
        if abs(cyl) >= abs(MAX_CYL) or settled or cyl >= 0:
            stage = JccStage.DONE
            cyl = max(MAX_CYL, min(0.0, cyl))

    return state.model_copy(
        update={
            "axis_deg": round_half_up(axis_deg) % 180,
            "step_deg": step_deg,
            "stage": stage,
            "cyl": round_quarter(cyl),
            "history": history,
        }
    )


def is_complete(state: JccState) -> bool:
    return state.stage is JccStage.DONE


def result(state: JccState) -> JccResult:
    return JccResult(axis=state.axis_deg, cyl=state.cyl)


def confidence(state: JccState) -> float:
    """Fewer answer switches over the last four trials means higher confidence."""
    if len(state.history) < CONFIDENCE_WINDOW:
        return 0.5

    choices = [t.choice for t in state.history[-CONFIDENCE_WINDOW:]]
    switches = sum(1 for a, b in zip(choices, choices[1:]) if a != b)
    return {0: 0.9, 1: 0.8, 2: 0.7}.get(switches, 0.6)


def flip_axes(state: JccState) -> tuple[int, int]:
    """The two comparison orientations, 45 degrees either side of the probe axis."""
    return (
        (state.axis_deg - FLIP_OFFSET_DEG) % 180,
        (state.axis_deg + FLIP_OFFSET_DEG) % 180,
    )


def parse_choice(text: str | int | None) -> int | None:
    """Map a spoken or typed answer to 1 or 2; anything else gives ``None``."""
    if isinstance(text, bool):
        return None
    if isinstance(text, int):
        return text if text in (1, 2) else None
    if not text:
        return None

    found = {_CHOICE_WORDS[tok] for tok in re.findall(r"[A-Z0-9]+", text.upper()) if tok in _CHOICE_WORDS}
    return found.pop() if len(found) == 1 else None

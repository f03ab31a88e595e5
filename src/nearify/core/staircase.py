"""1-up/2-down staircase for the visual acuity threshold.

Two consecutive correct lines make the next line smaller, a single miss makes
it larger. The procedure converges on roughly 70.7% correct and stops after
six reversals of direction.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from nearify.core.types import Eye, ProcedureCompleteError, round_half_up, round_quarter

# logMAR steps, coarsest to finest (1.0 = 20/200, 0.0 = 20/20, -0.2 = 20/12.5)
LOGMAR_STEPS: tuple[float, ...] = (
    1.0, 0.9, 0.8, 0.7, 0.6, 0.5, 0.4, 0.3, 0.2, 0.1, 0.0, -0.1, -0.2,
)

DEFAULT_START_INDEX = 6  # 0.4 logMAR, about 20/50
STOP_REVERSALS = 6
THRESHOLD_REVERSALS = 4
CONFIDENCE_WINDOW = 6

# Rough linear mapping from acuity loss to myopic sphere, not a clinical formula
DIOPTERS_PER_LOGMAR = 1.5


class Direction(str, Enum):
    HARDER = "harder"
    EASIER = "easier"

    @property
    def delta(self) -> int:
        # TODO: harder steps toward index 0, i.e. the coarser lines of
        # LOGMAR_STEPS; kept to match the deployed protocol until the sign
        # is confirmed clinically
        return -1 if self is Direction.HARDER else 1


class StaircaseTrial(BaseModel):
    index: int
    correct: bool

    model_config = {"frozen": True}


class StaircaseState(BaseModel):
    """Immutable staircase state for one eye."""

    eye: Eye
    size_index: int = Field(ge=0, le=len(LOGMAR_STEPS) - 1)
    direction: Direction = Direction.HARDER
    reversals: int = Field(default=0, ge=0)
    history: tuple[StaircaseTrial, ...] = ()

    model_config = {"frozen": True}

    @property
    def logmar(self) -> float:
        return LOGMAR_STEPS[self.size_index]


def _clamp_index(index: int) -> int:
    return max(0, min(len(LOGMAR_STEPS) - 1, index))


def _next_direction(previous: Direction, history: tuple[StaircaseTrial, ...]) -> Direction:
    """Direction after the last trial in *history* was recorded."""
    last = history[-1]
    if not last.correct:
        return Direction.EASIER
    if len(history) >= 2 and history[-2].correct:
        return Direction.HARDER
    return previous


def init_staircase(eye: Eye, start_index: int = DEFAULT_START_INDEX) -> StaircaseState:
    """Start a staircase; out-of-table start indices are clamped."""
    return StaircaseState(eye=eye, size_index=_clamp_index(start_index))


def advance(state: StaircaseState, was_correct: bool) -> StaircaseState:
    """Record one line response and return the next state."""
    if is_complete(state):
        raise ProcedureCompleteError(
            f"Staircase for {state.eye.value} already has {state.reversals} reversals"
        )

    history = state.history + (StaircaseTrial(index=state.size_index, correct=was_correct),)
    direction = _next_direction(state.direction, history)

    reversed_ = direction is not state.direction and len(state.history) > 0
    return state.model_copy(
        update={
            "size_index": _clamp_index(state.size_index + direction.delta),
            "direction": direction,
            "reversals": state.reversals + 1 if reversed_ else state.reversals,
            "history": history,
        }
    )


def is_complete(state: StaircaseState) -> bool:
    return state.reversals >= STOP_REVERSALS


def reversal_indices(history: tuple[StaircaseTrial, ...]) -> list[int]:
    """Table index of every trial that reversed the staircase direction.

    This is a fold over the history using the same direction rule as
    ``advance``, so for any state built by ``advance`` it finds exactly
    ``state.reversals`` entries.
    """
    indices: list[int] = []
    direction = Direction.HARDER
    for n in range(len(history)):
        new_direction = _next_direction(direction, history[: n + 1])
        if new_direction is not direction and n > 0:
            indices.append(history[n].index)
        direction = new_direction
    return indices


def threshold(state: StaircaseState) -> float:
    """logMAR threshold: mean index of the last four reversals.

    With fewer than four reversals the current line is the best estimate.
    A mean that falls halfway between two steps rounds to the larger index
    (the finer line).
    """
    if state.reversals < THRESHOLD_REVERSALS:
        return state.logmar

    last = reversal_indices(state.history)[-THRESHOLD_REVERSALS:]
    if not last:
        return state.logmar
    mean_index = sum(last) / len(last)
    return LOGMAR_STEPS[_clamp_index(round_half_up(mean_index))]


def confidence(state: StaircaseState) -> float:
    """Heuristic confidence from the hit rate over the last six trials.

    Not a statistical estimate: the hit rate is bucketed, with the band the
    1-up/2-down rule converges on scoring highest.
    """
    if len(state.history) < CONFIDENCE_WINDOW:
        return 0.5

    recent = state.history[-CONFIDENCE_WINDOW:]
    ratio = sum(1 for t in recent if t.correct) / len(recent)
    if 0.67 <= ratio <= 0.83:
        return 0.9
    if 0.5 <= ratio < 0.67:
        return 0.75
    if ratio > 0.83:
        return 0.8  # too easy
    return 0.6  # struggling


def logmar_to_sphere(logmar: float) -> float:
    """Approximate sphere (D) for a logMAR threshold, in 0.25 D steps."""
    if logmar <= 0:
        return 0.0
    return round_quarter(-logmar * DIOPTERS_PER_LOGMAR)

"""MCP server exposing the exam engine as stateless tools.

The voice agent owns the session: it passes the current controller state in
and stores the state that comes back. Bad input is reported in an ``error``
field rather than raised, so a confused agent turn never ends the exam.
"""

from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from nearify.agent.router import can_invoke, decide
from nearify.agent.state import ExamContext
from nearify.config import settings
from nearify.core import jcc, staircase
from nearify.core.optotypes import generate_line, letter_size_pixels, parse_spoken_letters, score_line
from nearify.core.types import Eye, ProcedureCompleteError
from nearify.pacing import PacingContext, encouragement, route_mode
from nearify.summary import build_prescription, format_rx, snellen

mcp = FastMCP("Nearify Exam Engine")


def _eye(value: str) -> Eye | None:
    try:
        return Eye(value.upper())
    except (AttributeError, ValueError):
        return None


def _error(message: str) -> dict[str, Any]:
    return {"error": message}


# ------------------------------------------------------------------
# Sphere (letter acuity)
# ------------------------------------------------------------------


@mcp.tool()
def staircase_init(eye: str, start_index: int | None = None) -> dict[str, Any]:
    """Start the letter-acuity staircase for one eye ("OD" right, "OS" left).

    Returns the initial state, its logMAR value and a first line of letters.
    Keep the returned state and pass it to staircase_next.
    """
    which = _eye(eye)
    if which is None:
        return _error(f"Invalid eye: {eye!r}")
    index = settings.staircase_start_index if start_index is None else start_index
    state = staircase.init_staircase(which, index)
    return {
        "state": state.model_dump(mode="json"),
        "logmar": state.logmar,
        "line": generate_line(settings.line_length),
    }


@mcp.tool()
def staircase_next(state: dict[str, Any], was_correct: bool) -> dict[str, Any]:
    """Record whether the patient read the last line correctly.

    Returns the new state, whether the eye is finished, the current confidence
    and, once finished, the logMAR threshold and estimated sphere.
    """
    try:
        current = staircase.StaircaseState.model_validate(state)
        new = staircase.advance(current, was_correct)
    except ValidationError as exc:
        return _error(f"Invalid staircase state: {exc.error_count()} problem(s)")
    except ProcedureCompleteError as exc:
        return _error(str(exc))

    complete = staircase.is_complete(new)
    threshold = staircase.threshold(new) if complete else None
    return {
        "state": new.model_dump(mode="json"),
        "complete": complete,
        "confidence": staircase.confidence(new),
        "threshold": threshold,
        "sphere": staircase.logmar_to_sphere(threshold) if complete else None,
        "line": None if complete else generate_line(settings.line_length),
    }


@mcp.tool()
def score_response(shown: list[str], spoken_text: str) -> dict[str, Any]:
    """Score a spoken transcript against the letters that were shown.

    At least 60% of the letters must be read back in position to count as
    correct. Unrecognised speech counts as incorrect.
    """
    spoken = parse_spoken_letters(spoken_text)
    score = score_line([s.upper() for s in shown], spoken)
    return {"spoken": spoken, **score.model_dump()}


@mcp.tool()
def letter_size(logmar: float, viewing_distance_cm: float | None = None, pixels_per_cm: float | None = None) -> dict[str, Any]:
    """Letter height in pixels for a logMAR value at the calibrated distance."""
    px = letter_size_pixels(
        logmar,
        viewing_distance_cm or settings.viewing_distance_cm,
        pixels_per_cm or settings.pixels_per_cm,
    )
    return {"pixels": px, "snellen": snellen(logmar)}


# ------------------------------------------------------------------
# Astigmatism (JCC)
# ------------------------------------------------------------------


@mcp.tool()
def jcc_init(eye: str, start_axis: int | None = None) -> dict[str, Any]:
    """Start the Jackson Cross Cylinder test for one eye.

    Returns the initial state and the two flip orientations to present.
    """
    which = _eye(eye)
    if which is None:
        return _error(f"Invalid eye: {eye!r}")
    axis = settings.jcc_start_axis if start_axis is None else start_axis
    state = jcc.init_jcc(which, axis)
    return {"state": state.model_dump(mode="json"), "flip_axes": list(jcc.flip_axes(state))}


@mcp.tool()
def jcc_next(state: dict[str, Any], choice: str | int) -> dict[str, Any]:
    """Record which view the patient preferred: "1"/"one" or "2"/"two".

    An answer that is neither leaves the state unchanged and sets ``error``;
    ask the patient again.
    """
    try:
        current = jcc.JccState.model_validate(state)
    except ValidationError as exc:
        return _error(f"Invalid JCC state: {exc.error_count()} problem(s)")

    parsed = jcc.parse_choice(choice)
    if parsed is None:
        return {"state": current.model_dump(mode="json"), **_error(f"Unrecognised choice: {choice!r}")}

    try:
        new = jcc.advance(current, parsed)
    except ProcedureCompleteError as exc:
        return _error(str(exc))

    complete = jcc.is_complete(new)
    return {
        "state": new.model_dump(mode="json"),
        "complete": complete,
        "confidence": jcc.confidence(new),
        "result": jcc.result(new).model_dump() if complete else None,
        "flip_axes": None if complete else list(jcc.flip_axes(new)),
    }


# ------------------------------------------------------------------
# Routing and results
# ------------------------------------------------------------------


@mcp.tool()
def next_step(context: dict[str, Any]) -> dict[str, Any]:
    """Decide which capability to invoke next for the given exam context.

    The context carries ``calibrated``, ``stage``, per-eye progress
    (``sphere_od``, ``sphere_os``, ``jcc_od``, ``jcc_os``) and
    ``awaiting_voice_input``.
    """
    try:
        ctx = ExamContext.model_validate(context)
    except ValidationError as exc:
        return _error(f"Invalid exam context: {exc.error_count()} problem(s)")
    decision = decide(ctx)
    return {
        **decision.model_dump(mode="json"),
        "allowed": can_invoke(decision.capability, ctx),
    }


@mcp.tool()
def pacing(
    confidence: float,
    latency_ms: int = 2000,
    consecutive_misses: int = 0,
    consecutive_correct: int = 0,
    fixation_stable: bool = True,
) -> dict[str, Any]:
    """Suggest whether to keep the pace, ease off, push harder or take a break."""
    decision = route_mode(
        PacingContext(
            confidence=confidence,
            latency_ms=latency_ms,
            consecutive_misses=consecutive_misses,
            consecutive_correct=consecutive_correct,
            fixation_stable=fixation_stable,
        )
    )
    return {**decision.model_dump(mode="json"), "message": encouragement(decision.mode)}


@mcp.tool()
def prescription(staircases: dict[str, Any], jcc_states: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build the final prescription from finished per-eye states.

    Both arguments map "OD"/"OS" to the states returned by the other tools.
    """
    try:
        stairs = {k.upper(): staircase.StaircaseState.model_validate(v) for k, v in staircases.items()}
        crosses = {k.upper(): jcc.JccState.model_validate(v) for k, v in (jcc_states or {}).items()}
    except ValidationError as exc:
        return _error(f"Invalid state: {exc.error_count()} problem(s)")

    rx = build_prescription(stairs, crosses)
    return {
        eye: {**r.model_dump(mode="json"), "formatted": format_rx(r), "snellen": snellen(r.va_logmar)}
        for eye, r in rx.items()
    }


# ------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------

if __name__ == "__main__":
    mcp.run()

"""Processing nodes for the exam turn graph.

Each node is a function that receives the current ``ExamState`` and returns
a dict with the keys it wants to update. Controller states are replaced,
never mutated.
"""

from __future__ import annotations

import logging
from typing import Any

from nearify.agent.router import decide, next_stage
from nearify.agent.state import Capability, ExamContext, ExamState, ProcedureProgress, Stage
from nearify.config import settings
from nearify.core import jcc as jcc_ctl
from nearify.core import staircase as stair_ctl
from nearify.core.optotypes import generate_line, letter_size_pixels, score_spoken_line
from nearify.core.types import Calibration, Eye
from nearify.llm import pacing_hint
from nearify.pacing import PacingSignals
from nearify.summary import build_prescription, format_rx

logger = logging.getLogger(__name__)

# Which procedure and eye each testing stage drives
_STAGE_PROCEDURES: dict[str, tuple[str, Eye]] = {
    Stage.SPHERE_OD.value: ("sphere", Eye.OD),
    Stage.SPHERE_OS.value: ("sphere", Eye.OS),
    Stage.JCC_OD.value: ("jcc", Eye.OD),
    Stage.JCC_OS.value: ("jcc", Eye.OS),
}


def _log_extra(state: ExamState) -> dict[str, Any]:
    return {"session_id": state.get("session_id", "-")}


def _calibration(state: ExamState) -> Calibration:
    return state.get("calibration") or Calibration(
        pixels_per_cm=settings.pixels_per_cm,
        viewing_distance_cm=settings.viewing_distance_cm,
    )


def _parse_calibration(payload: dict[str, Any]) -> Calibration:
    distance = payload.get("viewing_distance_cm", settings.viewing_distance_cm)
    if "card_width_px" in payload:
        return Calibration.from_card_width(payload["card_width_px"], distance)
    return Calibration(
        pixels_per_cm=payload.get("pixels_per_cm", settings.pixels_per_cm),
        viewing_distance_cm=distance,
    )


def build_context(state: ExamState) -> ExamContext:
    """Project the session state onto the router's view."""
    stairs = state.get("staircases", {})
    crosses = state.get("jcc", {})

    def sphere(eye: Eye) -> ProcedureProgress | None:
        s = stairs.get(eye.value)
        if s is None:
            return None
        return ProcedureProgress(complete=stair_ctl.is_complete(s), reversals=s.reversals)

    def cross(eye: Eye) -> ProcedureProgress | None:
        j = crosses.get(eye.value)
        if j is None:
            return None
        return ProcedureProgress(complete=jcc_ctl.is_complete(j), stage=j.stage.value)

    return ExamContext(
        calibrated=state.get("calibrated", False),
        stage=state.get("stage", Stage.IDLE.value),
        sphere_od=sphere(Eye.OD),
        sphere_os=sphere(Eye.OS),
        jcc_od=cross(Eye.OD),
        jcc_os=cross(Eye.OS),
        awaiting_voice_input=state.get("awaiting_response", False),
    )


def _stage_value(stage: Stage | str) -> str:
    return stage.value if isinstance(stage, Stage) else stage


def _letter_stimulus(state: ExamState, stair: stair_ctl.StaircaseState) -> dict[str, Any]:
    cal = _calibration(state)
    return {
        "current_line": generate_line(settings.line_length),
        "letter_size_px": letter_size_pixels(stair.logmar, cal.viewing_distance_cm, cal.pixels_per_cm),
        "awaiting_response": True,
    }


def _jcc_stimulus(cross: jcc_ctl.JccState) -> dict[str, Any]:
    return {"flip_axes": jcc_ctl.flip_axes(cross), "awaiting_response": True}


def _latency(event: dict[str, Any]) -> dict[str, int]:
    """Response latency reported with the event, if it is a usable number."""
    value = event.get("latency_ms")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return {}
    return {"latency_ms": round(value)}


def _hint(
    event: dict[str, Any],
    stair: stair_ctl.StaircaseState | None = None,
    cross: jcc_ctl.JccState | None = None,
) -> dict[str, Any]:
    if stair is not None:
        signals = PacingSignals(
            stage="sphere",
            confidence=stair_ctl.confidence(stair),
            misses=sum(1 for t in stair.history if not t.correct),
            reversals=stair.reversals,
            trial_count=len(stair.history),
            **_latency(event),
        )
    else:
        recent = [t.choice for t in cross.history[-3:]]
        signals = PacingSignals(
            stage="jcc",
            confidence=jcc_ctl.confidence(cross),
            # Inconsistent recent choices count as a miss
            misses=0 if recent.count(recent[-1]) >= 2 else 1,
            trial_count=len(cross.history),
            **_latency(event),
        )
    return pacing_hint(signals).model_dump()


# ------------------------------------------------------------------
# Node functions
# ------------------------------------------------------------------


def apply_response(state: ExamState) -> dict[str, Any]:
    """Feed the pending patient event to the controller owning the stage."""
    event = state.get("event")
    if not event:
        return {}

    if "calibration" in event:
        calibration = _parse_calibration(event["calibration"])
        stage = next_stage(state.get("stage", Stage.IDLE.value), Capability.CALIBRATE)
        logger.info(
            "Calibrated: %.2f px/cm at %.0f cm",
            calibration.pixels_per_cm,
            calibration.viewing_distance_cm,
            extra=_log_extra(state),
        )
        return {
            "calibrated": True,
            "calibration": calibration,
            "stage": _stage_value(stage),
            "event": None,
        }

    procedure = _STAGE_PROCEDURES.get(state.get("stage", ""))
    if procedure is None or not state.get("awaiting_response", False):
        logger.warning("Ignoring event outside a testing turn: %s", event, extra=_log_extra(state))
        return {"event": None}

    kind, eye = procedure
    update: dict[str, Any] = {"event": None, "awaiting_response": False}

    if kind == "sphere":
        stair = state["staircases"][eye.value]
        if "was_correct" in event:
            correct = bool(event["was_correct"])
        else:
            correct = score_spoken_line(state.get("current_line", []), event.get("spoken")).correct
        stair = stair_ctl.advance(stair, correct)
        update["staircases"] = {**state["staircases"], eye.value: stair}
        logger.info(
            "Sphere %s: correct=%s index=%d reversals=%d",
            eye.value,
            correct,
            stair.size_index,
            stair.reversals,
            extra=_log_extra(state),
        )
        if stair_ctl.is_complete(stair):
            logger.info(
                "Sphere %s complete: threshold=%.1f logMAR",
                eye.value,
                stair_ctl.threshold(stair),
                extra=_log_extra(state),
            )
        if settings.pacing_hints_enabled:
            update["hint"] = _hint(event, stair=stair)
        return update

    choice = jcc_ctl.parse_choice(event.get("choice", event.get("spoken")))
    if choice is None:
        logger.info("Could not parse a JCC choice from %s, still waiting", event, extra=_log_extra(state))
        return {"event": None}

    cross = jcc_ctl.advance(state["jcc"][eye.value], choice)
    update["jcc"] = {**state["jcc"], eye.value: cross}
    logger.info(
        "JCC %s: choice=%d stage=%s axis=%d cyl=%.2f",
        eye.value,
        choice,
        cross.stage.value,
        cross.axis_deg,
        cross.cyl,
        extra=_log_extra(state),
    )
    if settings.pacing_hints_enabled:
        update["hint"] = _hint(event, cross=cross)
    return update


def route(state: ExamState) -> dict[str, Any]:
    """Ask the router what to do next."""
    decision = decide(build_context(state))
    logger.debug("Decision: %s (%s)", decision.capability.value, decision.rationale, extra=_log_extra(state))
    return {"decision": decision}


def start_procedure(state: ExamState) -> dict[str, Any]:
    """Initialize the staircase or JCC named by the decision and show its first stimulus."""
    decision = state["decision"]
    eye = Eye(decision.args["eye"])
    stage = _stage_value(next_stage(state.get("stage", Stage.IDLE.value), decision.capability))

    if decision.capability is Capability.STAIRCASE_INIT:
        stair = stair_ctl.init_staircase(eye, settings.staircase_start_index)
        logger.info("Initialized staircase for %s", eye.value, extra=_log_extra(state))
        return {
            "stage": stage,
            "staircases": {**state.get("staircases", {}), eye.value: stair},
            **_letter_stimulus(state, stair),
        }

    cross = jcc_ctl.init_jcc(eye, settings.jcc_start_axis)
    logger.info("Initialized JCC for %s", eye.value, extra=_log_extra(state))
    return {
        "stage": stage,
        "jcc": {**state.get("jcc", {}), eye.value: cross},
        **_jcc_stimulus(cross),
    }


def present_stimulus(state: ExamState) -> dict[str, Any]:
    """Show the next letter line or JCC comparison for the current eye."""
    decision = state["decision"]
    eye = Eye(decision.args["eye"])
    if decision.capability is Capability.STAIRCASE_NEXT:
        return _letter_stimulus(state, state["staircases"][eye.value])
    return _jcc_stimulus(state["jcc"][eye.value])


def summarize(state: ExamState) -> dict[str, Any]:
    """Build the final prescription from the frozen controller states."""
    prescription = build_prescription(state.get("staircases", {}), state.get("jcc", {}))
    for eye, rx in prescription.items():
        logger.info("Rx %s: %s", eye, format_rx(rx), extra=_log_extra(state))
    stage = next_stage(state.get("stage", Stage.COMPLETE.value), Capability.SUMMARY)
    return {
        "prescription": prescription,
        "stage": _stage_value(stage),
        "awaiting_response": False,
    }

"""Exam router: decides which capability the host should invoke next.

Stage order: calibration -> sphere OD -> sphere OS -> JCC OD -> JCC OS -> summary.
Every function here is a pure lookup over an ``ExamContext``; nothing raises
for an unexpected context.
"""

from __future__ import annotations

import logging
from typing import Callable

from nearify.agent.state import Capability, ExamContext, ProcedureProgress, Stage, ToolDecision
from nearify.core.types import Eye

logger = logging.getLogger(__name__)

READ_PROMPT = "Read the next line."
CHOICE_PROMPT = "Which is clearer: one... or two?"


def _coerce_stage(stage: Stage | str) -> Stage | None:
    try:
        return Stage(stage)
    except ValueError:
        return None


def _is_done(progress: ProcedureProgress | None) -> bool:
    return progress is not None and progress.complete


# ------------------------------------------------------------------
# Per-stage decisions
# ------------------------------------------------------------------


def _procedure_turn(
    context: ExamContext,
    next_capability: Capability,
    eye: Eye,
    rationale: str,
    prompt: str,
    listen_for: str,
) -> ToolDecision:
    """Either wait for the patient's answer or present the next stimulus."""
    if context.awaiting_voice_input:
        return ToolDecision(
            capability=Capability.SPEECH_CAPTURE,
            rationale=f"Awaiting voice input ({listen_for})",
        )
    return ToolDecision(
        capability=next_capability,
        args={"eye": eye.value},
        rationale=rationale,
        next_prompt=prompt,
    )


def _start_sphere_od(context: ExamContext) -> ToolDecision:
    return ToolDecision(
        capability=Capability.STAIRCASE_INIT,
        args={"eye": Eye.OD.value},
        rationale="Calibration complete, start sphere test for right eye",
        next_prompt="Great! Now cover your left eye. Read the letters you see out loud.",
    )


def _sphere_od(context: ExamContext) -> ToolDecision:
    if _is_done(context.sphere_od):
        return ToolDecision(
            capability=Capability.STAIRCASE_INIT,
            args={"eye": Eye.OS.value},
            rationale="Right eye complete, start left eye sphere",
            next_prompt="Perfect! Now cover your right eye and read the letters with your left eye.",
        )
    return _procedure_turn(
        context,
        Capability.STAIRCASE_NEXT,
        Eye.OD,
        "Continue staircase for right eye sphere",
        READ_PROMPT,
        "letter reading",
    )


def _sphere_os(context: ExamContext) -> ToolDecision:
    if _is_done(context.sphere_os):
        return ToolDecision(
            capability=Capability.JCC_INIT,
            args={"eye": Eye.OD.value},
            rationale="Both sphere tests complete, start JCC for right eye",
            next_prompt=(
                "Now let's check for astigmatism. Cover your left eye again. "
                "Which is clearer: one... or two?"
            ),
        )
    return _procedure_turn(
        context,
        Capability.STAIRCASE_NEXT,
        Eye.OS,
        "Continue staircase for left eye sphere",
        READ_PROMPT,
        "letter reading",
    )


def _jcc_od(context: ExamContext) -> ToolDecision:
    if _is_done(context.jcc_od):
        return ToolDecision(
            capability=Capability.JCC_INIT,
            args={"eye": Eye.OS.value},
            rationale="Right eye JCC complete, start left eye",
            next_prompt="Great! Now cover your right eye. Which is clearer: one... or two?",
        )
    return _procedure_turn(
        context,
        Capability.JCC_NEXT,
        Eye.OD,
        "Continue JCC axis/power refinement for right eye",
        CHOICE_PROMPT,
        "choice 1 or 2",
    )


def _jcc_os(context: ExamContext) -> ToolDecision:
    if _is_done(context.jcc_os):
        return ToolDecision(
            capability=Capability.SUMMARY,
            rationale="All tests complete, generate final Rx",
            next_prompt="Excellent work! We're all done. Let me calculate your prescription.",
        )
    return _procedure_turn(
        context,
        Capability.JCC_NEXT,
        Eye.OS,
        "Continue JCC axis/power refinement for left eye",
        CHOICE_PROMPT,
        "choice 1 or 2",
    )


def _summary(context: ExamContext) -> ToolDecision:
    return ToolDecision(
        capability=Capability.SUMMARY,
        rationale="Generate final prescription summary",
        next_prompt="Here's your prescription!",
    )


def _fallback(context: ExamContext) -> ToolDecision:
    return ToolDecision(
        capability=Capability.SUMMARY,
        rationale=f"Unknown stage {context.stage!r}, generating summary",
        next_prompt="Let's see your results.",
    )


_STAGE_DECISIONS: dict[Stage, Callable[[ExamContext], ToolDecision]] = {
    Stage.IDLE: _start_sphere_od,
    Stage.CALIBRATION: _start_sphere_od,
    Stage.SPHERE_OD: _sphere_od,
    Stage.SPHERE_OS: _sphere_os,
    Stage.JCC_OD: _jcc_od,
    Stage.JCC_OS: _jcc_os,
    Stage.BALANCE: _summary,
    Stage.COMPLETE: _summary,
}


def decide(context: ExamContext) -> ToolDecision:
    """Return the next capability to invoke for *context*."""
    logger.debug("Routing: stage=%s calibrated=%s", context.stage, context.calibrated)

    if not context.calibrated:
        return ToolDecision(
            capability=Capability.CALIBRATE,
            rationale="Need pixel calibration and viewing distance first",
            next_prompt="Let's start by calibrating your screen. Place a credit card on the screen.",
        )

    stage = _coerce_stage(context.stage)
    if stage is None:
        logger.warning("Unrecognised exam stage %r, falling back to summary", context.stage)
        return _fallback(context)
    return _STAGE_DECISIONS[stage](context)


# ------------------------------------------------------------------
# Preconditions
# ------------------------------------------------------------------

_SPHERE_INIT_STAGES = {Stage.IDLE, Stage.CALIBRATION, Stage.SPHERE_OD}
_SPHERE_STAGES = {Stage.SPHERE_OD, Stage.SPHERE_OS}
_JCC_INIT_STAGES = {Stage.SPHERE_OS, Stage.JCC_OD}
_JCC_STAGES = {Stage.JCC_OD, Stage.JCC_OS}
_SUMMARY_STAGES = {Stage.JCC_OS, Stage.BALANCE, Stage.COMPLETE}

_PRECONDITIONS: dict[Capability, Callable[[bool, Stage | None], bool]] = {
    Capability.CALIBRATE: lambda calibrated, stage: not calibrated,
    Capability.STAIRCASE_INIT: lambda calibrated, stage: calibrated and stage in _SPHERE_INIT_STAGES,
    Capability.STAIRCASE_NEXT: lambda calibrated, stage: calibrated and stage in _SPHERE_STAGES,
    Capability.JCC_INIT: lambda calibrated, stage: calibrated and stage in _JCC_INIT_STAGES,
    Capability.JCC_NEXT: lambda calibrated, stage: calibrated and stage in _JCC_STAGES,
    Capability.BALANCE: lambda calibrated, stage: calibrated and stage is Stage.JCC_OS,
    # An unrecognised stage routes to summary, so summary must stay invokable
    Capability.SUMMARY: lambda calibrated, stage: stage is None or stage in _SUMMARY_STAGES,
    Capability.SPEECH_CAPTURE: lambda calibrated, stage: True,
    Capability.SPEECH_SYNTHESIS: lambda calibrated, stage: True,
}


def can_invoke(capability: Capability | str, context: ExamContext) -> bool:
    """Whether *capability* may be invoked in *context*."""
    try:
        check = _PRECONDITIONS[Capability(capability)]
    except ValueError:
        return False
    return check(context.calibrated, _coerce_stage(context.stage))


# ------------------------------------------------------------------
# Stage transitions
# ------------------------------------------------------------------

_TRANSITIONS: dict[tuple[Stage, Capability], Stage] = {
    (Stage.IDLE, Capability.CALIBRATE): Stage.CALIBRATION,
    (Stage.IDLE, Capability.STAIRCASE_INIT): Stage.SPHERE_OD,
    (Stage.CALIBRATION, Capability.STAIRCASE_INIT): Stage.SPHERE_OD,
    (Stage.SPHERE_OD, Capability.STAIRCASE_INIT): Stage.SPHERE_OS,
    (Stage.SPHERE_OS, Capability.JCC_INIT): Stage.JCC_OD,
    (Stage.JCC_OD, Capability.JCC_INIT): Stage.JCC_OS,
    (Stage.JCC_OS, Capability.BALANCE): Stage.BALANCE,
    (Stage.JCC_OS, Capability.SUMMARY): Stage.COMPLETE,
    (Stage.BALANCE, Capability.SUMMARY): Stage.COMPLETE,
}


def next_stage(current: Stage | str, completed: Capability | str) -> Stage | str:
    """Stage after *completed* finished in *current*; unknown pairs are a no-op."""
    stage = _coerce_stage(current)
    try:
        capability = Capability(completed)
    except ValueError:
        return current
    if stage is None:
        return current
    return _TRANSITIONS.get((stage, capability), stage)

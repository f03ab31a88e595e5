"""Rule-based pacing: when to ease off, push harder, pause, or alert.

These rules never change controller state. They are advice for the host
(and the local fallback whenever the model-backed hint in ``nearify.llm``
is unavailable).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel


class PacingMode(str, Enum):
    NORMAL = "normal"
    EASIER = "easier"
    HARDER = "harder"
    ABORT = "abort"


class PacingSignals(BaseModel):
    """Live signals from the current procedure."""

    stage: Literal["sphere", "jcc", "balance"]
    confidence: float
    misses: int = 0
    latency_ms: int = 2000
    reversals: int = 0
    trial_count: int = 0


class PacingHint(BaseModel):
    suggestion: str
    reason: str
    priority: Literal["low", "medium", "high"]
    adjustments: dict[str, Any] = {}


class PacingContext(BaseModel):
    confidence: float
    fixation_stable: bool = True
    latency_ms: int = 2000
    consecutive_misses: int = 0
    consecutive_correct: int = 0


class PacingDecision(BaseModel):
    mode: PacingMode
    reason: str
    adjustments: dict[str, Any] = {}


def priority_for(confidence: float) -> Literal["low", "medium", "high"]:
    if confidence < 0.5:
        return "high"
    if confidence < 0.7:
        return "medium"
    return "low"


def fallback_hint(signals: PacingSignals) -> PacingHint:
    """Local hint used when no model is available."""
    if signals.misses >= 3 or signals.confidence < 0.5:
        return PacingHint(
            suggestion="Confidence dipped, allocate more trials or ease difficulty",
            reason=f"{signals.misses} misses with {signals.confidence * 100:.0f}% confidence",
            priority="high",
            adjustments={"repeat_line": True},
        )

    if signals.latency_ms > 3000:
        return PacingHint(
            suggestion="High latency detected, patient may need encouragement",
            reason=f"Average response time {signals.latency_ms}ms",
            priority="medium",
        )

    if signals.stage == "sphere" and signals.reversals >= 6:
        return PacingHint(
            suggestion="Staircase converged, ready for JCC astigmatism test",
            reason=f"{signals.reversals} reversals achieved",
            priority="low",
        )

    if signals.stage == "jcc" and signals.confidence > 0.8:
        return PacingHint(
            suggestion="Axis search stable, tighten step to 5°",
            reason=f"High confidence ({signals.confidence * 100:.0f}%)",
            priority="low",
            adjustments={"step_size": 5},
        )

    return PacingHint(
        suggestion="Continue current protocol",
        reason="Test progressing normally",
        priority="low",
    )


def should_alert(signals: PacingSignals) -> bool:
    return signals.confidence < 0.4 or signals.misses >= 4 or signals.latency_ms > 5000


def route_mode(context: PacingContext) -> PacingDecision:
    """Pick a pacing mode from confidence, latency, fixation and streaks."""
    if not context.fixation_stable and context.consecutive_misses >= 3:
        return PacingDecision(
            mode=PacingMode.ABORT,
            reason="Unstable fixation with multiple misses",
            adjustments={"show_encouragement": True},
        )
    if context.latency_ms > 8000 and context.confidence < 0.3:
        return PacingDecision(
            mode=PacingMode.ABORT,
            reason="Very high latency with low confidence, patient may be fatigued",
            adjustments={"show_encouragement": True},
        )

    if context.consecutive_misses >= 3:
        return PacingDecision(
            mode=PacingMode.EASIER,
            reason="Three consecutive misses, reducing difficulty",
            adjustments={"difficulty_delta": -1, "show_encouragement": True},
        )
    if context.confidence < 0.4 and context.latency_ms > 4000:
        return PacingDecision(
            mode=PacingMode.EASIER,
            reason="Low confidence with slow responses",
            adjustments={"difficulty_delta": -1, "show_encouragement": True},
        )
    if not context.fixation_stable:
        return PacingDecision(
            mode=PacingMode.EASIER,
            reason="Fixation instability detected",
            adjustments={"difficulty_delta": -1},
        )

    if context.consecutive_correct >= 5 and context.confidence > 0.9:
        return PacingDecision(
            mode=PacingMode.HARDER,
            reason="Excellent performance, increasing challenge",
            adjustments={"difficulty_delta": 1},
        )

    return PacingDecision(mode=PacingMode.NORMAL, reason="Performance within expected range")


ENCOURAGEMENT = {
    PacingMode.EASIER: "No problem! We'll slow down and show a larger line. Take your time.",
    PacingMode.HARDER: "Excellent work! Let's make it a bit more challenging.",
    PacingMode.ABORT: "Let's take a quick break. You're doing great!",
    PacingMode.NORMAL: "Keep going, you're doing great!",
}


def encouragement(mode: PacingMode) -> str:
    return ENCOURAGEMENT[mode]

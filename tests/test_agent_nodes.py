"""Unit tests for nearify.agent.nodes — exam graph node functions."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from nearify.agent.nodes import (
    apply_response,
    build_context,
    present_stimulus,
    route,
    start_procedure,
    summarize,
)
from nearify.agent.state import Capability, ToolDecision
from nearify.config import settings
from nearify.core import jcc, staircase
from nearify.core.types import Calibration, Eye
from nearify.pacing import PacingHint

LINE = ["C", "D", "E", "F", "L"]
CALIBRATION = Calibration(pixels_per_cm=40.0, viewing_distance_cm=60.0)


def _decision(capability: Capability, eye: str | None = None) -> ToolDecision:
    return ToolDecision(
        capability=capability,
        args={"eye": eye} if eye else {},
        rationale="test",
    )


@pytest.fixture
def sphere_turn() -> dict:
    """A right-eye sphere turn waiting for the patient to read LINE."""
    return {
        "session_id": "abc",
        "calibrated": True,
        "calibration": CALIBRATION,
        "stage": "sphere_od",
        "staircases": {"OD": staircase.init_staircase(Eye.OD)},
        "current_line": LINE,
        "awaiting_response": True,
    }


@pytest.fixture
def jcc_turn() -> dict:
    return {
        "calibrated": True,
        "stage": "jcc_os",
        "jcc": {"OS": jcc.init_jcc(Eye.OS)},
        "awaiting_response": True,
    }


# ------------------------------------------------------------------
# build_context
# ------------------------------------------------------------------


class TestBuildContext:
    """Verify the projection onto the router's view."""

    def test_empty_state(self):
        ctx = build_context({})
        assert ctx.calibrated is False
        assert ctx.stage == "idle"
        assert ctx.sphere_od is None
        assert ctx.awaiting_voice_input is False

    def test_reports_progress(self, finished_staircase, finished_jcc):
        ctx = build_context(
            {
                "calibrated": True,
                "stage": "jcc_od",
                "staircases": {"OD": finished_staircase, "OS": staircase.init_staircase(Eye.OS)},
                "jcc": {"OD": finished_jcc},
                "awaiting_response": True,
            }
        )
        assert ctx.sphere_od.complete is True
        assert ctx.sphere_od.reversals == 6
        assert ctx.sphere_os.complete is False
        assert ctx.jcc_od.complete is True
        assert ctx.jcc_od.stage == "done"
        assert ctx.jcc_os is None
        assert ctx.awaiting_voice_input is True


# ------------------------------------------------------------------
# apply_response
# ------------------------------------------------------------------


class TestApplyResponse:
    """Verify events reach the controller owning the stage."""

    def test_no_event_is_noop(self):
        assert apply_response({"stage": "sphere_od"}) == {}

    def test_calibration_from_card_width(self):
        result = apply_response({"event": {"calibration": {"card_width_px": 342.4, "viewing_distance_cm": 50}}})
        assert result["calibrated"] is True
        assert result["calibration"].pixels_per_cm == pytest.approx(40.0)
        assert result["calibration"].viewing_distance_cm == 50
        assert result["stage"] == "calibration"
        assert result["event"] is None

    def test_calibration_from_pixels_per_cm(self):
        result = apply_response({"event": {"calibration": {"pixels_per_cm": 38.0}}})
        assert result["calibration"].pixels_per_cm == 38.0
        assert result["calibration"].viewing_distance_cm == settings.viewing_distance_cm

    def test_spoken_letters_scored_correct(self, sphere_turn):
        sphere_turn["event"] = {"spoken": "C D E F L"}
        result = apply_response(sphere_turn)
        stair = result["staircases"]["OD"]
        assert stair.history[-1].correct is True
        assert result["awaiting_response"] is False
        assert result["event"] is None

    def test_unparseable_speech_scored_incorrect(self, sphere_turn):
        sphere_turn["event"] = {"spoken": "I can't really tell"}
        result = apply_response(sphere_turn)
        assert result["staircases"]["OD"].history[-1].correct is False

    def test_was_correct_flag(self, sphere_turn):
        sphere_turn["event"] = {"was_correct": False}
        result = apply_response(sphere_turn)
        assert result["staircases"]["OD"].size_index == 7

    def test_previous_staircase_untouched(self, sphere_turn):
        before = sphere_turn["staircases"]["OD"]
        sphere_turn["event"] = {"was_correct": True}
        apply_response(sphere_turn)
        assert sphere_turn["staircases"]["OD"] is before
        assert before.history == ()

    def test_jcc_spoken_choice(self, jcc_turn):
        jcc_turn["event"] = {"spoken": "two"}
        result = apply_response(jcc_turn)
        assert result["jcc"]["OS"].axis_deg == 105
        assert result["awaiting_response"] is False

    def test_jcc_numeric_choice(self, jcc_turn):
        jcc_turn["event"] = {"choice": 1}
        result = apply_response(jcc_turn)
        assert result["jcc"]["OS"].axis_deg == 75

    def test_unparseable_choice_keeps_waiting(self, jcc_turn):
        jcc_turn["event"] = {"spoken": "they look the same"}
        result = apply_response(jcc_turn)
        assert result == {"event": None}

    def test_event_outside_testing_turn_ignored(self):
        result = apply_response({"stage": "complete", "event": {"spoken": "C D E"}})
        assert result == {"event": None}

    def test_event_when_not_awaiting_ignored(self, sphere_turn):
        sphere_turn["awaiting_response"] = False
        sphere_turn["event"] = {"was_correct": True}
        assert apply_response(sphere_turn) == {"event": None}

    def test_hint_only_when_enabled(self, sphere_turn):
        sphere_turn["event"] = {"was_correct": True}
        assert "hint" not in apply_response(sphere_turn)

    def test_hint_attached_when_enabled(self, sphere_turn):
        hint = PacingHint(suggestion="Continue", reason="ok", priority="low")
        sphere_turn["event"] = {"was_correct": True}
        with (
            patch.object(settings, "pacing_hints_enabled", True),
            patch("nearify.agent.nodes.pacing_hint", return_value=hint) as mock,
        ):
            result = apply_response(sphere_turn)

        signals = mock.call_args.args[0]
        assert signals.stage == "sphere"
        assert signals.trial_count == 1
        assert signals.latency_ms == 2000
        assert result["hint"]["suggestion"] == "Continue"

    def test_hint_uses_reported_latency(self, jcc_turn):
        jcc_turn["event"] = {"choice": 1, "latency_ms": 4200}
        with (
            patch.object(settings, "pacing_hints_enabled", True),
            patch("nearify.llm.generate_json", side_effect=ConnectionError("offline")),
        ):
            result = apply_response(jcc_turn)

        # The rule-based hint flags the slow answer
        assert result["hint"]["priority"] == "medium"
        assert "4200ms" in result["hint"]["reason"]

    @pytest.mark.parametrize("latency", ["fast", -5, True, None])
    def test_unusable_latency_ignored(self, sphere_turn, latency):
        hint = PacingHint(suggestion="Continue", reason="ok", priority="low")
        sphere_turn["event"] = {"was_correct": True, "latency_ms": latency}
        with (
            patch.object(settings, "pacing_hints_enabled", True),
            patch("nearify.agent.nodes.pacing_hint", return_value=hint) as mock,
        ):
            apply_response(sphere_turn)

        assert mock.call_args.args[0].latency_ms == 2000


# ------------------------------------------------------------------
# route
# ------------------------------------------------------------------


class TestRoute:
    """Verify the route node wraps the router."""

    def test_returns_decision(self):
        result = route({})
        assert result["decision"].capability is Capability.CALIBRATE

    def test_awaiting_speech(self, sphere_turn):
        result = route(sphere_turn)
        assert result["decision"].capability is Capability.SPEECH_CAPTURE


# ------------------------------------------------------------------
# start_procedure / present_stimulus
# ------------------------------------------------------------------


class TestStartProcedure:
    """Verify procedure initialization and first stimulus."""

    def test_starts_staircase(self):
        state = {
            "stage": "calibration",
            "calibration": CALIBRATION,
            "decision": _decision(Capability.STAIRCASE_INIT, "OD"),
        }
        result = start_procedure(state)
        assert result["stage"] == "sphere_od"
        assert result["staircases"]["OD"].size_index == settings.staircase_start_index
        assert len(result["current_line"]) == settings.line_length
        assert result["letter_size_px"] >= 10
        assert result["awaiting_response"] is True

    def test_second_eye_keeps_first(self, finished_staircase):
        state = {
            "stage": "sphere_od",
            "staircases": {"OD": finished_staircase},
            "decision": _decision(Capability.STAIRCASE_INIT, "OS"),
        }
        result = start_procedure(state)
        assert result["stage"] == "sphere_os"
        assert result["staircases"]["OD"] is finished_staircase
        assert result["staircases"]["OS"].eye is Eye.OS

    def test_starts_jcc(self):
        state = {"stage": "sphere_os", "decision": _decision(Capability.JCC_INIT, "OD")}
        result = start_procedure(state)
        assert result["stage"] == "jcc_od"
        assert result["jcc"]["OD"].axis_deg == settings.jcc_start_axis
        assert result["flip_axes"] == (45, 135)
        assert result["awaiting_response"] is True


class TestPresentStimulus:
    """Verify the next stimulus for a running procedure."""

    def test_letter_line_sized_for_current_step(self, sphere_turn):
        sphere_turn["decision"] = _decision(Capability.STAIRCASE_NEXT, "OD")
        result = present_stimulus(sphere_turn)
        assert len(result["current_line"]) == settings.line_length
        # 0.4 logMAR at 60 cm and 40 px/cm is 8.8 px, floored to the minimum
        assert result["letter_size_px"] == 10

    def test_jcc_flip_axes(self, jcc_turn):
        jcc_turn["decision"] = _decision(Capability.JCC_NEXT, "OS")
        result = present_stimulus(jcc_turn)
        assert result["flip_axes"] == (45, 135)
        assert result["awaiting_response"] is True


# ------------------------------------------------------------------
# summarize
# ------------------------------------------------------------------


class TestSummarize:
    """Verify the final prescription node."""

    def test_builds_prescription(self, finished_staircase, finished_jcc):
        state = {
            "stage": "jcc_os",
            "staircases": {"OD": finished_staircase},
            "jcc": {"OD": finished_jcc},
        }
        result = summarize(state)
        rx = result["prescription"]["OD"]
        assert rx.cyl_d == -1.25
        assert rx.axis_deg == 0
        assert result["stage"] == "complete"
        assert result["awaiting_response"] is False

    def test_empty_state(self):
        result = summarize({"stage": "warp_drive"})
        assert result["prescription"] == {}
        assert result["stage"] == "warp_drive"

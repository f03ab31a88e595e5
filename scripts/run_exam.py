"""CLI entry point: run a full exam against a simulated patient."""

import argparse
import json
import random
import uuid

from nearify.agent.graph import build_graph
from nearify.agent.state import Capability, Stage
from nearify.core.staircase import LOGMAR_STEPS
from nearify.logging_conf import configure_logging
from nearify.summary import format_rx, snellen

MAX_TURNS = 500


class SimulatedPatient:
    """Answers like an eye with a fixed acuity limit and astigmatism."""

    def __init__(self, acuity_index: int, axis: int, cyl: float, lapse: float, rng: random.Random) -> None:
        self.acuity_index = acuity_index
        self.axis = axis
        self.cyl = cyl
        self.lapse = lapse
        self.rng = rng

    def read(self, line: list[str], size_index: int) -> str:
        legible = size_index <= self.acuity_index
        if self.rng.random() < self.lapse:
            legible = not legible
        letters = line if legible else [self.rng.choice("ABGHK") for _ in line]
        return " ".join(letters)

    def compare(self, probe_axis: int, probe_cyl: float, stage: str) -> str:
        if stage == "axis":
            offset = (self.axis - probe_axis + 90) % 180 - 90
            if abs(offset) <= 5:
                # the two views look the same
                return self.rng.choice(["one", "two"])
            return "one" if offset < 0 else "two"
        if probe_cyl == self.cyl:
            return self.rng.choice(["one", "two"])
        return "one" if probe_cyl > self.cyl else "two"


def _answer(state: dict, patient: SimulatedPatient) -> dict:
    stage = state["stage"]
    eye = "OD" if stage.endswith("od") else "OS"
    if stage.startswith("sphere"):
        stair = state["staircases"][eye]
        return {"spoken": patient.read(state["current_line"], stair.size_index)}
    cross = state["jcc"][eye]
    return {"spoken": patient.compare(cross.axis_deg, cross.cyl, cross.stage.value)}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Nearify: simulated self-administered refraction exam",
    )
    parser.add_argument("--acuity-index", type=int, default=8, help="Smallest legible step (0-12)")
    parser.add_argument("--axis", type=int, default=170, help="Simulated astigmatism axis (degrees)")
    parser.add_argument("--cyl", type=float, default=-1.0, help="Simulated cylinder (D)")
    parser.add_argument("--lapse", type=float, default=0.05, help="Probability of a random wrong answer")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every turn",
    )
    args = parser.parse_args()

    if args.verbose:
        configure_logging()

    patient = SimulatedPatient(args.acuity_index, args.axis, args.cyl, args.lapse, random.Random(args.seed))
    print("=" * 60)
    print("Nearify: Simulated Exam")
    print("=" * 60)
    print(f"\nTrue acuity: {LOGMAR_STEPS[args.acuity_index]:.1f} logMAR, cyl {args.cyl:.2f} x {args.axis}°\n")

    graph = build_graph()
    state = graph.invoke({"session_id": uuid.uuid4().hex[:8]})

    for _ in range(MAX_TURNS):
        decision = state["decision"]
        if state.get("stage") == Stage.COMPLETE.value:
            break
        if decision.capability is Capability.CALIBRATE:
            event = {"calibration": {"card_width_px": 323.6, "viewing_distance_cm": 60}}
        else:
            event = _answer(state, patient)
        state = graph.invoke({**state, "event": event})
    else:
        print(f"Exam did not finish within {MAX_TURNS} turns")
        return

    print("=" * 60)
    print("PRESCRIPTION")
    print("=" * 60)
    for eye, rx in state.get("prescription", {}).items():
        print(f"{eye}: {format_rx(rx)}  VA {snellen(rx.va_logmar)}  ({rx.confidence * 100:.0f}% confident)")

    print("\n" + json.dumps({k: v.model_dump(mode="json") for k, v in state["prescription"].items()}, indent=2))


if __name__ == "__main__":
    main()

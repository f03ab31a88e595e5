"""Final prescription built from the frozen controller states."""

from __future__ import annotations

from nearify.core import jcc, staircase
from nearify.core.jcc import JccState
from nearify.core.staircase import StaircaseState
from nearify.core.types import Eye, Rx


def build_rx(eye: Eye, stair: StaircaseState, cross: JccState | None = None) -> Rx:
    """Combine one eye's staircase and JCC results into an ``Rx``.

    Without a JCC state the eye is reported plano-cylinder at axis 0 and the
    confidence is the staircase's alone.
    """
    va = staircase.threshold(stair)
    stair_conf = staircase.confidence(stair)

    if cross is None:
        cyl, axis, conf = 0.0, 0, stair_conf
    else:
        found = jcc.result(cross)
        cyl, axis = found.cyl, found.axis
        conf = (stair_conf + jcc.confidence(cross)) / 2

    return Rx(
        eye=eye,
        sphere_d=staircase.logmar_to_sphere(va),
        cyl_d=cyl,
        axis_deg=axis,
        va_logmar=va,
        confidence=round(conf, 3),
    )


def build_prescription(
    staircases: dict[str, StaircaseState],
    crosses: dict[str, JccState] | None = None,
) -> dict[str, Rx]:
    """Build an ``Rx`` for every eye that has a staircase result."""
    crosses = crosses or {}
    return {
        eye.value: build_rx(eye, staircases[eye.value], crosses.get(eye.value))
        for eye in Eye
        if eye.value in staircases
    }


def _signed(value: float) -> str:
    return f"+{value:.2f}" if value >= 0 else f"{value:.2f}"


def format_rx(rx: Rx) -> str:
    """Render as ``sphere cyl x axis``, e.g. ``-0.50 -0.75 x 90°``."""
    return f"{_signed(rx.sphere_d)} {_signed(rx.cyl_d)} x {rx.axis_deg}°"


def snellen(logmar: float) -> str:
    """Snellen fraction (20 ft) for a logMAR value."""
    return f"20/{round(20 * 10**logmar)}"

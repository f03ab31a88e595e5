"""Core value types shared by the exam controllers."""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel

# Standard credit card width, used for on-screen calibration
CARD_WIDTH_CM = 8.56


class Eye(str, Enum):
    """Which eye a procedure instance belongs to."""

    OD = "OD"  # right
    OS = "OS"  # left


class ProcedureCompleteError(RuntimeError):
    """Raised when a finished staircase or JCC procedure is advanced again."""


def round_half_up(value: float) -> int:
    """Round to the nearest integer, ties going up (6.5 -> 7, -2.5 -> -2)."""
    return math.floor(value + 0.5)


def round_quarter(value: float) -> float:
    """Round a lens power to the nearest 0.25 D."""
    # "+ 0.0" turns -0.0 into 0.0
    return round_half_up(value / 0.25) * 0.25 + 0.0


class Calibration(BaseModel):
    """Screen and viewing-distance calibration for stimulus sizing."""

    pixels_per_cm: float
    viewing_distance_cm: float

    model_config = {"frozen": True}

    @classmethod
    def from_card_width(cls, card_width_px: float, viewing_distance_cm: float) -> Calibration:
        """Build a calibration from the on-screen width of a credit card."""
        return cls(
            pixels_per_cm=card_width_px / CARD_WIDTH_CM,
            viewing_distance_cm=viewing_distance_cm,
        )

    @property
    def pixels_per_arcmin(self) -> float:
        arcmin_rad = math.radians(1 / 60)
        return math.tan(arcmin_rad) * self.viewing_distance_cm * self.pixels_per_cm


class Rx(BaseModel):
    """Final spherocylindrical result for one eye."""

    eye: Eye
    sphere_d: float
    cyl_d: float
    axis_deg: int
    va_logmar: float
    confidence: float

    model_config = {"frozen": True}

"""Sloan letter optotypes: stimulus generation, sizing and response scoring."""

from __future__ import annotations

import math
import random
import re

from pydantic import BaseModel

# Nine Sloan letters of roughly equal legibility
SLOAN_LETTERS: tuple[str, ...] = ("C", "D", "E", "F", "L", "O", "P", "T", "Z")

# A line passes when at least 60% of its letters are read back in place
PASS_RATIO = 0.6

# A standard optotype subtends 5 arcmin at 0.0 logMAR
OPTOTYPE_ARCMIN = 5.0

MIN_LETTER_PX = 10


class LineScore(BaseModel):
    """Result of comparing a spoken line against the shown one."""

    correct: bool
    matches: int
    total: int

    model_config = {"frozen": True}


def generate_line(count: int = 5, rng: random.Random | None = None) -> list[str]:
    """Draw *count* letters independently and uniformly from ``SLOAN_LETTERS``."""
    rng = rng or random
    return [rng.choice(SLOAN_LETTERS) for _ in range(count)]


def letter_size_pixels(logmar: float, viewing_distance_cm: float, pixels_per_cm: float) -> int:
    """Convert a logMAR value to an on-screen letter height in pixels."""
    arcmin = OPTOTYPE_ARCMIN * 10**logmar
    radians = math.radians(arcmin / 60)
    size_cm = math.tan(radians) * viewing_distance_cm
    size_px = size_cm * pixels_per_cm
    return max(MIN_LETTER_PX, math.floor(size_px + 0.5))


def parse_spoken_letters(text: str | None) -> list[str]:
    """Turn a speech transcript into the Sloan letters it names, in order.

    Anything that is not a standalone Sloan letter is dropped, so garbage
    or empty input gives an empty list.
    """
    if not text:
        return []
    cleaned = re.sub(r"[^A-Z]", " ", text.upper())
    return [tok for tok in cleaned.split() if len(tok) == 1 and tok in SLOAN_LETTERS]


def score_line(shown: list[str], spoken: list[str]) -> LineScore:
    """Position-wise comparison of the spoken letters against the shown line."""
    total = len(shown)
    matches = sum(1 for a, b in zip(shown, spoken) if a == b)
    correct = matches >= math.ceil(total * PASS_RATIO)
    return LineScore(correct=correct, matches=matches, total=total)


def score_spoken_line(shown: list[str], text: str | None) -> LineScore:
    """Parse a transcript and score it against *shown*."""
    return score_line(shown, parse_spoken_letters(text))

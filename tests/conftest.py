"""Shared fixtures and markers for the test suite."""

import pytest

from nearify.core import jcc, staircase
from nearify.core.types import Eye

# Ten line responses that give six reversals from the default start line
CONVERGING_RESPONSES = [False, True, True, False, True, True, False, True, True, False]


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: marks tests that require live services (Ollama)",
    )


def is_ollama_available() -> bool:
    """Check if the Ollama server is reachable and has a model."""
    try:
        import ollama

        models = ollama.list().get("models", [])
        return len(models) > 0
    except Exception:
        return False


def run_staircase(eye: Eye, responses: list[bool]) -> staircase.StaircaseState:
    state = staircase.init_staircase(eye)
    for correct in responses:
        state = staircase.advance(state, correct)
    return state


def run_jcc(eye: Eye, choices: list[int]) -> jcc.JccState:
    state = jcc.init_jcc(eye)
    for choice in choices:
        state = jcc.advance(state, choice)
    return state


@pytest.fixture
def finished_staircase() -> staircase.StaircaseState:
    return run_staircase(Eye.OD, CONVERGING_RESPONSES)


@pytest.fixture
def finished_jcc() -> jcc.JccState:
    # 9 axis trials narrow the step to 5° and hand over to power,
    # 3 identical power trials settle the cylinder at -1.25 D
    return run_jcc(Eye.OD, [1] * 12)

"""Ollama client wrapper for model-backed pacing hints."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import ollama

from nearify.config import settings
from nearify.pacing import PacingHint, PacingSignals, fallback_hint, priority_for

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

SYSTEM_OPTOMETRY = (
    "You are an expert optometry assistant analysing a live, self-administered "
    "vision test. Give concise, actionable recommendations to keep the test "
    "accurate and the patient comfortable. Focus on step size, difficulty "
    "adaptation and stopping criteria."
)

PACING_PROMPT = """\
Current test state:
- Stage: {stage}
- Confidence: {confidence:.2f}
- Recent misses: {misses}
- Average latency: {latency_ms}ms
- Reversals: {reversals}
- Total trials: {trial_count}

Recommend ONE specific adjustment.

Return a JSON object with these fields:
- "suggestion": a short instruction for the test host
- "reason": one sentence explaining why
- "adjustments": an object that may contain "step_size" (int), \
"repeat_line" (bool) or "switch_mode" (string)

Respond ONLY with valid JSON, no extra text.
"""


# ---------------------------------------------------------------------------
# Client functions
# ---------------------------------------------------------------------------


def _client() -> ollama.Client:
    return ollama.Client(host=settings.ollama_base_url)


def generate_json(prompt: str, system_prompt: str = SYSTEM_OPTOMETRY) -> dict[str, Any]:
    """Send a prompt and parse the response as JSON."""
    response = _client().chat(
        model=settings.ollama_model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ],
        format="json",
        options={"temperature": 0.3},
    )
    content = response["message"]["content"]
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        return _extract_json(content)


def _extract_json(text: str) -> dict[str, Any]:
    """Best-effort extraction of a JSON object from model output."""
    match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if match:
        return json.loads(match.group(1))

    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        return json.loads(match.group(0))

    raise ValueError(f"Could not extract JSON from model response: {text[:200]}")


# ---------------------------------------------------------------------------
# High-level functions
# ---------------------------------------------------------------------------


def pacing_hint(signals: PacingSignals) -> PacingHint:
    """Ask the model for a pacing hint, falling back to the local rules.

    The hint is advisory only; controller state is never touched here.
    """
    prompt = PACING_PROMPT.format(**signals.model_dump())
    try:
        data = generate_json(prompt)
    except (ollama.ResponseError, ConnectionError, ValueError, KeyError) as exc:
        logger.warning("Pacing model unavailable (%s), using rule-based hint", exc)
        return fallback_hint(signals)

    suggestion = data.get("suggestion")
    if not isinstance(suggestion, str) or not suggestion.strip():
        logger.warning("Pacing model returned no suggestion, using rule-based hint")
        return fallback_hint(signals)

    adjustments = data.get("adjustments")
    return PacingHint(
        suggestion=suggestion.strip(),
        reason=str(data.get("reason", ""))[:200],
        priority=priority_for(signals.confidence),
        adjustments=adjustments if isinstance(adjustments, dict) else {},
    )

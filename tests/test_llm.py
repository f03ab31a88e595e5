"""Unit and integration tests for nearify.llm — Ollama client and pacing hints."""

import json
from unittest.mock import patch

import ollama
import pytest

from nearify.llm import (
    PACING_PROMPT,
    SYSTEM_OPTOMETRY,
    _extract_json,
    generate_json,
    pacing_hint,
)
from nearify.pacing import PacingSignals, fallback_hint


def _reply(content: str) -> dict:
    return {"message": {"content": content}}


@pytest.fixture
def signals() -> PacingSignals:
    return PacingSignals(stage="sphere", confidence=0.45, misses=2, latency_ms=2600, reversals=3, trial_count=9)


# ── Prompt template tests ────────────────────────────────────────────────


class TestPromptTemplates:
    """Verify prompt templates have the right placeholders and structure."""

    def test_pacing_prompt_has_all_placeholders(self):
        for field in ("stage", "confidence", "misses", "latency_ms", "reversals", "trial_count"):
            assert "{" + field in PACING_PROMPT

    def test_pacing_prompt_requests_json(self):
        assert "JSON" in PACING_PROMPT

    def test_system_prompt_is_nonempty(self):
        assert len(SYSTEM_OPTOMETRY) > 50

    def test_pacing_prompt_formats_signals(self, signals):
        rendered = PACING_PROMPT.format(**signals.model_dump())
        assert "Confidence: 0.45" in rendered
        assert "2600ms" in rendered
        assert "{stage}" not in rendered


# ── _extract_json tests ──────────────────────────────────────────────────


class TestExtractJson:
    """Unit tests for the JSON extraction fallback helper."""

    def test_extracts_json_from_fenced_block(self):
        text = 'Here you go:\n```json\n{"suggestion": "slow down"}\n```'
        assert _extract_json(text) == {"suggestion": "slow down"}

    def test_extracts_json_with_surrounding_text(self):
        text = 'Advice: {"suggestion": "repeat", "reason": "misses"} thanks'
        assert _extract_json(text)["reason"] == "misses"

    def test_raises_on_no_json(self):
        with pytest.raises(ValueError, match="Could not extract JSON"):
            _extract_json("Keep going.")

    def test_raises_on_invalid_json(self):
        with pytest.raises((ValueError, json.JSONDecodeError)):
            _extract_json("{not: json,}")


# ── generate_json() mocked tests ────────────────────────────────────────


class TestGenerateJsonMocked:
    """Unit tests for generate_json() with the Ollama client mocked."""

    @patch("nearify.llm._client")
    def test_returns_parsed_json(self, mock_client):
        mock_client.return_value.chat.return_value = _reply('{"suggestion": "ok"}')
        assert generate_json("Test") == {"suggestion": "ok"}

    @patch("nearify.llm._client")
    def test_passes_prompts_and_options(self, mock_client):
        chat = mock_client.return_value.chat
        chat.return_value = _reply("{}")
        generate_json("User prompt", system_prompt="Custom system")
        kwargs = chat.call_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "Custom system"}
        assert kwargs["messages"][1] == {"role": "user", "content": "User prompt"}
        assert kwargs["format"] == "json"
        assert kwargs["options"]["temperature"] == 0.3
        assert kwargs["model"] == "mistral"

    @patch("nearify.llm._client")
    def test_extracts_json_from_wrapped_reply(self, mock_client):
        mock_client.return_value.chat.return_value = _reply('Sure: {"a": 1}')
        assert generate_json("Test") == {"a": 1}


# ── pacing_hint() mocked tests ───────────────────────────────────────────


class TestPacingHintMocked:
    """Verify model hints and the rule-based fallback."""

    @patch("nearify.llm.generate_json")
    def test_uses_model_suggestion(self, mock_gen, signals):
        mock_gen.return_value = {
            "suggestion": "  Repeat the current line  ",
            "reason": "Two recent misses",
            "adjustments": {"repeat_line": True},
        }
        hint = pacing_hint(signals)
        assert hint.suggestion == "Repeat the current line"
        assert hint.reason == "Two recent misses"
        assert hint.priority == "high"
        assert hint.adjustments == {"repeat_line": True}
        assert "Stage: sphere" in mock_gen.call_args[0][0]

    @patch("nearify.llm.generate_json")
    def test_ignores_non_dict_adjustments(self, mock_gen, signals):
        mock_gen.return_value = {"suggestion": "Continue", "adjustments": ["bad"]}
        assert pacing_hint(signals).adjustments == {}

    @pytest.mark.parametrize(
        "error",
        [ConnectionError("refused"), ollama.ResponseError("model not found"), ValueError("no json")],
    )
    @patch("nearify.llm.generate_json")
    def test_falls_back_on_error(self, mock_gen, error, signals):
        mock_gen.side_effect = error
        assert pacing_hint(signals) == fallback_hint(signals)

    @patch("nearify.llm._client")
    def test_falls_back_on_unparseable_reply(self, mock_client, signals):
        mock_client.return_value.chat.return_value = _reply("I think you should slow down.")
        assert pacing_hint(signals) == fallback_hint(signals)

    @pytest.mark.parametrize("payload", [{}, {"suggestion": ""}, {"suggestion": 3}])
    @patch("nearify.llm.generate_json")
    def test_falls_back_without_suggestion(self, mock_gen, payload, signals):
        mock_gen.return_value = payload
        assert pacing_hint(signals) == fallback_hint(signals)


# ── Integration tests (require live Ollama) ──────────────────────────────


@pytest.mark.integration
class TestLLMIntegration:
    """Integration tests that hit the real Ollama server.

    Run with: pytest -m integration
    Skip with: pytest -m "not integration"
    """

    @pytest.fixture(autouse=True)
    def _skip_if_no_ollama(self):
        from tests.conftest import is_ollama_available

        if not is_ollama_available():
            pytest.skip("Ollama not available or no models loaded")

    def test_generate_json_returns_dict(self):
        result = generate_json('Return a JSON object with a single key "status" set to "ok".')
        assert isinstance(result, dict)

    def test_pacing_hint_has_suggestion(self, signals):
        hint = pacing_hint(signals)
        assert hint.suggestion
        assert hint.priority == "high"

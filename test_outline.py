"""
Tests for outline generation.

The outline always has exactly the requested number of chapters, and the
outline stage never raises past its own boundary.
"""

import asyncio

import pytest

from echo_paths.errors import MalformedOutlineError, MalformedResponseError, OutlineGenerationError
from echo_paths.llm_client import LLMConnectionError, LLMResponseFormatError
from echo_paths.models import Journey, StoryStyle
from echo_paths.outline import (
    FALLBACK_CHAPTER,
    PADDING_CHAPTER,
    OutlineGenerator,
    extract_json_array,
    parse_outline,
)


class ScriptedLLM:
    """Returns canned responses (or raises canned errors) in order."""

    model = "scripted"

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def generate(self, prompt: str, **kwargs) -> str:
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def make_journey(**overrides) -> Journey:
    data = {
        "start_label": "Old Town Gate",
        "end_label": "Harbor Lighthouse",
        "travel_mode": "WALKING",
        "total_duration_seconds": 300,
        "style": StoryStyle.FANTASY,
    }
    data.update(overrides)
    return Journey(**data)


def generate(llm: ScriptedLLM, count: int) -> list[str]:
    return asyncio.run(OutlineGenerator(llm).generate_outline(make_journey(), count))


def test_extract_json_array_with_surrounding_prose():
    text = 'Sure! Here it is:\n["One", "Two [draft]", "Three"]\nHope that helps [really].'
    assert extract_json_array(text) == '["One", "Two [draft]", "Three"]'


def test_extract_json_array_skips_unbalanced_bracket():
    assert extract_json_array('[unterminated ... ["a", "b"]') == '["a", "b"]'
    assert extract_json_array("no arrays here") is None


def test_parse_outline_rejects_bad_shapes():
    """Test that malformed responses raise the malformed-outline type."""
    for text in ("", "   ", "no json", "[]", '["ok", 3]', '[1, 2]', "[not json]"):
        with pytest.raises(MalformedOutlineError) as exc_info:
            parse_outline(text)
        assert isinstance(exc_info.value, MalformedResponseError)
        assert isinstance(exc_info.value, OutlineGenerationError)


def test_exact_length_kept():
    llm = ScriptedLLM('["a", "b", "c", "d"]')
    assert generate(llm, 4) == ["a", "b", "c", "d"]


def test_short_outline_is_padded():
    """Model returns 2 of 5 required chapters."""
    print("\n🧪 Testing outline padding...")

    llm = ScriptedLLM('["Setup at the gate", "A strange map appears"]')
    outline = generate(llm, 5)

    assert len(outline) == 5
    assert outline[:2] == ["Setup at the gate", "A strange map appears"]
    assert outline[2:] == [PADDING_CHAPTER] * 3

    print("   ✅ Short outline padded to requested length")


def test_long_outline_is_truncated():
    """Model returns 8 of 5 required chapters."""
    chapters = [f"Chapter {i}" for i in range(1, 9)]
    llm = ScriptedLLM("```json\n" + str(chapters).replace("'", '"') + "\n```")

    assert generate(llm, 5) == chapters[:5]


def test_network_failure_returns_fallback():
    llm = ScriptedLLM(LLMConnectionError("endpoint unreachable"))

    assert generate(llm, 5) == [FALLBACK_CHAPTER] * 5


def test_garbage_returns_fallback():
    for response in ("I'd rather not.", "", "[]", '{"chapters": "none"}', '["a", null]'):
        assert generate(ScriptedLLM(response), 3) == [FALLBACK_CHAPTER] * 3


def test_wire_format_error_returns_fallback():
    llm = ScriptedLLM(LLMResponseFormatError("no choices"))

    assert generate(llm, 2) == [FALLBACK_CHAPTER] * 2


def test_unexpected_error_returns_fallback():
    llm = ScriptedLLM(RuntimeError("client bug"))

    assert generate(llm, 4) == [FALLBACK_CHAPTER] * 4


def test_outline_prompt_content():
    """Test that one request asks for the exact chapter count and style."""
    llm = ScriptedLLM('["a", "b", "c", "d"]')
    generate(llm, 4)

    assert len(llm.prompts) == 1
    prompt = llm.prompts[0]
    assert "exactly 4 chapters" in prompt
    assert "Journey: Old Town Gate to Harbor Lighthouse by walking." in prompt
    assert "Total Duration: Approx 5min." in prompt
    assert "Fantasy Adventure" in prompt
    assert "An array of 4 strings" in prompt


def test_invalid_segment_count():
    with pytest.raises(ValueError):
        generate(ScriptedLLM('["a"]'), 0)


def test_first_array_inside_object_is_used():
    llm = ScriptedLLM('{"chapters": ["Departure", "Arrival"]}')

    assert generate(llm, 2) == ["Departure", "Arrival"]

"""
Outline Generation Module

Requests the full chapter plan for a journey in a single call and turns
the model's free text into exactly the number of chapters required.

The outline stage never fails the pipeline: any problem is logged and a
generic outline of the right length is returned instead.
"""

import json
import logging

from .errors import MalformedOutlineError, OutlineGenerationError
from .llm_client import LLMClient, LLMError, LLMResponseFormatError
from .models import Journey
from .prompt_builder import PromptBuilder


logger = logging.getLogger(__name__)


PADDING_CHAPTER = "Continue the journey towards the destination."
FALLBACK_CHAPTER = "Continue the immersive narrative of the journey."


def extract_json_array(text: str) -> str | None:
    """
    Find the first bracket-balanced ``[...]`` substring.

    Brackets inside JSON string literals are ignored, so chapter
    summaries containing "[" or "]" do not end the scan early.

    Returns:
        The array substring, or None if no balanced array exists
    """
    start = text.find("[")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(text)):
            char = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "[":
                depth += 1
            elif char == "]":
                depth -= 1
                if depth == 0:
                    return text[start:pos + 1]
        # unbalanced from this "[", try the next one
        start = text.find("[", start + 1)
    return None


def parse_outline(text: str) -> list[str]:
    """
    Parse the model's response into a list of chapter summaries.

    Raises:
        MalformedOutlineError: No array, invalid JSON, empty array, or
            non-string entries
    """
    if not text or not text.strip():
        raise MalformedOutlineError("No outline generated")

    candidate = extract_json_array(text)
    if candidate is None:
        raise MalformedOutlineError("Response contains no JSON array")

    try:
        outline = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise MalformedOutlineError(f"Outline array is not valid JSON: {e.msg}") from e

    if not isinstance(outline, list) or not outline:
        raise MalformedOutlineError("Invalid outline format received")
    if not all(isinstance(chapter, str) for chapter in outline):
        raise MalformedOutlineError("Outline entries must all be strings")

    return [chapter.strip() for chapter in outline]


def fit_outline(outline: list[str], segment_count: int) -> list[str]:
    """Pad with the generic continuation or truncate to ``segment_count``."""
    fitted = list(outline[:segment_count])
    while len(fitted) < segment_count:
        fitted.append(PADDING_CHAPTER)
    return fitted


def fallback_outline(segment_count: int) -> list[str]:
    return [FALLBACK_CHAPTER] * segment_count


class OutlineGenerator:
    """Produces one chapter summary per segment for a journey."""

    def __init__(self, llm_client: LLMClient, prompt_builder: PromptBuilder | None = None):
        self.llm_client = llm_client
        self.prompt_builder = prompt_builder or PromptBuilder()

    async def _request_outline(self, journey: Journey, segment_count: int) -> list[str]:
        prompt = self.prompt_builder.build_outline_prompt(journey, segment_count)
        try:
            text = await self.llm_client.generate(prompt)
        except LLMResponseFormatError as e:
            raise MalformedOutlineError(str(e)) from e
        except LLMError as e:
            raise OutlineGenerationError(str(e)) from e
        return parse_outline(text)

    async def generate_outline(self, journey: Journey, segment_count: int) -> list[str]:
        """
        Generate the story outline.

        Args:
            journey: Journey being narrated
            segment_count: Exact number of chapters required

        Returns:
            Exactly ``segment_count`` chapter summaries. Falls back to a
            generic outline on any failure.
        """
        if segment_count < 1:
            raise ValueError("segment_count must be at least 1")

        try:
            outline = await self._request_outline(journey, segment_count)
        except OutlineGenerationError as e:
            logger.warning(f"Outline generation failed, using fallback outline: {e}")
            return fallback_outline(segment_count)
        except Exception as e:
            logger.warning(
                f"Outline generation error ({type(e).__name__}), using fallback outline: {e}"
            )
            return fallback_outline(segment_count)

        if len(outline) != segment_count:
            logger.info(
                f"Outline returned {len(outline)} chapters, fitting to {segment_count}"
            )
        fitted = fit_outline(outline, segment_count)
        logger.debug(f"Story outline: {fitted}")
        return fitted

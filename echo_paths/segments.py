"""
Segment Generation Module

Produces the narration text of one chapter. Unlike the outline stage,
failures here are raised to the caller: a missing segment is a gap in
playback that the orchestrator has to decide about.
"""

import logging
import re

from .errors import MalformedSegmentError, SegmentGenerationError
from .llm_client import LLMClient, LLMError, LLMResponseFormatError
from .models import Journey, Segment
from .prompt_builder import PromptBuilder


logger = logging.getLogger(__name__)


# Titles the model sometimes emits despite being told not to
_HEADING_LINE = re.compile(
    r"^\s*(#{1,6}\s+.*|\*\*[^*\n]+\*\*|(chapter|segment|part)\s+\d+\s*[:.\-][^\n]*)\s*$",
    re.IGNORECASE,
)


def clean_narration(text: str) -> str:
    """Strip whitespace and a leading title or heading line."""
    text = text.strip()
    first_line, sep, rest = text.partition("\n")
    if sep and _HEADING_LINE.match(first_line):
        text = rest.strip()
    return text


class SegmentGenerator:
    """Generates narration text for one segment at a time."""

    def __init__(self, llm_client: LLMClient, prompt_builder: PromptBuilder | None = None):
        self.llm_client = llm_client
        self.prompt_builder = prompt_builder or PromptBuilder()

    async def generate_segment(
        self,
        journey: Journey,
        index: int,
        segment_count_estimate: int,
        chapter_goal: str,
        prior_context: str = "",
    ) -> Segment:
        """
        Generate one segment's narration.

        Args:
            journey: Journey being narrated
            index: 1-based segment index
            segment_count_estimate: Total segments planned
            chapter_goal: Outline entry for this chapter
            prior_context: Narration so far; only its tail reaches the prompt

        Returns:
            Segment with text and no audio yet

        Raises:
            MalformedSegmentError: Empty or unusable response
            SegmentGenerationError: Request failed
        """
        prompt = self.prompt_builder.build_segment_prompt(
            journey, index, segment_count_estimate, chapter_goal, prior_context
        )

        try:
            response = await self.llm_client.generate(prompt)
        except LLMResponseFormatError as e:
            logger.error(f"Segment {index} response malformed: {e}")
            raise MalformedSegmentError(str(e), index=index) from e
        except LLMError as e:
            logger.error(f"Segment {index} text generation error: {e}")
            raise SegmentGenerationError(str(e), index=index) from e
        except Exception as e:
            # custom clients raise their own exception types
            logger.error(f"Segment {index} unexpected client error: {type(e).__name__}: {e}")
            raise SegmentGenerationError(f"{type(e).__name__}: {e}", index=index) from e

        text = clean_narration(response or "")
        if not text:
            logger.error(f"Segment {index} text generation returned no text")
            raise MalformedSegmentError("No text generated for segment", index=index)

        logger.info(f"Segment {index}/{segment_count_estimate} generated ({len(text.split())} words)")
        return Segment(index=index, text=text)

"""
Prompt Builder Module

This module constructs the prompts sent to the chat-completion model:
- the one-shot outline prompt spanning the whole journey
- the per-segment narration prompt carrying the trailing context

It also resolves the fixed instruction block for each story style.
"""

import logging

from .models import Journey, StoryStyle
from .sizing import SegmentSizer


logger = logging.getLogger(__name__)


DEFAULT_CONTEXT_WINDOW = 1500


STYLE_INSTRUCTIONS: dict[StoryStyle, str] = {
    StoryStyle.NOIR: (
        "Style: Noir Thriller. Gritty, cynical, atmospheric. Use inner monologue. "
        "The traveler is a detective or someone with a troubled past. The city is a "
        "character itself: dark, rainy, hiding secrets. Use metaphors of shadows, "
        "smoke, and cold neon."
    ),
    StoryStyle.CHILDREN: (
        "Style: Children's Story. Whimsical, magical, full of wonder and gentle humor. "
        "The world is bright and alive; maybe inanimate objects (like traffic lights or "
        "trees) have slight personalities. Simple but evocative language. A sense of "
        "delightful discovery."
    ),
    StoryStyle.HISTORICAL: (
        "Style: Historical Epic. Grandiose, dramatic, and timeless. Treat the journey as "
        "a significant pilgrimage or quest in a bygone era (even though it's modern day, "
        "overlay it with historical grandeur). Use slightly archaic but understandable "
        "language. Focus on endurance, destiny, and the weight of history."
    ),
    StoryStyle.FANTASY: (
        "Style: Fantasy Adventure. Heroic, mystical, and epic. The real world is just a "
        "veil over a magical realm. Streets are ancient paths, buildings are towers or "
        "ruins. The traveler is on a vital quest. Use metaphors of magic, mythical "
        "creatures (shadows might be lurking beasts), and destiny."
    ),
    StoryStyle.DEFAULT: (
        "Style: Immersive, 'in the moment' narration. Focus on the sensation of movement "
        "and the immediate environment."
    ),
}


def get_style_instruction(style: StoryStyle | str | None) -> str:
    """Return the fixed instruction block for a story style."""
    return STYLE_INSTRUCTIONS[StoryStyle.coerce(style)]


def trailing_context(text: str, window: int = DEFAULT_CONTEXT_WINDOW) -> str:
    """Last ``window`` characters of the narration so far."""
    if window <= 0:
        return ""
    return text[-window:]


class PromptBuilder:
    """
    Builds the outline and segment prompts for one journey.

    All context is re-supplied with every request; the model keeps no
    conversation state between calls.
    """

    def __init__(
        self,
        sizer: SegmentSizer | None = None,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
    ):
        """
        Initialize prompt builder.

        Args:
            sizer: Pacing used for the per-segment word target
            context_window: Characters of prior narration carried forward
        """
        self.sizer = sizer or SegmentSizer()
        self.context_window = context_window

    def describe_journey(self, journey: Journey) -> str:
        """One-line journey description shared by both prompts."""
        return (
            f"Journey: {journey.start_label} to {journey.end_label} "
            f"by {journey.travel_mode.value.lower()}."
        )

    def build_outline_prompt(self, journey: Journey, segment_count: int) -> str:
        """
        Build the prompt asking for the whole story arc.

        Args:
            journey: Journey being narrated
            segment_count: Exact number of chapters required

        Returns:
            Prompt text for a single user message
        """
        lines = [
            "You are an expert storyteller. Write an outline for a story that is exactly "
            f"{segment_count} chapters long and has a complete cohesive story arc with a clear "
            "set up, inciting incident, rising action, climax, success, falling action, "
            "and resolution.",
            "",
            "Your outline should be tailored to match this journey:",
            "",
            self.describe_journey(journey),
            f"Total Duration: Approx {journey.duration_text}.",
        ]
        if journey.distance_text:
            lines.append(f"Total Distance: {journey.distance_text}.")
        lines.extend([
            f"Total Narrative Segments needed: {segment_count}.",
            "",
            get_style_instruction(journey.style),
            "",
            f"Output strictly valid JSON: An array of {segment_count} strings, one "
            "sentence per chapter. Example: "
            '["Chapter 1 summary...", "Chapter 2 summary...", ...]',
        ])
        return "\n".join(lines)

    def build_context_block(self, prior_context: str) -> str:
        """Wrap the trailing narration in continuation instructions."""
        window = trailing_context(prior_context, self.context_window)
        return (
            "PREVIOUS NARRATIVE CONTEXT (The story so far):\n"
            f"...{window}\n"
            "(CONTINUE SEAMLESSLY from the above. Do not repeat it. Do not start with "
            '"And so..." or similar connectors every time.)'
        )

    def build_segment_prompt(
        self,
        journey: Journey,
        index: int,
        segment_count_estimate: int,
        chapter_goal: str,
        prior_context: str = "",
    ) -> str:
        """
        Build the narration prompt for one segment.

        Args:
            journey: Journey being narrated
            index: 1-based segment index
            segment_count_estimate: Total segments planned
            chapter_goal: Outline entry for this segment
            prior_context: Narration generated so far (only the tail is used)

        Returns:
            Prompt text for a single user message
        """
        lines = [
            "You are an AI storytelling engine generating a continuous, immersive audio "
            "stream for a traveler.",
            self.describe_journey(journey),
            f"Current Status: Segment {index} of approx {segment_count_estimate}.",
            "",
            get_style_instruction(journey.style),
            "",
            f"CURRENT CHAPTER GOAL: {chapter_goal}",
        ]

        if index > 1:
            lines.extend(["", self.build_context_block(prior_context)])

        lines.extend([
            "",
            f"Task: Write the next ~{self.sizer.segment_duration_seconds} seconds of "
            f"narration (approx {self.sizer.words_per_segment} words) based on the "
            "Current Chapter Goal.",
            "Keep the narrative moving forward. This is a transient segment of a longer journey.",
            "",
            "IMPORTANT: Output ONLY the raw narration text for this segment. Do not include "
            "titles, chapter headings, or JSON. Just the text to be spoken.",
        ])
        return "\n".join(lines)

"""
Segment Sizing Module

Converts a journey's duration into the number of story segments and the
word budget of each segment.
"""

import math

from .config import NarrationConfig


TARGET_SEGMENT_DURATION_SEC = 60
WORDS_PER_MINUTE = 145


class SegmentSizer:
    """
    Paces the story to the journey.

    Every segment covers ``segment_duration_seconds`` of travel and is
    narrated at ``words_per_minute``.
    """

    def __init__(
        self,
        segment_duration_seconds: int = TARGET_SEGMENT_DURATION_SEC,
        words_per_minute: int = WORDS_PER_MINUTE,
    ):
        if segment_duration_seconds <= 0:
            raise ValueError("segment_duration_seconds must be positive")
        if words_per_minute <= 0:
            raise ValueError("words_per_minute must be positive")

        self.segment_duration_seconds = segment_duration_seconds
        self.words_per_minute = words_per_minute

    @classmethod
    def from_config(cls, config: NarrationConfig) -> "SegmentSizer":
        return cls(
            segment_duration_seconds=config.segment_duration_seconds,
            words_per_minute=config.words_per_minute,
        )

    @property
    def words_per_segment(self) -> int:
        """Target narration length of one segment."""
        return round(self.segment_duration_seconds / 60 * self.words_per_minute)

    def segment_count(self, duration_seconds: float) -> int:
        """
        Number of segments needed to cover the journey.

        Args:
            duration_seconds: Estimated journey duration

        Returns:
            ``max(1, ceil(duration / segment_duration))``
        """
        if duration_seconds < 0:
            raise ValueError(f"Journey duration cannot be negative: {duration_seconds}")
        return max(1, math.ceil(duration_seconds / self.segment_duration_seconds))


_default_sizer = SegmentSizer()

WORDS_PER_SEGMENT = _default_sizer.words_per_segment


def segment_count(duration_seconds: float) -> int:
    """Segment count at the default 60-second pacing."""
    return _default_sizer.segment_count(duration_seconds)

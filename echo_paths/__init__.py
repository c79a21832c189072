"""
Echo Paths: Continuous Journey Narration

Turns a confirmed route into a continuous audio story paced to the
journey's travel time. The story is planned as one chapter per minute of
travel, written segment by segment with a rolling narrative context, and
handed to a pluggable speech backend as each segment is ready.
"""

__version__ = "1.0.0"

from .audio import AudioSynthesizer, SilenceSynthesizer
from .config import AppConfig, FailurePolicy
from .errors import (
    AudioSynthesisError,
    MalformedResponseError,
    OutlineGenerationError,
    PipelineAbortedError,
    SegmentGenerationError,
)
from .llm_client import LLMClient, MockLLMClient
from .models import (
    AudioBuffer,
    Journey,
    PipelineState,
    Segment,
    SegmentUpdate,
    StoryResult,
    StoryStyle,
    TravelMode,
    UpdateKind,
)
from .pipeline import NarrationSession, StoryPipeline

__all__ = [
    "AppConfig",
    "AudioBuffer",
    "AudioSynthesisError",
    "AudioSynthesizer",
    "FailurePolicy",
    "Journey",
    "LLMClient",
    "MalformedResponseError",
    "MockLLMClient",
    "NarrationSession",
    "OutlineGenerationError",
    "PipelineAbortedError",
    "PipelineState",
    "Segment",
    "SegmentGenerationError",
    "SegmentUpdate",
    "SilenceSynthesizer",
    "StoryPipeline",
    "StoryResult",
    "StoryStyle",
    "TravelMode",
    "UpdateKind",
]

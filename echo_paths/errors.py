"""Failure taxonomy for the narration pipeline."""


class NarrationError(Exception):
    """Base class for failures raised by a pipeline stage."""

    stage = "narration"

    def __init__(self, detail: str, index: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.index = index

    def __str__(self) -> str:
        if self.index is not None:
            return f"[{self.stage} #{self.index}] {self.detail}"
        return f"[{self.stage}] {self.detail}"


class OutlineGenerationError(NarrationError):
    """Outline request failed. Recovered inside the outline stage."""

    stage = "outline"


class SegmentGenerationError(NarrationError):
    """Segment text could not be produced."""

    stage = "segment"


class AudioSynthesisError(NarrationError):
    """Segment audio could not be produced."""

    stage = "audio"


class MalformedResponseError(NarrationError):
    """Response text or shape did not match what the stage expects."""

    stage = "response"


class MalformedOutlineError(MalformedResponseError, OutlineGenerationError):
    """Outline response had no usable JSON array of strings."""

    stage = "outline"


class MalformedSegmentError(MalformedResponseError, SegmentGenerationError):
    """Segment response was empty or not narration text."""

    stage = "segment"


class PipelineAbortedError(Exception):
    """Raised by ``StoryPipeline.run(..., raise_on_abort=True)``."""

    def __init__(self, result):
        self.result = result
        super().__init__(result.failure or "Story generation aborted")

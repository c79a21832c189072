"""
Pydantic models for the Echo Paths pipeline.

This module defines all data models used throughout the pipeline,
including the journey input, story segments, audio buffers, and the
updates and results handed to the playback consumer.
"""

import io
import uuid
import wave
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


# Upstream route planner refuses journeys longer than this
MAX_JOURNEY_SECONDS = 4 * 60 * 60


# =============================================================================
# Enums
# =============================================================================

class StoryStyle(str, Enum):
    """Narrative style selected by the traveler."""
    NOIR = "NOIR"
    CHILDREN = "CHILDREN"
    HISTORICAL = "HISTORICAL"
    FANTASY = "FANTASY"
    DEFAULT = "DEFAULT"

    @classmethod
    def coerce(cls, value: Any) -> "StoryStyle":
        """Map a selector value to a style; unknown values fall back to DEFAULT."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.DEFAULT
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.DEFAULT


class TravelMode(str, Enum):
    """How the traveler is moving."""
    WALKING = "WALKING"
    DRIVING = "DRIVING"
    BICYCLING = "BICYCLING"
    TRANSIT = "TRANSIT"


class PipelineState(str, Enum):
    """States of the orchestrator for one journey."""
    SIZING = "sizing"
    OUTLINING = "outlining"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    ABORTED = "aborted"


class UpdateKind(str, Enum):
    """What changed about a segment."""
    TEXT_READY = "text_ready"
    AUDIO_READY = "audio_ready"
    AUDIO_FAILED = "audio_failed"


# =============================================================================
# Input Models
# =============================================================================

class Journey(BaseModel):
    """
    A confirmed route plus the story configuration that drives one
    narration session.

    Immutable once created; a new route means a new Journey.
    """
    model_config = ConfigDict(frozen=True)

    start_label: str = Field(..., min_length=1, description="Human-readable start")
    end_label: str = Field(..., min_length=1, description="Human-readable destination")
    travel_mode: TravelMode = Field(default=TravelMode.DRIVING)
    total_duration_seconds: float = Field(
        ..., ge=0, le=MAX_JOURNEY_SECONDS, description="Estimated travel time"
    )
    style: StoryStyle = Field(default=StoryStyle.DEFAULT)
    voice_identifier: str = Field(default="Kore", description="Synthesis voice selector")
    distance_meters: float | None = Field(None, ge=0, description="Route length")
    journey_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @field_validator("style", mode="before")
    @classmethod
    def _coerce_style(cls, value: Any) -> StoryStyle:
        return StoryStyle.coerce(value)

    @field_validator("travel_mode", mode="before")
    @classmethod
    def _upper_travel_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def duration_text(self) -> str:
        """Duration the way the route planner displays it (e.g. "1h 5min")."""
        total = int(self.total_duration_seconds)
        hours, remainder = divmod(total, 3600)
        minutes = remainder // 60
        if hours > 0:
            return f"{hours}h {minutes}min"
        return f"{minutes}min"

    @property
    def distance_text(self) -> str | None:
        """Distance in kilometers, if known."""
        if self.distance_meters is None:
            return None
        return f"{self.distance_meters / 1000:.1f} km"

    @classmethod
    def from_route(cls, route: dict[str, Any]) -> "Journey":
        """
        Build a Journey from the route planner's payload.

        Accepts the planner's camelCase keys (startAddress, endAddress,
        durationSeconds, distance, travelMode, storyStyle, voiceName) as
        well as the model's own field names.
        """
        distance = route.get("distance_meters", route.get("distanceMeters"))
        if distance is None and isinstance(route.get("distance"), (int, float)):
            distance = route["distance"]

        return cls(
            start_label=route.get("start_label") or route.get("startAddress", ""),
            end_label=route.get("end_label") or route.get("endAddress", ""),
            travel_mode=route.get("travel_mode") or route.get("travelMode", TravelMode.DRIVING),
            total_duration_seconds=route.get(
                "total_duration_seconds", route.get("durationSeconds", 0)
            ),
            style=route.get("style") or route.get("storyStyle"),
            voice_identifier=route.get("voice_identifier") or route.get("voiceName") or "Kore",
            distance_meters=distance,
        )


# =============================================================================
# Audio
# =============================================================================

class AudioBuffer(BaseModel):
    """
    Playable PCM audio.

    Samples are float32 in [-1, 1], shaped (channels, frames).
    """
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    samples: np.ndarray
    sample_rate: int = Field(..., gt=0)

    @field_validator("samples", mode="before")
    @classmethod
    def _as_channel_matrix(cls, value: Any) -> np.ndarray:
        samples = np.asarray(value, dtype=np.float32)
        if samples.ndim == 1:
            samples = samples.reshape(1, -1)
        if samples.ndim != 2 or samples.shape[0] < 1:
            raise ValueError("samples must be shaped (channels, frames)")
        return samples

    @classmethod
    def silence(cls, duration_seconds: float, sample_rate: int, channels: int = 1) -> "AudioBuffer":
        """Create a buffer of zeros lasting ``duration_seconds``."""
        frames = int(np.floor(sample_rate * max(duration_seconds, 0.0)))
        return cls(samples=np.zeros((channels, frames), dtype=np.float32), sample_rate=sample_rate)

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_seconds(self) -> float:
        return self.frames / float(self.sample_rate)

    def to_wav_bytes(self) -> bytes:
        """Encode as a 16-bit PCM WAV file."""
        pcm = (np.clip(self.samples, -1.0, 1.0) * 32767).astype("<i2")
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav_file:
            wav_file.setnchannels(self.channels)
            wav_file.setsampwidth(2)
            wav_file.setframerate(self.sample_rate)
            # interleave channels frame by frame
            wav_file.writeframes(pcm.T.tobytes())
        return buffer.getvalue()


# =============================================================================
# Story Models
# =============================================================================

class Segment(BaseModel):
    """
    One chapter-length unit of narration.

    ``text`` never changes once the segment exists; ``audio`` goes from
    absent to present at most once.
    """
    model_config = ConfigDict(validate_assignment=True)

    index: int = Field(..., ge=1, frozen=True, description="1-based position in the story")
    text: str = Field(..., frozen=True)
    audio: AudioBuffer | None = None

    # Set when the generic continuation text stands in for a failed segment
    is_fallback: bool = False
    audio_error: str | None = None

    def attach_audio(self, audio: AudioBuffer) -> None:
        """Attach the synthesized audio. Allowed exactly once."""
        if self.audio is not None:
            raise ValueError(f"Segment {self.index} already has audio")
        self.audio = audio

    @property
    def has_audio(self) -> bool:
        return self.audio is not None

    @property
    def word_count(self) -> int:
        return len(self.text.split())


class SegmentUpdate(BaseModel):
    """A change observed by the playback consumer."""
    kind: UpdateKind
    segment: Segment
    journey_id: str

    @property
    def index(self) -> int:
        return self.segment.index


class StoryResult(BaseModel):
    """Final output of one pipeline run."""
    journey: Journey
    segment_count: int
    outline: list[str] = Field(default_factory=list)
    segments: list[Segment] = Field(default_factory=list)
    state: PipelineState

    # User-visible explanation when the story stopped early
    failure: str | None = None

    # Metadata
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    model_used: str | None = None
    processing_time_seconds: float | None = None

    # Debug information
    debug_logs: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.state == PipelineState.COMPLETE

    @property
    def is_partial(self) -> bool:
        """Aborted, but with something the traveler can still listen to."""
        return self.state == PipelineState.ABORTED and bool(self.segments)

    @property
    def story_text(self) -> str:
        return "\n\n".join(segment.text for segment in self.segments)

    @property
    def total_audio_seconds(self) -> float:
        return sum(s.audio.duration_seconds for s in self.segments if s.audio is not None)

"""
Audio Synthesis Module

Defines the contract every speech backend must satisfy and ships the
placeholder backend that renders silence of a plausible length.
"""

import asyncio
import logging
from typing import Protocol, runtime_checkable

from .config import AudioConfig
from .errors import AudioSynthesisError
from .models import AudioBuffer


logger = logging.getLogger(__name__)


@runtime_checkable
class AudioSynthesizer(Protocol):
    """Protocol for speech synthesis backends."""

    async def synthesize(self, text: str, voice_identifier: str) -> AudioBuffer:
        """Render narration text with the selected voice.

        Raises:
            AudioSynthesisError: If no audio could be produced
        """


class SilenceSynthesizer:
    """
    Placeholder backend producing silent audio.

    Duration scales with text length (``seconds_per_character``), at a
    fixed sample rate and channel count. Swap in a real text-to-speech
    backend by passing any other ``AudioSynthesizer`` to the pipeline.
    """

    def __init__(self, config: AudioConfig | None = None):
        self.config = config or AudioConfig()
        self._warned = False

    def estimate_duration(self, text: str) -> float:
        return len(text) * self.config.seconds_per_character

    async def synthesize(self, text: str, voice_identifier: str) -> AudioBuffer:
        if not text or not text.strip():
            raise AudioSynthesisError("Cannot synthesize empty text")
        if self.config.sample_rate <= 0 or self.config.channels <= 0:
            raise AudioSynthesisError(
                f"Invalid audio format: {self.config.sample_rate} Hz, {self.config.channels} channel(s)"
            )

        if not self._warned:
            logger.warning(
                "Audio generation is using placeholder silence. "
                "Integrate a real TTS backend for production."
            )
            self._warned = True

        # yield to the event loop
        await asyncio.sleep(0)

        buffer = AudioBuffer.silence(
            self.estimate_duration(text),
            sample_rate=self.config.sample_rate,
            channels=self.config.channels,
        )
        logger.debug(
            f"Synthesized {buffer.duration_seconds:.1f}s of audio with voice {voice_identifier}"
        )
        return buffer

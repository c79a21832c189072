"""
Pipeline Module

This module orchestrates continuous story generation for one journey:
sizing, a single outline request, then strictly sequential segment
generation with audio synthesis pipelined behind it.

Segments reach the consumer as soon as their text exists and again once
their audio is attached, always in index order.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable

from .audio import AudioSynthesizer, SilenceSynthesizer
from .config import AppConfig, FailurePolicy
from .errors import AudioSynthesisError, PipelineAbortedError, SegmentGenerationError
from .llm_client import LLMClient
from .models import (
    AudioBuffer,
    Journey,
    PipelineState,
    Segment,
    SegmentUpdate,
    StoryResult,
    UpdateKind,
)
from .outline import FALLBACK_CHAPTER, OutlineGenerator
from .prompt_builder import PromptBuilder
from .segments import SegmentGenerator
from .sizing import SegmentSizer


logger = logging.getLogger(__name__)


FALLBACK_SEGMENT_TEXT = FALLBACK_CHAPTER

UpdateCallback = Callable[[SegmentUpdate], Awaitable[None] | None]

_DONE = object()


class StoryRun:
    """Mutable state of one journey's run; owned by the orchestrator."""

    def __init__(self, journey: Journey):
        self.journey = journey
        self.state = PipelineState.SIZING
        self.current_index = 0
        self.segment_count = 0
        self.outline: tuple[str, ...] = ()
        self.segments: list[Segment] = []
        self.failure: str | None = None
        self.superseded = False
        self.started_at = time.monotonic()
        self.debug_logs: list[str] = []
        self.warnings: list[str] = []

    @property
    def aborted(self) -> bool:
        return self.state == PipelineState.ABORTED

    def append(self, segment: Segment) -> None:
        """Append the next segment; indices stay dense and ordered."""
        expected = len(self.segments) + 1
        if segment.index != expected:
            raise ValueError(f"Expected segment {expected}, got {segment.index}")
        self.segments.append(segment)

    def narration_so_far(self) -> str:
        """Generated narration, skipping generic fallback text."""
        return "\n\n".join(s.text for s in self.segments if not s.is_fallback)


class StoryPipeline:
    """
    Main orchestrator for continuous journey narration.

    States: SIZING -> OUTLINING -> GENERATING(i) / SYNTHESIZING(i) ...
    -> COMPLETE, with ABORTED reachable on unrecoverable failure.
    """

    def __init__(
        self,
        config: AppConfig,
        llm_client: LLMClient,
        synthesizer: AudioSynthesizer | None = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Validated application config
            llm_client: Chat-completion client (real or mock)
            synthesizer: Speech backend; silence placeholder by default
        """
        self.config = config
        self.narration = config.narration
        self.llm_client = llm_client
        self.sizer = SegmentSizer.from_config(config.narration)
        self.prompt_builder = PromptBuilder(self.sizer, config.narration.context_window_chars)
        self.outline_generator = OutlineGenerator(llm_client, self.prompt_builder)
        self.segment_generator = SegmentGenerator(llm_client, self.prompt_builder)
        self.synthesizer = synthesizer or SilenceSynthesizer(config.audio)

        self._current: StoryRun | None = None
        self.last_result: StoryResult | None = None

    @property
    def state(self) -> PipelineState | None:
        return self._current.state if self._current else None

    @property
    def current_index(self) -> int:
        return self._current.current_index if self._current else 0

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _log(self, run: StoryRun, message: str, level: str = "info") -> None:
        """Log message and store for debug output."""
        run.debug_logs.append(f"[{level.upper()}] {message}")
        getattr(logger, level)(message)

    def _warn(self, run: StoryRun, message: str) -> None:
        """Log warning and store."""
        run.warnings.append(message)
        logger.warning(message)

    def _transition(self, run: StoryRun, state: PipelineState, index: int | None = None) -> None:
        if run.aborted:
            return
        run.state = state
        if index is not None:
            run.current_index = index
        suffix = f"({index})" if index is not None else ""
        self._log(run, f"State -> {state.value.upper()}{suffix}", level="debug")

    def _abort(self, run: StoryRun, reason: str) -> None:
        if run.aborted:
            return
        playable = len(run.segments)
        if playable:
            run.failure = (
                f"Story stopped after {playable} of {run.segment_count} segments: {reason}. "
                f"The {playable} completed segment(s) remain playable."
            )
        else:
            run.failure = f"The story could not be started: {reason}."
        run.state = PipelineState.ABORTED
        self._log(run, run.failure, level="error")

    def _build_result(self, run: StoryRun) -> StoryResult:
        return StoryResult(
            journey=run.journey,
            segment_count=run.segment_count,
            outline=list(run.outline),
            segments=run.segments,
            state=run.state,
            failure=run.failure,
            model_used=self.llm_client.model,
            processing_time_seconds=time.monotonic() - run.started_at,
            debug_logs=run.debug_logs,
            warnings=run.warnings,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _generate_with_policy(
        self,
        run: StoryRun,
        index: int,
        prior_context: str,
    ) -> Segment | None:
        """
        Generate segment ``index``, applying retries and the failure policy.

        Returns:
            The segment (possibly a fallback), or None if the run aborted
        """
        attempts = self.narration.segment_retries + 1
        last_error: SegmentGenerationError | None = None

        for attempt in range(attempts):
            try:
                return await self.segment_generator.generate_segment(
                    run.journey,
                    index,
                    run.segment_count,
                    run.outline[index - 1],
                    prior_context,
                )
            except SegmentGenerationError as e:
                last_error = e
                self._warn(run, f"Segment {index} attempt {attempt + 1}/{attempts} failed: {e.detail}")

        if index == 1:
            self._abort(run, f"the first segment failed ({last_error.detail})")
            return None

        if self.narration.failure_policy == FailurePolicy.SUBSTITUTE:
            self._warn(run, f"Segment {index} replaced with generic continuation text")
            return Segment(index=index, text=FALLBACK_SEGMENT_TEXT, is_fallback=True)

        self._abort(run, f"segment {index} failed ({last_error.detail})")
        return None

    async def _synthesize(
        self, run: StoryRun, segment: Segment
    ) -> tuple[AudioBuffer | None, AudioSynthesisError | None]:
        attempts = self.narration.synthesis_retries + 1
        error: AudioSynthesisError | None = None

        for attempt in range(attempts):
            try:
                audio = await asyncio.wait_for(
                    self.synthesizer.synthesize(segment.text, run.journey.voice_identifier),
                    timeout=self.config.audio.timeout,
                )
                return audio, None
            except asyncio.TimeoutError:
                error = AudioSynthesisError(
                    f"synthesis timed out after {self.config.audio.timeout}s", index=segment.index
                )
            except AudioSynthesisError as e:
                error = AudioSynthesisError(e.detail, index=segment.index)
            except Exception as e:
                # third-party backends raise their own exception types
                error = AudioSynthesisError(f"{type(e).__name__}: {e}", index=segment.index)
            self._warn(run, f"Audio for segment {segment.index} attempt {attempt + 1}/{attempts} failed: {error.detail}")

        return None, error

    async def _synthesize_and_publish(
        self,
        run: StoryRun,
        segment: Segment,
        semaphore: asyncio.Semaphore,
        previous: "asyncio.Task[None] | None",
        publish: Callable[[StoryRun, SegmentUpdate], Awaitable[None]],
    ) -> None:
        """Synthesize one segment, then publish after its predecessor."""
        async with semaphore:
            self._log(run, f"Synthesizing segment {segment.index}", level="debug")
            audio, error = await self._synthesize(run, segment)

        # audio updates go out in index order
        if previous is not None:
            await previous

        if run.superseded:
            return

        if audio is not None:
            segment.attach_audio(audio)
            await publish(run, SegmentUpdate(
                kind=UpdateKind.AUDIO_READY, segment=segment, journey_id=run.journey.journey_id
            ))
            return

        segment.audio_error = error.detail
        self._warn(run, f"Segment {segment.index} has no audio: {error.detail}")
        await publish(run, SegmentUpdate(
            kind=UpdateKind.AUDIO_FAILED, segment=segment, journey_id=run.journey.journey_id
        ))
        if self.narration.failure_policy == FailurePolicy.ABORT:
            self._abort(run, f"audio for segment {segment.index} failed ({error.detail})")

    async def _produce(
        self,
        run: StoryRun,
        publish: Callable[[StoryRun, SegmentUpdate], Awaitable[None]],
    ) -> None:
        """Drive one journey from sizing to a terminal state."""
        journey = run.journey
        audio_tasks: list[asyncio.Task[None]] = []

        try:
            self._transition(run, PipelineState.SIZING)
            run.segment_count = self.sizer.segment_count(journey.total_duration_seconds)
            self._log(
                run,
                f"Journey {journey.start_label} -> {journey.end_label} "
                f"({journey.duration_text}) needs {run.segment_count} segments",
            )

            self._transition(run, PipelineState.OUTLINING)
            run.outline = tuple(
                await self.outline_generator.generate_outline(journey, run.segment_count)
            )
            if all(chapter == FALLBACK_CHAPTER for chapter in run.outline):
                self._warn(run, "Using generic outline; the story plan could not be generated")

            semaphore = asyncio.Semaphore(self.narration.max_concurrent_synthesis)
            previous: asyncio.Task[None] | None = None

            for index in range(1, run.segment_count + 1):
                if run.aborted:
                    break

                self._transition(run, PipelineState.GENERATING, index)
                segment = await self._generate_with_policy(run, index, run.narration_so_far())
                if segment is None or run.aborted or run.superseded:
                    break

                run.append(segment)
                await publish(run, SegmentUpdate(
                    kind=UpdateKind.TEXT_READY, segment=segment, journey_id=journey.journey_id
                ))

                previous = asyncio.create_task(
                    self._synthesize_and_publish(run, segment, semaphore, previous, publish)
                )
                audio_tasks.append(previous)

            if audio_tasks:
                self._transition(run, PipelineState.SYNTHESIZING, len(run.segments))
                await asyncio.gather(*audio_tasks)

            self._transition(run, PipelineState.COMPLETE)
            if not run.aborted:
                self._log(run, f"Story complete: {len(run.segments)} segments")

        except asyncio.CancelledError:
            run.superseded = True
            self._log(run, f"Journey {journey.journey_id} cancelled", level="warning")
            raise

        finally:
            pending = [task for task in audio_tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    def _start_run(self, journey: Journey) -> StoryRun:
        if self._current is not None and self._current.journey.journey_id != journey.journey_id:
            # a new journey supersedes whatever this pipeline was doing
            self._current.superseded = True
        run = StoryRun(journey)
        self._current = run
        self._log(run, f"Starting story for journey {journey.journey_id}")
        return run

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        journey: Journey,
        on_update: UpdateCallback | None = None,
        raise_on_abort: bool = False,
    ) -> StoryResult:
        """
        Generate the whole story, reporting progress as it happens.

        Args:
            journey: Confirmed journey
            on_update: Called (sync or async) for every segment update
            raise_on_abort: Raise PipelineAbortedError instead of returning
                an aborted result

        Returns:
            StoryResult with every completed segment
        """
        run = self._start_run(journey)

        async def publish(story_run: StoryRun, update: SegmentUpdate) -> None:
            if story_run.superseded or on_update is None:
                return
            outcome = on_update(update)
            if inspect.isawaitable(outcome):
                await outcome

        await self._produce(run, publish)

        result = self._build_result(run)
        if run is self._current:
            self.last_result = result
        if raise_on_abort and result.state == PipelineState.ABORTED:
            raise PipelineAbortedError(result)
        return result

    async def stream(self, journey: Journey) -> AsyncIterator[SegmentUpdate]:
        """
        Iterate over segment updates as they become ready.

        The final StoryResult is available as ``last_result`` once the
        iterator is exhausted. Closing the iterator early cancels the run.

        Breaking out of ``async for`` does not close an async generator;
        generation keeps going until it is garbage-collected. Consumers
        that may stop early should iterate inside ``contextlib.aclosing``::

            async with aclosing(pipeline.stream(journey)) as updates:
                async for update in updates:
                    ...
        """
        run = self._start_run(journey)
        queue: asyncio.Queue = asyncio.Queue()

        async def publish(story_run: StoryRun, update: SegmentUpdate) -> None:
            if not story_run.superseded:
                queue.put_nowait(update)

        async def produce() -> None:
            try:
                await self._produce(run, publish)
            finally:
                queue.put_nowait(_DONE)

        producer = asyncio.create_task(produce())
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            await producer
            if run is self._current:
                self.last_result = self._build_result(run)
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)


class NarrationSession:
    """
    Holds the single active journey of a playback session.

    Starting a new journey cancels the previous one; updates from a
    superseded journey never reach the consumer.
    """

    def __init__(self, pipeline: StoryPipeline, on_update: UpdateCallback | None = None):
        self.pipeline = pipeline
        self.on_update = on_update
        self.journey: Journey | None = None
        self._task: asyncio.Task[StoryResult] | None = None

    async def _forward(self, update: SegmentUpdate) -> None:
        if self.journey is None or update.journey_id != self.journey.journey_id:
            return
        if self.on_update is None:
            return
        outcome = self.on_update(update)
        if inspect.isawaitable(outcome):
            await outcome

    async def start(self, journey: Journey) -> "asyncio.Task[StoryResult]":
        """Cancel any running journey and start narrating ``journey``."""
        await self.cancel()
        self.journey = journey
        self._task = asyncio.create_task(self.pipeline.run(journey, on_update=self._forward))
        logger.info(f"Session started journey {journey.journey_id}")
        return self._task

    async def cancel(self) -> None:
        """Cancel the active journey, waiting until its tasks have stopped."""
        task = self._task
        if task is None:
            return
        if not task.done():
            task.cancel()
            logger.info(f"Session cancelled journey {self.journey.journey_id if self.journey else '?'}")
        await asyncio.gather(task, return_exceptions=True)
        self._task = None
        self.journey = None

    async def wait(self) -> StoryResult:
        """Wait for the active journey to finish."""
        if self._task is None:
            raise RuntimeError("No journey is running")
        return await self._task

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

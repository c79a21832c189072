"""
Tests for the story pipeline orchestrator.

Covers the end-to-end story, strict ordering under concurrent synthesis,
the failure policies, and cancellation of superseded journeys.
"""

import asyncio
import json
import re
from contextlib import aclosing

import pytest

from echo_paths.config import AppConfig, FailurePolicy
from echo_paths.errors import AudioSynthesisError, PipelineAbortedError
from echo_paths.llm_client import LLMConnectionError, LLMError
from echo_paths.models import AudioBuffer, Journey, PipelineState, StoryStyle, UpdateKind
from echo_paths.outline import FALLBACK_CHAPTER
from echo_paths.pipeline import FALLBACK_SEGMENT_TEXT, NarrationSession, StoryPipeline


SEGMENT_STATUS = re.compile(r"Current Status: Segment (\d+) of approx (\d+)")


class StoryLLM:
    """
    Fake chat client that answers outline and segment prompts.

    ``failures`` maps a segment index to how many times it fails before
    succeeding (-1 fails forever).
    """

    model = "fake-story-model"

    def __init__(self, failures=None, outline_error=None, delay=0.0):
        self.failures = dict(failures or {})
        self.outline_error = outline_error
        self.delay = delay
        self.outline_prompts: list[str] = []
        self.segment_prompts: dict[int, list[str]] = {}
        self.order: list[int] = []

    async def generate(self, prompt: str, **kwargs) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)

        if "Output strictly valid JSON" in prompt:
            self.outline_prompts.append(prompt)
            if self.outline_error:
                raise self.outline_error
            count = int(re.search(r"exactly (\d+) chapters", prompt).group(1))
            return json.dumps([f"Goal {i}" for i in range(1, count + 1)])

        index = int(SEGMENT_STATUS.search(prompt).group(1))
        self.segment_prompts.setdefault(index, []).append(prompt)
        self.order.append(index)

        remaining = self.failures.get(index, 0)
        if remaining:
            if remaining > 0:
                self.failures[index] = remaining - 1
            raise LLMError(f"segment {index} unavailable")
        return f"Narration for segment {index}."


class RecordingSynthesizer:
    """Synthesizer with per-segment delays and failures."""

    def __init__(self, delays=None, fail=(), hang=()):
        self.delays = delays or {}
        self.fail = set(fail)
        self.hang = set(hang)
        self.calls: list[int] = []

    async def synthesize(self, text: str, voice_identifier: str) -> AudioBuffer:
        index = int(re.search(r"segment (\d+)", text).group(1)) if "segment" in text else 0
        self.calls.append(index)
        if index in self.hang:
            await asyncio.sleep(60)
        await asyncio.sleep(self.delays.get(index, 0))
        if index in self.fail:
            raise AudioSynthesisError("voice backend rejected text")
        return AudioBuffer.silence(0.01, sample_rate=8000)


def make_config(**narration) -> AppConfig:
    config = AppConfig()
    config.narration.segment_retries = 1
    config.narration.synthesis_retries = 0
    for key, value in narration.items():
        setattr(config.narration, key, value)
    return config


def make_journey(seconds: float = 185, label: str = "Old Town Gate") -> Journey:
    return Journey(
        start_label=label,
        end_label="Harbor Lighthouse",
        travel_mode="WALKING",
        total_duration_seconds=seconds,
        style=StoryStyle.FANTASY,
    )


def run_story(llm, synthesizer=None, config=None, journey=None):
    updates = []
    pipeline = StoryPipeline(config or make_config(), llm, synthesizer or RecordingSynthesizer())
    result = asyncio.run(pipeline.run(journey or make_journey(), on_update=updates.append))
    return result, updates, pipeline


def indices(updates, kind):
    return [update.index for update in updates if update.kind == kind]


def test_end_to_end_fantasy_journey():
    """185 seconds, FANTASY: 4 chapters, 4 segments, 4 audio buffers."""
    print("\n🧪 Testing end-to-end story...")

    llm = StoryLLM()
    result, updates, pipeline = run_story(llm)

    assert result.segment_count == 4
    assert len(llm.outline_prompts) == 1
    assert "exactly 4 chapters" in llm.outline_prompts[0]
    assert "Fantasy Adventure" in llm.outline_prompts[0]

    assert llm.order == [1, 2, 3, 4]
    assert result.outline == ["Goal 1", "Goal 2", "Goal 3", "Goal 4"]
    assert [segment.index for segment in result.segments] == [1, 2, 3, 4]
    assert all(segment.has_audio for segment in result.segments)
    assert indices(updates, UpdateKind.TEXT_READY) == [1, 2, 3, 4]
    assert indices(updates, UpdateKind.AUDIO_READY) == [1, 2, 3, 4]

    assert result.state == PipelineState.COMPLETE
    assert result.is_complete
    assert result.failure is None
    assert pipeline.state == PipelineState.COMPLETE
    assert result.model_used == "fake-story-model"

    print("   ✅ Four segments generated, synthesized and observed in order")


def test_chapter_goals_follow_outline():
    llm = StoryLLM()
    run_story(llm)

    for index in range(1, 5):
        assert f"CURRENT CHAPTER GOAL: Goal {index}" in llm.segment_prompts[index][0]


def test_each_prompt_carries_previous_text():
    """Segment i is prompted with the text of segment i-1."""
    llm = StoryLLM()
    run_story(llm)

    assert "PREVIOUS NARRATIVE CONTEXT" not in llm.segment_prompts[1][0]
    for index in range(2, 5):
        assert f"Narration for segment {index - 1}." in llm.segment_prompts[index][0]


def test_audio_updates_ordered_under_concurrent_synthesis():
    """Later segments finishing synthesis first are still published in order."""
    synthesizer = RecordingSynthesizer(delays={1: 0.08, 2: 0.0, 3: 0.04, 4: 0.0})
    config = make_config(max_concurrent_synthesis=3)

    result, updates, _ = run_story(StoryLLM(), synthesizer, config)

    assert indices(updates, UpdateKind.TEXT_READY) == [1, 2, 3, 4]
    assert indices(updates, UpdateKind.AUDIO_READY) == [1, 2, 3, 4]

    for index in range(1, 5):
        text_pos = next(i for i, u in enumerate(updates) if u.index == index and u.kind == UpdateKind.TEXT_READY)
        audio_pos = next(i for i, u in enumerate(updates) if u.index == index and u.kind == UpdateKind.AUDIO_READY)
        assert text_pos < audio_pos

    assert all(update.journey_id == result.journey.journey_id for update in updates)


def test_text_generation_does_not_wait_for_audio():
    """Text of segment 2 is ready before slow audio of segment 1."""
    synthesizer = RecordingSynthesizer(delays={1: 0.1})

    _, updates, _ = run_story(StoryLLM(), synthesizer, journey=make_journey(seconds=120))

    kinds = [(update.kind, update.index) for update in updates]
    assert kinds.index((UpdateKind.TEXT_READY, 2)) < kinds.index((UpdateKind.AUDIO_READY, 1))


def test_first_segment_failure_aborts():
    llm = StoryLLM(failures={1: -1})

    result, updates, _ = run_story(llm)

    assert result.state == PipelineState.ABORTED
    assert result.segments == []
    assert updates == []
    assert not result.is_partial
    assert "could not be started" in result.failure
    assert len(llm.segment_prompts[1]) == 2


def test_mid_stream_failure_substitutes_fallback():
    """Default policy keeps the story going with a generic segment."""
    llm = StoryLLM(failures={3: -1})

    result, updates, _ = run_story(llm)

    assert result.state == PipelineState.COMPLETE
    assert [segment.index for segment in result.segments] == [1, 2, 3, 4]
    fallback = result.segments[2]
    assert fallback.is_fallback
    assert fallback.text == FALLBACK_SEGMENT_TEXT
    assert fallback.has_audio
    assert not result.segments[3].is_fallback
    assert len(llm.segment_prompts[3]) == 2
    assert indices(updates, UpdateKind.TEXT_READY) == [1, 2, 3, 4]
    assert any("Segment 3" in warning for warning in result.warnings)

    # generic text is not fed back as story context
    assert FALLBACK_SEGMENT_TEXT not in llm.segment_prompts[4][0]
    assert "Narration for segment 2." in llm.segment_prompts[4][0]


def test_retry_recovers_segment():
    llm = StoryLLM(failures={2: 1})

    result, _, _ = run_story(llm)

    assert result.is_complete
    assert not any(segment.is_fallback for segment in result.segments)
    assert len(llm.segment_prompts[2]) == 2


def test_mid_stream_failure_aborts_under_abort_policy():
    """Abort keeps completed segments playable and explains the stop."""
    llm = StoryLLM(failures={3: -1})
    config = make_config(failure_policy=FailurePolicy.ABORT)

    result, updates, _ = run_story(llm, config=config)

    assert result.state == PipelineState.ABORTED
    assert result.is_partial
    assert [segment.index for segment in result.segments] == [1, 2]
    assert all(segment.has_audio for segment in result.segments)
    assert indices(updates, UpdateKind.AUDIO_READY) == [1, 2]
    assert "2 completed segment(s) remain playable" in result.failure
    assert 4 not in llm.segment_prompts


def test_raise_on_abort():
    llm = StoryLLM(failures={1: -1})
    pipeline = StoryPipeline(make_config(), llm, RecordingSynthesizer())

    with pytest.raises(PipelineAbortedError) as exc_info:
        asyncio.run(pipeline.run(make_journey(), raise_on_abort=True))

    assert exc_info.value.result.state == PipelineState.ABORTED


def test_outline_failure_never_aborts():
    llm = StoryLLM(outline_error=LLMConnectionError("down"))

    result, _, _ = run_story(llm)

    assert result.is_complete
    assert result.outline == [FALLBACK_CHAPTER] * 4
    assert len(result.segments) == 4
    assert any("generic outline" in warning for warning in result.warnings)


def test_audio_failure_keeps_segment():
    synthesizer = RecordingSynthesizer(fail={2})

    result, updates, _ = run_story(StoryLLM(), synthesizer)

    assert result.is_complete
    assert [segment.index for segment in result.segments] == [1, 2, 3, 4]
    assert result.segments[1].audio is None
    assert "rejected" in result.segments[1].audio_error
    assert indices(updates, UpdateKind.AUDIO_FAILED) == [2]
    assert indices(updates, UpdateKind.AUDIO_READY) == [1, 3, 4]


def test_audio_failure_is_retried():
    synthesizer = RecordingSynthesizer(fail={2})
    config = make_config(synthesis_retries=2)

    run_story(StoryLLM(), synthesizer, config)

    assert synthesizer.calls.count(2) == 3


def test_audio_failure_aborts_under_abort_policy():
    synthesizer = RecordingSynthesizer(fail={1})
    llm = StoryLLM(delay=0.02)
    config = make_config(failure_policy=FailurePolicy.ABORT)

    result, updates, _ = run_story(llm, synthesizer, config)

    assert result.state == PipelineState.ABORTED
    assert indices(updates, UpdateKind.AUDIO_FAILED) == [1]
    assert len(result.segments) < 4
    assert [segment.index for segment in result.segments] == list(range(1, len(result.segments) + 1))


def test_hanging_synthesis_times_out():
    config = make_config()
    config.audio.timeout = 0.05
    synthesizer = RecordingSynthesizer(hang={1})

    result, updates, _ = run_story(StoryLLM(), synthesizer, config, make_journey(seconds=60))

    assert result.is_complete
    assert "timed out" in result.segments[0].audio_error
    assert indices(updates, UpdateKind.AUDIO_FAILED) == [1]


def test_stream_yields_updates_in_order():
    pipeline = StoryPipeline(make_config(), StoryLLM(), RecordingSynthesizer())

    async def go():
        return [update async for update in pipeline.stream(make_journey())]

    updates = asyncio.run(go())

    assert indices(updates, UpdateKind.TEXT_READY) == [1, 2, 3, 4]
    assert indices(updates, UpdateKind.AUDIO_READY) == [1, 2, 3, 4]
    assert pipeline.last_result.is_complete


def test_closing_stream_cancels_generation():
    llm = StoryLLM(delay=0.01)
    pipeline = StoryPipeline(make_config(), llm, RecordingSynthesizer())

    async def go():
        stream = pipeline.stream(make_journey(seconds=600))
        async for update in stream:
            if update.kind == UpdateKind.TEXT_READY and update.index == 2:
                break
        await stream.aclose()
        await asyncio.sleep(0.05)

    asyncio.run(go())

    assert max(llm.order) <= 3


def test_new_journey_supersedes_previous():
    """Starting a new route cancels the old one; its updates never arrive."""
    print("\n🧪 Testing journey cancellation...")

    received = []

    class SlowFirstJourneyLLM(StoryLLM):
        async def generate(self, prompt, **kwargs):
            if "Slow Street" in prompt and "Output strictly valid JSON" not in prompt:
                await asyncio.sleep(10)
            return await super().generate(prompt, **kwargs)

    llm = SlowFirstJourneyLLM()
    first = make_journey(label="Slow Street")
    second = make_journey(seconds=120, label="Fast Lane")

    async def go():
        session = NarrationSession(StoryPipeline(make_config(), llm, RecordingSynthesizer()), received.append)
        first_task = await session.start(first)
        await asyncio.sleep(0.05)
        assert session.is_running

        await session.start(second)
        result = await session.wait()
        return first_task, result

    first_task, result = asyncio.run(go())

    assert first_task.cancelled()
    assert result.journey.journey_id == second.journey_id
    assert result.is_complete
    assert len(result.segments) == 2
    assert received
    assert all(update.journey_id == second.journey_id for update in received)

    print("   ✅ Superseded journey cancelled without leaking updates")


def test_async_consumer_callback():
    seen = []

    async def consumer(update):
        await asyncio.sleep(0)
        seen.append((update.kind, update.index))

    pipeline = StoryPipeline(make_config(), StoryLLM(), RecordingSynthesizer())
    asyncio.run(pipeline.run(make_journey(seconds=60), on_update=consumer))

    assert seen == [(UpdateKind.TEXT_READY, 1), (UpdateKind.AUDIO_READY, 1)]


def test_zero_duration_journey_gets_one_segment():
    result, _, _ = run_story(StoryLLM(), journey=make_journey(seconds=0))

    assert result.segment_count == 1
    assert len(result.segments) == 1


class BrokenClientLLM(StoryLLM):
    """Client that fails segment 3 with an untyped exception."""

    async def generate(self, prompt: str, **kwargs) -> str:
        if "Current Status: Segment 3 of" in prompt:
            raise RuntimeError("client bug")
        return await super().generate(prompt, **kwargs)


def test_untyped_client_error_is_substituted():
    result, updates, pipeline = run_story(BrokenClientLLM())

    assert result.is_complete
    assert [segment.index for segment in result.segments] == [1, 2, 3, 4]
    assert result.segments[2].is_fallback
    assert any("RuntimeError" in warning for warning in result.warnings)
    assert pipeline.last_result is result


def test_untyped_client_error_aborts_with_partial_story():
    """Completed segments survive a client bug under the abort policy."""
    config = make_config(failure_policy=FailurePolicy.ABORT)

    result, updates, pipeline = run_story(BrokenClientLLM(), config=config)

    assert result.state == PipelineState.ABORTED
    assert result.is_partial
    assert [segment.index for segment in result.segments] == [1, 2]
    assert "RuntimeError: client bug" in result.failure
    assert indices(updates, UpdateKind.TEXT_READY) == [1, 2]
    assert pipeline.last_result is result


def test_older_run_does_not_overwrite_last_result():
    class SlowFirstJourneyLLM(StoryLLM):
        async def generate(self, prompt, **kwargs):
            if "Slow Street" in prompt and "Output strictly valid JSON" not in prompt:
                await asyncio.sleep(0.2)
            return await super().generate(prompt, **kwargs)

    pipeline = StoryPipeline(make_config(), SlowFirstJourneyLLM(), RecordingSynthesizer())
    first = make_journey(label="Slow Street")
    second = make_journey(seconds=120, label="Fast Lane")

    async def go():
        first_task = asyncio.create_task(pipeline.run(first))
        await asyncio.sleep(0.02)
        second_result = await pipeline.run(second)
        first_result = await first_task
        return first_result, second_result

    first_result, second_result = asyncio.run(go())

    assert first_result.journey.journey_id == first.journey_id
    assert pipeline.last_result is second_result


def test_aclosing_stream_stops_generation():
    llm = StoryLLM(delay=0.01)
    pipeline = StoryPipeline(make_config(), llm, RecordingSynthesizer())

    async def go():
        async with aclosing(pipeline.stream(make_journey(seconds=600))) as updates:
            async for update in updates:
                if update.kind == UpdateKind.TEXT_READY and update.index == 2:
                    break
        await asyncio.sleep(0.05)

    asyncio.run(go())

    assert max(llm.order) <= 3
    assert pipeline.last_result is None

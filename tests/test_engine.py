"""Tests for StoryEngine — turn ownership, busy guard and persistence."""

import asyncio

import pytest

from storyloom.engine import EngineBusy, NoStory, StoryEngine
from storyloom.models import NarrativeState
from storyloom.pipeline.orchestrator import Phase
from storyloom.session import ModelSession
from storyloom.storage import Storage
from tests.helpers import OPENING, SUMMARY, StubBackend


@pytest.fixture
def engine(session: ModelSession, storage: Storage, rng) -> StoryEngine:
    return StoryEngine(session, storage, rng)


async def test_start_opens_story(engine: StoryEngine, storage: Storage):
    segment = await engine.start()
    assert segment.text == OPENING
    assert engine.current == segment
    assert engine.history == [segment]
    assert engine.state.story_summary == SUMMARY
    assert engine.phase is Phase.IDLE
    assert not engine.busy
    assert storage.load_state() == engine.state
    assert storage.load_history() == [segment]


async def test_choose_by_index(engine: StoryEngine):
    opening = await engine.start()
    segment = await engine.choose(1)
    assert segment.text.startswith(opening.choices[1].consequence)
    assert len(engine.history) == 2
    assert engine.state.segments_since_prompt_refresh == 1


async def test_choose_by_choice(engine: StoryEngine):
    opening = await engine.start()
    segment = await engine.choose(opening.choices[0])
    assert segment.text.startswith(opening.choices[0].consequence)


async def test_choose_before_start(engine: StoryEngine):
    with pytest.raises(NoStory):
        await engine.choose(0)
    assert not engine.busy


@pytest.mark.parametrize("index", [-1, 2])
async def test_choose_rejects_out_of_range_index(engine: StoryEngine, index):
    await engine.start()
    with pytest.raises(ValueError):
        await engine.choose(index)
    assert not engine.busy
    assert len(engine.history) == 1


async def test_start_discards_previous_story(engine: StoryEngine, storage: Storage):
    await engine.start()
    await engine.choose(0)
    await engine.start()
    assert len(engine.history) == 1
    assert len(storage.load_history()) == 1
    assert engine.state.segments_since_prompt_refresh == 0


async def test_second_turn_while_busy_is_rejected(session: ModelSession):
    gate = asyncio.Event()

    async def slow_fetch():
        await gate.wait()

    session.backend.fetch = slow_fetch
    engine = StoryEngine(session)
    first = asyncio.ensure_future(engine.start())
    await asyncio.sleep(0)
    assert engine.busy
    with pytest.raises(EngineBusy):
        await engine.start()
    with pytest.raises(EngineBusy):
        engine.reset()
    gate.set()
    await first
    assert not engine.busy


async def test_phase_reported_during_turn(session: ModelSession):
    seen = []
    engine = StoryEngine(session)
    original = engine._set_phase

    def record(phase):
        seen.append(phase)
        original(phase)

    engine._set_phase = record
    await engine.start()
    assert seen == [Phase.GENERATING_CONTINUATION, Phase.GENERATING_CHOICES, Phase.ASSEMBLED]
    assert engine.phase is Phase.IDLE


async def test_reset_clears_story_but_keeps_model(engine: StoryEngine, storage: Storage):
    await engine.start()
    engine.reset()
    assert engine.current is None
    assert engine.state == NarrativeState()
    assert storage.load_history() == []
    assert engine.session.ready


async def test_resumes_from_storage(session: ModelSession, storage: Storage, rng):
    first = StoryEngine(session, storage, rng)
    await first.start()
    await first.choose(0)

    resumed = StoryEngine(session, storage, rng)
    assert resumed.history == first.history
    assert resumed.state == first.state


async def test_history_file_follows_memory(engine: StoryEngine, storage: Storage, tmp_path):
    await engine.start()
    await engine.choose(0)
    (tmp_path / "data-tests" / "history.json").write_text("{not json")
    await engine.choose(1)
    assert len(engine.history) == 3
    assert storage.load_history() == engine.history


async def test_fallback_turns_are_committed(storage: Storage):
    engine = StoryEngine(ModelSession(StubBackend(fail_fetch=99), timeout=5), storage)
    opening = await engine.start()
    assert opening.choices[0].text == "Explore the forest"
    await engine.choose(0)
    assert len(storage.load_history()) == 2

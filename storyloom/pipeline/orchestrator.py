"""Pipeline orchestrator — produces one story segment per turn.

Turn flow (generate_next):
  1. Bump the segments-since-refresh counter.
  2. Every REFRESH_PROMPT_AFTER_SEGMENTS turns, re-summarize the whole
     summary from scratch and reset the counter (anti-drift).
  3. Build the continuation prompt (refreshed or regular variant).
  4. Complete, clean, and prepend the chosen consequence.
  5. On regular turns, fold the new text into the summary.
  6. Classify the next environment from the new text.
  7. Merge the preset with the choice's lighting/atmosphere deltas.
  8. Generate and extract two new choices.
  9. Assemble the segment.

Narrative state goes in and comes out explicitly; nothing here reads or
writes shared state. Neither entry point ever raises for model trouble: any
failure in steps 3-8 produces a segment built from local data only.
"""

from __future__ import annotations

import enum
import logging
import random
from collections.abc import Callable

from pydantic import BaseModel

from storyloom.environment import (
    DEFAULT_ENVIRONMENT,
    apply_modification,
    classify,
    classify_metadata,
    initial_environment,
    preset_for,
    transition,
)
from storyloom.llm import CHOICE_PARAMS, STORY_PARAMS, SUMMARY_PARAMS, LLMError
from storyloom.models import (
    AnimationEffect,
    AtmosphereChange,
    Choice,
    EnvironmentModification,
    LightingChange,
    NarrativeState,
    StorySegment,
)
from storyloom.pipeline.choices import extract
from storyloom.pipeline.sanitize import FALLBACK_TEXT, clean, strip_prompt_echo
from storyloom.prompts import (
    PromptError,
    choices_prompt,
    continuation_prompt,
    opening_prompt,
    refresh_summary_prompt,
    summary_prompt,
)
from storyloom.session import ModelSession

logger = logging.getLogger(__name__)

REFRESH_PROMPT_AFTER_SEGMENTS = 3
MAX_SUMMARY_LENGTH = 1000

FALLBACK_OPENING = (
    "You find yourself in a mysterious forest clearing. The air is thick with "
    "anticipation, and strange sounds echo in the distance. The ancient trees "
    "around you seem to watch your every move."
)
FALLBACK_CONTINUATION = (
    " As you continue your journey, new paths reveal themselves before you. "
    "The atmosphere shifts, hinting at unknown adventures ahead."
)


class Phase(str, enum.Enum):
    IDLE = "idle"
    GENERATING_CONTINUATION = "generating_continuation"
    GENERATING_CHOICES = "generating_choices"
    ASSEMBLED = "assembled"


PhaseCallback = Callable[[Phase], None]


class GenerationEmpty(Exception):
    """A completion cleaned down to nothing."""


class Turn(BaseModel):
    """A finished turn: the new segment and the state to carry forward."""

    segment: StorySegment
    state: NarrativeState
    refreshed: bool = False
    fallback: bool = False


# ---------------------------------------------------------------------------
# Fixed content
# ---------------------------------------------------------------------------

def _fixed_choices(first: tuple[str, str], second: tuple[str, str]) -> list[Choice]:
    return [
        Choice(
            text=first[0],
            consequence=first[1],
            environment_impact=EnvironmentModification(
                lighting_change=LightingChange(intensity=0.8),
                atmosphere_change=AtmosphereChange(fog_density=0.1),
                animation_effect=AnimationEffect(
                    transition_type="slide", intensity=1.2, duration=2.5
                ),
            ),
        ),
        Choice(
            text=second[0],
            consequence=second[1],
            environment_impact=EnvironmentModification(
                lighting_change=LightingChange(intensity=1.2),
                atmosphere_change=AtmosphereChange(fog_density=0.01),
                animation_effect=AnimationEffect(
                    transition_type="fade", intensity=1.1, duration=2
                ),
            ),
        ),
    ]


def fallback_opening() -> StorySegment:
    return StorySegment(
        text=FALLBACK_OPENING,
        environment=initial_environment(DEFAULT_ENVIRONMENT),
        choices=_fixed_choices(
            ("Explore the forest", "You venture deeper into the mysterious forest."),
            ("Look for a path", "You search for a clear path through the trees."),
        ),
        metadata=preset_for(DEFAULT_ENVIRONMENT).metadata,
    )


def fallback_next(current: StorySegment, choice: Choice) -> StorySegment:
    """Build the next segment from local data only. Cannot fail."""
    environment = apply_modification(current.environment, choice.environment_impact)
    return StorySegment(
        text=choice.consequence + FALLBACK_CONTINUATION,
        environment=environment,
        choices=_fixed_choices(
            ("Explore further", "You decide to explore the area more thoroughly."),
            ("Take a cautious approach",
             "You proceed with caution, carefully observing your surroundings."),
        ),
        metadata=current.metadata.model_copy(
            update={"location": environment.base_environment}
        ),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def cap_summary(summary: str) -> str:
    """Keep the most recent MAX_SUMMARY_LENGTH characters."""
    return summary.strip()[-MAX_SUMMARY_LENGTH:].strip()


def join_consequence(consequence: str, generated: str) -> str:
    """Prefix the generated text with the chosen consequence, once."""
    consequence = consequence.strip()
    if not consequence or consequence in generated:
        return generated
    separator = " " if consequence[-1] in ".!?" else ". "
    return consequence + separator + generated


async def summarize(session: ModelSession, text: str, previous: str = "") -> str:
    """Fold ``text`` into ``previous`` with a summarization call.

    Falls back to plain concatenation when the model is unavailable or
    returns nothing usable. The result is always capped.
    """
    try:
        prompt = summary_prompt(text, previous)
        raw = await session.complete(prompt, SUMMARY_PARAMS, stage="summary")
        summary = clean(raw, prompt, max_length=MAX_SUMMARY_LENGTH)
        if summary == FALLBACK_TEXT:
            raise GenerationEmpty("summary came back empty")
    except (LLMError, PromptError, GenerationEmpty) as e:
        logger.warning("Summary update failed, concatenating instead: %s", e)
        summary = f"{previous} {text}"
    return cap_summary(summary)


async def refresh_summary(session: ModelSession, summary: str) -> str:
    """Rewrite the summary from scratch. Keeps the old one on failure."""
    try:
        prompt = refresh_summary_prompt(summary)
        raw = await session.complete(prompt, SUMMARY_PARAMS, stage="refresh")
        fresh = clean(raw, prompt, max_length=MAX_SUMMARY_LENGTH)
        if fresh == FALLBACK_TEXT:
            raise GenerationEmpty("refreshed summary came back empty")
    except (LLMError, PromptError, GenerationEmpty) as e:
        logger.warning("Summary refresh failed, keeping previous summary: %s", e)
        fresh = summary
    return cap_summary(fresh)


async def generate_choices(
    session: ModelSession, context: str, rng: random.Random | None = None
) -> list[Choice]:
    prompt = choices_prompt(context)
    raw = await session.complete(prompt, CHOICE_PARAMS, stage="choices")
    return extract(strip_prompt_echo(raw, prompt), rng)


def _notify(on_phase: PhaseCallback | None, phase: Phase) -> None:
    if on_phase is not None:
        on_phase(phase)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

async def generate_initial(
    session: ModelSession,
    rng: random.Random | None = None,
    on_phase: PhaseCallback | None = None,
) -> Turn:
    """Open a new story in the default environment."""
    environment = initial_environment(DEFAULT_ENVIRONMENT)
    try:
        _notify(on_phase, Phase.GENERATING_CONTINUATION)
        prompt = opening_prompt(environment.base_environment)
        raw = await session.complete(prompt, STORY_PARAMS, stage="opening")
        text = clean(raw, prompt)
        summary = await summarize(session, text)
        _notify(on_phase, Phase.GENERATING_CHOICES)
        choices = await generate_choices(session, text, rng)
        segment = StorySegment(
            text=text,
            environment=environment,
            choices=choices,
            metadata=classify_metadata(text, environment.base_environment),
        )
    except Exception as e:
        logger.warning("Opening generation failed, using fallback story: %s", e)
        segment = fallback_opening()
        _notify(on_phase, Phase.ASSEMBLED)
        return Turn(
            segment=segment,
            state=NarrativeState(story_summary=cap_summary(segment.text)),
            fallback=True,
        )
    _notify(on_phase, Phase.ASSEMBLED)
    return Turn(segment=segment, state=NarrativeState(story_summary=summary))


async def generate_next(
    session: ModelSession,
    state: NarrativeState,
    current: StorySegment,
    choice: Choice,
    rng: random.Random | None = None,
    on_phase: PhaseCallback | None = None,
) -> Turn:
    """Continue the story from ``current`` along ``choice``."""
    counter = state.segments_since_prompt_refresh + 1
    refreshed = counter >= REFRESH_PROMPT_AFTER_SEGMENTS
    summary = state.story_summary
    if refreshed:
        logger.info("Refreshing story summary after %d segments", counter)
        summary = await refresh_summary(session, summary)
        counter = 0

    try:
        _notify(on_phase, Phase.GENERATING_CONTINUATION)
        prompt = continuation_prompt(
            summary=summary,
            previous_text=current.text,
            choice=choice,
            setting=current.environment.base_environment,
            metadata=current.metadata,
            refreshed=refreshed,
        )
        raw = await session.complete(prompt, STORY_PARAMS, stage="continuation")
        text = join_consequence(choice.consequence, clean(raw, prompt))

        if not refreshed:
            summary = await summarize(session, text, summary)

        env_key = classify(text, current.environment.base_environment)
        environment = transition(current.environment, env_key, choice.environment_impact)
        metadata = classify_metadata(text, env_key, current.metadata)

        _notify(on_phase, Phase.GENERATING_CHOICES)
        choices = await generate_choices(session, text, rng)
        segment = StorySegment(
            text=text, environment=environment, choices=choices, metadata=metadata,
        )
    except Exception as e:
        logger.warning("Segment generation failed, using fallback segment: %s", e)
        segment = fallback_next(current, choice)
        if not refreshed:
            summary = cap_summary(f"{state.story_summary} {segment.text}")
        _notify(on_phase, Phase.ASSEMBLED)
        return Turn(
            segment=segment,
            state=NarrativeState(story_summary=summary, segments_since_prompt_refresh=counter),
            refreshed=refreshed,
            fallback=True,
        )

    _notify(on_phase, Phase.ASSEMBLED)
    return Turn(
        segment=segment,
        state=NarrativeState(story_summary=summary, segments_since_prompt_refresh=counter),
        refreshed=refreshed,
    )

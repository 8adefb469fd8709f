"""Core domain models.

Every pipeline stage and the storage layer operate on these types.
Pydantic is used for validation and serialisation at every data boundary.

Field names are snake_case in Python and camelCase on the wire
(``environment_impact`` <-> ``environmentImpact``), so persisted state and
API payloads keep the shape the front end already understands.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TransitionType = Literal["fade", "slide", "zoom"]

TRANSITION_TYPES: tuple[TransitionType, ...] = ("fade", "slide", "zoom")


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

class LightingConfig(_Model):
    intensity: float
    color: str
    ambient: float
    shadows: bool


class AtmosphereConfig(_Model):
    fog: bool
    fog_density: float | None = None
    fog_color: str | None = None


class Prop(_Model):
    type: str
    position: tuple[float, float, float]
    rotation: tuple[float, float, float] | None = None
    scale: tuple[float, float, float] | None = None


class LightingChange(_Model):
    """Partial lighting override; unset fields keep the base value."""

    intensity: float | None = None
    color: str | None = None
    ambient: float | None = None
    shadows: bool | None = None


class AtmosphereChange(_Model):
    """Partial atmosphere override; unset fields keep the base value."""

    fog: bool | None = None
    fog_density: float | None = None
    fog_color: str | None = None


class AnimationEffect(_Model):
    transition_type: TransitionType | None = None
    intensity: float | None = None  # 1 is normal
    duration: float | None = None  # seconds


class EnvironmentModification(_Model):
    lighting_change: LightingChange = Field(default_factory=LightingChange)
    atmosphere_change: AtmosphereChange = Field(default_factory=AtmosphereChange)
    add_props: list[Prop] = Field(default_factory=list)
    remove_props: list[str] = Field(default_factory=list)  # prop types
    animation_effect: AnimationEffect = Field(default_factory=AnimationEffect)


class EnvironmentDescription(_Model):
    base_environment: str
    lighting: LightingConfig
    atmosphere: AtmosphereConfig
    props: list[Prop] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Story
# ---------------------------------------------------------------------------

class StoryMetadata(_Model):
    mood: str
    location: str
    time_of_day: str
    weather_conditions: str


class Choice(_Model):
    text: str = Field(min_length=1)
    consequence: str = Field(min_length=1)
    environment_impact: EnvironmentModification = Field(
        default_factory=EnvironmentModification
    )


class StorySegment(_Model):
    """One turn of the story. Immutable once created."""

    text: str
    environment: EnvironmentDescription
    choices: list[Choice] = Field(min_length=2, max_length=2)
    metadata: StoryMetadata


class NarrativeState(_Model):
    """Running context carried from one turn to the next.

    ``story_summary`` is kept at or below ``MAX_SUMMARY_LENGTH`` by the
    orchestrator; the counter resets to 0 on every refresh turn.
    """

    story_summary: str = ""
    segments_since_prompt_refresh: int = Field(default=0, ge=0)

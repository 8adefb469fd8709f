"""Environment presets, keyword classification and choice-impact merging.

Classification is a fixed keyword table scanned in priority order: cave
keywords win over ruin keywords, and anything else keeps the previous
environment (or ``forest`` when there is none). It never fails.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

from storyloom.models import (
    AtmosphereConfig,
    EnvironmentDescription,
    EnvironmentModification,
    LightingConfig,
    StoryMetadata,
)

DEFAULT_ENVIRONMENT = "forest"


class EnvironmentPreset(BaseModel):
    description: str
    lighting: LightingConfig
    atmosphere: AtmosphereConfig
    metadata: StoryMetadata


PRESETS: dict[str, EnvironmentPreset] = {
    "forest": EnvironmentPreset(
        description="A mysterious forest with ancient trees reaching toward the sky.",
        lighting=LightingConfig(intensity=1.2, color="#fdf4c4", ambient=0.6, shadows=True),
        atmosphere=AtmosphereConfig(fog=True, fog_density=0.02, fog_color="#d8e8f0"),
        metadata=StoryMetadata(
            mood="mysterious", location="forest",
            time_of_day="day", weather_conditions="clear",
        ),
    ),
    "cave": EnvironmentPreset(
        description="A dark cave with stalactites hanging from the ceiling.",
        lighting=LightingConfig(intensity=0.4, color="#a0c0e0", ambient=0.2, shadows=True),
        atmosphere=AtmosphereConfig(fog=True, fog_density=0.08, fog_color="#202030"),
        metadata=StoryMetadata(
            mood="mysterious", location="cave",
            time_of_day="night", weather_conditions="enclosed",
        ),
    ),
    "ruins": EnvironmentPreset(
        description="Ancient ruins of a forgotten civilization.",
        lighting=LightingConfig(intensity=1.1, color="#e8d8c0", ambient=0.5, shadows=True),
        atmosphere=AtmosphereConfig(fog=True, fog_density=0.03, fog_color="#e0e0d8"),
        metadata=StoryMetadata(
            mood="ancient", location="ruins",
            time_of_day="day", weather_conditions="clear",
        ),
    ),
}

# First match wins, in this order.
_ENVIRONMENT_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("cave", ("cave", "cavern", "underground")),
    ("ruins", ("ruin", "ancient", "temple")),
]

_MOOD_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("tense", ("danger", "threat", "growl", "scream", "blood", "attack")),
    ("eerie", ("whisper", "ghost", "shadow", "strange", "haunt")),
    ("peaceful", ("calm", "peace", "gentle", "quiet", "serene")),
    ("ancient", ("ancient", "forgotten", "relic")),
]

_TIME_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("dawn", ("dawn", "sunrise", "daybreak")),
    ("dusk", ("dusk", "sunset", "twilight")),
    ("night", ("night", "moon", "midnight", "stars")),
    ("day", ("noon", "morning", "afternoon", "sunlight")),
]

_WEATHER_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("stormy", ("storm", "thunder", "lightning")),
    ("rainy", ("rain", "drizzle", "downpour")),
    ("snowy", ("snow", "frost", "blizzard")),
    ("misty", ("mist", "fog", "haze")),
]


def _first_match(text: str, table: list[tuple[str, tuple[str, ...]]]) -> str | None:
    lowered = text.lower()
    for label, keywords in table:
        for keyword in keywords:
            if re.search(rf"\b{keyword}", lowered):
                return label
    return None


def preset_for(key: str) -> EnvironmentPreset:
    """Return the preset for ``key``, or the default preset for unknown keys."""
    return PRESETS.get(key, PRESETS[DEFAULT_ENVIRONMENT])


def classify(text: str, previous: str | None = None) -> str:
    """Map generated text to an environment key.

    "Cavern" and "underground" map to ``cave``; "ruin", "ancient" and
    "temple" map to ``ruins``. Text with no keyword keeps ``previous`` when it
    names a known preset, otherwise falls back to ``forest``.
    """
    matched = _first_match(text, _ENVIRONMENT_KEYWORDS)
    if matched:
        return matched
    if previous in PRESETS:
        return previous
    return DEFAULT_ENVIRONMENT


def classify_metadata(
    text: str, env_key: str, previous: StoryMetadata | None = None
) -> StoryMetadata:
    """Recompute metadata labels from ``text``.

    Labels with no keyword hit keep the previous segment's value, then the
    preset default. ``location`` always names the environment.
    """
    fallback = previous or preset_for(env_key).metadata
    return StoryMetadata(
        mood=_first_match(text, _MOOD_KEYWORDS) or fallback.mood,
        location=env_key,
        time_of_day=_first_match(text, _TIME_KEYWORDS) or fallback.time_of_day,
        weather_conditions=(
            _first_match(text, _WEATHER_KEYWORDS) or fallback.weather_conditions
        ),
    )


def initial_environment(key: str = DEFAULT_ENVIRONMENT) -> EnvironmentDescription:
    preset = preset_for(key)
    return EnvironmentDescription(
        base_environment=key if key in PRESETS else DEFAULT_ENVIRONMENT,
        lighting=preset.lighting,
        atmosphere=preset.atmosphere,
        props=[],
    )


def apply_modification(
    env: EnvironmentDescription,
    modification: EnvironmentModification,
    base_environment: str | None = None,
) -> EnvironmentDescription:
    """Merge a choice's deltas into ``env``.

    Lighting and atmosphere are overridden field by field, never replaced
    wholesale. Props carry over except those whose type is listed in
    ``remove_props``; ``add_props`` are appended.
    """
    lighting = env.lighting.model_copy(
        update=modification.lighting_change.model_dump(exclude_none=True)
    )
    atmosphere = env.atmosphere.model_copy(
        update=modification.atmosphere_change.model_dump(exclude_none=True)
    )
    removed = set(modification.remove_props)
    props = [p for p in env.props if p.type not in removed]
    props.extend(modification.add_props)
    return EnvironmentDescription(
        base_environment=base_environment or env.base_environment,
        lighting=lighting,
        atmosphere=atmosphere,
        props=props,
    )


def transition(
    current: EnvironmentDescription,
    env_key: str,
    modification: EnvironmentModification,
) -> EnvironmentDescription:
    """Build the next environment: preset for ``env_key`` plus the choice's deltas.

    Props come from ``current``, not from the preset.
    """
    preset = preset_for(env_key)
    base = EnvironmentDescription(
        base_environment=env_key,
        lighting=preset.lighting,
        atmosphere=preset.atmosphere,
        props=current.props,
    )
    return apply_modification(base, modification)

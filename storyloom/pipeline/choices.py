"""Choice extraction from raw model output.

Parsers run in a fixed order and the first one that yields two usable
``(text, consequence)`` pairs wins:

  1. structured  — a JSON array of objects, repaired if malformed
  2. key/value   — loose ``text: "..."`` / ``consequence: "..."`` pairs
  3. list items  — numbered or bulleted lines
  4. default     — a fixed generic pair (always succeeds)

Environment impacts are never parsed from model output; they are
synthesised here so the two choices always look different on screen.
"""

from __future__ import annotations

import json
import logging
import random
import re
from collections.abc import Callable

from storyloom.models import (
    AnimationEffect,
    AtmosphereChange,
    Choice,
    EnvironmentModification,
    LightingChange,
    TransitionType,
)

logger = logging.getLogger(__name__)

Pair = tuple[str, str]  # (text, consequence)

MAX_CHOICE_LENGTH = 60

DEFAULT_PAIRS: tuple[Pair, Pair] = (
    ("Explore further", "You decide to explore the area more thoroughly."),
    ("Stay cautious", "You proceed with caution, carefully observing your surroundings."),
)


# ---------------------------------------------------------------------------
# Environment impacts
# ---------------------------------------------------------------------------

def first_impact() -> EnvironmentModification:
    """Darker, foggier, fading in."""
    return EnvironmentModification(
        lighting_change=LightingChange(intensity=0.8),
        atmosphere_change=AtmosphereChange(fog_density=0.1),
        animation_effect=AnimationEffect(transition_type="fade", intensity=1.2, duration=2),
    )


def second_impact(rng: random.Random | None = None) -> EnvironmentModification:
    """Brighter, clearer, sliding or zooming in."""
    transition: TransitionType = (rng or random).choice(("slide", "zoom"))
    return EnvironmentModification(
        lighting_change=LightingChange(intensity=1.2),
        atmosphere_change=AtmosphereChange(fog_density=0.01),
        animation_effect=AnimationEffect(transition_type=transition, intensity=1.3, duration=2.5),
    )


def build_choices(pairs: tuple[Pair, Pair], rng: random.Random | None = None) -> list[Choice]:
    (text_a, consequence_a), (text_b, consequence_b) = pairs
    return [
        Choice(text=text_a, consequence=consequence_a, environment_impact=first_impact()),
        Choice(text=text_b, consequence=consequence_b, environment_impact=second_impact(rng)),
    ]


def default_choices(rng: random.Random | None = None) -> list[Choice]:
    return build_choices(DEFAULT_PAIRS, rng)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def _tidy_choice(text: str) -> str:
    text = re.sub(r"\s+", " ", text).strip().strip("\"'`").strip()
    text = text.rstrip(".,;:")
    if len(text) > MAX_CHOICE_LENGTH:
        text = text[:MAX_CHOICE_LENGTH].rsplit(" ", 1)[0]
    return text


def _tidy_consequence(text: str) -> str:
    text = re.sub(r"\s+", " ", text).strip().strip("\"'`").strip()
    if text and text[-1] not in ".!?":
        text += "."
    return text


def synthesize_consequence(choice_text: str) -> str:
    action = choice_text.rstrip(".!?").strip()
    return f"You decide to {action[:1].lower()}{action[1:]}."


def _usable(items: list[Pair]) -> tuple[Pair, Pair] | None:
    """Tidy pairs and return the first two with non-empty fields, if any."""
    usable: list[Pair] = []
    for text, consequence in items:
        text = _tidy_choice(text)
        if not text:
            continue
        consequence = _tidy_consequence(consequence) or synthesize_consequence(text)
        usable.append((text, consequence))
        if len(usable) == 2:
            return usable[0], usable[1]
    return None


# ---------------------------------------------------------------------------
# Parsers: each returns two pairs or None
# ---------------------------------------------------------------------------

_ARRAY_RE = re.compile(r"\[\s*\{.*\}\s*\]", re.DOTALL)


def _repair_json(fragment: str) -> str:
    """Fix the malformations small models produce most often."""
    # single quotes that delimit keys or values; apostrophes inside words stay
    repaired = re.sub(r"(?<=[{\[,:])(\s*)'", r'\1"', fragment)
    repaired = re.sub(r"'(?=\s*[:,}\]])", '"', repaired)
    # unquoted keys
    repaired = re.sub(r"([{,]\s*)([A-Za-z_]\w*)\s*:", r'\1"\2":', repaired)
    # unquoted string values
    repaired = re.sub(
        r':\s*(?!["\[{\d-]|true\b|false\b|null\b)([^,}\]]+?)\s*(?=[,}\]])',
        lambda m: ": " + json.dumps(m.group(1).strip()),
        repaired,
    )
    # trailing commas
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)
    return repaired


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned


def parse_structured(text: str) -> tuple[Pair, Pair] | None:
    match = _ARRAY_RE.search(_strip_fences(text))
    if not match:
        return None
    fragment = match.group()
    data = None
    for candidate in (fragment, _repair_json(fragment)):
        try:
            data = json.loads(candidate)
            break
        except json.JSONDecodeError:
            continue
    if not isinstance(data, list):
        return None
    items = [
        (item["text"], str(item.get("consequence") or ""))
        for item in data
        if isinstance(item, dict) and isinstance(item.get("text"), str)
    ]
    if len(items) < 2:
        return None
    return _usable(items)


# A value runs to its own closing quote, so the other quote kind may appear inside.
_QUOTED_VALUE = r"""\s*[:=]\s*(?:"([^"\n]+)"|'([^'\n]+)')"""
_TEXT_FIELD_RE = re.compile(r"""["']?\btext["']?""" + _QUOTED_VALUE, re.IGNORECASE)
_CONSEQUENCE_FIELD_RE = re.compile(r"""["']?\bconsequence["']?""" + _QUOTED_VALUE, re.IGNORECASE)


def _field_values(pattern: re.Pattern, text: str) -> list[str]:
    return [double or single for double, single in pattern.findall(text)]


def parse_key_values(text: str) -> tuple[Pair, Pair] | None:
    texts = _field_values(_TEXT_FIELD_RE, text)
    consequences = _field_values(_CONSEQUENCE_FIELD_RE, text)
    if len(texts) < 2 or len(consequences) < 2:
        return None
    return _usable(list(zip(texts[:2], consequences[:2])))


_LIST_ITEM_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.+?)\s*$", re.MULTILINE)


def parse_list_items(text: str) -> tuple[Pair, Pair] | None:
    items = _LIST_ITEM_RE.findall(text)
    if len(items) < 2:
        return None
    return _usable([(item, "") for item in items])


PARSERS: list[tuple[str, Callable[[str], tuple[Pair, Pair] | None]]] = [
    ("structured", parse_structured),
    ("key_values", parse_key_values),
    ("list_items", parse_list_items),
]


def extract(raw_text: str, rng: random.Random | None = None) -> list[Choice]:
    """Parse exactly two choices out of ``raw_text``. Never raises."""
    for name, parser in PARSERS:
        pairs = parser(raw_text or "")
        if pairs:
            logger.debug("choices parsed by %s parser", name)
            return build_choices(pairs, rng)
    logger.warning("No parser matched choice output, using defaults: %r", (raw_text or "")[:200])
    return default_choices(rng)

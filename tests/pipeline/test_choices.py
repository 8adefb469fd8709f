"""Tests for choice extraction from raw model output."""

import json
import random

import pytest

from storyloom.pipeline.choices import (
    DEFAULT_PAIRS,
    MAX_CHOICE_LENGTH,
    extract,
    parse_key_values,
    parse_list_items,
    parse_structured,
    second_impact,
)


def _texts(choices):
    return [c.text for c in choices]


# ── Structured output ────────────────────────────────────────


def test_extracts_well_formed_array():
    raw = '[{"text":"Run","consequence":"You flee"},{"text":"Fight","consequence":"You attack"}]'
    choices = extract(raw)
    assert _texts(choices) == ["Run", "Fight"]
    assert choices[0].consequence == "You flee."
    assert choices[1].consequence == "You attack."


def test_extracts_array_inside_prose():
    raw = (
        "Here are your options: "
        '[{"text": "Open the gate", "consequence": "It swings inward."}, '
        '{"text": "Climb the wall", "consequence": "You scale the stones."}] Good luck!'
    )
    assert _texts(extract(raw)) == ["Open the gate", "Climb the wall"]


def test_extracts_fenced_array():
    payload = json.dumps([
        {"text": "Drink the potion", "consequence": "Warmth spreads through you."},
        {"text": "Pour it out", "consequence": "The grass withers."},
    ])
    raw = f"```json\n{payload}\n```"
    assert _texts(extract(raw)) == ["Drink the potion", "Pour it out"]


def test_repairs_single_quotes_and_trailing_comma():
    raw = (
        "[{'text': 'Run away', 'consequence': 'You flee the wolves'}, "
        "{'text': 'Stand firm', 'consequence': 'You draw your blade'},]"
    )
    assert _texts(extract(raw)) == ["Run away", "Stand firm"]


def test_repairs_unquoted_keys():
    raw = (
        '[{text: "Open the door", consequence: "The hinges scream"}, '
        '{text: "Walk away", consequence: "You leave the house"}]'
    )
    assert _texts(extract(raw)) == ["Open the door", "Walk away"]


def test_repair_keeps_apostrophes():
    raw = (
        '[{text: "Open the door", consequence: "It\'s dark inside"}, '
        "{'text': 'Walk away', 'consequence': 'You don't look back'}]"
    )
    choices = extract(raw)
    assert _texts(choices) == ["Open the door", "Walk away"]
    assert choices[0].consequence == "It's dark inside."
    assert choices[1].consequence == "You don't look back."


def test_repairs_unquoted_values():
    raw = '[{"text": Run, "consequence": You flee}, {"text": Hide, "consequence": You crouch low}]'
    choices = extract(raw)
    assert _texts(choices) == ["Run", "Hide"]
    assert choices[1].consequence == "You crouch low."


def test_skips_items_with_empty_text():
    raw = json.dumps([
        {"text": "", "consequence": "Nothing."},
        {"text": "Go north", "consequence": "Cold wind."},
        {"text": "Go south", "consequence": "Warm sand."},
    ])
    assert _texts(extract(raw)) == ["Go north", "Go south"]


def test_missing_consequence_is_synthesised():
    choices = extract('[{"text": "Run"}, {"text": "Hide behind the cart"}]')
    assert choices[0].consequence == "You decide to run."
    assert choices[1].consequence == "You decide to hide behind the cart."


def test_single_object_is_not_enough():
    assert parse_structured('[{"text": "Run", "consequence": "You flee"}]') is None


def test_long_choice_text_is_shortened():
    long_text = "Climb the enormous crumbling tower that looms over the village square at dusk"
    raw = json.dumps([
        {"text": long_text, "consequence": "You climb."},
        {"text": "Wait", "consequence": "You wait."},
    ])
    first = extract(raw)[0].text
    assert len(first) <= MAX_CHOICE_LENGTH
    assert long_text.startswith(first)


def test_strips_quotes_and_trailing_punctuation():
    raw = json.dumps([
        {"text": '"Run."', "consequence": "You flee."},
        {"text": "Fight,", "consequence": "You attack!"},
    ])
    choices = extract(raw)
    assert _texts(choices) == ["Run", "Fight"]
    assert choices[1].consequence == "You attack!"


# ── Loose formats ────────────────────────────────────────────


def test_extracts_key_value_pairs():
    raw = (
        'text: "Light a torch" consequence: "Shadows retreat"\n'
        'text: "Keep walking" consequence: "The dark deepens"'
    )
    assert parse_key_values(raw) == (
        ("Light a torch", "Shadows retreat."),
        ("Keep walking", "The dark deepens."),
    )
    assert _texts(extract(raw)) == ["Light a torch", "Keep walking"]


def test_key_values_keep_the_other_quote_kind():
    raw = (
        'text: "Don\'t move" consequence: "The guard\'s eyes narrow"\n'
        "text: 'Shout \"halt\" at him' consequence: 'He waves back'"
    )
    assert parse_key_values(raw) == (
        ("Don't move", "The guard's eyes narrow."),
        ('Shout "halt" at him', "He waves back."),
    )


def test_extracts_numbered_list():
    choices = extract("1. Search the room\n2. Leave quietly")
    assert _texts(choices) == ["Search the room", "Leave quietly"]
    assert choices[0].consequence == "You decide to search the room."


def test_extracts_bulleted_list():
    assert parse_list_items("- Open the chest\n- Walk away\n- Sing") == (
        ("Open the chest", "You decide to open the chest."),
        ("Walk away", "You decide to walk away."),
    )


# ── Defaults ─────────────────────────────────────────────────


@pytest.mark.parametrize("raw", ["", "I don't know what to do.", "[{", '{"text": "Run"}'])
def test_unparseable_output_uses_defaults(raw):
    assert _texts(extract(raw)) == [text for text, _ in DEFAULT_PAIRS]


# ── Impacts ──────────────────────────────────────────────────


def test_choices_have_distinct_impacts(rng):
    first, second = extract('[{"text":"Run","consequence":"x"},{"text":"Fight","consequence":"y"}]', rng)
    assert first.environment_impact != second.environment_impact
    assert first.environment_impact.animation_effect.transition_type == "fade"
    assert second.environment_impact.animation_effect.transition_type in ("slide", "zoom")
    assert first.environment_impact.lighting_change.intensity == 0.8
    assert second.environment_impact.lighting_change.intensity == 1.2


def test_second_impact_is_reproducible_with_seed():
    assert second_impact(random.Random(3)) == second_impact(random.Random(3))


@pytest.mark.parametrize("raw", [
    '[{"text":"Run","consequence":"You flee"},{"text":"Fight","consequence":"You attack"}]',
    "1. Left\n2. Right",
    "nonsense",
    "",
])
def test_always_two_complete_choices(raw):
    choices = extract(raw)
    assert len(choices) == 2
    for choice in choices:
        assert choice.text
        assert choice.consequence

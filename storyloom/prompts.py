"""Handlebars prompt templates for every generation call.

Values are inserted with triple-stash (``{{{x}}}``) so quotes and
apostrophes reach the model unescaped.
"""

import re
from collections.abc import Callable
from typing import Any

import pybars

from storyloom.models import Choice, StoryMetadata

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


OPENING_TEMPLATE = """Write an engaging opening to a fantasy adventure.
Establish a clear setting and atmosphere in 2-3 sentences.
Use second-person perspective (you) and set up an intriguing situation in a {{{setting}}}:"""

CHOICES_TEMPLATE = """Story: "{{{context}}}"

Give two different things the hero could do next.
Answer with a JSON array only, no other text, in exactly this form:
[{"text": "<short action>", "consequence": "<what happens>"}, {"text": "<short action>", "consequence": "<what happens>"}]
"""

SUMMARY_TEMPLATE = """{{#if summary}}Story so far: {{{summary}}}

{{/if}}New events: {{{text}}}

Summarize the whole story in at most three sentences:"""

REFRESH_SUMMARY_TEMPLATE = """Story notes: {{{summary}}}

Write a fresh, concise summary of these events in at most three sentences, using new wording:"""

CONTINUE_TEMPLATE = """Fantasy adventure in progress:

Story so far: "{{{summary}}}"
Last scene: "{{{recent}}}"
Setting: {{{setting}}}

The protagonist just chose to: {{{choice_text}}}
This leads to: {{{consequence}}}

Continue the story with 2-3 vivid sentences that advance the plot.
Use second-person perspective (you) and include sensory details:"""

REFRESHED_CONTINUE_TEMPLATE = """Fantasy adventure setting: {{{setting}}}
Mood: {{{mood}}}. Time of day: {{{time_of_day}}}. Weather: {{{weather}}}.

Previous events: {{{summary}}}
Last scene: "{{{recent}}}"

Current situation: {{{consequence}}}

Continue the adventure by describing what happens next. Do not repeat the wording of the previous events.
Use vivid details and second-person perspective. Write 2-3 sentences that move the story somewhere new:"""


def last_sentences(text: str, count: int = 2) -> str:
    sentences = [s.strip() for s in re.findall(r"[^.!?]+[.!?]*", text) if s.strip()]
    return " ".join(sentences[-count:])


def opening_prompt(setting: str) -> str:
    return render_prompt(OPENING_TEMPLATE, {"setting": setting})


def choices_prompt(context: str) -> str:
    # the tail of the scene is what the choices react to
    return render_prompt(CHOICES_TEMPLATE, {"context": context[-200:]})


def summary_prompt(text: str, summary: str = "") -> str:
    return render_prompt(SUMMARY_TEMPLATE, {"text": text, "summary": summary})


def refresh_summary_prompt(summary: str) -> str:
    return render_prompt(REFRESH_SUMMARY_TEMPLATE, {"summary": summary})


def continuation_prompt(
    *,
    summary: str,
    previous_text: str,
    choice: Choice,
    setting: str,
    metadata: StoryMetadata,
    refreshed: bool,
) -> str:
    """Build the prompt for the next scene.

    The refreshed variant restates mood, time and weather and asks for new
    wording; the regular variant repeats the chosen option instead.
    """
    ctx = {
        "summary": summary,
        "recent": last_sentences(previous_text),
        "setting": setting,
        "consequence": choice.consequence,
    }
    if refreshed:
        ctx.update(
            mood=metadata.mood,
            time_of_day=metadata.time_of_day,
            weather=metadata.weather_conditions,
        )
        return render_prompt(REFRESHED_CONTINUE_TEMPLATE, ctx)
    ctx["choice_text"] = choice.text
    return render_prompt(CONTINUE_TEMPLATE, ctx)

"""Test doubles for the model layer."""

import json
from collections.abc import Callable
from typing import Any

from storyloom.llm import LoadFailure, SamplingParams

OPENING = "You wake beneath towering pines. Mist curls between the trunks. Somewhere a bell is ringing."
CONTINUATION = "The path bends toward a hill. Crows circle overhead."
SUMMARY = "You woke in a misty forest and set off toward a distant bell."
FRESH_SUMMARY = "A traveller follows a bell through the forest."
CHOICES = json.dumps([
    {"text": "Follow the bell", "consequence": "You walk toward the ringing."},
    {"text": "Climb a tree", "consequence": "You climb to look around."},
])

# Prompt markers, checked in order.
DEFAULT_SCRIPT: list[tuple[str, str]] = [
    ("Write a fresh, concise summary", FRESH_SUMMARY),
    ("Summarize the whole story", SUMMARY),
    ("JSON array only", CHOICES),
    ("Write an engaging opening", OPENING),
    ("Continue the", CONTINUATION),
    ("Test", "Test ok"),
]


class StubBackend:
    """Backend double that answers prompts from a script.

    Output is wrapped like a transformers pipeline result, prompt echo
    included. ``fail_on`` makes any prompt containing one of its markers
    raise instead.
    """

    name = "stub"

    def __init__(
        self,
        script: list[tuple[str, str]] | None = None,
        *,
        fail_on: tuple[str, ...] = (),
        fail_fetch: int = 0,
        self_test: Any = None,
        respond: Callable[[str], Any] | None = None,
    ) -> None:
        self.script = script if script is not None else DEFAULT_SCRIPT
        self.fail_on = fail_on
        self.fail_fetch = fail_fetch
        self.self_test = self_test
        self.respond = respond
        self.fetch_calls = 0
        self.prepare_calls = 0
        self.prompts: list[str] = []

    async def fetch(self) -> None:
        self.fetch_calls += 1
        if self.fetch_calls <= self.fail_fetch:
            raise LoadFailure("weights unavailable")

    async def prepare(self):
        self.prepare_calls += 1

        async def generate(prompt: str, params: SamplingParams) -> Any:
            if prompt == "Test" and self.self_test is not None:
                return self.self_test
            self.prompts.append(prompt)
            if any(marker in prompt for marker in self.fail_on):
                raise RuntimeError("model crashed")
            if self.respond is not None:
                return self.respond(prompt)
            for marker, output in self.script:
                if marker in prompt:
                    return [{"generated_text": f"{prompt} {output}"}]
            return [{"generated_text": prompt}]

        return generate

    def prompts_with(self, marker: str) -> list[str]:
        return [p for p in self.prompts if marker in p]

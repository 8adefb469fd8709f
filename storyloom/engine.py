"""Story engine — the one owner of a narrative session.

Holds the running state, the append-only history and the busy flag, and
persists the state after every turn. Presentation code reads from it but
never writes to it.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterator
from contextlib import contextmanager

from storyloom.models import Choice, NarrativeState, StorySegment
from storyloom.pipeline.orchestrator import Phase, Turn, generate_initial, generate_next
from storyloom.session import ModelSession
from storyloom.storage import Storage

logger = logging.getLogger(__name__)


class EngineBusy(RuntimeError):
    """A turn was requested while another one is still running."""


class NoStory(RuntimeError):
    """A choice was made before the story started."""


class StoryEngine:
    def __init__(
        self,
        session: ModelSession,
        storage: Storage | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.session = session
        self.storage = storage
        self.rng = rng
        self.phase = Phase.IDLE
        self.busy = False
        self.state = NarrativeState()
        self.history: list[StorySegment] = []
        if storage is not None:
            self.state = storage.load_state()
            self.history = storage.load_history()

    @property
    def current(self) -> StorySegment | None:
        return self.history[-1] if self.history else None

    def _set_phase(self, phase: Phase) -> None:
        self.phase = phase

    @contextmanager
    def _turn(self) -> Iterator[None]:
        if self.busy:
            raise EngineBusy("A story turn is already in progress")
        self.busy = True
        try:
            yield
        finally:
            self.busy = False
            self.phase = Phase.IDLE

    def _commit(self, turn: Turn) -> StorySegment:
        self.state = turn.state
        self.history.append(turn.segment)
        if self.storage is not None:
            self.storage.save_state(turn.state)
            self.storage.save_history(self.history)
        return turn.segment

    async def start(self) -> StorySegment:
        """Begin a new story, discarding any previous one."""
        with self._turn():
            self._clear()
            turn = await generate_initial(self.session, self.rng, on_phase=self._set_phase)
            return self._commit(turn)

    async def choose(self, choice: Choice | int) -> StorySegment:
        """Advance the story along ``choice`` (a Choice or its index)."""
        with self._turn():
            current = self.current
            if current is None:
                raise NoStory("Start a story before making a choice")
            if isinstance(choice, int):
                if not 0 <= choice < len(current.choices):
                    raise ValueError(f"Choice index must be 0 to {len(current.choices) - 1}")
                choice = current.choices[choice]
            turn = await generate_next(
                self.session, self.state, current, choice, self.rng,
                on_phase=self._set_phase,
            )
            if turn.refreshed:
                logger.info("Story context refreshed")
            return self._commit(turn)

    def _clear(self) -> None:
        self.state = NarrativeState()
        self.history = []
        if self.storage is not None:
            self.storage.clear()

    def reset(self) -> None:
        """Discard the session's story. The loaded model is kept."""
        if self.busy:
            raise EngineBusy("Cannot reset while a story turn is running")
        self._clear()

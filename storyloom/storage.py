"""JSON file storage for the narrative session.

All state is stored in flat JSON files under a configurable base directory.
There is no database; reads and writes go through plain helper methods that
load and dump JSON.

Directory layout:

    {base}/
      state.json      ← {"storySummary": ..., "segmentsSincePromptRefresh": ...}
      history.json    ← list of StorySegment objects, oldest first

Persistence is best effort: a failed read returns defaults and a failed
write is logged, so a broken disk never stops the story. An unreadable
history file is moved aside to history.json.corrupt rather than overwritten.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from storyloom.models import NarrativeState, StorySegment

logger = logging.getLogger(__name__)

SUMMARY_KEY = "storySummary"
COUNTER_KEY = "segmentsSincePromptRefresh"


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._state_file = base_path / "state.json"
        self._history_file = base_path / "history.json"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        self._base.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # Narrative state
    # ------------------------------------------------------------------

    def load_state(self) -> NarrativeState:
        if not self._state_file.exists():
            return NarrativeState()
        try:
            data = self._read_json(self._state_file)
            return NarrativeState(
                story_summary=data.get(SUMMARY_KEY, ""),
                segments_since_prompt_refresh=data.get(COUNTER_KEY, 0),
            )
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Could not read %s, starting fresh: %s", self._state_file, e)
            return NarrativeState()

    def save_state(self, state: NarrativeState) -> None:
        try:
            self._write_json(self._state_file, {
                SUMMARY_KEY: state.story_summary,
                COUNTER_KEY: state.segments_since_prompt_refresh,
            })
        except OSError as e:
            logger.warning("Could not write %s: %s", self._state_file, e)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def load_history(self) -> list[StorySegment]:
        if not self._history_file.exists():
            return []
        try:
            return [StorySegment.model_validate(s) for s in self._read_json(self._history_file)]
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Could not read %s, starting fresh: %s", self._history_file, e)
            self._set_aside(self._history_file)
            return []

    def _set_aside(self, path: Path) -> None:
        try:
            path.replace(path.with_name(path.name + ".corrupt"))
        except OSError as e:
            logger.warning("Could not move %s aside: %s", path, e)

    def save_history(self, history: list[StorySegment]) -> None:
        """Write the whole history; the caller owns the list in memory."""
        try:
            self._write_json(
                self._history_file,
                [s.model_dump(mode="json", by_alias=True) for s in history],
            )
        except OSError as e:
            logger.warning("Could not write %s: %s", self._history_file, e)

    def clear(self) -> None:
        for path in (self._state_file, self._history_file):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)

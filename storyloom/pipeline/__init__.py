"""Story generation pipeline.

Turns unreliable small-model completions into structured story turns:

  sanitize      — raw completion → clean prose (never empty)
  choices       — raw completion → exactly two choices
  orchestrator  — generate_initial / generate_next, refresh + summary logic
"""

from .choices import extract  # noqa: F401
from .orchestrator import (  # noqa: F401
    MAX_SUMMARY_LENGTH,
    REFRESH_PROMPT_AFTER_SEGMENTS,
    Phase,
    Turn,
    generate_initial,
    generate_next,
)
from .sanitize import clean  # noqa: F401

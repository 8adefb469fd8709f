"""Raw completion cleanup into presentable prose.

Small models echo the prompt, run on into the next instruction block, loop
on the same sentence, and stop mid-word. ``clean`` undoes all of that in a
fixed order and never returns an empty string.
"""

import re

MAX_TEXT_LENGTH = 300
FALLBACK_TEXT = "The adventure continues..."

# Start of a JSON array of objects: the model has drifted into the choice
# prompt's output format.
_JSON_ARRAY_RE = re.compile(r"\[\s*\{")


def _loosen(phrase: str) -> str:
    """Let a phrase match across any whitespace, including before its colon."""
    if phrase.endswith(":"):
        phrase = phrase[:-1] + r"\s*:"
    return phrase.replace(" ", r"\s+")


# Template phrases that leak from our prompts. They only count at the start
# of a line or sentence, and each match runs to the end of its clause
# (sentence terminator, colon or newline).
_META_PHRASES = (
    r"continue the (?:story|adventure)",
    r"fantasy adventure(?: setting| in progress)?:",
    r"setting:",
    r"previous events:",
    r"current situation:",
    r"story so far:",
    r"the protagonist just chose to:",
    r"this leads to:",
    r"write (?:2-3|two or three) (?:vivid )?sentences",
    r"use (?:vivid details and )?second-person perspective",
    r"last scene:",
    r"do not repeat the wording",
    r"write a fresh(?:, concise)? summary",
    r"summarize (?:the|this|these|in)",
    r"mood:",
    r"time of day:",
    r"weather:",
)
_CLAUSE_START = r"(?:^|(?<=[.!?]))[ \t]*"

_META_RE = re.compile(
    _CLAUSE_START + r"(?:"
    + "|".join(_loosen(p) for p in _META_PHRASES)
    + r")[^\n.!?:]*[.!?:]?",
    re.IGNORECASE | re.MULTILINE,
)
# Labels whose content is worth keeping; only the label goes.
_LABEL_RE = re.compile(
    _CLAUSE_START + r"(?:summary|new\s+events|story\s+notes)\s*:",
    re.IGNORECASE | re.MULTILINE,
)

# A sentence keeps the closing quotes or brackets that follow its terminator.
_CLOSERS = "\"'”’)]"
_SENTENCE_RE = re.compile(rf"[^.!?]+[.!?]+[{re.escape(_CLOSERS)}]*|[^.!?]+$")
_LEFTOVER_CHARS = " \t\n.,;:!?-"
_UNWANTED_CHARS_RE = re.compile(r"[<>‹›‼]")
_TERMINALS = ".!?"


def strip_prompt_echo(text: str, prompt: str) -> str:
    """Trim ``text`` and drop any leading verbatim copies of ``prompt``."""
    cleaned = text.strip()
    stripped_prompt = prompt.strip()
    if not stripped_prompt:
        return cleaned
    while cleaned.startswith(stripped_prompt):
        cleaned = cleaned[len(stripped_prompt):].strip()
    return cleaned


def truncate_runaway(text: str) -> str:
    match = _JSON_ARRAY_RE.search(text)
    if match:
        return text[:match.start()]
    return text


def strip_meta_phrases(text: str) -> str:
    return _LABEL_RE.sub("", _META_RE.sub("", text))


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_RE.findall(text) if s.strip()]


def _squash_run(match: re.Match) -> str:
    run = match.group()
    if run.startswith("..."):
        return "..."
    return run[0]


def tidy(text: str) -> str:
    """Collapse whitespace and repeated punctuation.

    A run of three or more dots is kept as an ellipsis; any other run of
    terminal marks collapses to its first mark.
    """
    text = _UNWANTED_CHARS_RE.sub("", text)
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"\s+([,;:.!?])", r"\1", text)
    text = re.sub(r"([.!?])\s+(?=[.!?])", r"\1", text)
    text = re.sub(r"[.!?]{2,}", _squash_run, text)
    text = re.sub(r"([.!?])(?=[A-Za-z])", r"\1 ", text)
    return text


def dedupe_sentences(text: str) -> str:
    """Drop repeated sentences, keeping the first occurrence in order."""
    sentences = split_sentences(text)
    if len(sentences) <= 1:
        return text
    seen: set[str] = set()
    kept: list[str] = []
    for sentence in sentences:
        key = tidy(sentence)
        if key in seen:
            continue
        seen.add(key)
        kept.append(sentence)
    return " ".join(kept)


def cap_length(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Cut ``text`` back to the last sentence boundary within ``max_length``.

    Without a boundary the raw cut is kept, one character short so a closing
    period still fits.
    """
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    boundary = max(truncated.rfind(mark) for mark in _TERMINALS)
    if boundary > 0:
        end = boundary + 1
        while end < len(truncated) and truncated[end] in _CLOSERS:
            end += 1
        return truncated[:end]
    return text[:max_length - 1].rstrip()


def ensure_terminal(text: str) -> str:
    """Add a period unless the text already ends a sentence (closing quotes allowed)."""
    if not text or text.rstrip(_CLOSERS)[-1:] in tuple(_TERMINALS):
        return text
    return text.rstrip(",;:- ") + "."


def clean(raw_text: str, prompt: str = "", max_length: int = MAX_TEXT_LENGTH) -> str:
    """Turn a raw completion into presentable prose.

    The result is never empty, ends in terminal punctuation, fits within
    ``max_length`` and does not start with ``prompt``. Cleaning an already
    cleaned string with an empty prompt returns it unchanged.
    """
    text = strip_prompt_echo(raw_text, prompt)
    text = truncate_runaway(text)
    # whatever punctuation a stripped phrase left behind
    text = strip_meta_phrases(text).lstrip(_LEFTOVER_CHARS)
    text = tidy(dedupe_sentences(text))
    text = cap_length(text, max_length)
    text = ensure_terminal(tidy(text))
    if not re.search(r"[A-Za-z0-9]", text):
        return FALLBACK_TEXT
    return text

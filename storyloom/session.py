"""Model session — lazy, single-flight model loading and completion calls.

One ``ModelSession`` owns one backend. The first ``ensure_ready()`` starts a
load task; every caller that arrives while it runs awaits that same task, so
the model is never loaded twice. A failed load discards everything it built
and leaves the session in ``failed``; the next ``ensure_ready()`` starts
over from scratch.

Load milestones reported to subscribers:

    fetch    10%   download weights / reach the server
    prepare  30%   build the generation pipeline
    test     75%   tiny self-test generation
    ready   100%
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable

from storyloom.llm import (
    SELF_TEST_PARAMS,
    Backend,
    GenerationFailure,
    Generator,
    LoadFailure,
    SamplingParams,
    decode_result,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]  # (percent 0-100, label)


class ModelState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class ModelSession:
    """Owns the cached generator and the pending load for one backend.

    Args:
        backend:  Where the model comes from.
        timeout:  Per-completion limit in seconds; ``None`` disables it.
    """

    def __init__(self, backend: Backend, timeout: float | None = 120.0) -> None:
        self.backend = backend
        self.timeout = timeout
        self.state = ModelState.UNINITIALIZED
        self.percent = 0
        self.label = ""
        self.last_error: str | None = None
        self._generator: Generator | None = None
        self._pending: asyncio.Task | None = None
        self._subscribers: list[ProgressCallback] = []

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress callback. Returns a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _report(self, status: str, fraction: float, label: str) -> None:
        self.percent = round(fraction * 100)
        self.label = label
        logger.debug("model %s %s %d%% %s", self.backend.name, status, self.percent, label)
        for callback in list(self._subscribers):
            try:
                callback(self.percent, label)
            except Exception:
                logger.exception("Progress subscriber failed")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self.state is ModelState.READY and self._generator is not None

    async def ensure_ready(self) -> None:
        """Load the model once. Concurrent callers share the same load."""
        if self.ready:
            return
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._load())
        pending = self._pending
        try:
            await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending is pending:
                self._pending = None

    def retry(self) -> None:
        """Reset a failed session so the next ensure_ready() loads again."""
        if self.state is ModelState.FAILED:
            self.state = ModelState.UNINITIALIZED
            self.last_error = None

    async def _load(self) -> None:
        self.retry()
        self.state = ModelState.INITIALIZING
        self.last_error = None
        try:
            self._report("fetch", 0.1, "Fetching model")
            await self.backend.fetch()
            self._report("prepare", 0.3, "Preparing story engine")
            generator = await self.backend.prepare()
            self._report("test", 0.75, "Testing model")
            try:
                decode_result(await generator("Test", SELF_TEST_PARAMS))
            except GenerationFailure as e:
                raise LoadFailure(f"Model self-test failed: {e}") from e
        except Exception as e:
            self._generator = None
            self.state = ModelState.FAILED
            self.last_error = str(e)
            self._report("failed", 0.0, "Model failed to load")
            logger.error("Model load failed for %s: %s", self.backend.name, e)
            if isinstance(e, LoadFailure):
                raise
            raise LoadFailure(str(e)) from e
        self._generator = generator
        self.state = ModelState.READY
        self._report("ready", 1.0, "Model ready")

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete(self, prompt: str, params: SamplingParams, stage: str = "story") -> str:
        """Run one completion and return its text.

        Raises LoadFailure if the model cannot be loaded and
        GenerationFailure if the call fails, times out or returns an
        unknown shape.
        """
        await self.ensure_ready()
        assert self._generator is not None
        logger.debug("complete stage=%s prompt_len=%d", stage, len(prompt))
        try:
            raw = await asyncio.wait_for(self._generator(prompt, params), self.timeout)
        except asyncio.TimeoutError as e:
            raise GenerationFailure(f"Generation timed out after {self.timeout}s") from e
        except GenerationFailure:
            raise
        except Exception as e:
            raise GenerationFailure(f"Failed to generate text: {e}") from e
        text = decode_result(raw)
        logger.debug("complete stage=%s len=%d", stage, len(text))
        return text

    def reset(self) -> None:
        """Drop the cached model. The next call loads from scratch."""
        self._generator = None
        self._pending = None
        self.state = ModelState.UNINITIALIZED
        self.percent = 0
        self.label = ""


async def load_with_retry(
    session: ModelSession, attempts: int = 3, delay: float = 2.0
) -> None:
    """Bounded retry around ``ensure_ready`` with a fixed delay.

    Re-raises the last LoadFailure once ``attempts`` are used up; the
    session is then left in ``failed`` until the caller retries again.
    """
    for attempt in range(1, attempts + 1):
        try:
            await session.ensure_ready()
            return
        except LoadFailure:
            if attempt == attempts:
                raise
            logger.warning("Model load attempt %d/%d failed, retrying in %.1fs",
                           attempt, attempts, delay)
            await asyncio.sleep(delay)

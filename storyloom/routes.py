"""FastAPI endpoints under /api.

Endpoint groups: health, model (load status + retrying load), story
(current segment, start, choose, reset). The engine lives on
``app.state.engine``; one app serves one narrative session.
"""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from storyloom.engine import EngineBusy, StoryEngine
from storyloom.llm import LoadFailure
from storyloom.session import load_with_retry

router = APIRouter()


class ChooseBody(BaseModel):
    index: int


def _engine(request: Request) -> StoryEngine:
    return request.app.state.engine


def _model_status(engine: StoryEngine) -> dict:
    session = engine.session
    return {
        "state": session.state.value,
        "percent": session.percent,
        "label": session.label,
        "error": session.last_error,
    }


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/model")
async def model_status(request: Request):
    """Model load state and the latest progress report."""
    return _model_status(_engine(request))


@router.post("/model/load")
async def load_model(request: Request):
    """Load the model, retrying a fixed number of times."""
    engine = _engine(request)
    settings = request.app.state.settings
    try:
        await load_with_retry(
            engine.session,
            attempts=settings.load_retries,
            delay=settings.load_retry_delay,
        )
    except LoadFailure as e:
        raise HTTPException(503, f"Model failed to load: {e}")
    return _model_status(engine)


@router.get("/story")
async def get_story(request: Request):
    """Current segment and turn count."""
    engine = _engine(request)
    if engine.current is None:
        raise HTTPException(404, "No story in progress")
    return {
        "segment": engine.current,
        "turn": len(engine.history),
        "phase": engine.phase.value,
    }


@router.post("/story/start")
async def start_story(request: Request):
    """Begin a new story."""
    try:
        segment = await _engine(request).start()
    except EngineBusy as e:
        raise HTTPException(409, str(e))
    return segment


@router.post("/story/choose")
async def choose(request: Request, body: ChooseBody):
    """Advance the story along choice 0 or 1 of the current segment."""
    engine = _engine(request)
    if engine.busy:
        raise HTTPException(409, "A story turn is already in progress")
    current = engine.current
    if current is None:
        raise HTTPException(400, "Start a story before making a choice")
    if not 0 <= body.index < len(current.choices):
        raise HTTPException(400, f"Choice index must be 0 or 1, got {body.index}")
    try:
        segment = await engine.choose(body.index)
    except EngineBusy as e:
        raise HTTPException(409, str(e))
    return segment


@router.post("/story/reset")
async def reset_story(request: Request):
    """Discard the current story."""
    try:
        _engine(request).reset()
    except EngineBusy as e:
        raise HTTPException(409, str(e))
    return {"ok": True}

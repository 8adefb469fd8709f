from fastapi import FastAPI

from storyloom.config import Settings, build_backend, load_settings
from storyloom.engine import StoryEngine
from storyloom.routes import router
from storyloom.session import ModelSession
from storyloom.storage import Storage


def create_app(settings: Settings | None = None, engine: StoryEngine | None = None) -> FastAPI:
    resolved = settings or load_settings()
    if engine is None:
        session = ModelSession(build_backend(resolved), timeout=resolved.generation_timeout)
        engine = StoryEngine(session, Storage(resolved.data_dir))

    app = FastAPI(title="Storyloom")
    app.state.settings = resolved
    app.state.engine = engine
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (reads settings from the environment)
app = create_app()

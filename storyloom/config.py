"""Runtime settings from environment variables (optionally a .env file)."""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel

from storyloom.llm import Backend, HttpBackend, ProviderFormat, TransformersBackend

ROOT = Path(__file__).parent.parent


class Settings(BaseModel):
    backend: Literal["http", "transformers"] = "http"
    provider_url: str = "http://localhost:5001"
    provider_format: ProviderFormat = "koboldcpp"
    api_key: str = ""
    model_name: str = "distilgpt2"
    data_dir: Path = ROOT / "data"
    generation_timeout: float = 120.0
    load_retries: int = 3
    load_retry_delay: float = 2.0


_ENV_KEYS = {
    "backend": "STORYLOOM_BACKEND",
    "provider_url": "PROVIDER_URL",
    "provider_format": "PROVIDER_FORMAT",
    "api_key": "API_KEY",
    "model_name": "MODEL_NAME",
    "data_dir": "DATA_DIR",
    "generation_timeout": "GENERATION_TIMEOUT",
    "load_retries": "LOAD_RETRIES",
    "load_retry_delay": "LOAD_RETRY_DELAY",
}


def load_settings(env_file: Path | None = ROOT / ".env") -> Settings:
    """Read settings from the environment; unset variables keep defaults."""
    if env_file is not None:
        load_dotenv(env_file)
    values = {field: os.getenv(key) for field, key in _ENV_KEYS.items()}
    return Settings(**{k: v for k, v in values.items() if v not in (None, "")})


def build_backend(settings: Settings) -> Backend:
    if settings.backend == "transformers":
        return TransformersBackend(settings.model_name)
    return HttpBackend(
        provider_url=settings.provider_url,
        api_key=settings.api_key,
        provider_format=settings.provider_format,
        model=settings.model_name,
        timeout=settings.generation_timeout,
    )

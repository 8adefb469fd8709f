"""Tests for storyloom.config."""

import os
from pathlib import Path

from storyloom.config import Settings, build_backend, load_settings
from storyloom.llm import HttpBackend, TransformersBackend

_VARS = (
    "STORYLOOM_BACKEND", "PROVIDER_URL", "PROVIDER_FORMAT", "API_KEY", "MODEL_NAME",
    "DATA_DIR", "GENERATION_TIMEOUT", "LOAD_RETRIES", "LOAD_RETRY_DELAY",
)


def _clear_env(monkeypatch):
    for var in _VARS:
        monkeypatch.delenv(var, raising=False)


def test_defaults(monkeypatch):
    _clear_env(monkeypatch)
    settings = load_settings(env_file=None)
    assert settings == Settings()
    assert settings.backend == "http"
    assert settings.load_retries == 3


def test_reads_environment(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    monkeypatch.setenv("PROVIDER_FORMAT", "openai")
    monkeypatch.setenv("GENERATION_TIMEOUT", "30")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("API_KEY", "")
    settings = load_settings(env_file=None)
    assert settings.provider_format == "openai"
    assert settings.generation_timeout == 30.0
    assert settings.data_dir == Path(tmp_path)
    assert settings.api_key == ""


def test_reads_env_file(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    env_file = tmp_path / ".env"
    env_file.write_text("MODEL_NAME=tiny-story\nLOAD_RETRIES=5\n")
    try:
        settings = load_settings(env_file)
    finally:
        # load_dotenv writes into the process environment
        os.environ.pop("MODEL_NAME", None)
        os.environ.pop("LOAD_RETRIES", None)
    assert settings.model_name == "tiny-story"
    assert settings.load_retries == 5


def test_build_http_backend():
    backend = build_backend(Settings(provider_url="http://localhost:9000/"))
    assert isinstance(backend, HttpBackend)
    assert backend.name == "koboldcpp:http://localhost:9000"


def test_build_transformers_backend():
    backend = build_backend(Settings(backend="transformers", model_name="distilgpt2"))
    assert isinstance(backend, TransformersBackend)
    assert backend.name == "transformers:distilgpt2"

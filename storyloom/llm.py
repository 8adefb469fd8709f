"""Model backends — the raw text-generation capability.

A backend loads in two phases and then hands out a generator callable:

    async def fetch(self) -> None: ...
    async def prepare(self) -> Generator: ...

    Generator = async (prompt, SamplingParams) -> raw result

The raw result is whatever the backend natively returns. ``decode_result``
turns every known shape into one string, or raises GenerationFailure.

Two implementations are provided:

    HttpBackend          — a local text-completion server, KoboldCpp or
                           OpenAI-compatible. Selected by provider_format.
    TransformersBackend  — an in-process Hugging Face text-generation
                           pipeline (``pip install storyloom[local]``).

Tests use StubBackend (defined in the test helpers) instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Literal, Protocol, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Base class for model failures."""


class LoadFailure(LLMError):
    """The model could not be fetched, prepared, or failed its self-test."""


class GenerationFailure(LLMError):
    """A completion call failed or returned an unrecognised shape."""


# ---------------------------------------------------------------------------
# Sampling parameters
# ---------------------------------------------------------------------------

class SamplingParams(BaseModel):
    max_new_tokens: int = 150
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.9
    repetition_penalty: float = 1.3
    no_repeat_ngram_size: int = 3
    do_sample: bool = True


STORY_PARAMS = SamplingParams()
# Structured output parses better with less randomness.
CHOICE_PARAMS = SamplingParams(
    max_new_tokens=120, temperature=0.6, top_k=20, top_p=0.8, repetition_penalty=1.2,
)
SUMMARY_PARAMS = SamplingParams(
    max_new_tokens=100, temperature=0.5, top_k=20, top_p=0.85, repetition_penalty=1.2,
)
SELF_TEST_PARAMS = SamplingParams(max_new_tokens=5, do_sample=False)


# ---------------------------------------------------------------------------
# Result decoding
# ---------------------------------------------------------------------------

class _GeneratedText(BaseModel):
    generated_text: str


class _TextItem(BaseModel):
    text: str


class _KoboldBody(BaseModel):
    results: Annotated[list[_TextItem], Field(min_length=1)]


class _OpenAIBody(BaseModel):
    choices: Annotated[list[_TextItem], Field(min_length=1)]


_RESULT_SHAPES = TypeAdapter(
    Union[
        _GeneratedText,
        Annotated[list[_GeneratedText], Field(min_length=1)],
        _KoboldBody,
        _OpenAIBody,
    ]
)


def decode_result(raw: Any) -> str:
    """Normalise a raw generation result into its text.

    Accepted shapes:
      {"generated_text": "..."}            single pipeline output
      [{"generated_text": "..."}, ...]     pipeline output list (first wins)
      {"results": [{"text": "..."}]}       KoboldCpp
      {"choices": [{"text": "..."}]}       OpenAI-compatible
    """
    try:
        decoded = _RESULT_SHAPES.validate_python(raw)
    except ValidationError as e:
        raise GenerationFailure(
            f"Unexpected output format: {type(raw).__name__}"
        ) from e
    if isinstance(decoded, list):
        return decoded[0].generated_text
    if isinstance(decoded, _GeneratedText):
        return decoded.generated_text
    if isinstance(decoded, _KoboldBody):
        return decoded.results[0].text
    return decoded.choices[0].text


# ---------------------------------------------------------------------------
# Protocol: every backend must match this shape
# ---------------------------------------------------------------------------

Generator = Callable[[str, SamplingParams], Awaitable[Any]]


class Backend(Protocol):
    name: str

    async def fetch(self) -> None: ...

    async def prepare(self) -> Generator: ...


# ---------------------------------------------------------------------------
# HttpBackend: connects to a local completion server
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpBackend:
    """Async HTTP client for text-completion servers.

    Supported formats:
      "koboldcpp"  — POST /api/v1/generate  {"prompt": ..., "max_length": ...}
                     Response: {"results": [{"text": "..."}]}
      "openai"     — POST /v1/completions   {"model": ..., "prompt": ...}
                     Response: {"choices": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the server, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self.name = f"{provider_format}:{self._base_url}"

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _model_url(self) -> str:
        if self._format == "openai":
            return f"{self._base_url}/v1/models"
        return f"{self._base_url}/api/v1/model"

    def _build_request(self, prompt: str, params: SamplingParams) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body: dict = {
                "prompt": prompt,
                "max_tokens": params.max_new_tokens,
                "temperature": params.temperature,
                "top_p": params.top_p,
                "top_k": params.top_k,
                "repeat_penalty": params.repetition_penalty,
            }
            if self._model:
                body["model"] = self._model
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/v1/generate"
        return url, {
            "prompt": prompt,
            "max_length": params.max_new_tokens,
            "temperature": params.temperature if params.do_sample else 0.0,
            "top_k": params.top_k,
            "top_p": params.top_p,
            "rep_pen": params.repetition_penalty,
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.request(method, url, headers=self._headers(), **kwargs)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise GenerationFailure(f"Cannot connect to model server at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise GenerationFailure(
                f"Model server returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise GenerationFailure(f"Model server timed out after {self._timeout}s") from e
        return resp

    async def fetch(self) -> None:
        """Check that the server is up and has a model loaded."""
        try:
            resp = await self._request("GET", self._model_url())
        except GenerationFailure as e:
            raise LoadFailure(str(e)) from e
        logger.info("model server %s reports %s", self._base_url, resp.json())

    async def prepare(self) -> Generator:
        async def generate(prompt: str, params: SamplingParams) -> Any:
            url, body = self._build_request(prompt, params)
            logger.debug("generate url=%s prompt_len=%d", url, len(prompt))
            resp = await self._request("POST", url, json=body)
            return resp.json()

        return generate


# ---------------------------------------------------------------------------
# TransformersBackend: runs the model in-process
# ---------------------------------------------------------------------------

class TransformersBackend:
    """Hugging Face ``text-generation`` pipeline for a small causal model.

    Weights are downloaded once into the local Hugging Face cache. Loading
    and inference are blocking, so they run on a worker thread.
    """

    def __init__(self, model_name: str = "distilgpt2", device: str | None = None) -> None:
        self.model_name = model_name
        self.name = f"transformers:{model_name}"
        self._device = device
        self._local_path: str | None = None

    async def fetch(self) -> None:
        from huggingface_hub import snapshot_download

        self._local_path = await asyncio.to_thread(snapshot_download, self.model_name)
        logger.info("model %s available at %s", self.model_name, self._local_path)

    async def prepare(self) -> Generator:
        from transformers import pipeline

        pipe = await asyncio.to_thread(
            pipeline,
            "text-generation",
            model=self._local_path or self.model_name,
            device=self._device,
        )

        async def generate(prompt: str, params: SamplingParams) -> Any:
            logger.debug("generate model=%s prompt_len=%d", self.model_name, len(prompt))
            return await asyncio.to_thread(
                pipe,
                prompt,
                **params.model_dump(),
                pad_token_id=pipe.tokenizer.eos_token_id,
            )

        return generate

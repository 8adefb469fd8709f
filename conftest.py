import random

import pytest

from storyloom.session import ModelSession
from storyloom.storage import Storage
from tests.helpers import StubBackend


@pytest.fixture
def backend() -> StubBackend:
    return StubBackend()


@pytest.fixture
def session(backend: StubBackend) -> ModelSession:
    return ModelSession(backend, timeout=5)


@pytest.fixture
def storage(tmp_path) -> Storage:
    """Fresh storage under tmp_path for every test."""
    return Storage(tmp_path / "data-tests")


@pytest.fixture
def rng() -> random.Random:
    return random.Random(7)

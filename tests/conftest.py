import pytest

from auth.storage import MemoryKeyValueStore
from tests.helpers import FakeClock


@pytest.fixture
def storage() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

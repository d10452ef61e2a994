import pathlib

import pytest

from src.db.db_store import GymStore
from src.gym.gym import Gym
from src.gym.measurement import Measurement
from src.rower.link import BufferByteSource
from src.rower.protocol3 import Protocol3
from src.rower.trace import MemoryTrace

DATA_DIR = pathlib.Path(__file__).parent / "data"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def golden_trace():
    return DATA_DIR / "waterrower.trace"

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def measurement():
    return Measurement()

@pytest.fixture
def source():
    return BufferByteSource()

@pytest.fixture
def trace():
    return MemoryTrace()

@pytest.fixture
def protocol(source, trace, clock):
    return Protocol3(source, trace, clock)

@pytest.fixture
def store():
    store = GymStore(":memory:")
    yield store
    store.close()

@pytest.fixture
def gym(store):
    return Gym(store)

"""Shared fixtures for ChronoGenomics tests."""

import pytest

from chronogenomics.backends import MemoryBackend
from chronogenomics.codec import SimulatedFHECodec
from chronogenomics.engine import AnalysisEngine
from chronogenomics.store import RecordStore


class FakeClock:
    """Settable clock for deterministic timestamps and expiry."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend, clock):
    return RecordStore(backend, clock=clock)


@pytest.fixture
def codec():
    return SimulatedFHECodec()


@pytest.fixture
def engine(store, codec):
    engine = AnalysisEngine(store, codec, latency_seconds=0)
    yield engine
    engine.shutdown(wait=True, cancel_running=True)

"""Pytest configuration and shared fixtures."""

import random
from typing import Any

import pytest

from crmsync.fetcher.circuit_breaker import CircuitBreaker
from crmsync.fetcher.error_classifier import ErrorClassifier
from crmsync.fetcher.rate_limiter import RateLimitManager
from crmsync.monitoring.memory_manager import MemoryManager
from crmsync.pipeline.orchestrator import SyncOrchestrator
from crmsync.store.counter_store import InMemoryCounterStore
from crmsync.store.events import InMemoryEventSink
from crmsync.store.record_store import InMemoryRecordStore

from tests.fixtures.fakes import FakeClock, FakeSampler, FakeTransport


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def counter_store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def sampler():
    return FakeSampler()


@pytest.fixture
def circuit_breaker(counter_store):
    return CircuitBreaker(counter_store, failure_threshold=5, window_seconds=600, cooldown_seconds=300)


@pytest.fixture
def classifier(circuit_breaker):
    return ErrorClassifier(circuit_breaker, rng=random.Random(42))


@pytest.fixture
def rate_limiter(counter_store, clock):
    return RateLimitManager(
        counter_store,
        daily_budget=100,
        now=clock.now,
        sleeper=clock.sleep,
        rng=random.Random(42),
    )


@pytest.fixture
def memory_manager(sampler):
    return MemoryManager(
        threshold_percent=80,
        critical_percent=95,
        min_batch_size=10,
        max_batch_size=500,
        sampler=sampler,
        collector=lambda: 0,
    )


@pytest.fixture
def make_orchestrator(record_store, event_sink, rate_limiter, classifier, memory_manager, clock):
    """Build an orchestrator around a FakeTransport."""
    def build(transport: FakeTransport, **kwargs: Any) -> SyncOrchestrator:
        return SyncOrchestrator(
            transport=transport,
            record_store=record_store,
            events=event_sink,
            rate_limiter=rate_limiter,
            classifier=classifier,
            memory=memory_manager,
            sleeper=clock.sleep,
            **kwargs,
        )
    return build

"""Persistence seams: shared counters, local records and domain events."""

from .counter_store import CounterStore, InMemoryCounterStore, RedisCounterStore
from .events import EventSink, InMemoryEventSink, LoggingEventSink
from .record_store import InMemoryRecordStore, RecordStore

__all__ = [
    "CounterStore",
    "EventSink",
    "InMemoryCounterStore",
    "InMemoryEventSink",
    "InMemoryRecordStore",
    "LoggingEventSink",
    "RecordStore",
    "RedisCounterStore",
]

"""Event store and side-effect interfaces and implementations."""

from .base import (
    BaseDiscussionSink, BaseEventStore, BaseReadStatusSink, EventNotFoundError,
    NullDiscussionSink, NullReadStatusSink, PersistenceError,
    SideEffectResult, StoreError
)
from .sql import SqlDiscussionSink, SqlEventStore, SqlReadStatusSink

__all__ = [
    'BaseDiscussionSink',
    'BaseEventStore',
    'BaseReadStatusSink',
    'EventNotFoundError',
    'NullDiscussionSink',
    'NullReadStatusSink',
    'PersistenceError',
    'SideEffectResult',
    'StoreError',
    'SqlDiscussionSink',
    'SqlEventStore',
    'SqlReadStatusSink',
]

"""Contracts shared by the pipeline, the consumer and the status API.

Main exports:
- RawRecord, Event, HttpMethod, CheckpointDecision
- NormalizationError, StorageWriteError, PublishError
"""

from contracts import errors
from contracts import events

__all__ = [
    "CheckpointDecision",
    "EVENT_COLUMNS",
    "Event",
    "HttpMethod",
    "NormalizationError",
    "PublishError",
    "RawRecord",
    "StorageWriteError",
]

CheckpointDecision = events.CheckpointDecision
EVENT_COLUMNS = events.EVENT_COLUMNS
Event = events.Event
HttpMethod = events.HttpMethod
RawRecord = events.RawRecord

NormalizationError = errors.NormalizationError
PublishError = errors.PublishError
StorageWriteError = errors.StorageWriteError

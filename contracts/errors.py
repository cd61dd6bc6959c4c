"""Typed failures raised by the ingestion pipeline."""

from __future__ import annotations


class NormalizationError(ValueError):
    """A record payload could not be turned into an :class:`~contracts.events.Event`."""

    def __init__(self, sequence_number: str, message: str) -> None:
        super().__init__(f"{message} (sequence_number={sequence_number})")
        self.sequence_number = sequence_number


class StorageWriteError(RuntimeError):
    """Non-conflict storage failure; the flushed events were not persisted."""

    def __init__(self, message: str, *, pgcode: str | None = None, row_count: int = 0) -> None:
        super().__init__(message)
        self.pgcode = pgcode
        self.row_count = row_count


class PublishError(RuntimeError):
    """One event could not be published on the fan-out channel."""

    def __init__(self, event_id: str, message: str) -> None:
        super().__init__(f"{message} (id={event_id})")
        self.event_id = event_id

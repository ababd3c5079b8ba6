from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TimeInterval:
    """Half-open window [start, end) of change timestamps."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Interval start {self.start.isoformat()} is after end {self.end.isoformat()}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def as_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


class TriggerState:
    """Rolling window bookkeeping, updated once per scheduler firing."""

    def __init__(
        self,
        last_scheduled: datetime | None = None,
        last_actual: datetime | None = None,
        last_completion: datetime | None = None,
        current: datetime | None = None,
    ):
        self._lock = threading.Lock()
        self._last_scheduled = last_scheduled
        self._last_actual = last_actual
        self._last_completion = last_completion
        self._current = current or utc_now()

    @classmethod
    def seeded(cls, timestamp: datetime) -> TriggerState:
        return cls(timestamp, timestamp, timestamp, timestamp)

    @property
    def last_scheduled(self) -> datetime | None:
        return self._last_scheduled

    @property
    def last_actual(self) -> datetime | None:
        return self._last_actual

    @property
    def last_completion(self) -> datetime | None:
        return self._last_completion

    @property
    def current(self) -> datetime:
        return self._current

    def update(
        self,
        last_scheduled: datetime | None,
        last_actual: datetime | None,
        last_completion: datetime | None,
        current: datetime | None,
    ) -> None:
        # absent values never regress a present one
        with self._lock:
            self._last_scheduled = last_scheduled or self._last_scheduled
            self._last_actual = last_actual or self._last_actual
            self._last_completion = last_completion or self._last_completion
            self._current = current or self._current

    def get_interval(self) -> TimeInterval:
        with self._lock:
            return TimeInterval(self._last_completion or EPOCH, self._current)

    def snapshot(self) -> dict:
        with self._lock:
            fields = {
                "last_scheduled": self._last_scheduled,
                "last_actual": self._last_actual,
                "last_completion": self._last_completion,
                "current": self._current,
            }
        return {key: value.isoformat() if value else None for key, value in fields.items()}

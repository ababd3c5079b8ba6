from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from fhir_export.core.errors import ConfigurationError
from fhir_export.core.logging import log


@dataclass(frozen=True)
class OutputGroup:
    correlation_id: str
    index: int
    sequence_size: int
    members: tuple[dict, ...]

    def __len__(self) -> int:
        return len(self.members)


@dataclass
class _Sequence:
    size: int
    released: int = 0
    skipped: int = 0
    groups: int = 0
    members: list[dict] = field(default_factory=list)
    touched: float = 0.0

    @property
    def remaining(self) -> int:
        return self.size - self.released - self.skipped

    @property
    def accounted(self) -> int:
        return self.released + self.skipped + len(self.members)


class BatchAggregator:
    """
    Groups the entries of one run into bounded output groups.

    A group is released as soon as it holds `threshold` entries or exactly the
    entries still outstanding for its run. The declared sequence size has to be
    known before the first entry arrives.
    """

    def __init__(self, threshold: int, group_timeout: float | None = None, clock: Callable[[], float] = time.monotonic):
        if not isinstance(threshold, int) or threshold <= 0:
            raise ConfigurationError(f"Aggregation threshold must be a positive integer [actual={threshold}]")
        self.threshold = threshold
        self.group_timeout = group_timeout
        self.clock = clock
        self._lock = threading.Lock()
        self._sequences: dict[str, _Sequence] = {}

    def open(self, correlation_id: str, sequence_size: int) -> None:
        if sequence_size < 0:
            raise ValueError(f"Sequence size must not be negative [actual={sequence_size}]")
        with self._lock:
            existing = self._sequences.get(correlation_id)
            if existing is not None:
                if existing.size != sequence_size:
                    raise ValueError(
                        f"Sequence {correlation_id} already declared with size {existing.size}, got {sequence_size}"
                    )
                return
            if sequence_size == 0:
                return
            self._sequences[correlation_id] = _Sequence(size=sequence_size, touched=self.clock())

    def add(self, correlation_id: str, entry: dict) -> OutputGroup | None:
        with self._lock:
            sequence = self._sequence(correlation_id)
            if sequence.accounted >= sequence.size:
                raise ValueError(f"Sequence {correlation_id} received more than its declared {sequence.size} entries")
            sequence.members.append(entry)
            sequence.touched = self.clock()
            return self._release_if_complete(correlation_id, sequence)

    def skip(self, correlation_id: str) -> OutputGroup | None:
        """Account for a sequence slot that produced no entry."""
        with self._lock:
            sequence = self._sequence(correlation_id)
            if sequence.accounted >= sequence.size:
                raise ValueError(f"Sequence {correlation_id} received more than its declared {sequence.size} entries")
            sequence.skipped += 1
            sequence.touched = self.clock()
            return self._release_if_complete(correlation_id, sequence)

    def expire(self) -> list[OutputGroup]:
        """Release partial groups that have been idle longer than the group timeout."""
        if self.group_timeout is None:
            return []
        released = []
        now = self.clock()
        with self._lock:
            for correlation_id, sequence in list(self._sequences.items()):
                if sequence.members and now - sequence.touched > self.group_timeout:
                    log.warning(
                        "aggregator_group_timed_out",
                        correlation_id=correlation_id,
                        members=len(sequence.members),
                        remaining=sequence.remaining,
                    )
                    released.append(self._release(correlation_id, sequence))
        return released

    def pending(self) -> dict[str, int]:
        with self._lock:
            return {cid: len(sequence.members) for cid, sequence in self._sequences.items()}

    def _sequence(self, correlation_id: str) -> _Sequence:
        try:
            return self._sequences[correlation_id]
        except KeyError:
            raise KeyError(f"Unknown or already completed sequence {correlation_id}") from None

    def _release_if_complete(self, correlation_id: str, sequence: _Sequence) -> OutputGroup | None:
        count = len(sequence.members)
        if count and (count == self.threshold or count == sequence.remaining):
            return self._release(correlation_id, sequence)
        if sequence.remaining == 0:
            del self._sequences[correlation_id]
        return None

    def _release(self, correlation_id: str, sequence: _Sequence) -> OutputGroup:
        group = OutputGroup(correlation_id, sequence.groups, sequence.size, tuple(sequence.members))
        sequence.released += len(group.members)
        sequence.groups += 1
        sequence.members = []
        if sequence.remaining == 0:
            del self._sequences[correlation_id]
        log.debug("aggregator_group_released", correlation_id=correlation_id, index=group.index, members=len(group))
        return group

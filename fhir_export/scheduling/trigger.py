from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from croniter import croniter

from fhir_export.core.errors import ConfigurationError, RecoveryError
from fhir_export.core.logging import log
from fhir_export.scheduling.interval import TimeInterval, TriggerState, utc_now
from fhir_export.scheduling.recovery import RecoveryRecord, RecoveryStore


@dataclass
class TriggerTiming:
    last_scheduled: datetime | None = None
    last_actual: datetime | None = None
    last_completion: datetime | None = None


def parse_catchup(value: str | datetime) -> datetime:
    """Catch-up timestamps are local date-times unless they carry an offset."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise ConfigurationError(f"Invalid catch-up timestamp '{value}': {exc}") from exc
    # naive values are interpreted in the system zone
    return value.astimezone(timezone.utc)


def seed_trigger_state(
    store: RecoveryStore, catchup_from: str | datetime | None = None, now: datetime | None = None
) -> TriggerState:
    record = store.read()
    if record.last_successful_interval_start is not None:
        start = record.last_successful_interval_start
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        log.info("window_seeded", source="recovery", start=start.isoformat(), path=str(store.path))
        return TriggerState.seeded(start)
    if catchup_from:
        start = parse_catchup(catchup_from)
        log.info("window_seeded", source="catchup", start=start.isoformat())
        return TriggerState.seeded(start)
    start = now or utc_now()
    log.info("window_seeded", source="now", start=start.isoformat())
    return TriggerState.seeded(start)


class CronTrigger:
    def __init__(
        self,
        cron: str,
        state: TriggerState,
        cache=None,
        recovery_store: RecoveryStore | None = None,
    ):
        if not croniter.is_valid(cron):
            raise ConfigurationError(f"Invalid cron expression: {cron}")
        self.cron = cron
        self.state = state
        self.cache = cache
        self.recovery_store = recovery_store

    def next_execution(self, timing: TriggerTiming, now: datetime) -> datetime:
        if timing.last_actual is not None and self.cache is not None:
            self.cache.clear()

        next_fire = croniter(self.cron, now).get_next(datetime)
        self.state.update(timing.last_scheduled, timing.last_actual, timing.last_completion, next_fire)

        if timing.last_completion is not None and self.recovery_store is not None:
            record = RecoveryRecord(last_successful_interval_start=timing.last_completion)
            try:
                self.recovery_store.write(record)
            except RecoveryError:
                log.error("recovery_write_failed", path=str(self.recovery_store.path))
                raise
        return next_fire


class Scheduler:
    """Runs the job once per cron firing over the window since the last completed run."""

    def __init__(
        self,
        trigger: CronTrigger,
        job: Callable[[TimeInterval], object],
        clock: Callable[[], datetime] = utc_now,
        wait: Callable[[float], bool] | None = None,
    ):
        self.trigger = trigger
        self.job = job
        self.clock = clock
        self.timing = TriggerTiming()
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._next_fire: datetime | None = None

    @property
    def state(self) -> TriggerState:
        return self.trigger.state

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> bool:
        """Wait for the next firing and run the job. Returns False when stopped before firing."""
        if self._next_fire is None:
            self._next_fire = self.trigger.next_execution(self.timing, self.clock())

        delay = (self._next_fire - self.clock()).total_seconds()
        if self._wait(max(delay, 0.0)) or self.stopped:
            return False

        self.timing.last_scheduled = self._next_fire
        self.timing.last_actual = self.clock()
        interval = self.state.get_interval()
        log.info("export_run_started", start=interval.start.isoformat(), end=interval.end.isoformat())
        try:
            self.job(interval)
        except RecoveryError:
            raise
        except Exception as exc:
            log.exception("export_run_failed", start=interval.start.isoformat(), end=interval.end.isoformat(), error=str(exc))
        else:
            self.timing.last_completion = interval.end
            log.info("export_run_completed", start=interval.start.isoformat(), end=interval.end.isoformat())

        # persists the completion right away instead of at the next firing
        self._next_fire = self.trigger.next_execution(self.timing, self.clock())
        return True

    def run_forever(self) -> None:
        log.info("scheduler_started", cron=self.trigger.cron)
        while not self.stopped:
            self.run_once()
        log.info("scheduler_stopped")

from __future__ import annotations

import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fhir_export.core.errors import RecoveryError
from fhir_export.core.locks import ReadWriteLock
from fhir_export.core.logging import log

_LOCKS: dict[Path, ReadWriteLock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> ReadWriteLock:
    with _LOCKS_GUARD:
        return _LOCKS.setdefault(path, ReadWriteLock())


class RecoveryRecord(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    last_successful_interval_start: datetime | None = Field(default=None, alias="lastSuccessfulIntervalStart")


class RecoveryStore:
    """Single JSON document holding the start of the next interval to process."""

    def __init__(self, path: str | Path):
        self.path = Path(path).resolve()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RecoveryError(f"Failed to create recovery directory @ {self.path.parent}: {exc}") from exc
        self._lock = _lock_for(self.path)
        self._cached: RecoveryRecord | None = None
        self._cached_version: tuple | None = None

    def read(self) -> RecoveryRecord:
        with self._lock.read():
            try:
                stat = self.path.stat()
            except FileNotFoundError:
                return RecoveryRecord()
            except OSError as exc:
                raise RecoveryError(f"Failed to load recovery data from file @ {self.path}: {exc}") from exc
            version = (stat.st_mtime_ns, stat.st_ino, stat.st_size)
            if self._cached is not None and version == self._cached_version:
                return self._cached
            log.debug("recovery_read", path=str(self.path))
            try:
                record = RecoveryRecord.model_validate_json(self.path.read_bytes())
            except OSError as exc:
                raise RecoveryError(f"Failed to load recovery data from file @ {self.path}: {exc}") from exc
            except ValidationError as exc:
                raise RecoveryError(f"Failed to parse recovery data from file @ {self.path}: {exc}") from exc
            self._cached, self._cached_version = record, version
            return record

    def write(self, record: RecoveryRecord) -> None:
        payload = record.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        with self._lock.write():
            log.debug("recovery_write", path=str(self.path))
            try:
                fd, tmp_name = tempfile.mkstemp(prefix=".recovery-", suffix=".tmp", dir=self.path.parent)
            except OSError as exc:
                raise RecoveryError(f"Failed to update recovery data @ {self.path}: {exc}") from exc
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.path)
            except OSError as exc:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise RecoveryError(f"Failed to update recovery data @ {self.path}: {exc}") from exc
            self._cached = None
            self._cached_version = None

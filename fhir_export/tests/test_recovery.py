import json
import os
import threading
from datetime import datetime, timezone

import pytest

from fhir_export.core.errors import RecoveryError
from fhir_export.scheduling.recovery import RecoveryRecord, RecoveryStore

T1 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)


def test_missing_file_reads_as_empty_record(tmp_path):
    store = RecoveryStore(tmp_path / "nested" / "dir" / "recovery.json")
    assert (tmp_path / "nested" / "dir").is_dir()
    assert store.read().last_successful_interval_start is None


def test_round_trip_across_store_instances(tmp_path):
    path = tmp_path / "recovery.json"
    RecoveryStore(path).write(RecoveryRecord(last_successful_interval_start=T1))
    assert RecoveryStore(path).read().last_successful_interval_start == T1
    document = json.loads(path.read_text(encoding="utf-8"))
    assert set(document) == {"lastSuccessfulIntervalStart"}


def test_last_write_wins(tmp_path):
    store = RecoveryStore(tmp_path / "recovery.json")
    store.write(RecoveryRecord(last_successful_interval_start=T2))
    store.write(RecoveryRecord(last_successful_interval_start=T1))
    assert store.read().last_successful_interval_start == T1


def test_empty_record_omits_the_field(tmp_path):
    store = RecoveryStore(tmp_path / "recovery.json")
    store.write(RecoveryRecord())
    assert json.loads(store.path.read_text(encoding="utf-8")) == {}


def test_corrupt_file_raises_recovery_error(tmp_path):
    path = tmp_path / "recovery.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RecoveryError):
        RecoveryStore(path).read()


def test_failed_write_keeps_previous_record(tmp_path, monkeypatch):
    store = RecoveryStore(tmp_path / "recovery.json")
    store.write(RecoveryRecord(last_successful_interval_start=T1))

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(RecoveryError):
        store.write(RecoveryRecord(last_successful_interval_start=T2))
    monkeypatch.undo()

    assert store.read().last_successful_interval_start == T1
    assert [p.name for p in tmp_path.iterdir()] == ["recovery.json"]


def test_concurrent_readers_see_complete_records(tmp_path):
    store = RecoveryStore(tmp_path / "recovery.json")
    store.write(RecoveryRecord(last_successful_interval_start=T1))
    seen = []
    errors = []

    def reader():
        try:
            for _ in range(50):
                seen.append(RecoveryStore(store.path).read().last_successful_interval_start)
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    for value in (T2, T1, T2):
        store.write(RecoveryRecord(last_successful_interval_start=value))
    for thread in threads:
        thread.join()

    assert errors == []
    assert set(seen) <= {T1, T2}

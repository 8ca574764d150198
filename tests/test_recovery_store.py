import json
import os
import time

import pytest

from visionm.jobs.models import JobStatus
from visionm.storage.recovery_store import (
    JOB_KEYS,
    SELECTION_KEYS,
    FileBackend,
    MemoryBackend,
    RecoveryStore,
    cleanup_expired,
)


def test_keys_are_namespaced():
    backend = MemoryBackend()
    store = RecoveryStore(backend, "prediction")

    store.save("jobId", "J1")

    assert backend.keys() == ["prediction_jobId"]
    assert store.load("jobId") == "J1"
    assert store.keys() == ["jobId"]


def test_saving_none_removes_the_key():
    store = RecoveryStore(MemoryBackend(), "prediction")
    store.save("datasetId", "D1")
    store.save("datasetId", None)
    assert store.load("datasetId") is None


def test_clear_leaves_other_namespaces_alone():
    backend = MemoryBackend({"training_jobId": '"T1"', "theme": '"dark"'})
    store = RecoveryStore(backend, "prediction")
    store.save("jobId", "J1")
    store.save("modelId", "M1")

    store.clear()

    assert sorted(backend.keys()) == ["theme", "training_jobId"]


def test_scoped_writer_rejects_foreign_keys():
    store = RecoveryStore(MemoryBackend(), "prediction")
    writer = store.writer(SELECTION_KEYS)

    writer.save("modelId", "M1")
    with pytest.raises(KeyError):
        writer.save("jobId", "J1")
    with pytest.raises(KeyError):
        store.writer(JOB_KEYS).remove("datasetId")


def test_snapshot_accepts_numeric_progress_and_ignores_garbage():
    backend = MemoryBackend({
        "prediction_jobId": '"J1"',
        "prediction_status": '"running"',
        "prediction_progress": "42",
        "prediction_confidenceThreshold": "not json",
    })

    record = RecoveryStore(backend, "prediction").snapshot()

    assert record.job_id == "J1"
    assert record.status == JobStatus.RUNNING
    assert record.progress.percent == 42
    assert record.confidence_threshold is None


def test_unknown_persisted_status_is_dropped():
    backend = MemoryBackend({"prediction_jobId": '"J1"', "prediction_status": '"exploded"'})
    assert RecoveryStore(backend, "prediction").snapshot().status is None


def test_file_backend_survives_a_restart(tmp_path):
    first = RecoveryStore(FileBackend("tab-1", base_dir=str(tmp_path)), "prediction")
    first.save("jobId", "J1")
    first.save("progress", {"processed": 1, "total": 4, "percent": 25})

    second = RecoveryStore(FileBackend("tab-1", base_dir=str(tmp_path)), "prediction")

    assert second.load("jobId") == "J1"
    assert second.snapshot().progress.percent == 25
    assert [p.name for p in tmp_path.iterdir()] == ["tab-1.json"]


def test_file_backend_ignores_corrupt_file(tmp_path):
    (tmp_path / "tab-1.json").write_text("{broken")
    backend = FileBackend("tab-1", base_dir=str(tmp_path))
    assert backend.keys() == []


def test_unsafe_session_ids_are_hashed(tmp_path):
    backend = FileBackend("../../etc/passwd", base_dir=str(tmp_path))
    assert os.path.dirname(backend.path) == str(tmp_path)


def test_cleanup_expired_removes_only_old_files(tmp_path):
    old = tmp_path / "old.json"
    fresh = tmp_path / "fresh.json"
    old.write_text(json.dumps({}))
    fresh.write_text(json.dumps({}))
    stale = time.time() - 48 * 3600
    os.utime(old, (stale, stale))

    removed = cleanup_expired(base_dir=str(tmp_path), ttl_hours=24)

    assert removed == 1
    assert not old.exists()
    assert fresh.exists()

import json
import threading
from pathlib import Path

import pytest

from milhouse.state.documents import (
    SCHEMA_VERSION,
    VersionedDocument,
    file_lock,
    read_json,
    write_json_atomic,
)
from milhouse.state.errors import StateLockError, StateParseError, StateWriteError


def test_versioned_document_roundtrip(tmp_path: Path) -> None:
    document = VersionedDocument(tmp_path / "state" / "tasks.json")
    revision = document.set_data([{"id": "T1"}])

    assert revision == 1
    assert document.get_data() == [{"id": "T1"}]
    on_disk = json.loads(document.path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == SCHEMA_VERSION
    assert on_disk["revision"] == 1
    assert on_disk["data"] == [{"id": "T1"}]


def test_legacy_bare_payload_is_wrapped_on_read(tmp_path: Path) -> None:
    path = tmp_path / "issues.json"
    path.write_text(json.dumps([{"id": "P-1"}]), encoding="utf-8")
    document = VersionedDocument(path)

    envelope = document.get_envelope(default=[])
    assert envelope["revision"] == 1
    assert envelope["data"] == [{"id": "P-1"}]

    document.set_data([])
    assert json.loads(path.read_text(encoding="utf-8"))["revision"] == 2


def test_update_data_increments_revision(tmp_path: Path) -> None:
    document = VersionedDocument(tmp_path / "metrics.json")
    document.set_data({"count": 1})

    document.update_data(lambda payload: {"count": payload["count"] + 1}, default={"count": 0})

    envelope = document.get_envelope()
    assert envelope["data"] == {"count": 2}
    assert envelope["revision"] == 2


def test_set_data_rejects_stale_revision(tmp_path: Path) -> None:
    document = VersionedDocument(tmp_path / "tasks.json")
    document.set_data([])
    document.set_data([{"id": "T1"}])

    with pytest.raises(StateWriteError, match="Concurrent state update"):
        document.set_data([], expected_revision=1)


def test_read_json_reports_malformed_content(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StateParseError) as excinfo:
        read_json(path)

    assert excinfo.value.file_path == str(path)
    assert "broken.json" in excinfo.value.to_detailed_string()


def test_read_json_treats_missing_and_empty_as_none(tmp_path: Path) -> None:
    empty = tmp_path / "empty.json"
    empty.write_text("  \n", encoding="utf-8")

    assert read_json(tmp_path / "missing.json") is None
    assert read_json(empty) is None


def test_write_json_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "doc.json"
    write_json_atomic(target, {"a": 1})
    write_json_atomic(target, {"a": 2})

    assert json.loads(target.read_text(encoding="utf-8")) == {"a": 2}
    assert [item.name for item in target.parent.iterdir()] == ["doc.json"]


def test_file_lock_times_out_while_held(tmp_path: Path) -> None:
    lock_path = tmp_path / ".index.lock"
    with file_lock(lock_path):
        with pytest.raises(StateLockError):
            with file_lock(lock_path, timeout_seconds=0.05):
                pass
    assert not lock_path.exists()


def test_file_lock_serializes_threads(tmp_path: Path) -> None:
    lock_path = tmp_path / ".counter.lock"
    counter_path = tmp_path / "counter.json"
    write_json_atomic(counter_path, {"value": 0})

    def _increment() -> None:
        for _ in range(10):
            with file_lock(lock_path, timeout_seconds=10.0):
                current = read_json(counter_path)["value"]
                write_json_atomic(counter_path, {"value": current + 1})

    workers = [threading.Thread(target=_increment) for _ in range(4)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert read_json(counter_path) == {"value": 40}

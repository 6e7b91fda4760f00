from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from milhouse.state.errors import StateLockError, StateParseError, StateWriteError
from milhouse.state.models import utcnow_iso

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def read_json(path: Path) -> Any:
    """Decode ``path``; ``None`` when missing or empty, ``StateParseError`` when malformed."""
    if not path.exists():
        return None
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StateParseError(f"Failed to read state file: {path}", file_path=str(path)) from exc
    if not content.strip():
        return None
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise StateParseError(
            f"Failed to parse state file: {path}",
            file_path=str(path),
            raw_content=content,
        ) from exc


def write_json_atomic(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` via a sibling temp file and ``os.replace``."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as exc:
        raise StateWriteError(f"Failed to write state file: {path}", file_path=str(path)) from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise StateWriteError(f"Failed to write state file: {path}", file_path=str(path)) from exc


@contextmanager
def file_lock(lock_path: Path, timeout_seconds: float = 3.0) -> Iterator[None]:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            waited = time.monotonic() - start
            if waited > timeout_seconds:
                raise StateLockError(
                    f"Timed out waiting for state lock: {lock_path}",
                    file_path=str(lock_path),
                    wait_seconds=waited,
                ) from exc
            time.sleep(0.02)

    try:
        yield
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass


def normalize_envelope(raw_payload: Any, default: Any) -> dict[str, Any]:
    if (
        isinstance(raw_payload, dict)
        and "schema_version" in raw_payload
        and "data" in raw_payload
        and "revision" in raw_payload
    ):
        return {
            "schema_version": int(raw_payload.get("schema_version") or SCHEMA_VERSION),
            "revision": int(raw_payload.get("revision") or 1),
            "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
            "data": raw_payload.get("data", default),
        }

    # Pre-envelope documents are plain payloads.
    return {
        "schema_version": SCHEMA_VERSION,
        "revision": 0 if raw_payload is None else 1,
        "updated_at": utcnow_iso(),
        "data": default if raw_payload is None else raw_payload,
    }


class VersionedDocument:
    """One JSON file wrapped in a ``schema_version``/``revision`` envelope."""

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.path = path
        self.lock_path = path.with_name(f".{path.name}.lock")
        self.lock_timeout_seconds = lock_timeout_seconds

    def get_envelope(self, default: Any = None) -> dict[str, Any]:
        return normalize_envelope(read_json(self.path), default)

    def get_data(self, default: Any = None) -> Any:
        return self.get_envelope(default).get("data")

    def set_data(self, data: Any, expected_revision: int | None = None) -> int:
        with file_lock(self.lock_path, self.lock_timeout_seconds):
            try:
                current_revision = int(self.get_envelope().get("revision", 0))
            except StateParseError:
                logger.warning("Overwriting unreadable state document %s", self.path)
                current_revision = 0
            if expected_revision is not None and expected_revision != current_revision:
                raise StateWriteError(
                    f"Concurrent state update detected for '{self.path.name}'.",
                    file_path=str(self.path),
                )
            revision = current_revision + 1
            write_json_atomic(
                self.path,
                {
                    "schema_version": SCHEMA_VERSION,
                    "revision": revision,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )
        return revision

    def update_data(self, updater: Callable[[Any], Any], default: Any = None) -> Any:
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(default)
            updated = updater(current.get("data", default))
            try:
                self.set_data(updated, expected_revision=int(current.get("revision", 0)))
                return updated
            except StateWriteError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateWriteError(
            str(last_error) if last_error else "State update failed.",
            file_path=str(self.path),
        )

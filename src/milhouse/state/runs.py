from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from milhouse.state.documents import file_lock, read_json, write_json_atomic
from milhouse.state.errors import (
    AmbiguousRunIDError,
    MilhouseStateError,
    NoEligibleRunsError,
    RunNotFoundError,
    RunPhaseError,
    StateParseError,
)
from milhouse.state.models import RunMeta, RunPhase, RunSummary, utcnow_iso

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".milhouse"
RUNS_INDEX_FILE = "runs-index.json"
RUNS_DIR = "runs"
META_FILE = "meta.json"
STATE_SUBDIR = "state"
PLANS_SUBDIR = "plans"

DURATION_PATTERN = re.compile(r"^(\d+)([dwhmDWHM])$")
STAT_FIELDS = frozenset(
    {"issues_found", "issues_validated", "tasks_total", "tasks_completed", "tasks_failed"}
)

RunChooser = Callable[[list[RunMeta]], str]


@dataclass(slots=True)
class RunSelection:
    run_id: str | None
    meta: RunMeta | None
    candidates: list[RunMeta] = field(default_factory=list)

    @property
    def needs_choice(self) -> bool:
        return self.run_id is None


@dataclass(slots=True)
class CleanupResult:
    deleted: list[dict[str, str]] = field(default_factory=list)
    kept: list[dict[str, str]] = field(default_factory=list)


def _sanitize_name_hint(name_hint: str) -> str:
    sanitized = re.sub(r"[^a-z0-9]+", "-", name_hint.lower()).strip("-")
    return sanitized[:20].strip("-")


def generate_run_id(name_hint: str | None = None, *, now: datetime | None = None) -> str:
    date_part = (now or datetime.now(UTC)).strftime("%Y%m%d")
    suffix = uuid4().hex[:4]
    sanitized = _sanitize_name_hint(name_hint) if name_hint else ""
    if sanitized:
        return f"run-{date_part}-{sanitized}-{suffix}"
    return f"run-{date_part}-{suffix}"


def parse_duration(duration: str) -> timedelta:
    match = DURATION_PATTERN.match(duration.strip())
    if not match:
        raise ValueError(
            f'Invalid duration format: {duration}. Use format like "30d", "2w", "6h", "30m"'
        )
    value = int(match.group(1))
    unit = match.group(2).lower()
    if unit == "m":
        return timedelta(minutes=value)
    if unit == "h":
        return timedelta(hours=value)
    if unit == "d":
        return timedelta(days=value)
    return timedelta(weeks=value)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_relative_time(iso_timestamp: str, *, now: datetime | None = None) -> str:
    delta = (now or datetime.now(UTC)) - _parse_timestamp(iso_timestamp)
    seconds = int(delta.total_seconds())
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    weeks = days // 7
    for amount, unit in ((weeks, "week"), (days, "day"), (hours, "hour"), (minutes, "minute")):
        if amount > 0:
            return f"1 {unit} ago" if amount == 1 else f"{amount} {unit}s ago"
    return "just now"


def format_run_choice(meta: RunMeta) -> str:
    issues = f"{meta.issues_found} issues" if meta.issues_found > 0 else "no issues"
    scope = f" - {meta.scope}" if meta.scope else ""
    age = format_relative_time(meta.created_at)
    return f"{meta.id} [{meta.phase.value.upper()}] - {issues}{scope} - {age}"


class RunRegistry:
    """Creates, lists and resolves runs under ``<work_dir>/.milhouse``."""

    def __init__(
        self,
        work_dir: Path,
        *,
        state_dir_name: str = DEFAULT_STATE_DIR,
        lock_timeout_seconds: float = 3.0,
    ) -> None:
        self.work_dir = work_dir.resolve()
        self.state_dir = self.work_dir / state_dir_name
        self.runs_dir = self.state_dir / RUNS_DIR
        self.index_path = self.state_dir / RUNS_INDEX_FILE
        self.lock_timeout_seconds = lock_timeout_seconds

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def run_state_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / STATE_SUBDIR

    def run_plans_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / PLANS_SUBDIR

    def meta_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / META_FILE

    def _index_lock(self):
        return file_lock(self.state_dir / f".{RUNS_INDEX_FILE}.lock", self.lock_timeout_seconds)

    def _read_index(self) -> dict[str, Any]:
        try:
            raw = read_json(self.index_path)
        except StateParseError as exc:
            logger.warning("%s", exc.to_detailed_string())
            raw = None
        if not isinstance(raw, dict):
            return {"current_run": None, "runs": []}
        runs = raw.get("runs")
        current = raw.get("current_run")
        return {
            "current_run": current if isinstance(current, str) else None,
            "runs": runs if isinstance(runs, list) else [],
        }

    def _write_index(self, index: dict[str, Any]) -> None:
        write_json_atomic(self.index_path, index)

    def _update_index(self, updater: Callable[[dict[str, Any]], dict[str, Any]]) -> None:
        with self._index_lock():
            self._write_index(updater(self._read_index()))

    def load_meta(self, run_id: str) -> RunMeta | None:
        path = self.meta_path(run_id)
        try:
            raw = read_json(path)
        except StateParseError as exc:
            logger.warning("%s", exc.to_detailed_string())
            return None
        if raw is None:
            return None
        try:
            return RunMeta.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Invalid run metadata in %s: %s", path, exc)
            return None

    def save_meta(self, meta: RunMeta) -> None:
        write_json_atomic(self.meta_path(meta.id), meta.to_dict())

    def create_run(self, scope: str | None = None, name: str | None = None) -> RunMeta:
        name_hint = name or (scope.split()[0] if scope and scope.split() else None)
        run_id = generate_run_id(name_hint)
        while self.run_dir(run_id).exists():
            run_id = generate_run_id(name_hint)

        now = utcnow_iso()
        meta = RunMeta(id=run_id, name=name, scope=scope, created_at=now, updated_at=now)
        self.run_state_dir(run_id).mkdir(parents=True, exist_ok=True)
        self.run_plans_dir(run_id).mkdir(parents=True, exist_ok=True)
        self.save_meta(meta)

        summary = RunSummary(
            id=run_id, name=name, scope=scope, created_at=now, phase=RunPhase.SCAN
        ).to_dict()

        def _append(index: dict[str, Any]) -> dict[str, Any]:
            index["runs"].append(summary)
            index["current_run"] = run_id
            return index

        self._update_index(_append)
        logger.info("Created run %s", run_id)
        return meta

    def list_runs(self) -> list[RunSummary]:
        index = self._read_index()
        summaries: list[RunSummary] = []
        for entry in index["runs"]:
            try:
                summary = RunSummary.model_validate(entry)
                summary.is_current = summary.id == index["current_run"]
                summaries.append(summary)
            except ValidationError as exc:
                entry_id = entry.get("id") if isinstance(entry, dict) else None
                logger.warning("Skipping corrupt runs-index entry %s: %s", entry_id or "?", exc)
        return summaries

    def run_ids(self) -> list[str]:
        return [summary.id for summary in self.list_runs()]

    def get_current_run_id(self) -> str | None:
        return self._read_index()["current_run"]

    def get_current_run(self) -> RunMeta | None:
        run_id = self.get_current_run_id()
        return self.load_meta(run_id) if run_id else None

    def set_current_run(self, run_id: str) -> bool:
        if run_id not in self.run_ids():
            return False

        def _point(index: dict[str, Any]) -> dict[str, Any]:
            index["current_run"] = run_id
            return index

        self._update_index(_point)
        return True

    def resolve_run_id(self, partial: str) -> str:
        known = self.run_ids()
        if partial in known:
            return partial

        suffix_matches = [run_id for run_id in known if run_id.endswith(f"-{partial}")]
        if len(suffix_matches) == 1:
            return suffix_matches[0]
        if len(suffix_matches) > 1:
            raise AmbiguousRunIDError(partial, suffix_matches)

        contains_matches = [run_id for run_id in known if partial and partial in run_id]
        if len(contains_matches) == 1:
            return contains_matches[0]
        if len(contains_matches) > 1:
            raise AmbiguousRunIDError(partial, contains_matches)

        raise RunNotFoundError(partial, known)

    def require_meta(self, run_id: str) -> RunMeta:
        meta = self.load_meta(run_id)
        if meta is None:
            raise MilhouseStateError(
                f"Run metadata not found for: {run_id}",
                operation="load",
                file_path=str(self.meta_path(run_id)),
            )
        return meta

    def select_or_require_run(
        self,
        explicit_id: str | None = None,
        phases: Iterable[RunPhase | str] | None = None,
        *,
        chooser: RunChooser | None = None,
    ) -> RunSelection:
        allowed = [RunPhase(phase) for phase in phases] if phases else None
        allowed_names = [phase.value for phase in allowed] if allowed else None

        if explicit_id:
            run_id = self.resolve_run_id(explicit_id)
            meta = self.require_meta(run_id)
            if allowed and meta.phase not in allowed:
                raise RunPhaseError(run_id, meta.phase.value, allowed_names or [])
            return RunSelection(run_id=run_id, meta=meta)

        summaries = self.list_runs()
        if allowed:
            summaries = [summary for summary in summaries if summary.phase in allowed]
        if not summaries:
            raise NoEligibleRunsError(allowed_names)

        if len(summaries) == 1:
            meta = self.require_meta(summaries[0].id)
            logger.info("Using run: %s", meta.id)
            return RunSelection(run_id=meta.id, meta=meta)

        candidates = [meta for meta in (self.load_meta(s.id) for s in summaries) if meta]
        if chooser is None:
            return RunSelection(run_id=None, meta=None, candidates=candidates)

        chosen = chooser(candidates)
        candidate_ids = [meta.id for meta in candidates]
        if chosen not in candidate_ids:
            raise RunNotFoundError(chosen, candidate_ids)
        return RunSelection(
            run_id=chosen, meta=self.require_meta(chosen), candidates=candidates
        )

    def update_meta(self, run_id: str, **updates: Any) -> RunMeta | None:
        if not self.meta_path(run_id).exists():
            return None
        lock = file_lock(self.run_dir(run_id) / f".{META_FILE}.lock", self.lock_timeout_seconds)
        with lock:
            meta = self.load_meta(run_id)
            if meta is None:
                return None
            payload = meta.model_dump()
            payload.update(updates)
            payload["id"] = meta.id
            payload["created_at"] = meta.created_at
            payload["updated_at"] = utcnow_iso()
            updated = RunMeta.model_validate(payload)
            self.save_meta(updated)
        return updated

    def update_phase(self, run_id: str, phase: RunPhase | str) -> RunMeta | None:
        new_phase = RunPhase(phase)
        updated = self.update_meta(run_id, phase=new_phase)
        if updated is None:
            return None

        def _sync_summary(index: dict[str, Any]) -> dict[str, Any]:
            for entry in index["runs"]:
                if isinstance(entry, dict) and entry.get("id") == run_id:
                    entry["phase"] = new_phase.value
            return index

        self._update_index(_sync_summary)
        logger.info("Run %s moved to phase %s", run_id, new_phase.value)
        return updated

    def update_stats(self, run_id: str, **stats: int) -> RunMeta | None:
        unknown = set(stats) - STAT_FIELDS
        if unknown:
            raise ValueError(f"Unknown run statistics: {', '.join(sorted(unknown))}")
        return self.update_meta(run_id, **stats)

    def delete_run(self, run_id: str) -> bool:
        removed = False

        def _remove(index: dict[str, Any]) -> dict[str, Any]:
            nonlocal removed
            remaining = [
                entry
                for entry in index["runs"]
                if not (isinstance(entry, dict) and entry.get("id") == run_id)
            ]
            removed = len(remaining) != len(index["runs"])
            index["runs"] = remaining
            if index["current_run"] == run_id:
                last = remaining[-1] if remaining else None
                index["current_run"] = last.get("id") if isinstance(last, dict) else None
            return index

        self._update_index(_remove)
        if not removed:
            return False
        shutil.rmtree(self.run_dir(run_id), ignore_errors=True)
        logger.info("Deleted run %s", run_id)
        return True

    def cleanup_old_runs(
        self,
        *,
        older_than: datetime | None = None,
        keep_last: int | None = None,
        dry_run: bool = False,
        exclude_current: bool = True,
    ) -> CleanupResult:
        result = CleanupResult()
        current = self.get_current_run_id()
        ordered = sorted(
            self.list_runs(), key=lambda s: _parse_timestamp(s.created_at), reverse=True
        )

        kept_count = 0
        to_delete: list[str] = []
        for summary in ordered:
            record = {"id": summary.id, "created_at": summary.created_at}
            if exclude_current and summary.id == current:
                kept_count += 1
                result.kept.append({**record, "reason": "current run"})
                continue
            if keep_last is not None and kept_count < keep_last:
                kept_count += 1
                result.kept.append(
                    {**record, "reason": f"within keep_last ({kept_count}/{keep_last})"}
                )
                continue

            reason = ""
            if older_than is not None and _parse_timestamp(summary.created_at) < older_than:
                reason = f"older than {older_than.isoformat()}"
            if keep_last is not None and kept_count >= keep_last:
                reason = reason or f"exceeds keep_last ({keep_last})"

            if reason:
                to_delete.append(summary.id)
                result.deleted.append({**record, "reason": reason})
            else:
                kept_count += 1
                result.kept.append({**record, "reason": "no cleanup criteria matched"})

        if not dry_run:
            for run_id in to_delete:
                self.delete_run(run_id)
        return result

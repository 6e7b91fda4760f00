from __future__ import annotations

import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from milhouse.state.documents import read_json, write_json_atomic
from milhouse.state.errors import StateParseError, StateWriteError
from milhouse.state.models import utcnow_iso
from milhouse.state.runs import RunRegistry

logger = logging.getLogger(__name__)

LEGACY_PLANS_DIR = "plans"
IMPORT_MARKER = ".imported-from-legacy.json"
CHECK_LINK = ".symlink-test"
CHECK_TARGET = ".symlink-test-target"

PROBLEM_BRIEF = "problem_brief.md"
EXECUTION_PLAN = "execution_plan.md"

VIEW_MODES = ("auto", "symlink", "copy")


def plan_filename(issue_id: str) -> str:
    return f"plan_{issue_id}.md"


def wbs_filename(issue_id: str) -> str:
    return f"wbs_{issue_id}.json"


def plan_metadata_header(
    run_id: str | None, issue_id: str | None = None, scope: str | None = None
) -> str:
    lines = [f"<!-- Run ID: {run_id or 'no-run'} -->", f"<!-- Generated: {utcnow_iso()} -->"]
    if issue_id:
        lines.append(f"<!-- Issue: {issue_id} -->")
    if scope:
        lines.append(f"<!-- Scope: {scope} -->")
    return "\n".join(lines) + "\n\n"


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def symlinks_supported(check_dir: Path) -> bool:
    """Create and remove a throwaway symlink in ``check_dir``."""
    target = check_dir / CHECK_TARGET
    link = check_dir / CHECK_LINK
    try:
        check_dir.mkdir(parents=True, exist_ok=True)
        target.mkdir(exist_ok=True)
        if link.is_symlink():
            link.unlink()
        link.symlink_to(CHECK_TARGET, target_is_directory=True)
        return True
    except (OSError, NotImplementedError):
        return False
    finally:
        for leftover in (link, target):
            try:
                _remove_path(leftover)
            except OSError:
                logger.debug("Could not remove symlink check file %s", leftover)


class ViewStrategy(ABC):
    name = "base"

    @abstractmethod
    def sync(self, source: Path, legacy: Path) -> None:
        raise NotImplementedError


class CopyViewStrategy(ViewStrategy):
    """Copies top-level files into a fresh temp dir, then renames it over the legacy path."""

    name = "copy"

    def sync(self, source: Path, legacy: Path) -> None:
        try:
            legacy.parent.mkdir(parents=True, exist_ok=True)
            tmp_dir = Path(tempfile.mkdtemp(prefix=f"{legacy.name}.tmp.", dir=legacy.parent))
        except OSError as exc:
            raise StateWriteError(
                f"Failed to stage plans view for {source}", file_path=str(legacy)
            ) from exc
        try:
            if source.is_dir():
                for entry in sorted(source.iterdir()):
                    if entry.is_file():
                        shutil.copy2(entry, tmp_dir / entry.name)
            _remove_path(legacy)
            tmp_dir.rename(legacy)
        except OSError as exc:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise StateWriteError(
                f"Failed to copy plans view from {source}", file_path=str(legacy)
            ) from exc


class SymlinkViewStrategy(ViewStrategy):
    name = "symlink"

    def __init__(self, fallback: ViewStrategy | None = None) -> None:
        self.fallback = fallback or CopyViewStrategy()

    def sync(self, source: Path, legacy: Path) -> None:
        source.mkdir(parents=True, exist_ok=True)
        target = os.path.relpath(source, legacy.parent)
        if legacy.is_symlink():
            if os.readlink(legacy) == target:
                return
            legacy.unlink()
        elif legacy.exists():
            _remove_path(legacy)

        try:
            legacy.symlink_to(target, target_is_directory=True)
        except OSError as exc:
            logger.warning("Symlink for %s failed (%s); falling back to copy", legacy, exc)
            self.fallback.sync(source, legacy)


class PlanStore:
    """Run-scoped plan artifacts plus the legacy ``.milhouse/plans`` projection."""

    def __init__(
        self,
        registry: RunRegistry,
        *,
        mode: str = "auto",
        strategy: ViewStrategy | None = None,
    ) -> None:
        if mode not in VIEW_MODES:
            raise ValueError(f"Unknown legacy plans view mode: {mode}")
        self.registry = registry
        self.mode = mode
        self._strategy = strategy

    @property
    def legacy_path(self) -> Path:
        return self.registry.state_dir / LEGACY_PLANS_DIR

    @property
    def strategy(self) -> ViewStrategy:
        if self._strategy is None:
            if self.mode == "copy":
                self._strategy = CopyViewStrategy()
            elif self.mode == "symlink" or symlinks_supported(self.registry.state_dir):
                self._strategy = SymlinkViewStrategy()
            else:
                self._strategy = CopyViewStrategy()
            logger.debug("Legacy plans view uses %s strategy", self._strategy.name)
        return self._strategy

    def plans_dir(self, run_id: str) -> Path:
        return self.registry.run_plans_dir(run_id)

    def artifact_path(self, run_id: str, filename: str) -> Path:
        if not filename or Path(filename).name != filename:
            raise ValueError(f"Artifact name must be a plain file name: {filename!r}")
        return self.plans_dir(run_id) / filename

    def write_artifact(self, run_id: str, filename: str, content: str) -> Path:
        path = self.artifact_path(run_id, filename)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise StateWriteError(
                f"Failed to write artifact {filename}", file_path=str(path)
            ) from exc
        return path

    def read_artifact(self, run_id: str, filename: str) -> str | None:
        path = self.artifact_path(run_id, filename)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def artifact_exists(self, run_id: str, filename: str) -> bool:
        return self.artifact_path(run_id, filename).is_file()

    def list_artifacts(self, run_id: str) -> list[str]:
        plans_dir = self.plans_dir(run_id)
        if not plans_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in plans_dir.iterdir()
            if entry.is_file() and not entry.name.startswith(".")
        )

    def has_artifacts(self, run_id: str) -> bool:
        return bool(self.list_artifacts(run_id))

    def write_plan(self, run_id: str, issue_id: str, content: str) -> Path:
        return self.write_artifact(run_id, plan_filename(issue_id), content)

    def read_plan(self, run_id: str, issue_id: str) -> str | None:
        return self.read_artifact(run_id, plan_filename(issue_id))

    def write_wbs(self, run_id: str, issue_id: str, wbs: dict[str, Any]) -> Path:
        path = self.artifact_path(run_id, wbs_filename(issue_id))
        write_json_atomic(path, wbs)
        return path

    def read_wbs(self, run_id: str, issue_id: str) -> dict[str, Any] | None:
        try:
            payload = read_json(self.artifact_path(run_id, wbs_filename(issue_id)))
        except StateParseError as exc:
            logger.warning("%s", exc.to_detailed_string())
            return None
        return payload if isinstance(payload, dict) else None

    def write_problem_brief(self, run_id: str, content: str) -> Path:
        return self.write_artifact(run_id, PROBLEM_BRIEF, content)

    def read_problem_brief(self, run_id: str) -> str | None:
        return self.read_artifact(run_id, PROBLEM_BRIEF)

    def write_execution_plan(self, run_id: str, content: str) -> Path:
        return self.write_artifact(run_id, EXECUTION_PLAN, content)

    def read_execution_plan(self, run_id: str) -> str | None:
        return self.read_artifact(run_id, EXECUTION_PLAN)

    def sync_legacy_view(self, run_id: str) -> None:
        self.strategy.sync(self.plans_dir(run_id), self.legacy_path)
        logger.info("Synced legacy plans view to run %s", run_id)

    def _legacy_files(self) -> list[Path]:
        legacy = self.legacy_path
        if legacy.is_symlink() or not legacy.is_dir():
            return []
        return sorted(entry for entry in legacy.iterdir() if entry.is_file())

    def has_legacy_artifacts_to_import(self, run_id: str) -> bool:
        return bool(self._legacy_files()) and not self.has_artifacts(run_id)

    def import_legacy_artifacts(self, run_id: str) -> int:
        files = self._legacy_files()
        if not files or self.has_artifacts(run_id):
            return 0

        plans_dir = self.plans_dir(run_id)
        try:
            plans_dir.mkdir(parents=True, exist_ok=True)
            for entry in files:
                shutil.copy2(entry, plans_dir / entry.name)
        except OSError as exc:
            raise StateWriteError(
                f"Failed to import legacy plans into run {run_id}", file_path=str(plans_dir)
            ) from exc

        write_json_atomic(
            plans_dir / IMPORT_MARKER,
            {
                "imported_at": utcnow_iso(),
                "files_imported": len(files),
                "source": str(self.legacy_path),
            },
        )
        logger.info("Imported %d legacy plan files into run %s", len(files), run_id)
        return len(files)

    def read_import_marker(self, run_id: str) -> dict[str, Any] | None:
        try:
            payload = read_json(self.plans_dir(run_id) / IMPORT_MARKER)
        except StateParseError:
            return None
        return payload if isinstance(payload, dict) else None

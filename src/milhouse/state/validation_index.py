"""Per-run index of validation reports, keyed by ``(issue_id, report_path)``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from milhouse.state.documents import read_json, write_json_atomic
from milhouse.state.errors import StateParseError
from milhouse.state.models import ReportStatus, ValidationReportRef, utcnow_iso
from milhouse.state.runs import RunRegistry

logger = logging.getLogger(__name__)

VALIDATION_INDEX_FILE = "validation-index.json"
VALIDATION_REPORTS_DIR = "validation-reports"


def report_status_from_verdict(report: dict[str, Any]) -> ReportStatus:
    verdict, status = report.get("verdict"), report.get("status")
    if verdict == "CONFIRMED" or status == "CONFIRMED":
        return ReportStatus.VALID
    if verdict == "FALSE" or status == "FALSE":
        return ReportStatus.INVALID
    return ReportStatus.PARTIAL


def _as_text(value: Any) -> Any:
    # Numeric ids and epoch timestamps are stored as their decimal text.
    if isinstance(value, int | float) and not isinstance(value, bool):
        return str(value)
    return value


def _ref_from_report(path: Path, report: dict[str, Any]) -> ValidationReportRef:
    return ValidationReportRef(
        issue_id=_as_text(report.get("issue_id")) or path.stem,
        report_path=f"{VALIDATION_REPORTS_DIR}/{path.name}",
        created_at=_as_text(report.get("created_at") or report.get("timestamp")) or utcnow_iso(),
        status=report_status_from_verdict(report),
    )


class ValidationIndex:
    def __init__(self, registry: RunRegistry) -> None:
        self.registry = registry

    def index_path(self, run_id: str) -> Path:
        return self.registry.run_dir(run_id) / VALIDATION_INDEX_FILE

    def reports_dir(self, run_id: str) -> Path:
        return self.registry.run_dir(run_id) / VALIDATION_REPORTS_DIR

    def get_reports(self, run_id: str) -> list[ValidationReportRef]:
        path = self.index_path(run_id)
        try:
            raw = read_json(path)
        except StateParseError as exc:
            logger.warning("%s", exc.to_detailed_string())
            return []
        entries = raw.get("reports") if isinstance(raw, dict) else None
        reports: list[ValidationReportRef] = []
        for entry in entries if isinstance(entries, list) else []:
            try:
                reports.append(ValidationReportRef.model_validate(entry))
            except ValidationError:
                logger.warning("Skipping malformed validation index entry in %s", path)
        return reports

    def _save(self, run_id: str, reports: list[ValidationReportRef]) -> None:
        write_json_atomic(
            self.index_path(run_id),
            {
                "run_id": run_id,
                "reports": [report.to_dict() for report in reports],
                "updated_at": utcnow_iso(),
            },
        )

    def add_report(
        self,
        run_id: str,
        issue_id: str,
        report_path: str,
        status: ReportStatus | str,
        created_at: str | None = None,
    ) -> ValidationReportRef:
        ref = ValidationReportRef(
            issue_id=issue_id,
            report_path=report_path,
            status=ReportStatus(status),
            created_at=created_at or utcnow_iso(),
        )
        reports = self.get_reports(run_id)
        for position, existing in enumerate(reports):
            if existing.issue_id == issue_id and existing.report_path == report_path:
                reports[position] = ref
                break
        else:
            reports.append(ref)
        self._save(run_id, reports)
        return ref

    def save_report(
        self, run_id: str, issue_id: str, report: dict[str, Any]
    ) -> ValidationReportRef:
        """Write ``validation-reports/<issue>.json`` and index it."""
        filename = f"{issue_id}.json"
        write_json_atomic(self.reports_dir(run_id) / filename, {"issue_id": issue_id, **report})
        return self.add_report(
            run_id,
            issue_id,
            f"{VALIDATION_REPORTS_DIR}/{filename}",
            report_status_from_verdict(report),
            _as_text(report.get("created_at") or report.get("timestamp")),
        )

    def get_by_issue(self, run_id: str, issue_id: str) -> list[ValidationReportRef]:
        return [report for report in self.get_reports(run_id) if report.issue_id == issue_id]

    def get_latest(self, run_id: str, issue_id: str) -> ValidationReportRef | None:
        reports = self.get_by_issue(run_id, issue_id)
        if not reports:
            return None
        return max(reports, key=lambda report: report.created_at)

    def get_by_status(self, run_id: str, status: ReportStatus | str) -> list[ValidationReportRef]:
        wanted = ReportStatus(status)
        return [report for report in self.get_reports(run_id) if report.status == wanted]

    def count_by_status(self, run_id: str) -> dict[str, int]:
        reports = self.get_reports(run_id)
        counts = {status.value: 0 for status in ReportStatus}
        for report in reports:
            counts[report.status.value] += 1
        counts["total"] = len(reports)
        return counts

    def is_issue_validated(self, run_id: str, issue_id: str) -> bool:
        return bool(self.get_by_issue(run_id, issue_id))

    def get_unvalidated_issue_ids(self, run_id: str, issue_ids: list[str]) -> list[str]:
        validated = {report.issue_id for report in self.get_reports(run_id)}
        return [issue_id for issue_id in issue_ids if issue_id not in validated]

    def remove_report(self, run_id: str, issue_id: str, report_path: str) -> bool:
        reports = self.get_reports(run_id)
        remaining = [
            report
            for report in reports
            if not (report.issue_id == issue_id and report.report_path == report_path)
        ]
        if len(remaining) == len(reports):
            return False
        self._save(run_id, remaining)
        return True

    def clear(self, run_id: str) -> None:
        self._save(run_id, [])

    def rebuild(self, run_id: str) -> int:
        reports_dir = self.reports_dir(run_id)
        reports: list[ValidationReportRef] = []
        if reports_dir.is_dir():
            for path in sorted(reports_dir.glob("*.json")):
                try:
                    report = read_json(path)
                except StateParseError as exc:
                    logger.debug("%s", exc.to_detailed_string())
                    continue
                if not isinstance(report, dict):
                    logger.debug("Skipping non-object validation report %s", path)
                    continue
                try:
                    reports.append(_ref_from_report(path, report))
                except ValidationError as exc:
                    logger.debug("Skipping unusable validation report %s: %s", path, exc)
        self._save(run_id, reports)
        logger.info("Rebuilt validation index for run %s with %d reports", run_id, len(reports))
        return len(reports)

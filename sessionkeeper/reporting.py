"""Markdown reporting for a supervisor run."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Tuple

from sessionkeeper.companion import ShrineReport
from sessionkeeper.errors import FinishReason
from sessionkeeper.supervisor import SessionRecord

LOGGER = logging.getLogger(__name__)


@dataclass
class SupervisorReport:
    """Everything worth keeping once a supervisor run ends."""

    character_name: str
    role: str
    records: List[SessionRecord]
    command: str
    started_at: datetime
    finished_at: datetime
    exit_reason: str = "stopped"
    shrines: List[ShrineReport] = field(default_factory=list)
    event_counts: Dict[str, int] = field(default_factory=dict)

    def finish_counts(self) -> Dict[str, int]:
        return dict(Counter(record.reason.value for record in self.records))

    def successes(self) -> int:
        return sum(1 for record in self.records if record.reason is FinishReason.OK)

    def failures(self) -> int:
        return len(self.records) - self.successes()


def write_report(
    report: SupervisorReport,
    workspace: Path | None = None,
    *,
    last_run_name: str = "report_last_run.md",
) -> Tuple[Path, Path]:
    """Write ``reports/<last_run_name>`` plus a timestamped archive copy."""

    workspace = workspace or Path.cwd()
    report_text = render_report(report)

    reports_root = workspace / "reports"
    reports_root.mkdir(parents=True, exist_ok=True)
    last_report_path = reports_root / last_run_name
    last_report_path.write_text(report_text, encoding="utf-8")

    archive_dir = reports_root / "archive"
    archive_dir.mkdir(parents=True, exist_ok=True)
    timestamp = report.finished_at.astimezone(timezone.utc).strftime("%Y%m%d_%H%M%S")
    archive_path = archive_dir / f"{timestamp}_{report.character_name}.md"
    archive_path.write_text(report_text, encoding="utf-8")
    LOGGER.info("Session report written to %s", last_report_path)
    return last_report_path, archive_path


def render_report(report: SupervisorReport) -> str:
    lines: List[str] = []
    finished_dt = report.finished_at.astimezone(timezone.utc)
    lines.append(f"# Session Supervisor Report: {finished_dt:%Y-%m-%d %H:%M:%S %Z}")
    lines.append("")
    lines.append(f"- Character: **{report.character_name}** ({report.role})")
    lines.append(
        f"- Sessions: **{len(report.records)}** "
        f"(OK {report.successes()} / other {report.failures()})"
    )
    counts = report.finish_counts()
    if counts:
        lines.append(
            "- Finish reasons: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
        )
    lines.append(f"- Exit: {report.exit_reason}")
    lines.append(f"- Command: `{report.command}`")
    runtime = (report.finished_at - report.started_at).total_seconds()
    lines.append(f"- Runtime: {runtime:.0f}s")
    if report.event_counts:
        lines.append("- Events:")
        for key, value in sorted(report.event_counts.items()):
            lines.append(f"  - {key}: {value}")
    lines.append("")

    if report.records:
        lines.append("| # | Game | Reason | Duration (s) | Started | Message |")
        lines.append("| --- | --- | --- | --- | --- | --- |")
        for index, record in enumerate(report.records, start=1):
            lines.append(
                "| {index} | {game} | {reason} | {duration:.0f} | {started} | {message} |".format(
                    index=index,
                    game=record.game_name or "(unnamed)",
                    reason=record.reason.value,
                    duration=record.duration_seconds,
                    started=record.started_at.astimezone(timezone.utc).strftime("%H:%M:%S"),
                    message=_table_cell(record.message),
                )
            )
        lines.append("")

    if report.shrines:
        lines.append("## Shrine reports")
        for shrine in report.shrines:
            lines.append(
                f"- {shrine.companion_name}: {shrine.area_name} ({shrine.area_id}) "
                f"at ({shrine.x}, {shrine.y})"
            )
        lines.append("")

    return "\n".join(lines).strip() + "\n"


def _table_cell(value: str) -> str:
    if not value:
        return "-"
    return value.replace("|", "/").replace("\n", " ")

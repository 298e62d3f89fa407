from datetime import datetime, timedelta, timezone

from sessionkeeper.companion import ShrineReport
from sessionkeeper.errors import FinishReason
from sessionkeeper.reporting import SupervisorReport, render_report, write_report
from sessionkeeper.supervisor import SessionRecord

START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(reason: FinishReason, offset: int, message: str = "") -> SessionRecord:
    started = START + timedelta(minutes=offset)
    return SessionRecord(
        game_name=f"game-{offset}",
        started_at=started,
        finished_at=started + timedelta(seconds=90),
        reason=reason,
        message=message,
    )


def _report(**overrides) -> SupervisorReport:
    values = dict(
        character_name="Sorc",
        role="leader",
        records=[
            _record(FinishReason.OK, 0),
            _record(FinishReason.CHICKEN, 5, "health | low"),
            _record(FinishReason.OK, 10),
        ],
        command="python -m sessionkeeper.run_supervisor --leader",
        started_at=START,
        finished_at=START + timedelta(minutes=15),
    )
    values.update(overrides)
    return SupervisorReport(**values)


def test_report_counts() -> None:
    report = _report()
    assert report.successes() == 2
    assert report.failures() == 1
    assert report.finish_counts() == {"ok": 2, "chicken": 1}


def test_render_report_sections() -> None:
    shrine = ShrineReport(
        companion_name="Scout", area_name="Cold Plains", area_id=3, x=10, y=20, reported_at=START
    )
    text = render_report(_report(shrines=[shrine], event_counts={"SessionCreated": 3}))

    assert text.startswith("# Session Supervisor Report: 2024-05-01 12:15:00 UTC")
    assert "- Character: **Sorc** (leader)" in text
    assert "- Sessions: **3** (OK 2 / other 1)" in text
    assert "- Finish reasons: chicken=1, ok=2" in text
    assert "- Runtime: 900s" in text
    assert "  - SessionCreated: 3" in text
    assert "| 2 | game-5 | chicken | 90 | 12:05:00 | health / low |" in text
    assert "## Shrine reports" in text
    assert "- Scout: Cold Plains (3) at (10, 20)" in text


def test_render_empty_report() -> None:
    text = render_report(_report(records=[], exit_reason="unrecoverable client state"))
    assert "| # |" not in text
    assert "Finish reasons" not in text
    assert "- Exit: unrecoverable client state" in text


def test_write_report_creates_last_run_and_archive(tmp_path) -> None:
    last, archive = write_report(_report(), tmp_path)
    assert last == tmp_path / "reports" / "report_last_run.md"
    assert archive.name == "20240501_121500_Sorc.md"
    assert last.read_text(encoding="utf-8") == archive.read_text(encoding="utf-8")

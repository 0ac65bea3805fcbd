"""Tests for status_reporter module."""

import json
import logging
from pathlib import Path

import pytest

from status_reporter import (
    SPINNER_FRAMES,
    ProgressMonitor,
    ProgressRecord,
    StatusReporter,
    read_last_line,
)


@pytest.fixture
def reporter(tmp_path: Path) -> StatusReporter:
    return StatusReporter(tmp_path / "status.json", tmp_path / "progress.json", 100)


class TestStatusReporter:
    def test_update_status_writes_record(self, reporter: StatusReporter) -> None:
        reporter.update_status(3, 7, "executing", "running")
        data = json.loads(reporter.status_path.read_text(encoding="utf-8"))
        assert data["loop_count"] == 3
        assert data["calls_made_this_hour"] == 7
        assert data["max_calls_per_hour"] == 100
        assert data["last_action"] == "executing"
        assert data["status"] == "running"
        assert data["exit_reason"] == ""
        assert len(data["next_reset"]) == 8  # HH:MM:SS

    def test_status_overwritten(self, reporter: StatusReporter) -> None:
        reporter.update_status(1, 1, "executing", "running")
        reporter.update_status(1, 1, "graceful_exit", "completed", "plan_complete")
        assert reporter.read_status()["exit_reason"] == "plan_complete"
        assert reporter.last_status.status == "completed"

    def test_read_status_missing(self, reporter: StatusReporter) -> None:
        assert reporter.read_status() is None

    def test_read_status_corrupt(self, reporter: StatusReporter) -> None:
        reporter.status_path.write_text("{", encoding="utf-8")
        assert reporter.read_status() is None

    def test_mark_progress(self, reporter: StatusReporter) -> None:
        reporter.mark_progress("failed")
        data = json.loads(reporter.progress_path.read_text(encoding="utf-8"))
        assert data["status"] == "failed"
        assert data["elapsed_seconds"] == 0


class TestReadLastLine:
    def test_last_non_empty_line(self, tmp_path: Path) -> None:
        f = tmp_path / "out.log"
        f.write_text("first\nsecond line\n\n", encoding="utf-8")
        assert read_last_line(f) == "second line"

    def test_truncated(self, tmp_path: Path) -> None:
        f = tmp_path / "out.log"
        f.write_text("x" * 200 + "\n", encoding="utf-8")
        assert len(read_last_line(f)) == 80

    def test_missing_file(self, tmp_path: Path) -> None:
        assert read_last_line(tmp_path / "none.log") == ""


class TestProgressMonitor:
    def test_sample_publishes_progress(self, reporter: StatusReporter, tmp_path: Path) -> None:
        output = tmp_path / "codex_output.log"
        output.write_text("Compiling crate\n", encoding="utf-8")
        monitor = ProgressMonitor(output, reporter, interval=10)

        first = monitor.sample()
        second = monitor.sample()
        assert first.elapsed_seconds == 10
        assert second.elapsed_seconds == 20
        assert first.indicator in SPINNER_FRAMES
        assert first.indicator != second.indicator
        data = json.loads(reporter.progress_path.read_text(encoding="utf-8"))
        assert data["status"] == "executing"
        assert data["last_output"] == "Compiling crate"

    def test_verbose_logs(self, reporter: StatusReporter, tmp_path: Path, caplog) -> None:
        output = tmp_path / "codex_output.log"
        output.write_text("Writing tests\n", encoding="utf-8")
        with caplog.at_level(logging.INFO):
            ProgressMonitor(output, reporter, interval=10, verbose=True).sample()
        assert "Writing tests" in caplog.text

    def test_stop_joins_thread(self, reporter: StatusReporter, tmp_path: Path) -> None:
        monitor = ProgressMonitor(tmp_path / "out.log", reporter, interval=0.01)
        with monitor:
            thread = monitor._thread
            assert thread is not None and thread.is_alive()
        assert not thread.is_alive()
        assert monitor._thread is None

    def test_stop_before_first_tick(self, reporter: StatusReporter, tmp_path: Path) -> None:
        monitor = ProgressMonitor(tmp_path / "out.log", reporter, interval=60)
        monitor.start()
        monitor.stop()
        assert monitor.ticks == 0
        assert not reporter.progress_path.exists()


def test_progress_record_defaults() -> None:
    record = ProgressRecord(status="executing")
    assert record.indicator == ""
    assert record.elapsed_seconds == 0

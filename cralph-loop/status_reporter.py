"""Status and progress snapshots for external dashboards.

Both records are overwritten in place on every update:

    status.json    one per run: loop count, call budget, last action, status
    progress.json  one per agent execution: spinner, elapsed time, last output line
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from state_store import write_model

logger = logging.getLogger(__name__)

SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸")
MAX_LAST_LINE_CHARS = 80


class StatusRecord(BaseModel):
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    loop_count: int = 0
    calls_made_this_hour: int = 0
    max_calls_per_hour: int = 0
    last_action: str = ""
    status: str = ""
    exit_reason: str = ""
    next_reset: str = "N/A"


class ProgressRecord(BaseModel):
    status: str
    indicator: str = ""
    elapsed_seconds: int = 0
    last_output: str = ""
    timestamp: str = Field(
        default_factory=lambda: datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    )


class StatusReporter:
    """Writes status.json and progress.json in the project directory."""

    def __init__(
        self,
        status_path: str | Path,
        progress_path: str | Path,
        max_calls_per_hour: int,
    ) -> None:
        self.status_path = Path(status_path)
        self.progress_path = Path(progress_path)
        self.max_calls_per_hour = max_calls_per_hour
        self.last_status: Optional[StatusRecord] = None

    def update_status(
        self,
        loop_count: int,
        calls_made: int,
        last_action: str,
        status: str,
        exit_reason: str = "",
    ) -> StatusRecord:
        record = StatusRecord(
            loop_count=loop_count,
            calls_made_this_hour=calls_made,
            max_calls_per_hour=self.max_calls_per_hour,
            last_action=last_action,
            status=status,
            exit_reason=exit_reason,
            next_reset=(datetime.now() + timedelta(hours=1)).strftime("%H:%M:%S"),
        )
        result = write_model(self.status_path, record)
        if not result.success:
            logger.warning("Failed to write status: %s", result.error)
        self.last_status = record
        return record

    def update_progress(self, record: ProgressRecord) -> None:
        result = write_model(self.progress_path, record)
        if not result.success:
            logger.debug("Failed to write progress: %s", result.error)

    def mark_progress(self, status: str) -> None:
        """Replace the progress record with a terminal status (completed/failed)."""
        self.update_progress(ProgressRecord(status=status))

    def read_status(self) -> Optional[dict[str, Any]]:
        if not self.status_path.exists():
            return None
        try:
            return json.loads(self.status_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable status file %s: %s", self.status_path, e)
            return None


def read_last_line(path: Path, max_chars: int = MAX_LAST_LINE_CHARS) -> str:
    """Last non-empty line of a (possibly still growing) file."""
    try:
        with open(path, "rb") as f:
            f.seek(0, 2)
            size = f.tell()
            f.seek(max(0, size - 4096))
            tail = f.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
    for line in reversed(tail.splitlines()):
        if line.strip():
            return line.strip()[:max_chars]
    return ""


class ProgressMonitor:
    """Background liveness sampler for a running agent.

    Reads only the capture file and writes only progress.json; it never
    touches state consumed by the classifier or the circuit breaker.
    """

    def __init__(
        self,
        output_file: str | Path,
        reporter: StatusReporter,
        interval: float = 10.0,
        verbose: bool = False,
    ) -> None:
        self.output_file = Path(output_file)
        self.reporter = reporter
        self.interval = interval
        self.verbose = verbose
        self.ticks = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="cralph-progress", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(1.0, self.interval))
            self._thread = None

    def __enter__(self) -> ProgressMonitor:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def sample(self) -> ProgressRecord:
        """Take one liveness sample and publish it."""
        self.ticks += 1
        indicator = SPINNER_FRAMES[self.ticks % len(SPINNER_FRAMES)]
        last_line = read_last_line(self.output_file)
        elapsed = int(self.ticks * self.interval)
        record = ProgressRecord(
            status="executing",
            indicator=indicator,
            elapsed_seconds=elapsed,
            last_output=last_line,
        )
        self.reporter.update_progress(record)
        if self.verbose:
            if last_line:
                logger.info("%s Agent: %s... (%ds)", indicator, last_line, elapsed)
            else:
                logger.info("%s Agent working... (%ds elapsed)", indicator, elapsed)
        return record

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sample()
            except Exception as e:
                logger.debug("Progress sample failed: %s", e)

"""Heuristic classification of agent output.

Everything here is case-insensitive substring matching over free-form text.
It over- and under-counts by construction; the only authoritative completion
path is the structured status block:

    ---CRALPH_STATUS---
    STATUS: COMPLETE
    EXIT_SIGNAL: true
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from config import AnalysisConfig, Result
from state_store import StateStore

logger = logging.getLogger(__name__)

ANALYSIS_FILE = "response_analysis.json"
LAST_LENGTH_FILE = "last_output_length.json"
CLASSIFICATION_VERSION = 1

COMPLETION_HINT_WEIGHT = 10
NO_WORK_WEIGHT = 15
PROGRESS_WEIGHT = 20
DECLINING_OUTPUT_WEIGHT = 10
STRUCTURED_COMPLETION_SCORE = 100

SUMMARY_KEYWORDS = ("summary", "completed", "implemented")
MAX_SUMMARY_CHARS = 100

_STATUS_RE = re.compile(r"^\s*STATUS:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
_EXIT_SIGNAL_RE = re.compile(r"^\s*EXIT_SIGNAL:\s*(\S+)", re.IGNORECASE | re.MULTILINE)


class LoopClassification(BaseModel):
    """Result of classifying one completed agent run."""

    model_config = ConfigDict(frozen=True)

    schema_version: int = CLASSIFICATION_VERSION
    loop_number: int = Field(ge=0)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    output_file: Optional[str] = None
    has_completion_signal: bool = False
    has_structured_completion: bool = False
    completion_hint: bool = False
    completion_hint_score: int = Field(default=0, ge=0)
    is_test_only: bool = False
    is_stuck: bool = False
    has_progress: bool = False
    files_modified: int = Field(default=0, ge=0)
    confidence_score: int = 0
    exit_signal: bool = False
    work_summary: str = ""
    output_length: int = Field(default=0, ge=0)


class OutputLength(BaseModel):
    """Length of the previous loop's output, for trend detection."""

    length: int = Field(default=0, ge=0)


def count_matching_lines(lines: list[str], patterns: list[str]) -> int:
    """Count lines containing any of the patterns (a line counts once)."""
    needles = [p.lower() for p in patterns]
    return sum(1 for line in lines if any(n in line for n in needles))


def contains_any(text: str, patterns: list[str]) -> bool:
    return any(p.lower() in text for p in patterns)


def parse_structured_status(output_text: str, marker: str) -> bool:
    """Return True if the status block after `marker` reports completion."""
    idx = output_text.find(marker)
    if idx < 0:
        return False
    block = output_text[idx + len(marker):]
    status = _STATUS_RE.search(block)
    exit_signal = _EXIT_SIGNAL_RE.search(block)
    if status and status.group(1).upper() == "COMPLETE":
        return True
    return bool(exit_signal and exit_signal.group(1).lower() == "true")


def _extract_summary(lines: list[str]) -> str:
    for line in lines:
        if contains_any(line.lower(), list(SUMMARY_KEYWORDS)):
            return line.strip()[:MAX_SUMMARY_CHARS]
    return "Output analyzed, no explicit summary found"


def classify(
    output_text: str,
    loop_number: int,
    files_modified: int,
    previous_length: Optional[int] = None,
    config: Optional[AnalysisConfig] = None,
    output_file: Optional[str] = None,
) -> LoopClassification:
    """Classify one agent run from its captured output and the file-change count."""
    cfg = config or AnalysisConfig()
    lowered = output_text.lower()
    lines = lowered.splitlines()
    output_length = len(output_text.encode("utf-8"))

    confidence = 0
    hint_score = 0
    completion_hint = False
    work_summary = ""

    # 1. Structured completion
    structured = parse_structured_status(output_text, cfg.status_marker)

    # 2. Natural-language completion phrases
    if contains_any(lowered, cfg.completion_keywords):
        completion_hint = True
        hint_score += COMPLETION_HINT_WEIGHT

    # 3. Test-only loops
    test_count = count_matching_lines(lines, cfg.test_patterns)
    impl_count = count_matching_lines(lines, cfg.implementation_patterns)
    is_test_only = test_count > 0 and impl_count == 0
    if is_test_only:
        work_summary = "Test execution only, no implementation"

    # 4. Stuck on errors
    error_count = count_matching_lines(lines, cfg.error_patterns)
    is_stuck = error_count > cfg.stuck_error_threshold

    # 5. Nothing left to do
    if contains_any(lowered, cfg.no_work_patterns):
        completion_hint = True
        hint_score += NO_WORK_WEIGHT
        work_summary = "No work remaining"

    confidence += hint_score

    # 6. File changes
    has_progress = files_modified > 0
    if has_progress:
        confidence += PROGRESS_WEIGHT

    # 7. Declining output length
    if previous_length and output_length * 100 // previous_length < 50:
        confidence += DECLINING_OUTPUT_WEIGHT

    if structured:
        confidence = STRUCTURED_COMPLETION_SCORE

    return LoopClassification(
        loop_number=loop_number,
        output_file=output_file,
        has_completion_signal=structured,
        has_structured_completion=structured,
        completion_hint=completion_hint,
        completion_hint_score=hint_score,
        is_test_only=is_test_only,
        is_stuck=is_stuck,
        has_progress=has_progress,
        files_modified=max(0, files_modified),
        confidence_score=confidence,
        # 8. Only the structured block may request an exit
        exit_signal=structured,
        work_summary=work_summary or _extract_summary(output_text.splitlines()),
        output_length=output_length,
    )


class ResponseAnalyzer:
    """Classifies output files and keeps the per-loop analysis record."""

    def __init__(self, store: StateStore, config: Optional[AnalysisConfig] = None) -> None:
        self.store = store
        self.config = config or AnalysisConfig()

    def analyze_file(
        self, output_file: str | Path, loop_number: int, files_modified: int
    ) -> Result[LoopClassification]:
        path = Path(output_file)
        if not path.exists():
            return Result.fail(f"Output file not found: {path}", "OUTPUT_NOT_FOUND")
        try:
            output_text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return Result.fail(f"Cannot read output file {path}: {e}", "READ_ERROR")

        previous = self.store.load(LAST_LENGTH_FILE, OutputLength)
        classification = classify(
            output_text,
            loop_number,
            files_modified,
            previous_length=previous.length if self.store.exists(LAST_LENGTH_FILE) else None,
            config=self.config,
            output_file=str(path),
        )
        self.store.save(LAST_LENGTH_FILE, OutputLength(length=classification.output_length))
        self.store.save(ANALYSIS_FILE, classification)
        return Result.ok(classification)

    def last_analysis(self) -> Optional[LoopClassification]:
        if not self.store.exists(ANALYSIS_FILE):
            return None
        return self.store.load(ANALYSIS_FILE, LoopClassification)


def detect_stuck_loop(
    current_output: str | Path, history_dir: str | Path, window: int = 3
) -> bool:
    """True when the current run's error lines recur in each of the last `window` captures."""
    current = Path(current_output)
    try:
        current_text = current.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False

    error_lines = sorted({
        line.strip()
        for line in current_text.splitlines()
        if re.search(r"error|failed", line, re.IGNORECASE) and line.strip()
    })
    if not error_lines:
        return False

    try:
        recent = sorted(
            (p for p in Path(history_dir).glob("codex_output_*.log") if p.resolve() != current.resolve()),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )[:window]
    except OSError:
        return False
    if len(recent) < window:
        return False

    for previous in recent:
        try:
            text = previous.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return False
        if not all(line in text for line in error_lines):
            return False
    return True


def format_analysis_summary(classification: LoopClassification) -> list[str]:
    """Human-readable lines describing one classification."""
    return [
        f"Response Analysis - Loop #{classification.loop_number}",
        f"  Exit Signal:   {classification.exit_signal}",
        f"  Confidence:    {classification.confidence_score}%",
        f"  Test Only:     {classification.is_test_only}",
        f"  Files Changed: {classification.files_modified}",
        f"  Summary:       {classification.work_summary}",
    ]

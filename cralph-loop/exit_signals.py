"""Rolling window of exit evidence and the graceful-exit decision."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from config import ExitConfig
from response_analyzer import LoopClassification
from state_store import StateStore

logger = logging.getLogger(__name__)

EXIT_SIGNALS_FILE = "exit_signals.json"

REASON_TEST_SATURATION = "test_saturation"
REASON_COMPLETION_SIGNALS = "completion_signals"
REASON_PROJECT_COMPLETE = "project_complete"
REASON_PLAN_COMPLETE = "plan_complete"


class ExitSignalWindow(BaseModel):
    """Loop numbers of the most recent exit-relevant signals."""

    test_only_loops: list[int] = Field(default_factory=list)
    done_signals: list[int] = Field(default_factory=list)
    completion_indicators: list[int] = Field(default_factory=list)


def count_plan_items(plan_path: str | Path) -> tuple[int, int]:
    """Count (total, completed) checklist items in a fix plan.

    Items are lines starting with "- [", completed items start with "- [x]".
    """
    path = Path(plan_path)
    if not path.exists():
        return (0, 0)
    try:
        content = path.read_text(encoding="utf-8-sig")
    except OSError as e:
        logger.warning("Failed to read fix plan %s: %s", path, e)
        return (0, 0)

    total = 0
    completed = 0
    for line in content.splitlines():
        if line.startswith("- ["):
            total += 1
            if line.startswith("- [x]") or line.startswith("- [X]"):
                completed += 1
    return (total, completed)


class ExitSignalAggregator:
    """Folds classifications into the persisted ExitSignalWindow."""

    def __init__(
        self,
        store: StateStore,
        config: Optional[ExitConfig] = None,
        plan_path: Optional[str | Path] = None,
    ) -> None:
        self.store = store
        self.config = config or ExitConfig()
        self.plan_path = Path(plan_path) if plan_path else None

    @property
    def window(self) -> ExitSignalWindow:
        return self.store.load(EXIT_SIGNALS_FILE, ExitSignalWindow)

    def initialize(self) -> None:
        """Create the window file if it does not exist yet."""
        if not self.store.exists(EXIT_SIGNALS_FILE):
            self.store.save(EXIT_SIGNALS_FILE, ExitSignalWindow())

    def record(self, classification: LoopClassification) -> ExitSignalWindow:
        signals = self.window
        loop = classification.loop_number

        if classification.is_test_only:
            signals.test_only_loops.append(loop)
        elif classification.has_progress:
            # Real work happened, an earlier test-only streak no longer applies
            signals.test_only_loops = []

        if classification.has_structured_completion:
            signals.done_signals.append(loop)
            signals.completion_indicators.append(loop)

        size = self.config.window_size
        signals.test_only_loops = signals.test_only_loops[-size:]
        signals.done_signals = signals.done_signals[-size:]
        signals.completion_indicators = signals.completion_indicators[-size:]

        self.store.save(EXIT_SIGNALS_FILE, signals)
        return signals

    def should_exit_gracefully(self) -> Optional[str]:
        """Return the first matching exit reason, or None to keep looping."""
        signals = self.window
        cfg = self.config
        logger.debug(
            "Exit counts - test_loops:%d, done_signals:%d, completion:%d",
            len(signals.test_only_loops),
            len(signals.done_signals),
            len(signals.completion_indicators),
        )

        if len(signals.test_only_loops) >= cfg.max_consecutive_test_loops:
            logger.warning(
                "Exit condition: Too many test-focused loops (%d >= %d)",
                len(signals.test_only_loops), cfg.max_consecutive_test_loops,
            )
            return REASON_TEST_SATURATION

        if len(signals.done_signals) >= cfg.max_done_signals:
            logger.warning(
                "Exit condition: Multiple completion signals (%d >= %d)",
                len(signals.done_signals), cfg.max_done_signals,
            )
            return REASON_COMPLETION_SIGNALS

        if len(signals.completion_indicators) >= cfg.max_completion_indicators:
            logger.warning(
                "Exit condition: Strong completion indicators (%d)",
                len(signals.completion_indicators),
            )
            return REASON_PROJECT_COMPLETE

        if self.plan_path is not None:
            total, completed = count_plan_items(self.plan_path)
            logger.debug("Fix plan check - total_items:%d, completed_items:%d", total, completed)
            if total > 0 and completed == total:
                logger.warning(
                    "Exit condition: All fix plan items completed (%d/%d)", completed, total
                )
                return REASON_PLAN_COMPLETE

        return None

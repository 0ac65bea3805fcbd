"""Hourly invocation budget for agent runs."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field

from state_store import StateStore

logger = logging.getLogger(__name__)

BUDGET_FILE = "call_budget.json"
HOUR_STAMP_FORMAT = "%Y%m%d%H"


class InvocationBudget(BaseModel):
    """Calls made within the current wall-clock hour."""

    window_start: str = Field(default="")  # YYYYMMDDHH
    calls_made: int = Field(default=0, ge=0)


def hour_stamp(moment: datetime) -> str:
    return moment.strftime(HOUR_STAMP_FORMAT)


class RateLimiter:
    """Gates agent invocations to max_calls_per_hour per clock hour.

    The window rolls over when the hour stamp changes; refresh_window() is
    called at the top of every loop iteration rather than from a timer.
    """

    def __init__(
        self,
        store: StateStore,
        max_calls_per_hour: int,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.max_calls_per_hour = max_calls_per_hour
        self._clock = clock
        self.budget = self._load()

    def _load(self) -> InvocationBudget:
        # A corrupt budget file is reset to zero calls (fail open).
        return self.store.load(BUDGET_FILE, InvocationBudget)

    def refresh_window(self) -> bool:
        """Reset the counter if the hour advanced. Returns True when a reset happened."""
        self.budget = self._load()
        current = hour_stamp(self._clock())
        if self.budget.window_start == current:
            return False
        self.budget = InvocationBudget(window_start=current, calls_made=0)
        self.store.save(BUDGET_FILE, self.budget)
        logger.info("Call counter reset for new hour: %s", current)
        return True

    @property
    def calls_made(self) -> int:
        return self.budget.calls_made

    def can_invoke(self) -> bool:
        self.refresh_window()
        return self.budget.calls_made < self.max_calls_per_hour

    def record_invocation(self) -> int:
        """Count one completed agent run against the current window."""
        self.refresh_window()
        self.budget.calls_made += 1
        self.store.save(BUDGET_FILE, self.budget)
        return self.budget.calls_made

    def time_until_reset(self) -> int:
        """Seconds remaining until the top of the next hour."""
        now = self._clock()
        next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        return max(0, int((next_hour - now).total_seconds()))

    def wait_for_reset(
        self,
        on_tick: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Block until the hour boundary, reporting the countdown once per second."""
        remaining = self.time_until_reset()
        logger.warning(
            "Rate limit reached (%d/%d). Sleeping %ds until next hour...",
            self.budget.calls_made, self.max_calls_per_hour, remaining,
        )
        while remaining > 0:
            if on_tick:
                on_tick(remaining)
            sleep(1)
            remaining -= 1
        self.budget = InvocationBudget(window_start=hour_stamp(self._clock()), calls_made=0)
        self.store.save(BUDGET_FILE, self.budget)
        logger.info("Rate limit reset! Ready for new calls.")


def format_countdown(seconds: int) -> str:
    hours, rest = divmod(max(0, seconds), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"

"""Stagnation circuit breaker for the Cralph loop.

Three states, persisted in .cralph/circuit_breaker_state.json:

    CLOSED     normal operation, progress is being made
    HALF_OPEN  monitoring, recent loops changed no files
    OPEN       halted; stays open until an explicit reset

Unlike a retry breaker, OPEN never cools down on its own.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from config import CircuitBreakerConfig
from state_store import StateStore

logger = logging.getLogger(__name__)

STATE_FILE = "circuit_breaker_state.json"
HISTORY_FILE = "circuit_breaker_history.json"

OPEN_REASON = "Circuit breaker is open, execution halted"


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    HALF_OPEN = "HALF_OPEN"
    OPEN = "OPEN"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CircuitBreakerState(BaseModel):
    """Persisted breaker state; the single source of truth for may-we-run."""

    state: BreakerState = BreakerState.CLOSED
    last_change: str = Field(default_factory=_now)
    consecutive_no_progress: int = Field(default=0, ge=0)
    consecutive_same_error: int = Field(default=0, ge=0)
    last_progress_loop: int = Field(default=0, ge=0)
    total_opens: int = Field(default=0, ge=0)
    reason: str = ""
    current_loop: int = 0


class CircuitTransition(BaseModel):
    """One entry of the append-only transition history."""

    timestamp: str = Field(default_factory=_now)
    loop: int
    from_state: BreakerState
    to_state: BreakerState
    reason: str


class CircuitBreaker:
    """Tracks no-progress and repeated-error streaks across the whole run history."""

    def __init__(
        self, store: StateStore, config: Optional[CircuitBreakerConfig] = None
    ) -> None:
        self.store = store
        self.config = config or CircuitBreakerConfig()

    def initialize(self) -> None:
        """Create (or repair) the state and history files."""
        if not self.store.exists(STATE_FILE):
            self.store.save(STATE_FILE, CircuitBreakerState())
        else:
            self.get_state()
        self.store.ensure_list(HISTORY_FILE)

    def get_state(self) -> CircuitBreakerState:
        return self.store.load(STATE_FILE, CircuitBreakerState)

    def get_history(self) -> list[CircuitTransition]:
        transitions: list[CircuitTransition] = []
        for raw in self.store.load_list(HISTORY_FILE):
            try:
                transitions.append(CircuitTransition.model_validate(raw))
            except ValueError:
                logger.debug("Skipping malformed history entry: %s", raw)
        return transitions

    def should_halt(self) -> bool:
        return self.get_state().state == BreakerState.OPEN

    def can_execute(self) -> bool:
        return not self.should_halt()

    def _next_state(
        self, current: CircuitBreakerState, has_progress: bool
    ) -> tuple[BreakerState, str]:
        cfg = self.config
        no_progress = current.consecutive_no_progress
        same_error = current.consecutive_same_error

        if current.state == BreakerState.CLOSED:
            if no_progress >= cfg.no_progress_threshold:
                return BreakerState.OPEN, f"No progress detected in {no_progress} consecutive loops"
            if same_error >= cfg.same_error_threshold:
                return BreakerState.OPEN, f"Same error repeated in {same_error} consecutive loops"
            if no_progress >= cfg.half_open_threshold:
                return BreakerState.HALF_OPEN, f"Monitoring: {no_progress} loops without progress"
            return BreakerState.CLOSED, ""

        if current.state == BreakerState.HALF_OPEN:
            if has_progress:
                return BreakerState.CLOSED, "Progress detected, circuit recovered"
            if no_progress >= cfg.no_progress_threshold:
                return BreakerState.OPEN, f"No recovery, opening circuit after {no_progress} loops"
            return BreakerState.HALF_OPEN, ""

        return BreakerState.OPEN, OPEN_REASON

    def record_loop_result(
        self,
        loop_number: int,
        files_modified: int,
        has_errors: bool,
        output_length: int = 0,
    ) -> bool:
        """Fold one loop result into the breaker. Returns False once the circuit is open."""
        state = self.get_state()
        previous = state.state

        has_progress = files_modified > 0
        if has_progress:
            state.consecutive_no_progress = 0
            state.last_progress_loop = loop_number
        else:
            state.consecutive_no_progress += 1

        if has_errors:
            state.consecutive_same_error += 1
        else:
            state.consecutive_same_error = 0

        new_state, reason = self._next_state(state, has_progress)
        if new_state == BreakerState.OPEN and previous != BreakerState.OPEN:
            state.total_opens += 1

        state.state = new_state
        state.reason = reason
        state.current_loop = loop_number
        state.last_change = _now()
        self.store.save(STATE_FILE, state)

        if new_state != previous:
            self._log_transition(previous, new_state, reason, loop_number)

        logger.debug(
            "Circuit breaker loop #%d: state=%s no_progress=%d same_error=%d output_length=%d",
            loop_number, new_state.value, state.consecutive_no_progress,
            state.consecutive_same_error, output_length,
        )
        return new_state != BreakerState.OPEN

    def _log_transition(
        self, from_state: BreakerState, to_state: BreakerState, reason: str, loop_number: int
    ) -> None:
        self.store.append(
            HISTORY_FILE,
            CircuitTransition(
                loop=loop_number, from_state=from_state, to_state=to_state, reason=reason
            ),
        )
        if to_state == BreakerState.OPEN:
            logger.error("CIRCUIT BREAKER OPENED: %s", reason)
        elif to_state == BreakerState.HALF_OPEN:
            logger.warning("CIRCUIT BREAKER: Monitoring Mode: %s", reason)
        else:
            logger.info("CIRCUIT BREAKER: Normal Operation: %s", reason)

    def reset(self, reason: str = "Manual reset") -> CircuitBreakerState:
        """Force the breaker back to CLOSED with every counter zeroed."""
        previous = self.get_state()
        state = CircuitBreakerState(reason=reason)
        self.store.save(STATE_FILE, state)
        if previous.state != BreakerState.CLOSED:
            self.store.append(
                HISTORY_FILE,
                CircuitTransition(
                    loop=previous.current_loop,
                    from_state=previous.state,
                    to_state=BreakerState.CLOSED,
                    reason=reason,
                ),
            )
        logger.info("Circuit breaker reset to CLOSED state (%s)", reason)
        return state

    def format_status(self) -> list[str]:
        state = self.get_state()
        return [
            "Circuit Breaker Status",
            f"  State:                {state.state.value}",
            f"  Reason:               {state.reason}",
            f"  Loops since progress: {state.consecutive_no_progress}",
            f"  Same-error streak:    {state.consecutive_same_error}",
            f"  Last progress:        Loop #{state.last_progress_loop}",
            f"  Current loop:         #{state.current_loop}",
            f"  Total opens:          {state.total_opens}",
        ]

    @staticmethod
    def halt_guidance() -> list[str]:
        return [
            "EXECUTION HALTED: Circuit Breaker Opened",
            "Possible reasons:",
            "  - Project may be complete (check @fix_plan.md)",
            "  - The agent may be stuck on an error",
            "  - PROMPT.md may need clarification",
            "Recovery: 1) Review recent logs: tail -20 logs/cralph.log "
            "2) Check the latest logs/codex_output_*.log "
            "3) Update @fix_plan.md if needed "
            "4) Reset the circuit breaker: cralph --reset-circuit",
        ]

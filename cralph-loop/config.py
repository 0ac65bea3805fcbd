"""Configuration validation for the Cralph loop."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_AGENT_COMMAND = "codex exec --full-auto --skip-git-repo-check"


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class RateLimitConfig(BaseModel):
    """Hourly invocation budget."""

    max_calls_per_hour: int = Field(default=100, ge=1)


class ExecutionConfig(BaseModel):
    """Agent subprocess settings."""

    command: str = Field(
        default_factory=lambda: os.environ.get("CRALPH_CMD", DEFAULT_AGENT_COMMAND),
        description="Agent command line; the prompt file is fed on stdin",
    )
    timeout_minutes: int = Field(default=30, ge=1, le=120)
    show_output: bool = Field(default=False)
    verbose_progress: bool = Field(default=False)
    progress_interval_seconds: float = Field(default=10.0, gt=0)
    success_pause_seconds: int = Field(
        default=5, ge=0,
        description="Pause after every successful iteration",
    )
    failure_backoff_seconds: int = Field(
        default=30, ge=0,
        description="Fixed backoff after a generic execution failure",
    )
    quota_wait_minutes: int = Field(
        default=60, ge=1,
        description="How long to wait after quota exhaustion before retrying",
    )
    quota_prompt_timeout_seconds: int = Field(
        default=30, ge=1,
        description="How long the wait-or-exit prompt waits for input",
    )
    quota_patterns: list[str] = Field(
        default_factory=lambda: [
            r"5.*hour.*limit",
            r"limit.*reached.*try.*back",
            r"usage.*limit.*reached",
        ]
    )
    max_loops: Optional[int] = Field(
        default=None, ge=1,
        description="Stop after this many loops (None = run until another exit condition)",
    )


class CircuitBreakerConfig(BaseModel):
    """Stagnation circuit breaker thresholds."""

    no_progress_threshold: int = Field(default=3, ge=1)
    same_error_threshold: int = Field(default=5, ge=1)
    half_open_threshold: int = Field(
        default=2, ge=1,
        description="Loops without progress before entering monitoring mode",
    )


class ExitConfig(BaseModel):
    """Graceful exit thresholds over the rolling signal window."""

    window_size: int = Field(default=5, ge=1, le=50)
    max_consecutive_test_loops: int = Field(default=3, ge=1)
    max_done_signals: int = Field(default=2, ge=1)
    max_completion_indicators: int = Field(default=2, ge=1)


class AnalysisConfig(BaseModel):
    """Keyword sets used by the response classifier."""

    status_marker: str = Field(default="---CRALPH_STATUS---")
    completion_keywords: list[str] = Field(
        default_factory=lambda: [
            "done",
            "complete",
            "finished",
            "all tasks complete",
            "project complete",
            "ready for review",
        ]
    )
    test_patterns: list[str] = Field(
        default_factory=lambda: [
            "running tests",
            "npm test",
            "bats",
            "pytest",
            "jest",
            "cargo test",
            "go test",
        ]
    )
    implementation_patterns: list[str] = Field(
        default_factory=lambda: [
            "implementing",
            "creating",
            "writing",
            "adding",
            "function",
            "class",
        ]
    )
    error_patterns: list[str] = Field(
        default_factory=lambda: ["error", "failed", "cannot", "unable"]
    )
    no_work_patterns: list[str] = Field(
        default_factory=lambda: [
            "nothing to do",
            "no changes",
            "already implemented",
            "up to date",
        ]
    )
    stuck_error_threshold: int = Field(default=5, ge=0)


class PathsConfig(BaseModel):
    """Project-relative file locations."""

    prompt_file: str = Field(default="PROMPT.md")
    fix_plan_file: str = Field(default="@fix_plan.md")
    log_dir: str = Field(default="logs")
    state_dir: str = Field(default=".cralph")
    status_file: str = Field(default="status.json")
    progress_file: str = Field(default="progress.json")


class SecurityConfig(BaseModel):
    """Log redaction settings."""

    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"sk-[A-Za-z0-9]{20,}",
            r"gh[pousr]_[A-Za-z0-9]{20,}",
        ]
    )


class CralphConfig(BaseModel):
    """Root configuration model for .cralph/config.json."""

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    exit: ExitConfig = Field(default_factory=ExitConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


def load_config(config_path: str | Path) -> Result[CralphConfig]:
    """Load and validate loop config from JSON file."""
    path = Path(config_path)
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(CralphConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = CralphConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")

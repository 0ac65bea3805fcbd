"""Shared pytest fixtures for the Cralph loop test suite.

Non-fixture helpers (canned outputs, subprocess mock builders) are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from config import CralphConfig  # noqa: E402
from state_store import StateStore  # noqa: E402


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a Cralph project directory.

    Includes: PROMPT.md, @fix_plan.md (one open item), .cralph/, logs/.
    Tests needing a bare directory should use tmp_path directly.
    """
    (tmp_path / ".cralph").mkdir()
    (tmp_path / "logs").mkdir()
    (tmp_path / "PROMPT.md").write_text(
        "# Task\nImplement the parser. Finish with a CRALPH_STATUS block.\n",
        encoding="utf-8",
    )
    (tmp_path / "@fix_plan.md").write_text(
        "# Fix Plan\n- [x] Set up project\n- [ ] Implement parser\n",
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture
def config() -> CralphConfig:
    """Config with every pause disabled so loops run instantly."""
    return CralphConfig(
        rate_limit={"max_calls_per_hour": 100},
        execution={
            "command": "codex exec --full-auto",
            "timeout_minutes": 1,
            "success_pause_seconds": 0,
            "failure_backoff_seconds": 0,
            "quota_wait_minutes": 1,
            "quota_prompt_timeout_seconds": 1,
            "progress_interval_seconds": 60.0,
        },
    )


@pytest.fixture
def store(project_dir: Path) -> StateStore:
    return StateStore(project_dir)

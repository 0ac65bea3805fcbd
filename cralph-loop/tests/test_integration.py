"""Integration tests exercising the full pipeline."""

import json
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from circuit_breaker import BreakerState, CircuitBreaker
from config import CralphConfig, load_config
from exit_signals import ExitSignalAggregator
from log_redactor import install_redaction
from loop_driver import EXIT_COMPLETE, EXIT_MAX_LOOPS, EXIT_STAGNATION, LoopDriver
from response_analyzer import ResponseAnalyzer
from state_store import StateStore
from status_reporter import ProgressMonitor, StatusReporter

from helpers import (
    TEST_ONLY_OUTPUT,
    WORKING_OUTPUT,
    MockPopen,
    make_git_dispatcher,
    make_popen_dispatcher,
)


@pytest.fixture(autouse=True)
def agent_on_path():
    with patch("loop_driver.shutil.which", return_value="/usr/local/bin/codex"):
        yield


class TestClassifierFeedsComponents:
    """Output file -> classification -> exit window + circuit breaker."""

    def test_progress_sequence(self, project_dir: Path) -> None:
        store = StateStore(project_dir)
        config = CralphConfig(circuit_breaker={"half_open_threshold": 1})
        analyzer = ResponseAnalyzer(store, config.analysis)
        aggregator = ExitSignalAggregator(store, config.exit)
        breaker = CircuitBreaker(store, config.circuit_breaker)
        breaker.initialize()

        states = []
        for loop, changed in enumerate([2, 1, 0, 3, 0], start=1):
            out = project_dir / "logs" / f"codex_output_{loop}.log"
            out.write_text(WORKING_OUTPUT, encoding="utf-8")
            classification = analyzer.analyze_file(out, loop, changed).data
            aggregator.record(classification)
            breaker.record_loop_result(loop, classification.files_modified, False)
            states.append(breaker.get_state().state)

        assert states[-1] == BreakerState.HALF_OPEN
        assert states[3] == BreakerState.CLOSED
        assert breaker.get_state().total_opens == 0
        assert aggregator.should_exit_gracefully() is None


class TestFullLoop:
    @patch("loop_driver.time.sleep")
    @patch("subprocess.Popen")
    @patch("subprocess.run")
    def test_test_saturation_exit(
        self, mock_run: MagicMock, mock_popen: MagicMock, mock_sleep: MagicMock,
        project_dir: Path, config: CralphConfig,
    ) -> None:
        """Three test-only loops in a row end the run even while files change."""
        mock_popen.side_effect = make_popen_dispatcher([TEST_ONLY_OUTPUT])
        mock_run.side_effect = make_git_dispatcher(default=1)

        assert LoopDriver(project_dir, config).run() == EXIT_COMPLETE
        status = json.loads((project_dir / "status.json").read_text(encoding="utf-8"))
        assert status["exit_reason"] == "test_saturation"
        assert mock_popen.call_count == 3

    @patch("loop_driver.time.sleep")
    @patch("subprocess.Popen")
    @patch("subprocess.run")
    def test_agent_completes_fix_plan(
        self, mock_run: MagicMock, mock_popen: MagicMock, mock_sleep: MagicMock,
        project_dir: Path, config: CralphConfig,
    ) -> None:
        """The agent ticks the last plan item; the next iteration exits cleanly."""
        plan = project_dir / "@fix_plan.md"

        def factory(*args, **kwargs):
            plan.write_text("- [x] Set up project\n- [x] Implement parser\n", encoding="utf-8")
            return MockPopen(WORKING_OUTPUT, 0, stdout=kwargs["stdout"])

        mock_popen.side_effect = factory
        mock_run.side_effect = make_git_dispatcher(default=1)

        driver = LoopDriver(project_dir, config)
        assert driver.run() == EXIT_COMPLETE
        assert mock_popen.call_count == 1
        assert driver.loop_count == 2

    @patch("loop_driver.time.sleep")
    @patch("subprocess.Popen")
    @patch("subprocess.run")
    def test_open_breaker_survives_restart_until_reset(
        self, mock_run: MagicMock, mock_popen: MagicMock, mock_sleep: MagicMock,
        project_dir: Path, config: CralphConfig,
    ) -> None:
        mock_popen.side_effect = make_popen_dispatcher([WORKING_OUTPUT])
        mock_run.side_effect = make_git_dispatcher(default=0)
        assert LoopDriver(project_dir, config).run() == EXIT_STAGNATION
        calls_after_first_run = mock_popen.call_count

        # Restart: still halted, agent never launched
        assert LoopDriver(project_dir, config).run() == EXIT_STAGNATION
        assert mock_popen.call_count == calls_after_first_run

        # Manual reset resumes
        CircuitBreaker(StateStore(project_dir), config.circuit_breaker).reset()
        mock_run.side_effect = make_git_dispatcher(default=1)
        config.execution.max_loops = 1
        assert LoopDriver(project_dir, config).run() == EXIT_MAX_LOOPS
        assert mock_popen.call_count == calls_after_first_run + 1

    @patch("loop_driver.time.sleep")
    @patch("subprocess.Popen")
    @patch("subprocess.run")
    def test_config_file_drives_loop(
        self, mock_run: MagicMock, mock_popen: MagicMock, mock_sleep: MagicMock,
        project_dir: Path,
    ) -> None:
        (project_dir / ".cralph" / "config.json").write_text(
            json.dumps({
                "execution": {
                    "command": "my-agent --auto",
                    "max_loops": 2,
                    "success_pause_seconds": 0,
                },
                "paths": {"prompt_file": "TASK.md"},
            }),
            encoding="utf-8",
        )
        (project_dir / "TASK.md").write_text("Do the thing\n", encoding="utf-8")
        result = load_config(project_dir / ".cralph" / "config.json")
        assert result.success

        mock_popen.side_effect = make_popen_dispatcher([WORKING_OUTPUT])
        mock_run.side_effect = make_git_dispatcher(default=1)
        assert LoopDriver(project_dir, result.data).run() == EXIT_MAX_LOOPS
        assert mock_popen.call_args.args[0] == ["my-agent", "--auto"]


class TestRedactedAgentOutput:
    def test_verbose_progress_is_redacted(self, project_dir: Path, caplog) -> None:
        """Agent lines echoed into the log never leak API keys."""
        out = project_dir / "logs" / "codex_output_1.log"
        out.write_text("export OPENAI_API_KEY=sk-proj-abcdef123456\n", encoding="utf-8")
        reporter = StatusReporter(project_dir / "status.json", project_dir / "progress.json", 100)

        redactor = install_redaction(CralphConfig().security.log_redact_patterns, handlers=[caplog.handler])
        try:
            with caplog.at_level(logging.INFO):
                ProgressMonitor(out, reporter, verbose=True).sample()
        finally:
            caplog.handler.removeFilter(redactor)
        assert "sk-proj-" not in caplog.text
        assert "[REDACTED]" in caplog.text

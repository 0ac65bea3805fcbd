"""Cralph loop driver: runs an autonomous coding agent against a project until it is done.

Each iteration feeds PROMPT.md to the agent command on stdin, captures its
output under logs/, classifies the output, and lets the exit-signal window
and the stagnation circuit breaker decide whether to keep going. Calls are
capped per clock hour; quota exhaustion on the agent side pauses the loop.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import queue
import re
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from circuit_breaker import CircuitBreaker
from config import CralphConfig, Result, load_config
from exit_signals import ExitSignalAggregator
from log_redactor import install_redaction
from rate_limiter import RateLimiter, format_countdown
from response_analyzer import ResponseAnalyzer, detect_stuck_loop, format_analysis_summary
from state_store import StateStore
from status_reporter import ProgressMonitor, StatusReporter

logger = logging.getLogger(__name__)

# Exit codes
EXIT_COMPLETE = 0
EXIT_CONFIG_ERROR = 1
EXIT_QUOTA_EXHAUSTED = 2
EXIT_STAGNATION = 3
EXIT_MAX_LOOPS = 4
EXIT_UNEXPECTED_ERROR = 5
EXIT_INTERRUPTED = 130

TRACE_FILE = "trace.jsonl"
TRACE_MAX_BYTES = 10_000_000


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps({
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        })


@dataclass
class ExecutionOutcome:
    """How one agent subprocess run ended."""

    output_file: Path
    returncode: int
    timed_out: bool = False
    launched: bool = True

    @property
    def succeeded(self) -> bool:
        return self.launched and not self.timed_out and self.returncode == 0


def timed_input(prompt: str, timeout: float) -> Optional[str]:
    """Read one line from stdin, giving up after `timeout` seconds (returns None)."""
    answers: queue.Queue[str] = queue.Queue(maxsize=1)

    def _reader() -> None:
        try:
            answers.put(input(prompt))
        except (EOFError, OSError, ValueError):
            answers.put("")

    threading.Thread(target=_reader, name="cralph-input", daemon=True).start()
    try:
        return answers.get(timeout=timeout)
    except queue.Empty:
        return None


class LoopDriver:
    """Orchestrates agent runs under the rate limit, exit signals and circuit breaker."""

    def __init__(
        self,
        project_path: str | Path,
        config: CralphConfig,
        skip_preflight: bool = False,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.project_path = Path(project_path).resolve()
        self.config = config
        self.skip_preflight = skip_preflight

        paths = config.paths
        self.prompt_file = self._resolve(paths.prompt_file)
        self.log_dir = self._resolve(paths.log_dir)
        self.store = StateStore(self.project_path, paths.state_dir)
        self.rate_limiter = RateLimiter(
            self.store, config.rate_limit.max_calls_per_hour, clock=clock
        )
        self.analyzer = ResponseAnalyzer(self.store, config.analysis)
        self.aggregator = ExitSignalAggregator(
            self.store, config.exit, plan_path=self._resolve(paths.fix_plan_file)
        )
        self.circuit_breaker = CircuitBreaker(self.store, config.circuit_breaker)
        self.reporter = StatusReporter(
            self._resolve(paths.status_file),
            self._resolve(paths.progress_file),
            config.rate_limit.max_calls_per_hour,
        )
        self.loop_count = 0
        self._quota_patterns = [
            re.compile(p, re.IGNORECASE) for p in config.execution.quota_patterns
        ]

    def _resolve(self, relative: str) -> Path:
        path = Path(relative)
        return path if path.is_absolute() else self.project_path / path

    def _write_trace_event(self, event_type: str, **data) -> None:
        """Append a structured event to .cralph/trace.jsonl for postmortems."""
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "loop": self.loop_count,
            **data,
        }
        try:
            trace_path = self.store.path(TRACE_FILE)
            trace_path.parent.mkdir(parents=True, exist_ok=True)
            if trace_path.exists() and trace_path.stat().st_size > TRACE_MAX_BYTES:
                trace_path.replace(trace_path.with_name(trace_path.name + ".1"))
            with open(trace_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event) + "\n")
        except OSError as e:
            logger.warning("Failed to write trace event: %s", e)

    # --- Startup ---

    def _preflight_check(self) -> Result[None]:
        """Validate configuration before entering the loop."""
        try:
            cmd = shlex.split(self.config.execution.command)
        except ValueError as e:
            return Result.fail(f"Cannot parse agent command: {e}", "BAD_COMMAND")
        if not cmd:
            return Result.fail("Agent command is empty", "BAD_COMMAND")
        if shutil.which(cmd[0]) is None:
            return Result.fail(
                f"Agent command not found: {cmd[0]}. "
                "Install the agent CLI or set CRALPH_CMD / --cmd to a valid command.",
                "COMMAND_NOT_FOUND",
            )

        if not self.prompt_file.exists():
            hint = "This directory is not a Cralph project."
            if any(
                (self.project_path / name).exists()
                for name in (self.config.paths.fix_plan_file, "specs", "@AGENT.md")
            ):
                hint = "This appears to be a Cralph project but is missing its prompt file."
            return Result.fail(
                f"Prompt file '{self.prompt_file}' not found. {hint} "
                "Create PROMPT.md or pass --prompt FILE.",
                "PROMPT_NOT_FOUND",
            )

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.store.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return Result.fail(f"Cannot create state/log directories: {e}", "STATE_DIR_ERROR")

        return Result.ok(None)

    def _initialize_state(self) -> None:
        self.rate_limiter.refresh_window()
        self.aggregator.initialize()
        self.circuit_breaker.initialize()

    # --- Main loop ---

    def run(self) -> int:
        """Execute the main loop. Returns exit code."""
        logger.info("=" * 60)
        logger.info("Cralph loop starting")
        logger.info("Project: %s", self.project_path)
        logger.info("Agent command: %s", self.config.execution.command)
        logger.info("Max calls per hour: %d", self.config.rate_limit.max_calls_per_hour)
        logger.info("Timeout: %dm per execution", self.config.execution.timeout_minutes)
        logger.info("Logs: %s | Status: %s", self.log_dir, self.reporter.status_path)
        logger.info("=" * 60)

        if not self.skip_preflight:
            preflight = self._preflight_check()
            if not preflight.success:
                logger.error("Configuration error: %s", preflight.error)
                self.reporter.update_status(
                    0, self.rate_limiter.calls_made, "preflight_failed", "error",
                    preflight.error_code or "config_error",
                )
                return EXIT_CONFIG_ERROR

        self._initialize_state()
        self._write_trace_event(
            "loop_start",
            command=self.config.execution.command,
            max_calls_per_hour=self.config.rate_limit.max_calls_per_hour,
        )

        previous_handler = self._install_signal_handlers()
        try:
            exit_code = self._loop()
        except KeyboardInterrupt:
            logger.info("Cralph loop interrupted. Cleaning up...")
            self.reporter.mark_progress("interrupted")
            self.reporter.update_status(
                self.loop_count, self.rate_limiter.calls_made,
                "interrupted", "interrupted", "interrupted",
            )
            exit_code = EXIT_INTERRUPTED
        except Exception as e:
            logger.exception("Cralph loop failed unexpectedly: %s", e)
            self.reporter.mark_progress("failed")
            self.reporter.update_status(
                self.loop_count, self.rate_limiter.calls_made,
                "unexpected_error", "error", "unexpected_error",
            )
            exit_code = EXIT_UNEXPECTED_ERROR
        finally:
            self._restore_signal_handlers(previous_handler)

        self._write_trace_event("loop_end", exit_code=exit_code)
        self._log_summary(exit_code)
        return exit_code

    def _loop(self) -> int:
        execution = self.config.execution
        while True:
            if execution.max_loops is not None and self.loop_count >= execution.max_loops:
                logger.warning("Reached max loops (%d), stopping", execution.max_loops)
                self._finish("max_loops", "stopped", "max_loops_reached")
                return EXIT_MAX_LOOPS

            self.loop_count += 1
            loop = self.loop_count
            logger.info("=== Starting Loop #%d ===", loop)
            self.rate_limiter.refresh_window()

            if self.circuit_breaker.should_halt():
                return self._halt_for_stagnation()

            while not self.rate_limiter.can_invoke():
                self._finish("rate_limited", "waiting")
                self.rate_limiter.wait_for_reset(
                    on_tick=lambda s: self._print_countdown("Time until reset", s),
                    sleep=time.sleep,
                )
                print()

            exit_reason = self.aggregator.should_exit_gracefully()
            if exit_reason:
                logger.info("Graceful exit triggered: %s", exit_reason)
                self._finish("graceful_exit", "completed", exit_reason)
                return EXIT_COMPLETE

            self._finish("executing", "running")
            outcome = self._execute_agent(loop)

            if outcome.succeeded:
                if self._handle_success(loop, outcome):
                    return self._halt_for_stagnation()
                self._finish("completed", "success")
                time.sleep(execution.success_pause_seconds)
            elif not outcome.timed_out and self._is_quota_exhausted(outcome.output_file):
                logger.error("Agent usage limit reached")
                self._finish("api_limit", "paused")
                if not self._ask_wait_for_quota():
                    logger.info("Exiting loop on usage limit (user choice or no input)")
                    self._finish("api_limit_exit", "stopped", "api_5hour_limit")
                    return EXIT_QUOTA_EXHAUSTED
                wait_seconds = execution.quota_wait_minutes * 60
                logger.info("Waiting %d minutes before retrying...", execution.quota_wait_minutes)
                self._countdown(wait_seconds, "Time until retry")
            else:
                self._finish("failed", "error")
                logger.warning(
                    "Execution failed, waiting %d seconds before retry... (check %s)",
                    execution.failure_backoff_seconds, outcome.output_file,
                )
                time.sleep(execution.failure_backoff_seconds)

            logger.info("=== Completed Loop #%d ===", loop)

    def _finish(self, last_action: str, status: str, exit_reason: str = "") -> None:
        """Publish the run status record."""
        self.reporter.update_status(
            self.loop_count, self.rate_limiter.calls_made, last_action, status, exit_reason
        )

    def _halt_for_stagnation(self) -> int:
        for line in self.circuit_breaker.format_status():
            logger.error(line)
        for line in self.circuit_breaker.halt_guidance():
            logger.error(line)
        self._finish("circuit_breaker_open", "halted", "stagnation_detected")
        self._write_trace_event("circuit_open", reason=self.circuit_breaker.get_state().reason)
        return EXIT_STAGNATION

    def _handle_success(self, loop: int, outcome: ExecutionOutcome) -> bool:
        """Analyze a successful run. Returns True if the circuit breaker just opened."""
        calls = self.rate_limiter.record_invocation()
        self.reporter.mark_progress("completed")
        logger.info(
            "Agent execution completed successfully (call %d/%d)",
            calls, self.config.rate_limit.max_calls_per_hour,
        )

        files_modified = self._count_changed_files()
        analysis = self.analyzer.analyze_file(outcome.output_file, loop, files_modified)
        output_length = 0
        if analysis.success and analysis.data is not None:
            classification = analysis.data
            output_length = classification.output_length
            for line in format_analysis_summary(classification):
                logger.info(line)
            self.aggregator.record(classification)
            self._write_trace_event(
                "classification",
                files_modified=files_modified,
                confidence_score=classification.confidence_score,
                exit_signal=classification.exit_signal,
                is_test_only=classification.is_test_only,
                is_stuck=classification.is_stuck,
            )
        else:
            logger.error("Response analysis failed: %s", analysis.error)

        has_errors = self._output_has_errors(outcome.output_file)
        if has_errors:
            logger.warning("Errors detected in output, check: %s", outcome.output_file)
            if detect_stuck_loop(outcome.output_file, self.log_dir):
                logger.warning("Same errors repeated across the recent agent outputs")

        can_continue = self.circuit_breaker.record_loop_result(
            loop, files_modified, has_errors, output_length
        )
        if not can_continue:
            logger.warning("Circuit breaker opened - halting execution")
        return not can_continue

    # --- Agent subprocess ---

    def _execute_agent(self, loop: int) -> ExecutionOutcome:
        """Run the agent once with the prompt on stdin, bounded by the execution timeout."""
        execution = self.config.execution
        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        output_file = self.log_dir / f"codex_output_{timestamp}.log"
        timeout_seconds = execution.timeout_minutes * 60
        cmd = shlex.split(execution.command)

        logger.info(
            "Executing agent (Call %d/%d), timeout %dm",
            self.rate_limiter.calls_made + 1,
            self.config.rate_limit.max_calls_per_hour,
            execution.timeout_minutes,
        )
        self._write_trace_event("agent_invoke", output_file=str(output_file))

        with contextlib.ExitStack() as files:
            try:
                prompt = files.enter_context(open(self.prompt_file, "r", encoding="utf-8"))
                capture = files.enter_context(open(output_file, "w", encoding="utf-8"))
            except OSError as e:
                logger.error("Cannot open prompt or capture file: %s", e)
                self.reporter.mark_progress("failed")
                return ExecutionOutcome(output_file, returncode=127, launched=False)

            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=str(self.project_path),
                    stdin=prompt,
                    stdout=subprocess.PIPE if execution.show_output else capture,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except OSError as e:
                logger.error("Failed to start agent process: %s", e)
                self.reporter.mark_progress("failed")
                return ExecutionOutcome(output_file, returncode=127, launched=False)

            timed_out = threading.Event()

            def _on_timeout() -> None:
                timed_out.set()
                logger.warning("Agent timed out after %dm, terminating", execution.timeout_minutes)
                self._kill_process_tree(proc.pid)
                try:
                    proc.kill()
                except OSError:
                    pass

            timer = threading.Timer(timeout_seconds, _on_timeout)
            timer.daemon = True
            tee_thread: Optional[threading.Thread] = None
            if execution.show_output and proc.stdout is not None:
                tee_thread = threading.Thread(
                    target=self._tee_pipe, args=(proc.stdout, capture), daemon=True
                )
            monitor = ProgressMonitor(
                output_file,
                self.reporter,
                interval=execution.progress_interval_seconds,
                verbose=execution.verbose_progress,
            )

            timer.start()
            if tee_thread is not None:
                tee_thread.start()
            try:
                with monitor:
                    returncode = proc.wait()
            finally:
                timer.cancel()
                if proc.poll() is None:
                    self._kill_process_tree(proc.pid)
                    try:
                        proc.kill()
                        proc.wait(timeout=5)
                    except (OSError, subprocess.TimeoutExpired):
                        pass
                if tee_thread is not None:
                    tee_thread.join(timeout=5)

        if timed_out.is_set() or returncode != 0:
            self.reporter.mark_progress("failed")
        self._write_trace_event(
            "agent_complete", returncode=returncode, timed_out=timed_out.is_set()
        )
        return ExecutionOutcome(output_file, returncode=returncode, timed_out=timed_out.is_set())

    @staticmethod
    def _tee_pipe(pipe, capture) -> None:
        """Copy agent output to the capture file and the terminal (for --show-output)."""
        try:
            for line in pipe:
                capture.write(line)
                capture.flush()
                sys.stdout.write(line)
                sys.stdout.flush()
        except (OSError, ValueError):
            pass

    @staticmethod
    def _kill_process_tree(pid: int) -> None:
        """Kill a process and its children by PID."""
        if sys.platform == "win32":
            try:
                result = subprocess.run(
                    ["taskkill", "/F", "/PID", str(pid), "/T"],
                    capture_output=True, text=True, timeout=10,
                )
                if result.returncode != 0:
                    logger.warning(
                        "taskkill PID %d failed (rc=%d): %s",
                        pid, result.returncode, result.stderr[:200],
                    )
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning("taskkill PID %d exception: %s", pid, e)
        else:
            import os
            try:
                os.kill(pid, signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                pass

    # --- Collaborators ---

    def _count_changed_files(self) -> int:
        """Files changed since the last commit (tracked diffs plus untracked files).

        Returns 0 when git is unavailable or the directory is not a repository.
        """
        changed: set[str] = set()
        for cmd in (
            ["git", "diff", "--name-only", "HEAD"],
            ["git", "ls-files", "--others", "--exclude-standard"],
        ):
            try:
                result = subprocess.run(
                    cmd,
                    cwd=str(self.project_path),
                    capture_output=True, text=True, timeout=10,
                )
            except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
                return 0
            if result.returncode != 0:
                return 0
            changed.update(line.strip() for line in result.stdout.splitlines() if line.strip())
        return len(changed)

    @staticmethod
    def _read_output(output_file: Path) -> str:
        try:
            return output_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def _output_has_errors(self, output_file: Path) -> bool:
        return "error" in self._read_output(output_file).lower()

    def _is_quota_exhausted(self, output_file: Path) -> bool:
        text = self._read_output(output_file)
        return any(p.search(line) for line in text.splitlines() for p in self._quota_patterns)

    def _ask_wait_for_quota(self) -> bool:
        """Ask whether to wait out the usage limit. No answer means exit."""
        print("\nThe agent's usage limit has been reached.")
        print("You can either:")
        print("  1) Wait for the limit to reset (usually within an hour)")
        print("  2) Exit the loop and try again later")
        choice = timed_input(
            "Choose an option (1 or 2): ",
            self.config.execution.quota_prompt_timeout_seconds,
        )
        if choice is None:
            print()
            return False
        return choice.strip() == "1"

    # --- Display ---

    @staticmethod
    def _print_countdown(label: str, seconds: int) -> None:
        print(f"\r{label}: {format_countdown(seconds)}", end="", flush=True)

    def _countdown(self, seconds: int, label: str) -> None:
        remaining = seconds
        while remaining > 0:
            self._print_countdown(label, remaining)
            time.sleep(1)
            remaining -= 1
        print()

    def _log_summary(self, exit_code: int) -> None:
        """Log final loop summary."""
        status = self.reporter.last_status
        breaker = self.circuit_breaker.get_state()
        logger.info("")
        logger.info("=" * 60)
        logger.info("LOOP %s", "COMPLETE" if exit_code == EXIT_COMPLETE else "ENDED")
        logger.info("Total loops: %d", self.loop_count)
        logger.info("Calls used this hour: %d", self.rate_limiter.calls_made)
        logger.info("Exit reason: %s", status.exit_reason if status else "n/a")
        logger.info("Circuit breaker: %s (total opens: %d)", breaker.state.value, breaker.total_opens)
        logger.info("=" * 60)

    # --- Signals ---

    @staticmethod
    def _raise_interrupt(signum, frame) -> None:
        raise KeyboardInterrupt

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return None
        return signal.signal(signal.SIGTERM, self._raise_interrupt)

    @staticmethod
    def _restore_signal_handlers(previous) -> None:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)


# --- CLI ---

def configure_logging(
    verbose: bool, json_log: bool, log_file: Optional[Path], redact_patterns: list[str]
) -> None:
    """Console logging (plain or JSON) plus an appending file log, all redacted."""
    log_level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    if json_log:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter(datefmt=datefmt))
        logging.root.addHandler(handler)
        logging.root.setLevel(log_level)
    else:
        logging.basicConfig(level=log_level, format=fmt, datefmt=datefmt)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
            logging.root.addHandler(file_handler)
        except OSError as e:
            logger.warning("Cannot open log file %s: %s", log_file, e)

    install_redaction(redact_patterns)


def check_tmux_available() -> bool:
    if shutil.which("tmux") is None:
        logger.error(
            "tmux is not installed. Install tmux "
            "(apt-get install tmux / brew install tmux) or run without --monitor."
        )
        return False
    return True


def build_monitor_commands(argv: list[str], project: Path) -> tuple[str, str]:
    """Loop and status-watcher command lines for the two tmux panes."""
    base = [sys.executable, str(Path(__file__).resolve())]
    loop_args = [a for a in argv if a not in ("-m", "--monitor")]
    loop_cmd = shlex.join(base + loop_args)
    status_cmd = "watch -n 5 " + shlex.quote(
        shlex.join(base + ["--project", str(project), "--status"])
    )
    return loop_cmd, status_cmd


def setup_tmux_session(argv: list[str], project: Path) -> int:
    """Start the loop in a tmux session with a status monitor pane, then attach."""
    session = f"cralph-{int(time.time())}"
    loop_cmd, status_cmd = build_monitor_commands(argv, project)
    logger.info("Setting up tmux session: %s", session)
    steps = [
        ["tmux", "new-session", "-d", "-s", session, "-c", str(project)],
        ["tmux", "split-window", "-h", "-t", session, "-c", str(project)],
        ["tmux", "send-keys", "-t", f"{session}:0.1", status_cmd, "Enter"],
        ["tmux", "send-keys", "-t", f"{session}:0.0", loop_cmd, "Enter"],
        ["tmux", "select-pane", "-t", f"{session}:0.0"],
        ["tmux", "rename-window", "-t", f"{session}:0", "Cralph: Loop | Monitor"],
    ]
    for step in steps:
        result = subprocess.run(step, capture_output=True, text=True)
        if result.returncode != 0:
            logger.error("tmux command failed (%s): %s", " ".join(step[:2]), result.stderr.strip())
            return EXIT_CONFIG_ERROR
    logger.info("Use Ctrl+B then D to detach; 'tmux attach -t %s' to reattach", session)
    return subprocess.run(["tmux", "attach-session", "-t", session]).returncode


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Cralph: autonomous coding-agent loop with rate limiting and stagnation detection",
        epilog="Run from a project directory containing PROMPT.md.",
    )
    parser.add_argument("--project", default=".", help="Project directory path")
    parser.add_argument("--config", default=None, help="Path to config.json (default: .cralph/config.json)")
    parser.add_argument("-c", "--calls", type=int, default=None, help="Max calls per hour")
    parser.add_argument("-p", "--prompt", default=None, help="Prompt file (default: PROMPT.md)")
    parser.add_argument("-s", "--status", action="store_true", help="Show current status and exit")
    parser.add_argument("-m", "--monitor", action="store_true", help="Run inside tmux with a live status pane")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show detailed progress during execution")
    parser.add_argument("-o", "--show-output", action="store_true", help="Stream agent output to the terminal")
    parser.add_argument("-t", "--timeout", type=int, default=None, help="Agent execution timeout in minutes (1-120)")
    parser.add_argument("--cmd", default=None, help="Override the agent command")
    parser.add_argument("--max-loops", type=int, default=None, help="Stop after this many loops")
    parser.add_argument("--reset-circuit", action="store_true", help="Reset circuit breaker to CLOSED state")
    parser.add_argument("--circuit-status", action="store_true", help="Show circuit breaker status and exit")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    return parser


def apply_overrides(config: CralphConfig, args: argparse.Namespace) -> Result[CralphConfig]:
    """Apply CLI flags on top of the file config, validating bounded values."""
    if args.timeout is not None:
        if not 1 <= args.timeout <= 120:
            return Result.fail(
                "Timeout must be a positive integer between 1 and 120 minutes", "BAD_TIMEOUT"
            )
        config.execution.timeout_minutes = args.timeout
    if args.calls is not None:
        if args.calls < 1:
            return Result.fail("Max calls per hour must be a positive integer", "BAD_CALLS")
        config.rate_limit.max_calls_per_hour = args.calls
    if args.max_loops is not None:
        if args.max_loops < 1:
            return Result.fail("Max loops must be a positive integer", "BAD_MAX_LOOPS")
        config.execution.max_loops = args.max_loops
    if args.cmd is not None:
        if not args.cmd.strip():
            return Result.fail("--cmd requires a command string", "BAD_COMMAND")
        config.execution.command = args.cmd
    if args.prompt is not None:
        config.paths.prompt_file = args.prompt
    if args.verbose:
        config.execution.verbose_progress = True
    if args.show_output:
        config.execution.show_output = True
    return Result.ok(config)


def write_config_error_status(
    project_path: Path, config: Optional[CralphConfig], error_code: str
) -> None:
    """Leave a final status record when the CLI flags or config file are rejected."""
    if not project_path.is_dir():
        return
    config = config or CralphConfig()

    def _resolve(relative: str) -> Path:
        path = Path(relative)
        return path if path.is_absolute() else project_path / path

    calls_made = RateLimiter(
        StateStore(project_path, config.paths.state_dir),
        config.rate_limit.max_calls_per_hour,
    ).calls_made
    StatusReporter(
        _resolve(config.paths.status_file),
        _resolve(config.paths.progress_file),
        config.rate_limit.max_calls_per_hour,
    ).update_status(0, calls_made, "config_error", "error", error_code)


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)
    project_path = Path(args.project).resolve()

    config_path = args.config or (project_path / ".cralph" / "config.json")
    config_result = load_config(config_path)
    if not config_result.success or config_result.data is None:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
        logger.error("Config error: %s", config_result.error)
        write_config_error_status(project_path, None, config_result.error_code or "config_error")
        sys.exit(EXIT_CONFIG_ERROR)
    overrides = apply_overrides(config_result.data, args)
    if not overrides.success or overrides.data is None:
        print(f"Error: {overrides.error}", file=sys.stderr)
        write_config_error_status(
            project_path, config_result.data, overrides.error_code or "config_error"
        )
        sys.exit(EXIT_CONFIG_ERROR)
    config = overrides.data

    if args.status:
        status = StatusReporter(
            project_path / config.paths.status_file,
            project_path / config.paths.progress_file,
            config.rate_limit.max_calls_per_hour,
        ).read_status()
        if status is None:
            print("No status file found. Cralph may not be running.")
        else:
            print("Current Status:")
            print(json.dumps(status, indent=2))
        sys.exit(EXIT_COMPLETE)

    configure_logging(
        args.verbose,
        args.json_log,
        project_path / config.paths.log_dir / "cralph.log",
        config.security.log_redact_patterns,
    )

    if args.reset_circuit or args.circuit_status:
        breaker = CircuitBreaker(
            StateStore(project_path, config.paths.state_dir), config.circuit_breaker
        )
        if args.reset_circuit:
            breaker.reset("Manual reset via command line")
        for line in breaker.format_status():
            print(line)
        sys.exit(EXIT_COMPLETE)

    if args.monitor:
        if not check_tmux_available():
            sys.exit(EXIT_CONFIG_ERROR)
        sys.exit(setup_tmux_session(argv, project_path))

    driver = LoopDriver(project_path=project_path, config=config)
    sys.exit(driver.run())


if __name__ == "__main__":
    main()

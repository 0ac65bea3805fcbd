"""Shared test helpers for the Cralph loop test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(canned agent outputs, subprocess mock builders) used across multiple test files.
"""

import io
from unittest.mock import MagicMock


# --- Canned agent outputs ---

def build_status_block(status: str = "COMPLETE", exit_signal: str = "true") -> str:
    """Structured status block an agent appends to its reply."""
    return (
        "---CRALPH_STATUS---\n"
        f"STATUS: {status}\n"
        f"EXIT_SIGNAL: {exit_signal}\n"
    )


WORKING_OUTPUT = (
    "Implementing the parser module\n"
    "Creating src/parser.py with the tokenize function\n"
    "Summary: implemented tokenizer and wired it into the CLI\n"
)

TEST_ONLY_OUTPUT = (
    "Running tests\n"
    "pytest -q\n"
    "12 passed in 0.4s\n"
)

DONE_OUTPUT = "All tasks finished.\n" + build_status_block()

QUOTA_OUTPUT = (
    "Working on the task...\n"
    "You've hit your usage limit reached for this period, try back later\n"
)


# --- Subprocess mock helpers ---

def mock_git_result(files: list[str] | None = None, returncode: int = 0) -> MagicMock:
    """Build a mock subprocess result for git diff --name-only / git ls-files."""
    stdout = "".join(f"{name}\n" for name in (files or []))
    return MagicMock(returncode=returncode, stdout=stdout, stderr="")


def make_git_dispatcher(changed_per_call: list[int] | None = None, default: int = 0):
    """Create a subprocess.run side_effect for change counting.

    Each `git diff` call pops the next entry of changed_per_call and reports
    that many changed files; `git ls-files` reports no untracked files.
    """
    counts = list(changed_per_call or [])

    def side_effect(*args, **kwargs):
        cmd = args[0] if args else kwargs.get("args", [])
        if isinstance(cmd, list) and cmd[:2] == ["git", "diff"]:
            n = counts.pop(0) if counts else default
            return mock_git_result([f"src/file_{i}.py" for i in range(n)])
        if isinstance(cmd, list) and cmd[:2] == ["git", "ls-files"]:
            return mock_git_result([])
        return MagicMock(returncode=0, stdout="", stderr="")

    return side_effect


class MockPopen:
    """Mock subprocess.Popen for the agent command.

    Writes the canned output into the file handle passed as stdout, or
    exposes it as a readable pipe when stdout=PIPE.
    """

    def __init__(self, output: str, returncode: int = 0, stdout=None) -> None:
        self.returncode = returncode
        self.pid = 99999
        self.stderr = io.StringIO("")
        if stdout is not None and hasattr(stdout, "write"):
            stdout.write(output)
            stdout.flush()
            self.stdout = None
        else:
            self.stdout = io.StringIO(output)

    def wait(self, timeout: float | None = None) -> int:
        return self.returncode

    def poll(self) -> int:
        return self.returncode

    def kill(self) -> None:
        pass


def make_popen_dispatcher(
    outputs: list[str] | None = None,
    returncodes: list[int] | None = None,
    side_effect: Exception | None = None,
):
    """Create a side_effect for subprocess.Popen mock.

    Each call consumes the next output/returncode; the last entry repeats.
    """
    outputs = list(outputs or [""])
    returncodes = list(returncodes or [0])
    calls = {"n": 0}

    def factory(*args, **kwargs):
        if side_effect is not None:
            raise side_effect
        i = calls["n"]
        calls["n"] += 1
        output = outputs[min(i, len(outputs) - 1)]
        rc = returncodes[min(i, len(returncodes) - 1)]
        return MockPopen(output, rc, stdout=kwargs.get("stdout"))

    factory.calls = calls
    return factory

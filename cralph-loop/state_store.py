"""Persistent on-disk state for the Cralph loop.

Every component that must survive a restart (rate budget, circuit breaker,
exit-signal window, last analysis) gets a StateStore handle and reads/writes
its own JSON file under the project's state directory (.cralph/ by default).
Unreadable files are never fatal: they are reset to the model's defaults.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from config import Result

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def write_model(path: Path, model: BaseModel) -> Result[None]:
    """Overwrite a JSON file with a serialized model."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(model.model_dump_json(indent=2), encoding="utf-8")
        return Result.ok(None)
    except OSError as e:
        return Result.fail(f"Write failed for {path}: {e}", "SAVE_ERROR")


class StateStore:
    """Typed JSON state files rooted at <project>/<state_dir>."""

    def __init__(self, project_path: str | Path, state_dir: str = ".cralph") -> None:
        self.project_path = Path(project_path)
        self.state_dir = self.project_path / state_dir

    def path(self, name: str) -> Path:
        return self.state_dir / name

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def load(self, name: str, model: type[M]) -> M:
        """Load a model from disk, reinitializing the file if it is missing or corrupt."""
        path = self.path(name)
        if not path.exists():
            return model()

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return model.model_validate(raw)
        except (OSError, ValueError) as e:
            # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
            logger.warning("Corrupt state file %s (%s), reinitializing", path, e)
            default = model()
            self.save(name, default)
            return default

    def save(self, name: str, model: BaseModel) -> Result[None]:
        """Persist a model, logging (not raising) on failure."""
        result = write_model(self.path(name), model)
        if not result.success:
            logger.warning("State save failed: %s", result.error)
        return result

    def load_list(self, name: str) -> list[dict[str, Any]]:
        """Load a JSON array file (history logs). Corrupt or non-list content resets to []."""
        path = self.path(name)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Corrupt history file %s (%s), reinitializing", path, e)
            self._write_list(name, [])
            return []
        if not isinstance(data, list):
            logger.warning("History file %s is not a list, reinitializing", path)
            self._write_list(name, [])
            return []
        return data

    def ensure_list(self, name: str) -> None:
        """Create an empty JSON array file, or repair a corrupt one."""
        if self.exists(name):
            self.load_list(name)
        else:
            self._write_list(name, [])

    def append(self, name: str, entry: BaseModel) -> Result[None]:
        """Append one record to a JSON array file."""
        entries = self.load_list(name)
        entries.append(entry.model_dump(mode="json"))
        return self._write_list(name, entries)

    def _write_list(self, name: str, entries: list[dict[str, Any]]) -> Result[None]:
        path = self.path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
            return Result.ok(None)
        except OSError as e:
            logger.warning("History save failed for %s: %s", path, e)
            return Result.fail(f"History save failed: {e}", "SAVE_ERROR")

"""JSON file primitives and the on-disk layout of learning state.

Every store in the learning core is a whole-file JSON document: read it,
mutate in memory, write it back atomically (temp file + rename). Missing or
corrupted files read as ``None`` so callers fall back to an empty default.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from hindsight.core.constants import JSON_INDENT
from hindsight.core.logging import get_logger

_logger = get_logger("storage")

ModelT = TypeVar("ModelT", bound=BaseModel)


def ensure_dir(path: Path) -> Path:
    """Create ``path`` and its parents if needed; return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def read_json_file(path: Path) -> Any | None:
    """Read a JSON document.

    Args:
        path: File to read.

    Returns:
        The decoded document, or None when the file is missing, unreadable
        or not valid JSON.
    """
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        _logger.warning("storage.read_failed", path=str(path), error=str(e))
        return None


def write_json_file(path: Path, data: Any) -> None:
    """Atomically write ``data`` as indented JSON with a trailing newline.

    The parent directory is created when missing. A crash mid-write leaves
    the previous file intact.
    """
    ensure_dir(path.parent)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=JSON_INDENT, default=str)
            f.write("\n")
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def load_model(path: Path, model: type[ModelT], default: Callable[[], ModelT]) -> ModelT:
    """Read ``path`` into a pydantic model, falling back to ``default()``.

    Invalid documents are logged and replaced by the default rather than
    raised, so a damaged store never blocks learning.
    """
    data = read_json_file(path)
    if data is None:
        return default()
    try:
        return model.model_validate(data)
    except ValidationError as e:
        _logger.warning(
            "storage.invalid_document",
            path=str(path),
            model=model.__name__,
            errors=e.error_count(),
        )
        return default()


def save_model(path: Path, value: BaseModel) -> None:
    """Atomically persist a pydantic model as JSON."""
    write_json_file(path, value.model_dump(mode="json"))


@dataclass(frozen=True)
class LearningPaths:
    """Locations of every learning store under one data directory."""

    root: Path

    @property
    def tool_history(self) -> Path:
        return self.root / "tool-history.json"

    @property
    def grpo_history(self) -> Path:
        return self.root / "grpo-history.json"

    @property
    def experiences(self) -> Path:
        return self.root / "daily-experiences.json"

    @property
    def learning_log(self) -> Path:
        return self.root / "learning-log.json"

    @property
    def patterns_dir(self) -> Path:
        return self.root / "patterns"

    def pattern_file(self, pattern_type: str) -> Path:
        """Per-type pattern file, e.g. ``patterns/tool-patterns.json``."""
        return self.patterns_dir / f"{pattern_type}-patterns.json"

    @property
    def system1_patterns(self) -> Path:
        return self.root / "system1-patterns.json"

    @property
    def transfer_log(self) -> Path:
        return self.root / "transfer-log.json"

    @property
    def hotswap_lock(self) -> Path:
        return self.root / ".hotswap.lock"

    @property
    def evaluations(self) -> Path:
        return self.root / "evaluations.json"

    @property
    def memory_dir(self) -> Path:
        return self.root / "memory"

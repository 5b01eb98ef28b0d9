"""Checkpoint persistence for stateful agentic loops."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from agentic_workflow.errors import (
    ChecksumMismatchError,
    CorruptStateError,
    LoopStateError,
    NoSavedStateError,
)

logger = logging.getLogger(__name__)

MAX_BACKUPS = 3
STATE_SUFFIX = ".json"


class LoopStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class LoopIteration(BaseModel):
    index: int
    output: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LoopState(BaseModel):
    """Serialized snapshot of a loop, written at checkpoints.

    Holds everything needed to resume: counters, the previous output, the
    retained history and the variable store as it was at the checkpoint.
    """

    loop_name: str
    iteration: int = 0
    max_iterations: int = 0
    start_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_update_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    previous_output: str = ""
    history: list[LoopIteration] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    status: LoopStatus = LoopStatus.RUNNING
    exit_condition: str = ""
    exit_pattern: str = ""
    workflow_file: str = ""
    workflow_checksum: str = ""


def compute_workflow_checksum(path: Path) -> str:
    """Return the SHA-256 hex digest of the workflow file's bytes."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError as e:
        raise LoopStateError(f"failed to read workflow file {path}: {e}") from e


def validate_workflow_checksum(state: LoopState) -> None:
    """Raise ``ChecksumMismatchError`` if the workflow changed since the checkpoint.

    States saved without a workflow file (inline runs) are always accepted.
    """
    if not state.workflow_file or not state.workflow_checksum:
        return
    actual = compute_workflow_checksum(Path(state.workflow_file))
    if actual != state.workflow_checksum:
        raise ChecksumMismatchError(state.workflow_file, state.workflow_checksum, actual)


def _safe_name(loop_name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", loop_name) or "loop"


class LoopStateManager:
    """Stores one JSON file per loop name plus up to three numbered backups.

    Args:
        state_dir: Directory holding the state files. Created on first save.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    def state_file_path(self, loop_name: str) -> Path:
        return self.state_dir / f"{_safe_name(loop_name)}{STATE_SUFFIX}"

    def _backup_path(self, loop_name: str, slot: int) -> Path:
        return self.state_dir / f"{_safe_name(loop_name)}{STATE_SUFFIX}.{slot}"

    def save_state(self, state: LoopState) -> None:
        """Rotate backups, then atomically write ``state``.

        Args:
            state: Snapshot to persist. ``last_update_time`` is refreshed.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.state_file_path(state.loop_name)
        state.last_update_time = datetime.now(UTC)

        try:
            if path.exists():
                self._rotate_backups(state.loop_name, path)

            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(state.model_dump_json(indent=2) + "\n", encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise LoopStateError(f"failed to save state for loop '{state.loop_name}': {e}") from e

        logger.debug(
            f"Saved loop state to {path}",
            extra={"loop": state.loop_name, "iteration": state.iteration, "status": state.status.value},
        )

    def _rotate_backups(self, loop_name: str, path: Path) -> None:
        oldest = self._backup_path(loop_name, MAX_BACKUPS)
        oldest.unlink(missing_ok=True)
        for slot in range(MAX_BACKUPS - 1, 0, -1):
            src = self._backup_path(loop_name, slot)
            if src.exists():
                os.replace(src, self._backup_path(loop_name, slot + 1))
        shutil.copy2(path, self._backup_path(loop_name, 1))

    def load_state(self, loop_name: str) -> LoopState:
        path = self.state_file_path(loop_name)
        try:
            raw = path.read_bytes()
        except FileNotFoundError as e:
            raise NoSavedStateError(loop_name) from e
        except OSError as e:
            raise LoopStateError(f"failed to read state file {path}: {e}") from e

        try:
            return LoopState.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptStateError(loop_name, str(e)) from e

    def load_backup(self, loop_name: str, slot: int) -> LoopState:
        path = self._backup_path(loop_name, slot)
        try:
            return LoopState.model_validate_json(path.read_bytes())
        except FileNotFoundError as e:
            raise NoSavedStateError(loop_name) from e
        except OSError as e:
            raise LoopStateError(f"failed to read backup file {path}: {e}") from e
        except ValidationError as e:
            raise CorruptStateError(loop_name, str(e)) from e

    def delete_state(self, loop_name: str) -> None:
        paths = [self.state_file_path(loop_name)]
        paths.extend(self._backup_path(loop_name, slot) for slot in range(1, MAX_BACKUPS + 1))
        for path in paths:
            path.unlink(missing_ok=True)
        logger.info(f"Deleted state for loop {loop_name}", extra={"loop": loop_name})

    def list_states(self) -> list[LoopState]:
        """Return every readable saved state, most recently updated first."""
        if not self.state_dir.is_dir():
            return []

        states: list[LoopState] = []
        for path in self.state_dir.glob(f"*{STATE_SUFFIX}"):
            try:
                states.append(LoopState.model_validate_json(path.read_bytes()))
            except (OSError, ValidationError) as e:
                logger.warning(f"Skipping unreadable state file {path}: {e}")
        states.sort(key=lambda s: s.last_update_time, reverse=True)
        return states


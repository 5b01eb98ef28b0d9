"""Unit tests for loop checkpoint persistence."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agentic_workflow.errors import ChecksumMismatchError, CorruptStateError, NoSavedStateError
from agentic_workflow.workflow.loop_state import (
    LoopIteration,
    LoopState,
    LoopStateManager,
    LoopStatus,
    compute_workflow_checksum,
    validate_workflow_checksum,
)


def test_save_and_load_round_trip(temp_state_dir: Path) -> None:
    manager = LoopStateManager(temp_state_dir)
    state = LoopState(
        loop_name="writer",
        iteration=3,
        max_iterations=10,
        previous_output="third draft",
        history=[LoopIteration(index=3, output="third draft")],
        variables={"TOPIC": "bees"},
        status=LoopStatus.PAUSED,
        exit_condition="pattern_match",
        exit_pattern="READY",
    )

    manager.save_state(state)
    loaded = manager.load_state("writer")

    assert loaded.iteration == 3
    assert loaded.previous_output == "third draft"
    assert loaded.history[0].output == "third draft"
    assert loaded.variables == {"TOPIC": "bees"}
    assert loaded.status == LoopStatus.PAUSED
    assert manager.state_file_path("writer").name == "writer.json"
    assert not list(temp_state_dir.glob("*.tmp"))


def test_save_rotates_three_backups(temp_state_dir: Path) -> None:
    manager = LoopStateManager(temp_state_dir)
    for i in range(1, 5):
        manager.save_state(LoopState(loop_name="rot", iteration=i))

    assert manager.load_state("rot").iteration == 4
    assert manager.load_backup("rot", 1).iteration == 3
    assert manager.load_backup("rot", 2).iteration == 2
    assert manager.load_backup("rot", 3).iteration == 1
    assert sorted(p.name for p in temp_state_dir.iterdir()) == [
        "rot.json",
        "rot.json.1",
        "rot.json.2",
        "rot.json.3",
    ]


def test_oldest_backup_is_dropped(temp_state_dir: Path) -> None:
    manager = LoopStateManager(temp_state_dir)
    for i in range(1, 7):
        manager.save_state(LoopState(loop_name="rot", iteration=i))

    assert manager.load_backup("rot", 3).iteration == 3
    assert not (temp_state_dir / "rot.json.4").exists()


def test_missing_and_corrupt_state_are_distinguished(temp_state_dir: Path) -> None:
    manager = LoopStateManager(temp_state_dir)

    with pytest.raises(NoSavedStateError, match="no saved state"):
        manager.load_state("ghost")

    temp_state_dir.mkdir(parents=True, exist_ok=True)
    manager.state_file_path("broken").write_text("{not json", encoding="utf-8")
    with pytest.raises(CorruptStateError, match="may be corrupted"):
        manager.load_state("broken")


def test_undecodable_state_file_is_reported_as_corrupt(temp_state_dir: Path) -> None:
    manager = LoopStateManager(temp_state_dir)
    temp_state_dir.mkdir(parents=True, exist_ok=True)
    manager.state_file_path("binary").write_bytes(b"\xff\xfe{garbage")
    manager.save_state(LoopState(loop_name="fine"))
    manager.save_state(LoopState(loop_name="fine"))
    (temp_state_dir / "fine.json.1").write_bytes(b"\xff\xfe{garbage")

    with pytest.raises(CorruptStateError):
        manager.load_state("binary")
    with pytest.raises(CorruptStateError):
        manager.load_backup("fine", 1)
    assert [s.loop_name for s in manager.list_states()] == ["fine"]


def test_delete_removes_state_and_backups(temp_state_dir: Path) -> None:
    manager = LoopStateManager(temp_state_dir)
    manager.save_state(LoopState(loop_name="gone"))
    manager.save_state(LoopState(loop_name="gone"))

    manager.delete_state("gone")
    manager.delete_state("never-existed")

    assert list(temp_state_dir.iterdir()) == []


def test_list_states_newest_first_and_skips_corrupt(temp_state_dir: Path) -> None:
    manager = LoopStateManager(temp_state_dir)
    manager.save_state(LoopState(loop_name="old"))
    manager.save_state(LoopState(loop_name="new"))
    old = manager.load_state("old")
    old.last_update_time = datetime.now(UTC) - timedelta(hours=1)
    manager.state_file_path("old").write_text(old.model_dump_json(), encoding="utf-8")
    manager.state_file_path("junk").write_text("[]", encoding="utf-8")

    names = [s.loop_name for s in manager.list_states()]

    assert names == ["new", "old"]


def test_list_states_without_directory(tmp_path: Path) -> None:
    assert LoopStateManager(tmp_path / "missing").list_states() == []


def test_loop_names_are_made_filesystem_safe(temp_state_dir: Path) -> None:
    manager = LoopStateManager(temp_state_dir)

    assert manager.state_file_path("a/b c").name == "a_b_c.json"


def test_workflow_checksum_detects_changes(tmp_path: Path) -> None:
    workflow = tmp_path / "wf.yaml"
    workflow.write_text("a: 1\n", encoding="utf-8")
    state = LoopState(
        loop_name="guarded",
        workflow_file=str(workflow),
        workflow_checksum=compute_workflow_checksum(workflow),
    )

    validate_workflow_checksum(state)

    workflow.write_text("a: 2\n", encoding="utf-8")
    with pytest.raises(ChecksumMismatchError, match="has changed"):
        validate_workflow_checksum(state)


def test_state_without_workflow_file_is_always_valid() -> None:
    validate_workflow_checksum(LoopState(loop_name="inline", workflow_checksum="abc"))

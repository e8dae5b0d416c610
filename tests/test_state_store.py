"""Tests for the scheduler state snapshot repository."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mission_scheduler.errors import StatePersistenceError
from mission_scheduler.models import SchedulerState
from mission_scheduler.state_store import SchedulerStateRepository


@pytest.fixture()
def repo(tmp_path: Path) -> SchedulerStateRepository:
	return SchedulerStateRepository(tmp_path / "state" / "scheduler-state.json")


class TestLoadState:
	def test_missing_file(self, repo: SchedulerStateRepository) -> None:
		assert repo.load_state() is None

	def test_empty_file(self, repo: SchedulerStateRepository) -> None:
		repo.path.parent.mkdir(parents=True)
		repo.path.write_text("  \n")
		assert repo.load_state() is None

	def test_malformed_json(self, repo: SchedulerStateRepository, caplog: pytest.LogCaptureFixture) -> None:
		repo.path.parent.mkdir(parents=True)
		repo.path.write_text("{not json")
		assert repo.load_state() is None
		assert "not valid JSON" in caplog.text

	def test_non_object(self, repo: SchedulerStateRepository) -> None:
		repo.path.parent.mkdir(parents=True)
		repo.path.write_text("[1, 2]")
		assert repo.load_state() is None

	def test_wrong_field_types(self, repo: SchedulerStateRepository) -> None:
		repo.path.parent.mkdir(parents=True)
		repo.path.write_text(json.dumps({"lastTickEvaluated": "many"}))
		assert repo.load_state() is None

	def test_partial_snapshot(self, repo: SchedulerStateRepository) -> None:
		repo.path.parent.mkdir(parents=True)
		repo.path.write_text(json.dumps({
			"lastTickStartedAt": "2025-01-01T00:00:00Z",
			"lastTickCompletedAt": None,
			"reason": "tick_complete",
			"lastTickEvaluated": 5,
			"lastTickLaunched": None,
			"queue": ["ignored"],
		}))

		state = repo.load_state()

		assert state is not None
		assert state.last_tick_started_at == "2025-01-01T00:00:00Z"
		assert state.last_tick_completed_at is None
		assert state.reason == "tick_complete"
		assert state.last_tick_evaluated == 5
		assert state.last_tick_launched == 0


class TestSaveState:
	def test_save_then_load(self, repo: SchedulerStateRepository) -> None:
		state = SchedulerState(
			last_tick_started_at="2025-01-01T00:00:00.000Z",
			last_tick_completed_at="2025-01-01T00:00:00.250Z",
			last_tick_duration_ms=250,
			last_tick_evaluated=3,
			last_tick_launched=1,
			last_persisted_at="2025-01-01T00:00:00.250Z",
			reason="tick_complete",
			running=True,
			interval_ms=30_000,
		)
		repo.save_state(state)

		assert repo.load_state() == state
		raw = json.loads(repo.path.read_text())
		assert raw["lastTickDurationMs"] == 250
		assert raw["intervalMs"] == 30_000
		assert "last_tick_evaluated" not in raw

	def test_overwrites_and_leaves_no_scratch_files(self, repo: SchedulerStateRepository) -> None:
		repo.save_state(SchedulerState(reason="started"))
		repo.save_state(SchedulerState(reason="stopped"))

		assert repo.load_state().reason == "stopped"
		assert [p.name for p in repo.path.parent.iterdir()] == [repo.path.name]

	def test_unwritable_location(self, tmp_path: Path) -> None:
		blocker = tmp_path / "blocker"
		blocker.write_text("not a directory")
		repo = SchedulerStateRepository(blocker / "scheduler-state.json")

		with pytest.raises(StatePersistenceError):
			repo.save_state(SchedulerState(reason="tick_complete"))

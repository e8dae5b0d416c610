"""Shared pytest fixtures and factory functions for mission-scheduler tests."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from mission_scheduler.clock import parse_instant, to_iso
from mission_scheduler.controller import MissionController
from mission_scheduler.models import IntervalSchedule, MissionRecord, MissionStatus
from mission_scheduler.store import MissionStore

T0 = parse_instant("2025-01-01T00:00:00Z")


class ManualClock:
	"""Deterministic clock in epoch milliseconds."""

	def __init__(self, now: int = T0) -> None:
		self.now = now

	def __call__(self) -> int:
		return self.now

	def advance(self, ms: int) -> None:
		self.now += ms


class RecordingTelemetry:
	"""Collects (event, payload) pairs in emission order."""

	def __init__(self) -> None:
		self.events: list[tuple[str, dict[str, Any]]] = []

	def emit(self, event: str, payload: dict[str, Any]) -> None:
		self.events.append((event, dict(payload)))

	def named(self, event: str) -> list[dict[str, Any]]:
		return [payload for name, payload in self.events if name == event]

	def reasons(self) -> list[str]:
		return [payload["reason"] for payload in self.named("scheduler_state")]


class RecordingSink:
	def __init__(self) -> None:
		self.messages: list[dict[str, Any]] = []

	def publish(self, message: dict[str, Any]) -> None:
		self.messages.append(message)


@pytest.fixture()
def clock() -> ManualClock:
	return ManualClock()


@pytest.fixture()
def telemetry() -> RecordingTelemetry:
	return RecordingTelemetry()


@pytest.fixture()
def store() -> MissionStore:
	"""In-memory MissionStore with schema initialized."""
	s = MissionStore(":memory:")
	yield s
	s.close()


@pytest.fixture()
def controller(store: MissionStore, clock: ManualClock) -> MissionController:
	return MissionController(store, clock=clock)


@pytest.fixture()
def templates_dir(tmp_path: Path) -> Path:
	path = tmp_path / "templates"
	path.mkdir()
	return path


def make_mission(**overrides: Any) -> MissionRecord:
	"""Create a due idle MissionRecord, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "mission-1",
		"name": "Mission one",
		"schedule": IntervalSchedule(interval_minutes=60),
		"status": MissionStatus.IDLE,
		"enable": True,
		"priority": 0,
		"next_run_at": "2025-01-01T00:00:00Z",
	}
	defaults.update(overrides)
	return MissionRecord(**defaults)


def make_controller(*missions: MissionRecord) -> MagicMock:
	"""Mock controller over a fixed set of missions.

	mark_running/mark_result return updated copies but never change what
	``list`` reports.
	"""
	by_id = {m.id: m for m in missions}

	def mark_running(mission_id: str, started_at: int | None = None) -> MissionRecord:
		return replace(by_id[mission_id], status=MissionStatus.RUNNING, last_run_at=to_iso(started_at or T0))

	def mark_result(mission_id: str, **kwargs: Any) -> MissionRecord:
		status = MissionStatus.IDLE if kwargs.get("success") else MissionStatus.FAILED
		return replace(by_id[mission_id], status=status, last_run_error=kwargs.get("error"))

	ctrl = MagicMock()
	ctrl.list = AsyncMock(return_value=list(missions))
	ctrl.get = AsyncMock(side_effect=lambda mission_id: by_id.get(mission_id))
	ctrl.mark_running = AsyncMock(side_effect=mark_running)
	ctrl.mark_result = AsyncMock(side_effect=mark_result)
	return ctrl


def make_executor(result: Any = None, **kwargs: Any) -> MagicMock:
	executor = MagicMock()
	executor.execute = AsyncMock(return_value=result, **kwargs)
	return executor


def write_template(directory: Path, filename: str, text: str) -> Path:
	path = directory / filename
	path.write_text(text, encoding="utf-8")
	return path

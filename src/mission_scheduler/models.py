"""Data models for mission records, templates, runs, and scheduler state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from croniter import croniter
from pydantic import BaseModel, field_validator
from pydantic.alias_generators import to_camel

from mission_scheduler.errors import ScheduleValidationError


class MissionStatus(str, Enum):
	"""Lifecycle status of a mission record."""

	IDLE = "idle"
	QUEUED = "queued"
	RUNNING = "running"
	FAILED = "failed"
	DISABLED = "disabled"


# -- Schedules --


@dataclass(frozen=True)
class IntervalSchedule:
	"""Fire every ``interval_minutes`` after the previous run finished."""

	interval_minutes: int
	timezone: str | None = None
	type: Literal["interval"] = field(default="interval", init=False)

	def __post_init__(self) -> None:
		if isinstance(self.interval_minutes, bool) or not isinstance(self.interval_minutes, int):
			raise ScheduleValidationError("intervalMinutes must be an integer")
		if self.interval_minutes <= 0:
			raise ScheduleValidationError("intervalMinutes must be a positive number")

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {"type": self.type, "intervalMinutes": self.interval_minutes}
		if self.timezone:
			data["timezone"] = self.timezone
		return data


@dataclass(frozen=True)
class CronSchedule:
	"""Fire on a cron expression, evaluated in ``timezone`` (UTC when unset)."""

	cron: str
	timezone: str | None = None
	type: Literal["cron"] = field(default="cron", init=False)

	def __post_init__(self) -> None:
		if not isinstance(self.cron, str) or not self.cron.strip():
			raise ScheduleValidationError("cron expression must be a non-empty string")
		if not croniter.is_valid(self.cron):
			raise ScheduleValidationError(f"Invalid cron expression '{self.cron}'")

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {"type": self.type, "cron": self.cron}
		if self.timezone:
			data["timezone"] = self.timezone
		return data


Schedule = Union[IntervalSchedule, CronSchedule]


# -- Missions --


@dataclass(frozen=True)
class MissionRecord:
	"""Canonical mission state. Only the controller produces new versions."""

	id: str
	name: str
	schedule: Schedule
	status: MissionStatus = MissionStatus.IDLE
	enable: bool = True
	priority: int = 0
	description: str | None = None
	next_run_at: str | None = None
	last_run_at: str | None = None
	last_run_finished_at: str | None = None
	last_run_error: str | None = None
	tags: tuple[str, ...] = ()
	payload: dict[str, Any] = field(default_factory=dict)
	created_at: str | None = None
	updated_at: str | None = None

	def __post_init__(self) -> None:
		if self.status == MissionStatus.RUNNING and not self.last_run_at:
			raise ValueError(f"Mission '{self.id}' is running but has no lastRunAt")

	@property
	def schedulable(self) -> bool:
		return self.enable and self.status != MissionStatus.DISABLED

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"name": self.name,
			"description": self.description,
			"status": self.status.value,
			"enable": self.enable,
			"priority": self.priority,
			"schedule": self.schedule.to_dict(),
			"nextRunAt": self.next_run_at,
			"lastRunAt": self.last_run_at,
			"lastRunFinishedAt": self.last_run_finished_at,
			"lastRunError": self.last_run_error,
			"tags": list(self.tags),
			"payload": dict(self.payload),
			"createdAt": self.created_at,
			"updatedAt": self.updated_at,
		}


@dataclass
class MissionDraft:
	"""A normalized mission definition that has not been persisted yet."""

	name: str
	schedule: Schedule
	description: str | None = None
	priority: int = 0
	tags: list[str] = field(default_factory=list)
	payload: dict[str, Any] = field(default_factory=dict)
	enable: bool = True

	def to_dict(self) -> dict[str, Any]:
		return {
			"name": self.name,
			"description": self.description,
			"schedule": self.schedule.to_dict(),
			"priority": self.priority,
			"tags": list(self.tags),
			"payload": dict(self.payload),
			"enable": self.enable,
		}


@dataclass
class MissionTemplate:
	"""Read-only mission definition loaded from a template file."""

	slug: str
	name: str
	schedule: Schedule
	description: str | None = None
	priority: int = 0
	tags: list[str] = field(default_factory=list)
	payload: dict[str, Any] | None = None
	enable: bool = True
	source_path: str = ""

	def to_dict(self) -> dict[str, Any]:
		return {
			"slug": self.slug,
			"name": self.name,
			"description": self.description,
			"schedule": self.schedule.to_dict(),
			"priority": self.priority,
			"tags": list(self.tags),
			"payload": dict(self.payload) if self.payload else None,
			"enable": self.enable,
			"sourcePath": self.source_path,
		}


# -- Runs --


@dataclass
class MissionRunContext:
	"""Per-invocation bookkeeping owned by the scheduler."""

	mission_id: str
	run_id: str
	forced: bool
	started_at: int
	ended_at: int | None = None
	success: bool | None = None
	error: str | None = None
	result: Any = None

	@property
	def duration_ms(self) -> int | None:
		if self.ended_at is None:
			return None
		return self.ended_at - self.started_at


@dataclass
class RunOutcome:
	"""Result envelope returned by run_mission."""

	success: bool = False
	skipped: bool = False
	reason: str | None = None
	error: str | None = None
	result: Any = None
	run_id: str | None = None
	mission: MissionRecord | None = None

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {"success": self.success}
		if self.skipped:
			data["skipped"] = True
			data["reason"] = self.reason
		if self.error is not None:
			data["error"] = self.error
		if self.result is not None:
			data["result"] = self.result
		if self.run_id is not None:
			data["runId"] = self.run_id
		if self.mission is not None:
			data["mission"] = self.mission.to_dict()
		return data


class ExecutorResultSchema(BaseModel, extra="ignore"):
	"""Pydantic schema for normalizing what an executor returns."""

	success: bool = True
	result: Any = None
	error: Any = None


# -- Scheduler state --


@dataclass
class SchedulerState:
	"""Tick-level scheduler metrics. Never carries run queues."""

	last_tick_started_at: str | None = None
	last_tick_completed_at: str | None = None
	last_tick_duration_ms: int | None = None
	last_tick_error: str | None = None
	last_tick_evaluated: int = 0
	last_tick_launched: int = 0
	last_persisted_at: str | None = None
	reason: str | None = None
	running: bool = False
	active_runs: int = 0
	interval_ms: int | None = None

	def to_dict(self) -> dict[str, Any]:
		return SchedulerStateSchema.model_validate(self, from_attributes=True).model_dump(by_alias=True)

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> SchedulerState:
		schema = SchedulerStateSchema.model_validate(data)
		return cls(**schema.model_dump())


class SchedulerStateSchema(
	BaseModel, extra="ignore", populate_by_name=True, alias_generator=to_camel,
):
	"""Wire form of SchedulerState (camelCase keys, unknown keys ignored)."""

	last_tick_started_at: str | None = None
	last_tick_completed_at: str | None = None
	last_tick_duration_ms: int | None = None
	last_tick_error: str | None = None
	last_tick_evaluated: int = 0
	last_tick_launched: int = 0
	last_persisted_at: str | None = None
	reason: str | None = None
	running: bool = False
	active_runs: int = 0
	interval_ms: int | None = None

	@field_validator("last_tick_evaluated", "last_tick_launched", "active_runs", mode="before")
	@classmethod
	def _null_count_is_zero(cls, value: Any) -> Any:
		return 0 if value is None else value

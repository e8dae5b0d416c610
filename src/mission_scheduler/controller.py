"""MissionController -- the single serialization point for mission record mutations."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from typing import Any
from uuid import uuid4

from mission_scheduler.clock import Clock, system_clock, to_iso
from mission_scheduler.errors import ConcurrentRunConflict, InvalidInputError, MissionNotFoundError
from mission_scheduler.models import MissionDraft, MissionRecord, MissionStatus, Schedule
from mission_scheduler.schedule import compute_next_run
from mission_scheduler.schema import normalize_draft, normalize_patch
from mission_scheduler.store import MissionStore

logger = logging.getLogger(__name__)

NextRunCalculator = Callable[[Schedule, int], "str | None"]

_RESCHEDULE_FIELDS = frozenset({"schedule", "enable", "status"})


def new_mission_id() -> str:
	return uuid4().hex[:12]


def stringify_error(error: Any) -> str:
	if error is None:
		return "Unknown error"
	if isinstance(error, str):
		return error
	if isinstance(error, BaseException):
		return str(error) or type(error).__name__
	try:
		return json.dumps(error)
	except (TypeError, ValueError):
		return str(error)


def _status_filter(status: str | Iterable[str] | None) -> set[MissionStatus] | None:
	if not status:
		return None
	values = [status] if isinstance(status, str) else list(status)
	wanted: set[MissionStatus] = set()
	for value in values:
		if not value:
			continue
		try:
			wanted.add(MissionStatus(str(value).strip().lower()))
		except ValueError:
			logger.debug("Ignoring unknown status filter %r", value)
	return wanted or None


class MissionController:
	"""Owns mission records. Every mutation runs under one asyncio.Lock.

	The scheduler only uses list/get/mark_running/mark_result; CLI and HTTP
	adapters use the rest.
	"""

	def __init__(
		self,
		store: MissionStore | None = None,
		*,
		clock: Clock = system_clock,
		next_run: NextRunCalculator = compute_next_run,
		id_factory: Callable[[], str] = new_mission_id,
	) -> None:
		self._store = store if store is not None else MissionStore()
		self._clock = clock
		self._next_run = next_run
		self._id_factory = id_factory
		self._lock = asyncio.Lock()

	@property
	def store(self) -> MissionStore:
		return self._store

	async def list(
		self,
		*,
		include_disabled: bool = False,
		status: str | Iterable[str] | None = None,
		tag: str | None = None,
	) -> list[MissionRecord]:
		"""Missions in insertion order.

		Unless ``include_disabled`` is set, missions with ``enable=False`` or
		status ``disabled`` are left out.
		"""
		statuses = _status_filter(status)
		wanted_tag = tag.strip().lower() if tag else None
		async with self._lock:
			missions = self._store.list_all()
		result = []
		for mission in missions:
			if not include_disabled and not mission.schedulable:
				continue
			if statuses is not None and mission.status not in statuses:
				continue
			if wanted_tag and wanted_tag not in mission.tags:
				continue
			result.append(mission)
		return result

	async def get(self, mission_id: str) -> MissionRecord | None:
		async with self._lock:
			return self._store.get(mission_id)

	async def create(
		self,
		draft: MissionDraft | Mapping[str, Any],
		mission_id: str | None = None,
	) -> MissionRecord:
		normalized = normalize_draft(draft)
		now = self._clock()
		async with self._lock:
			new_id = mission_id or self._id_factory()
			if self._store.exists(new_id):
				raise InvalidInputError(f"Mission '{new_id}' already exists")
			mission = MissionRecord(
				id=new_id,
				name=normalized.name,
				description=normalized.description,
				schedule=normalized.schedule,
				status=MissionStatus.IDLE if normalized.enable else MissionStatus.DISABLED,
				enable=normalized.enable,
				priority=normalized.priority,
				tags=tuple(normalized.tags),
				payload=dict(normalized.payload),
				created_at=to_iso(now),
				updated_at=to_iso(now),
			)
			mission = self._with_next_run(mission, now)
			self._store.save(mission)
		logger.info("Created mission %s (%s)", mission.id, mission.name)
		return mission

	async def update(self, mission_id: str, patch: Mapping[str, Any]) -> MissionRecord:
		"""Apply a partial update.

		Toggling ``enable`` resets status to idle/disabled. Changes to the
		schedule, ``enable`` or status recompute ``nextRunAt`` unless the patch
		sets ``nextRunAt`` explicitly.
		"""
		changes = normalize_patch(patch)
		now = self._clock()
		async with self._lock:
			existing = self._require(mission_id)
			if "enable" in changes and "status" not in changes:
				changes["status"] = MissionStatus.IDLE if changes["enable"] else MissionStatus.DISABLED
			if changes.get("status") == MissionStatus.RUNNING and not existing.last_run_at:
				raise InvalidInputError("Cannot mark a mission running without a lastRunAt")
			mission = replace(existing, updated_at=to_iso(now), **changes)
			if "next_run_at" not in changes and _RESCHEDULE_FIELDS.intersection(changes):
				mission = self._with_next_run(mission, now)
			self._store.save(mission)
		logger.info("Updated mission %s", mission.id)
		return mission

	async def remove(self, mission_id: str) -> MissionRecord:
		async with self._lock:
			mission = self._require(mission_id)
			self._store.delete(mission_id)
		logger.info("Removed mission %s", mission.id)
		return mission

	async def mark_running(self, mission_id: str, started_at: int | None = None) -> MissionRecord:
		"""Transition to running.

		Raises:
			MissionNotFoundError: unknown id.
			ConcurrentRunConflict: the mission is already running.
		"""
		started = self._clock() if started_at is None else started_at
		async with self._lock:
			mission = self._require(mission_id)
			if mission.status == MissionStatus.RUNNING:
				raise ConcurrentRunConflict(mission_id)
			updated = replace(
				mission,
				status=MissionStatus.RUNNING,
				last_run_at=to_iso(started),
				last_run_error=None,
				updated_at=to_iso(started),
			)
			self._store.save(updated)
		return updated

	async def mark_result(
		self,
		mission_id: str,
		*,
		success: bool,
		error: Any = None,
		result: Any = None,
		finished_at: int | None = None,
	) -> MissionRecord:
		"""Record a finished run and schedule the next one.

		``nextRunAt`` is recomputed from the schedule on failure too; there is
		no backoff. ``result`` is accepted for symmetry with the run envelope
		and not stored.
		"""
		finished = self._clock() if finished_at is None else finished_at
		async with self._lock:
			mission = self._require(mission_id)
			if success:
				status = MissionStatus.IDLE if mission.enable else MissionStatus.DISABLED
			else:
				status = MissionStatus.FAILED
			updated = replace(
				mission,
				status=status,
				last_run_finished_at=to_iso(finished),
				last_run_error=None if success else stringify_error(error),
				updated_at=to_iso(finished),
			)
			updated = self._with_next_run(updated, finished)
			self._store.save(updated)
		return updated

	def _require(self, mission_id: str) -> MissionRecord:
		mission = self._store.get(mission_id)
		if mission is None:
			raise MissionNotFoundError(mission_id)
		return mission

	def _with_next_run(self, mission: MissionRecord, baseline: int) -> MissionRecord:
		if not mission.schedulable:
			return replace(mission, next_run_at=None)
		return replace(mission, next_run_at=self._next_run(mission.schedule, baseline))

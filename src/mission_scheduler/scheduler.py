"""Mission scheduler loop -- evaluate due missions, launch them, record outcomes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Protocol

from mission_scheduler.clock import Clock, IdFactory, new_run_id, parse_instant, system_clock, to_iso
from mission_scheduler.errors import ConcurrentRunConflict, InvalidInputError, MissionNotFoundError
from mission_scheduler.executor import MissionExecutor, NoopExecutor, error_message, normalize_executor_result
from mission_scheduler.models import MissionRecord, MissionRunContext, MissionStatus, RunOutcome, SchedulerState
from mission_scheduler.state_store import SchedulerStateRepository
from mission_scheduler.telemetry import LogSink, MissionTelemetry

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 30_000

SKIP_ALREADY_RUNNING = "already_running"
SKIP_NOT_DUE = "not_due"
SKIP_DISABLED = "disabled"
SKIP_MAX_CONCURRENT = "max_concurrent"
SKIP_MARK_RUNNING_FAILED = "mark_running_failed"

RUN_CANCELLED = "cancelled"


class Telemetry(Protocol):
	def emit(self, event: str, payload: dict[str, Any]) -> None: ...


def is_mission_due(mission: MissionRecord, now_ms: int) -> bool:
	"""Due when not running and ``nextRunAt`` is at or before ``now_ms``."""
	if mission.status == MissionStatus.RUNNING:
		return False
	next_run = parse_instant(mission.next_run_at)
	if next_run is None:
		return False
	return next_run <= now_ms


def _launch_order(mission: MissionRecord) -> tuple[int, int]:
	return (-mission.priority, parse_instant(mission.next_run_at) or 0)


class MissionScheduler:
	"""Periodic tick loop over a MissionController.

	Each tick lists schedulable missions, launches the due ones in priority
	order and returns once every launch has been dispatched. Executor calls
	run as background tasks and finish on their own time. The scheduler
	never retries a failed run; the mission's schedule decides when it runs
	next.

	``start``/``stop`` must be called from a running event loop.
	"""

	def __init__(
		self,
		controller: Any,
		*,
		executor: MissionExecutor | None = None,
		telemetry: Telemetry | None = None,
		state_repository: SchedulerStateRepository | None = None,
		interval_ms: int = DEFAULT_INTERVAL_MS,
		max_concurrent: int | None = None,
		clock: Clock = system_clock,
		id_factory: IdFactory = new_run_id,
	) -> None:
		if controller is None:
			raise InvalidInputError("MissionScheduler requires a mission controller")
		if interval_ms <= 0:
			raise InvalidInputError("interval_ms must be a positive number of milliseconds")
		self._controller = controller
		self._executor: MissionExecutor = executor if executor is not None else NoopExecutor()
		self._telemetry: Telemetry = telemetry if telemetry is not None else MissionTelemetry([LogSink()], clock=clock)
		self._state_repository = state_repository
		self._interval_ms = interval_ms
		self._max_concurrent = max_concurrent or None
		self._clock = clock
		self._id_factory = id_factory

		self._state = SchedulerState(interval_ms=interval_ms)
		self._in_flight: dict[str, MissionRunContext] = {}
		self._run_tasks: set[asyncio.Task[RunOutcome]] = set()
		self._tick_task: asyncio.Task[None] | None = None
		self._loop_task: asyncio.Task[None] | None = None
		self._stopped_loop_task: asyncio.Task[None] | None = None
		self._stop_event: asyncio.Event | None = None
		self._restored = False
		self._restore_task: asyncio.Task[None] | None = None

		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			loop = None
		if loop is not None:
			self._restore_task = loop.create_task(self._restore())

	# -- Public contract --

	@property
	def interval_ms(self) -> int:
		return self._interval_ms

	@property
	def in_flight(self) -> frozenset[str]:
		return frozenset(self._in_flight)

	def is_running(self) -> bool:
		return self._loop_task is not None and not self._loop_task.done()

	@property
	def busy(self) -> bool:
		"""False once the loop has exited and every dispatched run has finished."""
		stopping = self._stopped_loop_task is not None and not self._stopped_loop_task.done()
		return self.is_running() or stopping or bool(self._run_tasks)

	def get_state(self) -> SchedulerState:
		"""Live tick metrics. A copy; mutating it has no effect."""
		return replace(self._state, running=self.is_running(), active_runs=len(self._in_flight))

	def set_executor(self, executor: MissionExecutor) -> None:
		if executor is None or not callable(getattr(executor, "execute", None)):
			raise InvalidInputError("set_executor expects an object with an execute() method")
		self._executor = executor

	def start(self) -> SchedulerState:
		"""Start the interval loop. A second call only re-announces state."""
		if self.is_running():
			logger.debug("Scheduler already running")
			self._publish_state("already_running", persist=False)
			return self.get_state()

		loop = asyncio.get_running_loop()
		if self._restore_task is None and not self._restored:
			self._restore_task = loop.create_task(self._restore())
		self._stop_event = asyncio.Event()
		self._loop_task = loop.create_task(self._run_loop(self._stop_event))
		logger.info("Mission scheduler started (interval %d ms)", self._interval_ms)
		self._publish_state("started")
		return self.get_state()

	def stop(self) -> SchedulerState:
		"""Stop the interval loop. In-flight runs are left to finish."""
		if not self.is_running():
			logger.debug("Scheduler not running")
			self._publish_state("not_running", persist=False)
			return self.get_state()

		if self._stop_event is not None:
			self._stop_event.set()
		self._stopped_loop_task = self._loop_task
		self._loop_task = None
		logger.info("Mission scheduler stopped (%d runs in flight)", len(self._in_flight))
		self._publish_state("stopped")
		return self.get_state()

	async def shutdown(self) -> SchedulerState:
		"""Stop the loop, wait for in-flight runs, persist a final snapshot."""
		await self.ensure_restored()
		if self.is_running():
			self.stop()
		if self._stopped_loop_task is not None:
			await self._stopped_loop_task
			self._stopped_loop_task = None
		await self.wait_idle()
		self._publish_state("shutdown")
		return self.get_state()

	async def trigger(self) -> SchedulerState:
		"""Run one tick now.

		A call made while a tick is in progress joins that tick instead of
		starting another one. Returns once the tick's launches are dispatched.
		"""
		await self.ensure_restored()
		if self._tick_task is not None and not self._tick_task.done():
			logger.debug("Tick already in progress; joining it")
		else:
			self._tick_task = asyncio.get_running_loop().create_task(self._tick())
		await asyncio.shield(self._tick_task)
		return self.get_state()

	async def run_mission(self, mission: MissionRecord, *, forced: bool = False) -> RunOutcome:
		"""Launch one mission and wait for its outcome.

		``forced`` bypasses the due and disabled checks. The duplicate-run and
		concurrency checks always apply.
		"""
		if mission is None or not getattr(mission, "id", None):
			raise InvalidInputError("run_mission expects a mission with an id")
		await self.ensure_restored()
		begun = await self._begin_run(mission, forced=forced)
		if isinstance(begun, RunOutcome):
			return begun
		context, running = begun
		return await asyncio.shield(self._dispatch(context, running))

	async def run_mission_by_id(self, mission_id: str, *, forced: bool = True) -> RunOutcome:
		mission = await self._controller.get(mission_id)
		if mission is None:
			raise MissionNotFoundError(mission_id)
		return await self.run_mission(mission, forced=forced)

	async def wait_idle(self) -> None:
		"""Wait until every dispatched run has finished."""
		while self._run_tasks:
			await asyncio.gather(*list(self._run_tasks), return_exceptions=True)

	# -- Loop and tick --

	async def _run_loop(self, stop_event: asyncio.Event) -> None:
		await self.ensure_restored()
		while not stop_event.is_set():
			try:
				await self.trigger()
			except Exception as exc:
				logger.exception("Scheduler tick crashed")
				self._emit("scheduler_error", {"message": str(exc) or type(exc).__name__})
			try:
				await asyncio.wait_for(stop_event.wait(), timeout=self._interval_ms / 1000)
			except asyncio.TimeoutError:
				pass

	async def _tick(self) -> None:
		started = self._clock()
		state = self._state
		state.last_tick_started_at = to_iso(started)
		state.last_tick_error = None
		self._publish_state("tick_start")

		evaluated = 0
		launched = 0
		try:
			missions = await self._controller.list(include_disabled=False)
			evaluated = len(missions)
			due = [m for m in missions if m.id not in self._in_flight and is_mission_due(m, started)]
			due.sort(key=_launch_order)
			for mission in due:
				begun = await self._begin_run(mission, forced=False)
				if isinstance(begun, RunOutcome):
					continue
				self._dispatch(*begun)
				launched += 1
		except Exception as exc:
			message = str(exc) or type(exc).__name__
			logger.error("Tick failed: %s", message)
			state.last_tick_error = message
			self._emit("scheduler_error", {"message": message})

		finished = self._clock()
		state.last_tick_completed_at = to_iso(finished)
		state.last_tick_duration_ms = finished - started
		state.last_tick_evaluated = evaluated
		state.last_tick_launched = launched
		self._publish_state("tick_complete")

	# -- Launch routine --

	def _skip(self, mission: MissionRecord, reason: str) -> RunOutcome:
		self._emit("mission_skipped", {"missionId": mission.id, "reason": reason})
		return RunOutcome(success=False, skipped=True, reason=reason, mission=mission)

	async def _begin_run(
		self, mission: MissionRecord, *, forced: bool,
	) -> RunOutcome | tuple[MissionRunContext, MissionRecord]:
		"""Checks, in-flight registration, ``mission_started`` and mark_running.

		Returns a skip outcome, or the run context and the running record.
		"""
		mission_id = mission.id
		if mission_id in self._in_flight:
			return self._skip(mission, SKIP_ALREADY_RUNNING)
		if not forced and not mission.schedulable:
			return self._skip(mission, SKIP_DISABLED)
		if not forced and not is_mission_due(mission, self._clock()):
			return self._skip(mission, SKIP_NOT_DUE)
		if self._max_concurrent is not None and len(self._in_flight) >= self._max_concurrent:
			return self._skip(mission, SKIP_MAX_CONCURRENT)

		context = MissionRunContext(
			mission_id=mission_id,
			run_id=self._id_factory(),
			forced=forced,
			started_at=self._clock(),
		)
		self._in_flight[mission_id] = context
		self._emit("mission_started", {
			"missionId": mission_id,
			"runId": context.run_id,
			"forced": forced,
			"startedAt": to_iso(context.started_at),
		})

		try:
			running = await self._controller.mark_running(mission_id, context.started_at)
		except ConcurrentRunConflict:
			self._in_flight.pop(mission_id, None)
			logger.info("Mission %s is already running; skipping", mission_id)
			return self._skip(mission, SKIP_ALREADY_RUNNING)
		except asyncio.CancelledError:
			self._in_flight.pop(mission_id, None)
			raise
		except Exception as exc:
			self._in_flight.pop(mission_id, None)
			logger.warning("Failed to mark mission %s running: %s", mission_id, exc)
			return self._skip(mission, SKIP_MARK_RUNNING_FAILED)
		return context, (running if running is not None else mission)

	def _dispatch(self, context: MissionRunContext, running: MissionRecord) -> asyncio.Task[RunOutcome]:
		task = asyncio.get_running_loop().create_task(self._finish_run(context, running))
		self._run_tasks.add(task)
		task.add_done_callback(self._run_tasks.discard)
		return task

	async def _finish_run(self, context: MissionRunContext, running: MissionRecord) -> RunOutcome:
		"""Execute, mark_result, emit completed/failed, then leave the in-flight set.

		A cancelled run is recorded as failed before the cancellation propagates,
		so the mission never stays ``running`` in the controller.
		"""
		mission_id = context.mission_id
		try:
			try:
				raw = await self._executor.execute(running, context)
				normalized = normalize_executor_result(raw)
				context.success = normalized.success
				context.result = normalized.result
				context.error = None if normalized.success else (error_message(normalized.error) or "Unknown error")
			except asyncio.CancelledError:
				logger.warning("Mission %s run %s cancelled", mission_id, context.run_id)
				context.success = False
				context.error = RUN_CANCELLED
				context.ended_at = self._clock()
				await asyncio.shield(self._record_result(context, running))
				raise
			except Exception as exc:
				logger.warning("Mission %s run %s raised: %s", mission_id, context.run_id, exc)
				context.success = False
				context.error = error_message(exc)
			context.ended_at = self._clock()
			record = await self._record_result(context, running)
			if context.success:
				return RunOutcome(success=True, result=context.result, run_id=context.run_id, mission=record)
			return RunOutcome(success=False, error=context.error, run_id=context.run_id, mission=record)
		except Exception as exc:
			message = str(exc) or type(exc).__name__
			logger.exception("Bookkeeping failed for mission %s", mission_id)
			self._emit("scheduler_error", {"message": message, "missionId": mission_id})
			return RunOutcome(success=False, error=message, run_id=context.run_id)
		finally:
			self._in_flight.pop(mission_id, None)

	async def _record_result(self, context: MissionRunContext, running: MissionRecord) -> MissionRecord:
		mission_id = context.mission_id
		record = running
		try:
			updated = await self._controller.mark_result(
				mission_id,
				success=context.success,
				error=context.error,
				result=context.result,
				finished_at=context.ended_at,
			)
			if updated is not None:
				record = updated
		except Exception as exc:
			logger.error("Failed to record result for mission %s: %s", mission_id, exc)
			self._emit("scheduler_error", {
				"message": str(exc) or type(exc).__name__,
				"missionId": mission_id,
				"runId": context.run_id,
			})

		finished = {
			"missionId": mission_id,
			"runId": context.run_id,
			"finishedAt": to_iso(context.ended_at),
			"durationMs": context.duration_ms,
		}
		if context.success:
			self._emit("mission_completed", {**finished, "result": context.result})
		else:
			self._emit("mission_failed", {**finished, "error": context.error})
		return record

	# -- State --

	async def ensure_restored(self) -> None:
		"""Wait for the persisted snapshot to be loaded (at most once)."""
		if self._restore_task is not None:
			await self._restore_task
		elif not self._restored:
			await self._restore()

	async def _restore(self) -> None:
		if self._restored:
			return
		self._restored = True
		if self._state_repository is None:
			return
		try:
			snapshot = self._state_repository.load_state()
		except Exception as exc:
			logger.warning("Failed to restore scheduler state: %s", exc)
			return
		if snapshot is None:
			return

		state = self._state
		state.last_tick_started_at = snapshot.last_tick_started_at
		state.last_tick_completed_at = snapshot.last_tick_completed_at
		state.last_tick_duration_ms = snapshot.last_tick_duration_ms
		state.last_tick_error = snapshot.last_tick_error
		state.last_tick_evaluated = snapshot.last_tick_evaluated
		state.last_tick_launched = snapshot.last_tick_launched
		state.last_persisted_at = snapshot.last_persisted_at
		logger.info("Restored scheduler state (last reason %s)", snapshot.reason)
		self._publish_state("restored", persist=False)

	def _publish_state(self, reason: str, *, persist: bool = True) -> SchedulerState:
		self._state.reason = reason
		if persist and self._state_repository is not None:
			previous = self._state.last_persisted_at
			self._state.last_persisted_at = to_iso(self._clock())
			try:
				self._state_repository.save_state(self.get_state())
			except Exception as exc:
				self._state.last_persisted_at = previous
				logger.warning("Failed to persist scheduler state (%s): %s", reason, exc)
				self._emit("scheduler_error", {"message": str(exc) or type(exc).__name__, "reason": reason})
		snapshot = self.get_state()
		self._emit("scheduler_state", snapshot.to_dict())
		return snapshot

	def _emit(self, event: str, payload: dict[str, Any]) -> None:
		try:
			self._telemetry.emit(event, payload)
		except Exception as exc:
			logger.warning("Telemetry emit %s failed: %s", event, exc)

"""Tests for MissionController record mutations."""

from __future__ import annotations

import pytest
from conftest import ManualClock

from mission_scheduler.controller import MissionController, stringify_error
from mission_scheduler.errors import (
	ConcurrentRunConflict,
	InvalidInputError,
	MissionNotFoundError,
	PayloadParseError,
	ScheduleValidationError,
)
from mission_scheduler.models import CronSchedule, IntervalSchedule, MissionDraft, MissionStatus


def _draft(**overrides) -> dict:
	data = {"name": "Digest", "schedule": {"intervalMinutes": 30}}
	data.update(overrides)
	return data


class TestCreate:
	@pytest.mark.asyncio
	async def test_create_computes_next_run(self, controller: MissionController) -> None:
		mission = await controller.create(_draft(tags="Ops, ops, Nightly", priority="3"), mission_id="m1")

		assert mission.id == "m1"
		assert mission.status == MissionStatus.IDLE
		assert mission.enable is True
		assert mission.priority == 3
		assert mission.tags == ("ops", "nightly")
		assert mission.next_run_at == "2025-01-01T00:30:00.000Z"
		assert mission.created_at == "2025-01-01T00:00:00.000Z"
		assert mission.updated_at == mission.created_at

	@pytest.mark.asyncio
	async def test_create_generates_id(self, controller: MissionController) -> None:
		mission = await controller.create(_draft())
		assert len(mission.id) == 12

	@pytest.mark.asyncio
	async def test_create_with_id_factory(self, store, clock: ManualClock) -> None:
		ctrl = MissionController(store, clock=clock, id_factory=lambda: "fixed")
		mission = await ctrl.create(_draft())
		assert mission.id == "fixed"

	@pytest.mark.asyncio
	async def test_create_disabled(self, controller: MissionController) -> None:
		mission = await controller.create(_draft(enable="false"))

		assert mission.status == MissionStatus.DISABLED
		assert mission.next_run_at is None

	@pytest.mark.asyncio
	async def test_create_from_draft_object(self, controller: MissionController) -> None:
		draft = MissionDraft(name="Weekly", schedule=CronSchedule(cron="0 9 * * 1"))
		mission = await controller.create(draft)

		# 2025-01-01 is a Wednesday
		assert mission.next_run_at == "2025-01-06T09:00:00.000Z"

	@pytest.mark.asyncio
	async def test_duplicate_id_rejected(self, controller: MissionController) -> None:
		await controller.create(_draft(), mission_id="m1")
		with pytest.raises(InvalidInputError, match="already exists"):
			await controller.create(_draft(), mission_id="m1")

	@pytest.mark.asyncio
	async def test_invalid_drafts(self, controller: MissionController) -> None:
		with pytest.raises(InvalidInputError):
			await controller.create(_draft(name=""))
		with pytest.raises(ScheduleValidationError):
			await controller.create(_draft(schedule={"intervalMinutes": 5, "cron": "* * * * *"}))
		with pytest.raises(PayloadParseError):
			await controller.create(_draft(payload="{nope"))
		with pytest.raises(InvalidInputError):
			await controller.create("not a mapping")


class TestList:
	@pytest.mark.asyncio
	async def test_insertion_order_and_disabled_filter(self, controller: MissionController) -> None:
		await controller.create(_draft(name="First"), mission_id="a")
		await controller.create(_draft(name="Second", enable=False), mission_id="b")
		await controller.create(_draft(name="Third"), mission_id="c")

		assert [m.id for m in await controller.list()] == ["a", "c"]
		assert [m.id for m in await controller.list(include_disabled=True)] == ["a", "b", "c"]

	@pytest.mark.asyncio
	async def test_order_survives_update(self, controller: MissionController) -> None:
		await controller.create(_draft(), mission_id="a")
		await controller.create(_draft(), mission_id="b")
		await controller.update("a", {"name": "Renamed"})

		assert [m.id for m in await controller.list()] == ["a", "b"]

	@pytest.mark.asyncio
	async def test_status_and_tag_filters(self, controller: MissionController) -> None:
		await controller.create(_draft(tags=["ops"]), mission_id="a")
		await controller.create(_draft(tags=["reports"]), mission_id="b")
		await controller.mark_running("b")

		running = await controller.list(status="running")
		assert [m.id for m in running] == ["b"]
		several = await controller.list(status=["idle", "running", "bogus"])
		assert [m.id for m in several] == ["a", "b"]
		tagged = await controller.list(tag="OPS")
		assert [m.id for m in tagged] == ["a"]


class TestUpdate:
	@pytest.mark.asyncio
	async def test_disable_and_reenable(self, controller: MissionController, clock: ManualClock) -> None:
		await controller.create(_draft(), mission_id="m1")

		disabled = await controller.update("m1", {"enable": False})
		assert disabled.status == MissionStatus.DISABLED
		assert disabled.next_run_at is None

		clock.advance(10 * 60_000)
		enabled = await controller.update("m1", {"enable": "yes"})
		assert enabled.status == MissionStatus.IDLE
		assert enabled.next_run_at == "2025-01-01T00:40:00.000Z"
		assert enabled.updated_at == "2025-01-01T00:10:00.000Z"

	@pytest.mark.asyncio
	async def test_schedule_change_recomputes_next_run(self, controller: MissionController) -> None:
		await controller.create(_draft(), mission_id="m1")
		updated = await controller.update("m1", {"intervalMinutes": 90})

		assert updated.schedule == IntervalSchedule(interval_minutes=90)
		assert updated.next_run_at == "2025-01-01T01:30:00.000Z"

	@pytest.mark.asyncio
	async def test_explicit_next_run_wins(self, controller: MissionController) -> None:
		await controller.create(_draft(), mission_id="m1")
		updated = await controller.update("m1", {"schedule": {"intervalMinutes": 5}, "nextRunAt": "2030-01-01T00:00:00Z"})

		assert updated.next_run_at == "2030-01-01T00:00:00.000Z"

	@pytest.mark.asyncio
	async def test_plain_field_update_keeps_next_run(self, controller: MissionController, clock: ManualClock) -> None:
		created = await controller.create(_draft(), mission_id="m1")
		clock.advance(60_000)
		updated = await controller.update("m1", {"description": "  Daily summary  ", "payload": '{"a": 1}'})

		assert updated.description == "Daily summary"
		assert updated.payload == {"a": 1}
		assert updated.next_run_at == created.next_run_at

	@pytest.mark.asyncio
	async def test_invalid_patches(self, controller: MissionController) -> None:
		await controller.create(_draft(), mission_id="m1")
		with pytest.raises(InvalidInputError):
			await controller.update("m1", {"status": "running"})
		with pytest.raises(InvalidInputError):
			await controller.update("m1", {"status": "bogus"})
		with pytest.raises(InvalidInputError):
			await controller.update("m1", {"nextRunAt": "not a date"})
		with pytest.raises(InvalidInputError):
			await controller.update("m1", {"enable": "maybe"})

	@pytest.mark.asyncio
	async def test_unknown_id(self, controller: MissionController) -> None:
		with pytest.raises(MissionNotFoundError):
			await controller.update("nope", {"name": "x"})


class TestRemove:
	@pytest.mark.asyncio
	async def test_remove_returns_record(self, controller: MissionController) -> None:
		await controller.create(_draft(), mission_id="m1")
		removed = await controller.remove("m1")

		assert removed.id == "m1"
		assert await controller.get("m1") is None

	@pytest.mark.asyncio
	async def test_remove_unknown(self, controller: MissionController) -> None:
		with pytest.raises(MissionNotFoundError):
			await controller.remove("nope")


class TestRunTransitions:
	@pytest.mark.asyncio
	async def test_mark_running_then_conflict(self, controller: MissionController, clock: ManualClock) -> None:
		await controller.create(_draft(), mission_id="m1")
		clock.advance(1000)
		running = await controller.mark_running("m1")

		assert running.status == MissionStatus.RUNNING
		assert running.last_run_at == "2025-01-01T00:00:01.000Z"
		with pytest.raises(ConcurrentRunConflict):
			await controller.mark_running("m1")

	@pytest.mark.asyncio
	async def test_mark_running_unknown(self, controller: MissionController) -> None:
		with pytest.raises(MissionNotFoundError):
			await controller.mark_running("nope")

	@pytest.mark.asyncio
	async def test_mark_result_success(self, controller: MissionController, clock: ManualClock) -> None:
		await controller.create(_draft(), mission_id="m1")
		await controller.mark_running("m1")
		finished_at = clock.now + 5000

		done = await controller.mark_result("m1", success=True, result={"ok": True}, finished_at=finished_at)

		assert done.status == MissionStatus.IDLE
		assert done.last_run_error is None
		assert done.last_run_finished_at == "2025-01-01T00:00:05.000Z"
		assert done.next_run_at == "2025-01-01T00:30:05.000Z"

	@pytest.mark.asyncio
	async def test_mark_result_failure_reschedules(self, controller: MissionController) -> None:
		await controller.create(_draft(), mission_id="m1")
		await controller.mark_running("m1")

		failed = await controller.mark_result("m1", success=False, error="boom")

		assert failed.status == MissionStatus.FAILED
		assert failed.last_run_error == "boom"
		assert failed.next_run_at == "2025-01-01T00:30:00.000Z"

	@pytest.mark.asyncio
	async def test_failed_mission_can_run_again(self, controller: MissionController) -> None:
		await controller.create(_draft(), mission_id="m1")
		await controller.mark_running("m1")
		await controller.mark_result("m1", success=False, error="boom")

		rerun = await controller.mark_running("m1")
		assert rerun.status == MissionStatus.RUNNING
		assert rerun.last_run_error is None

	@pytest.mark.asyncio
	async def test_disabled_mission_stays_disabled(self, controller: MissionController) -> None:
		await controller.create(_draft(enable=False), mission_id="m1")
		await controller.mark_running("m1")

		done = await controller.mark_result("m1", success=True)

		assert done.status == MissionStatus.DISABLED
		assert done.next_run_at is None

	@pytest.mark.asyncio
	async def test_failed_disabled_mission_reports_failure(self, controller: MissionController) -> None:
		await controller.create(_draft(enable=False), mission_id="m1")
		await controller.mark_running("m1")

		done = await controller.mark_result("m1", success=False, error="boom")

		assert done.status == MissionStatus.FAILED
		assert done.enable is False
		assert done.last_run_error == "boom"
		assert done.next_run_at is None
		assert await controller.list(include_disabled=False) == []


class TestStringifyError:
	def test_variants(self) -> None:
		assert stringify_error(None) == "Unknown error"
		assert stringify_error("boom") == "boom"
		assert stringify_error(ValueError()) == "ValueError"
		assert stringify_error({"code": 7}) == '{"code": 7}'

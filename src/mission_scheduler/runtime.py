"""Wire store, controller, templates, telemetry and scheduler from config."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from mission_scheduler.clock import Clock, system_clock
from mission_scheduler.config import MissionsConfig
from mission_scheduler.controller import MissionController
from mission_scheduler.executor import build_executor
from mission_scheduler.models import MissionDraft, MissionRecord
from mission_scheduler.scheduler import MissionScheduler
from mission_scheduler.state_store import SchedulerStateRepository
from mission_scheduler.store import MissionStore
from mission_scheduler.telemetry import EventStream, LogSink, MissionTelemetry, WebhookTelemetry
from mission_scheduler.templates import MissionTemplateRepository

logger = logging.getLogger(__name__)


@dataclass
class MissionRuntime:
	"""Everything one process needs to manage and schedule missions."""

	config: MissionsConfig
	store: MissionStore
	controller: MissionController
	templates: MissionTemplateRepository
	state_repository: SchedulerStateRepository
	telemetry: MissionTelemetry
	scheduler: MissionScheduler
	event_stream: EventStream | None = None
	webhook: WebhookTelemetry | None = None

	async def scaffold(
		self,
		slug: str,
		overrides: Mapping[str, Any] | None = None,
		*,
		dry_run: bool = False,
	) -> MissionDraft | MissionRecord:
		"""Create a mission from a template, or only return the draft when ``dry_run``."""
		draft = self.templates.create_draft_from_template(slug, overrides)
		if dry_run:
			return draft
		return await self.controller.create(draft)

	async def close(self) -> None:
		if self.scheduler.busy:
			await self.scheduler.shutdown()
		if self.webhook is not None:
			await self.webhook.aclose()
		if self.event_stream is not None:
			self.event_stream.close()
		self.store.close()


def build_runtime(config: MissionsConfig, *, clock: Clock = system_clock) -> MissionRuntime:
	store = MissionStore(config.db_path)
	controller = MissionController(store, clock=clock)
	templates = MissionTemplateRepository(config.templates_dir)
	state_repository = SchedulerStateRepository(config.state_path)

	telemetry = MissionTelemetry([LogSink()], clock=clock, enabled=config.missions.telemetry_active)
	event_stream: EventStream | None = None
	webhook: WebhookTelemetry | None = None
	if config.missions.telemetry_active:
		if config.event_log_path is not None:
			event_stream = EventStream(config.event_log_path)
			event_stream.open()
			telemetry.add_sink(event_stream)
		if config.telemetry.webhook_url:
			webhook = WebhookTelemetry(config.telemetry.webhook_url, timeout=config.telemetry.webhook_timeout)
			telemetry.add_sink(webhook)

	scheduler = MissionScheduler(
		controller,
		executor=build_executor(config.executor.type, timeout=config.executor.timeout or None),
		telemetry=telemetry,
		state_repository=state_repository,
		interval_ms=config.scheduler.interval_ms,
		max_concurrent=config.scheduler.max_concurrent or None,
		clock=clock,
	)
	logger.debug("Runtime built (db=%s, templates=%s)", config.db_path, config.templates_dir)
	return MissionRuntime(
		config=config,
		store=store,
		controller=controller,
		templates=templates,
		state_repository=state_repository,
		telemetry=telemetry,
		scheduler=scheduler,
		event_stream=event_stream,
		webhook=webhook,
	)

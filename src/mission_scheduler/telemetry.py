"""Mission telemetry: structured events fanned out to pluggable sinks.

Every event becomes one message::

	{"type": "mission_event", "event": "mission_started",
	 "timestamp": "2025-01-01T00:00:00.000Z", "data": {...}}

Emission is best-effort. A failing sink is logged and never propagates into
the scheduler.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import IO, Any

import httpx

from mission_scheduler.clock import Clock, system_clock, to_iso
from mission_scheduler.models import MissionRecord

logger = logging.getLogger(__name__)

MAX_SANITIZED_TAGS = 12


def sanitize_mission(mission: MissionRecord | Mapping[str, Any] | None) -> dict[str, Any] | None:
	"""Reduce a mission to the fields observers need."""
	if mission is None:
		return None
	data = mission.to_dict() if isinstance(mission, MissionRecord) else dict(mission)
	tags = data.get("tags")
	return {
		"id": data.get("id"),
		"name": data.get("name"),
		"status": data.get("status"),
		"priority": data.get("priority") or 0,
		"enable": data.get("enable") is not False,
		"nextRunAt": data.get("nextRunAt"),
		"lastRunAt": data.get("lastRunAt"),
		"lastRunFinishedAt": data.get("lastRunFinishedAt"),
		"schedule": dict(data["schedule"]) if isinstance(data.get("schedule"), Mapping) else None,
		"tags": list(tags)[:MAX_SANITIZED_TAGS] if isinstance(tags, (list, tuple)) else [],
		"lastRunError": data.get("lastRunError"),
	}


class TelemetrySink(ABC):
	"""Receives fully built telemetry messages."""

	@abstractmethod
	def publish(self, message: dict[str, Any]) -> None:
		"""Deliver one message. May raise; MissionTelemetry logs failures."""


class MissionTelemetry:
	"""Builds telemetry messages and fans them out to sinks."""

	def __init__(
		self,
		sinks: Iterable[TelemetrySink] = (),
		*,
		clock: Clock = system_clock,
		enabled: bool = True,
	) -> None:
		self._sinks: list[TelemetrySink] = list(sinks)
		self._clock = clock
		self.enabled = enabled

	@property
	def sinks(self) -> list[TelemetrySink]:
		return list(self._sinks)

	def add_sink(self, sink: TelemetrySink) -> None:
		self._sinks.append(sink)

	def emit(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
		if not self.enabled:
			return
		data = dict(payload or {})
		if "mission" in data:
			data["mission"] = sanitize_mission(data["mission"])
		message = {
			"type": "mission_event",
			"event": event,
			"timestamp": to_iso(self._clock()),
			"data": data,
		}
		for sink in self._sinks:
			try:
				sink.publish(message)
			except Exception as exc:
				logger.warning("Failed to emit %s via %s: %s", event, type(sink).__name__, exc)


class LogSink(TelemetrySink):
	"""Writes each event to the module logger."""

	def __init__(self, level: int = logging.DEBUG) -> None:
		self.level = level

	def publish(self, message: dict[str, Any]) -> None:
		data = message.get("data") or {}
		subject = data.get("missionId") or data.get("reason") or data.get("message") or ""
		logger.log(self.level, "mission event %s %s", message.get("event"), subject)


class EventStream(TelemetrySink):
	"""Append-only JSONL writer for mission events.

	A portable, jq-friendly record of everything the scheduler did.
	"""

	def __init__(self, path: Path) -> None:
		self._path = path
		self._file: IO[str] | None = None

	@property
	def path(self) -> Path:
		return self._path

	def open(self) -> None:
		self._path.parent.mkdir(parents=True, exist_ok=True)
		self._file = self._path.open("a", encoding="utf-8")

	def close(self) -> None:
		if self._file is not None:
			self._file.close()
			self._file = None

	def publish(self, message: dict[str, Any]) -> None:
		if self._file is None:
			return
		self._file.write(json.dumps(message, separators=(",", ":"), default=str) + "\n")
		self._file.flush()


class WebhookTelemetry(TelemetrySink):
	"""POSTs every message as JSON to a webhook URL.

	Deliveries run as background tasks on the running event loop; outside a
	loop messages are dropped with a debug log. Delivery failures are logged.
	"""

	def __init__(self, url: str, timeout: float = 5.0) -> None:
		self._url = url
		self._timeout = timeout
		self._client: httpx.AsyncClient | None = None
		self._pending: set[asyncio.Task[None]] = set()

	def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self._timeout)
		return self._client

	def publish(self, message: dict[str, Any]) -> None:
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			logger.debug("No running loop; dropping webhook event %s", message.get("event"))
			return
		task = loop.create_task(self._send(message))
		self._pending.add(task)
		task.add_done_callback(self._pending.discard)

	async def _send(self, message: dict[str, Any]) -> None:
		try:
			client = self._ensure_client()
			resp = await client.post(self._url, content=json.dumps(message, default=str), headers={
				"Content-Type": "application/json",
			})
			if resp.status_code >= 400:
				logger.warning("Webhook %s rejected %s: HTTP %d", self._url, message.get("event"), resp.status_code)
		except httpx.HTTPError as exc:
			logger.warning("Webhook delivery to %s failed: %s", self._url, exc)

	async def flush(self) -> None:
		if self._pending:
			await asyncio.gather(*list(self._pending), return_exceptions=True)

	async def aclose(self) -> None:
		await self.flush()
		if self._client is not None:
			await self._client.aclose()
			self._client = None

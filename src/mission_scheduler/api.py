"""FastAPI facade over the mission controller, templates and scheduler."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from mission_scheduler.errors import (
	ConcurrentRunConflict,
	InvalidInputError,
	MissionError,
	MissionNotFoundError,
	PayloadParseError,
	ScheduleValidationError,
	TemplateFormatError,
	TemplateNotFoundError,
)
from mission_scheduler.runtime import MissionRuntime
from mission_scheduler.schema import is_truthy

logger = logging.getLogger(__name__)

API_PREFIX = "/api/missions"

_BAD_REQUEST = (InvalidInputError, ScheduleValidationError, PayloadParseError, TemplateFormatError)
_NOT_FOUND = (MissionNotFoundError, TemplateNotFoundError)


class RunRequest(BaseModel, extra="ignore"):
	missionId: str | None = None
	id: str | None = None


def error_status(exc: Exception) -> int:
	if isinstance(exc, _BAD_REQUEST):
		return 400
	if isinstance(exc, _NOT_FOUND):
		return 404
	if isinstance(exc, ConcurrentRunConflict):
		return 409
	return 500


def _error(status: int, message: str) -> JSONResponse:
	return JSONResponse(status_code=status, content={"error": message})


async def _json_object(request: Request, what: str = "Mission") -> dict[str, Any]:
	try:
		body = await request.json()
	except (json.JSONDecodeError, UnicodeDecodeError) as exc:
		raise InvalidInputError(f"{what} payload must be a JSON object.") from exc
	if not isinstance(body, dict):
		raise InvalidInputError(f"{what} payload must be a JSON object.")
	return body


def create_app(runtime: MissionRuntime, *, close_runtime: bool = False) -> FastAPI:
	"""Factory: build the mission HTTP app around an existing runtime.

	Routes live under ``/api/missions``. When the feature or HTTP flag is
	off, every route answers 200 with the flags and a "disabled" message so
	clients can render a banner instead of a transport error.
	"""
	config = runtime.config
	flags = config.missions
	controller = runtime.controller
	scheduler = runtime.scheduler
	templates = runtime.templates

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		if flags.scheduler_active and flags.http_active and config.scheduler.autostart:
			scheduler.start()
		yield
		if close_runtime:
			await runtime.close()
		elif scheduler.busy:
			await scheduler.shutdown()

	app = FastAPI(title="Mission Scheduler", lifespan=lifespan)

	@app.exception_handler(MissionError)
	async def mission_error_handler(request: Request, exc: MissionError) -> JSONResponse:
		status = error_status(exc)
		if status >= 500:
			logger.error("%s %s failed: %s", request.method, request.url.path, exc)
		return _error(status, str(exc))

	@app.exception_handler(ValueError)
	async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
		return _error(400, str(exc))

	def flag_payload() -> dict[str, Any]:
		return {
			"featureEnabled": flags.enabled,
			"schedulerEnabled": flags.scheduler_enabled,
			"httpEnabled": flags.http_enabled,
			"telemetryEnabled": flags.telemetry_enabled,
		}

	def disabled() -> dict[str, Any] | None:
		if not flags.http_active:
			return {**flag_payload(), "message": "Mission controls are disabled by configuration."}
		return None

	def scheduler_disabled() -> dict[str, Any] | None:
		if not flags.scheduler_active:
			return {**flag_payload(), "message": "Mission scheduler is disabled by configuration."}
		return None

	router = APIRouter(prefix=API_PREFIX)

	# -- Scheduler --

	@router.get("/state")
	async def get_state():
		blocked = disabled()
		if blocked:
			return blocked
		return {**flag_payload(), "state": scheduler.get_state().to_dict()}

	@router.post("/start")
	async def start_scheduler():
		blocked = disabled() or scheduler_disabled()
		if blocked:
			return blocked
		state = scheduler.start()
		return {"success": True, "state": state.to_dict()}

	@router.post("/stop")
	async def stop_scheduler():
		blocked = disabled() or scheduler_disabled()
		if blocked:
			return blocked
		state = scheduler.stop()
		return {"success": True, "state": state.to_dict()}

	@router.post("/tick")
	async def tick():
		blocked = disabled() or scheduler_disabled()
		if blocked:
			return blocked
		state = await scheduler.trigger()
		return {"success": True, "state": state.to_dict()}

	@router.post("/run")
	async def run_mission(request: Request):
		blocked = disabled()
		if blocked:
			return blocked
		body = RunRequest.model_validate(await _json_object(request, "Run"))
		mission_id = body.missionId or body.id
		if not mission_id:
			return _error(400, "Body must include 'missionId'.")
		outcome = await scheduler.run_mission_by_id(mission_id, forced=True)
		return {"result": outcome.to_dict(), "state": scheduler.get_state().to_dict()}

	# -- Templates --

	@router.get("/templates")
	async def list_templates():
		blocked = disabled()
		if blocked:
			return blocked
		return {"templates": [t.to_dict() for t in templates.list_templates()]}

	@router.get("/templates/{slug}")
	async def get_template(slug: str):
		blocked = disabled()
		if blocked:
			return blocked
		template = templates.get_template(slug)
		if template is None:
			raise TemplateNotFoundError(slug)
		return {"template": template.to_dict()}

	@router.put("/templates/{slug}")
	async def save_template(slug: str, request: Request, response: Response):
		blocked = disabled()
		if blocked:
			return blocked
		body = await _json_object(request, "Template")
		existing = templates.get_template(slug)
		template = templates.save_template({**body, "slug": slug})
		response.status_code = 200 if existing else 201
		return {"template": template.to_dict()}

	@router.delete("/templates/{slug}")
	async def delete_template(slug: str):
		blocked = disabled()
		if blocked:
			return blocked
		templates.delete_template(slug)
		return {"success": True}

	# -- Missions --

	@router.get("")
	async def list_missions(
		status: list[str] | None = Query(None),
		tag: str | None = None,
		include_disabled: str | None = Query(None, alias="include-disabled"),
	):
		blocked = disabled()
		if blocked:
			return blocked
		missions = await controller.list(
			include_disabled=True if include_disabled is None else is_truthy(include_disabled),
			status=status,
			tag=tag,
		)
		return {"missions": [m.to_dict() for m in missions]}

	@router.post("")
	async def create_mission(request: Request, response: Response):
		blocked = disabled()
		if blocked:
			return blocked
		body = await _json_object(request)
		mission = await controller.create(body, mission_id=body.get("id"))
		response.status_code = 201
		return {"mission": mission.to_dict()}

	@router.get("/{mission_id}")
	async def get_mission(mission_id: str):
		blocked = disabled()
		if blocked:
			return blocked
		mission = await controller.get(mission_id)
		if mission is None:
			raise MissionNotFoundError(mission_id)
		return {"mission": mission.to_dict()}

	@router.patch("/{mission_id}")
	async def update_mission(mission_id: str, request: Request):
		blocked = disabled()
		if blocked:
			return blocked
		body = await _json_object(request)
		mission = await controller.update(mission_id, body)
		return {"mission": mission.to_dict()}

	@router.delete("/{mission_id}")
	async def remove_mission(mission_id: str):
		blocked = disabled()
		if blocked:
			return blocked
		mission = await controller.remove(mission_id)
		return {"mission": mission.to_dict()}

	app.include_router(router)
	return app

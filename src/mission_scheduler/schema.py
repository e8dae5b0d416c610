"""Normalization of mission drafts and patches coming from CLI, HTTP, or templates."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from typing import Any

from mission_scheduler.clock import normalize_instant
from mission_scheduler.errors import InvalidInputError, PayloadParseError
from mission_scheduler.models import MissionDraft, MissionStatus
from mission_scheduler.schedule import normalize_schedule

BOOLEAN_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
BOOLEAN_FALSE_VALUES = frozenset({"0", "false", "no", "off"})

MIN_PRIORITY = 0
MAX_PRIORITY = 10


def is_truthy(value: Any) -> bool:
	"""Loose flag parsing for env vars and query strings."""
	if value is None:
		return False
	if isinstance(value, bool):
		return value
	if isinstance(value, (int, float)):
		return value != 0
	return str(value).strip().lower() in BOOLEAN_TRUE_VALUES


def coerce_bool(value: Any, field_name: str = "enable") -> bool:
	"""Strict boolean coercion: unknown strings are rejected rather than read as false."""
	if isinstance(value, bool):
		return value
	if isinstance(value, (int, float)):
		return value != 0
	if isinstance(value, str):
		normalized = value.strip().lower()
		if normalized in BOOLEAN_TRUE_VALUES:
			return True
		if normalized in BOOLEAN_FALSE_VALUES:
			return False
	raise InvalidInputError(f"Unable to coerce {field_name} value '{value}' to boolean")


def normalize_name(value: Any) -> str:
	if not isinstance(value, str) or not value.strip():
		raise InvalidInputError("Mission name must be a non-empty string")
	return value.strip()


def normalize_description(value: Any) -> str | None:
	if value is None:
		return None
	if not isinstance(value, str):
		raise InvalidInputError("Mission description must be a string when provided")
	return value.strip() or None


def normalize_priority(value: Any) -> int:
	"""Integer priority clamped to 0..10. Numeric strings are accepted."""
	if isinstance(value, bool):
		raise InvalidInputError("Mission priority must be a finite number")
	try:
		number = float(value.strip()) if isinstance(value, str) else float(value)
	except (TypeError, ValueError) as exc:
		raise InvalidInputError("Mission priority must be a finite number") from exc
	if not math.isfinite(number):
		raise InvalidInputError("Mission priority must be a finite number")
	return max(MIN_PRIORITY, min(MAX_PRIORITY, round(number)))


def split_tags(value: Any) -> list[str]:
	"""Split a comma-separated string or pass a list through, dropping blanks."""
	if not value:
		return []
	if isinstance(value, str):
		items: Iterable[Any] = value.split(",")
	elif isinstance(value, (list, tuple, set, frozenset)):
		items = value
	else:
		raise InvalidInputError("Mission tags must be a list or a comma-separated string")
	return [str(item).strip() for item in items if item is not None and str(item).strip()]


def normalize_tags(value: Any) -> list[str]:
	"""Lower-cased, de-duplicated tags in first-seen order."""
	seen: dict[str, None] = {}
	for tag in split_tags(value):
		seen.setdefault(tag.lower(), None)
	return list(seen)


def parse_payload(value: Any) -> dict[str, Any]:
	"""Accept a mapping or a JSON object string.

	Raises:
		PayloadParseError: the string is not valid JSON or not a JSON object.
		InvalidInputError: the value is neither a mapping nor a string.
	"""
	if value is None:
		return {}
	if isinstance(value, Mapping):
		return dict(value)
	if isinstance(value, str):
		text = value.strip()
		if not text:
			return {}
		try:
			parsed = json.loads(text)
		except json.JSONDecodeError as exc:
			raise PayloadParseError(f"Payload must be valid JSON when provided as a string: {exc.msg}") from exc
		if not isinstance(parsed, dict):
			raise PayloadParseError("Payload JSON must describe an object")
		return parsed
	raise InvalidInputError("Mission payload must be an object or a JSON string")


def normalize_status(value: Any) -> MissionStatus:
	if value is None:
		raise InvalidInputError("Mission status is required")
	try:
		return MissionStatus(str(value).strip().lower())
	except ValueError as exc:
		raise InvalidInputError(f"Invalid mission status '{value}'") from exc


def _schedule_input(data: Mapping[str, Any]) -> Any:
	if data.get("schedule") is not None:
		return data["schedule"]
	flat = {key: data[key] for key in ("intervalMinutes", "cron", "timezone") if data.get(key) is not None}
	return flat or None


def normalize_draft(data: Mapping[str, Any] | MissionDraft) -> MissionDraft:
	"""Validate and normalize a mission draft.

	The schedule may be given as a ``schedule`` object or as top-level
	``intervalMinutes`` / ``cron`` / ``timezone`` keys.
	"""
	if isinstance(data, MissionDraft):
		return data
	if not isinstance(data, Mapping):
		raise InvalidInputError("Mission draft must be an object")
	return MissionDraft(
		name=normalize_name(data.get("name")),
		description=normalize_description(data.get("description")),
		schedule=normalize_schedule(_schedule_input(data)),
		priority=0 if data.get("priority") is None else normalize_priority(data["priority"]),
		tags=normalize_tags(data.get("tags")),
		payload=parse_payload(data.get("payload")),
		enable=True if data.get("enable") is None else coerce_bool(data["enable"]),
	)


def normalize_patch(data: Mapping[str, Any]) -> dict[str, Any]:
	"""Normalize a partial update. Returned keys are MissionRecord field names."""
	if not isinstance(data, Mapping):
		raise InvalidInputError("Mission patch must be an object")

	patch: dict[str, Any] = {}
	if "name" in data:
		patch["name"] = normalize_name(data["name"])
	if "description" in data:
		patch["description"] = normalize_description(data["description"])
	schedule = _schedule_input(data)
	if schedule is not None:
		patch["schedule"] = normalize_schedule(schedule)
	if "priority" in data:
		patch["priority"] = normalize_priority(data["priority"])
	if "tags" in data:
		patch["tags"] = tuple(normalize_tags(data["tags"]))
	if "payload" in data:
		patch["payload"] = parse_payload(data["payload"])
	if "enable" in data:
		patch["enable"] = coerce_bool(data["enable"])
	if "status" in data:
		patch["status"] = normalize_status(data["status"])
	if "lastRunError" in data:
		error = data["lastRunError"]
		patch["last_run_error"] = None if error is None else str(error).strip()
	if "nextRunAt" in data:
		try:
			patch["next_run_at"] = normalize_instant(data["nextRunAt"], "nextRunAt")
		except ValueError as exc:
			raise InvalidInputError(str(exc)) from exc
	return patch

"""Schedule validation and next-fire computation.

Interval schedules are plain arithmetic on epoch milliseconds. Cron schedules
are delegated to ``croniter`` and evaluated in the schedule's timezone.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from mission_scheduler.clock import to_iso
from mission_scheduler.errors import ScheduleValidationError
from mission_scheduler.models import CronSchedule, IntervalSchedule, Schedule

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60_000


def _first_present(data: Mapping[str, Any], *keys: str) -> Any:
	for key in keys:
		if data.get(key) is not None:
			return data[key]
	return None


def normalize_timezone(value: Any) -> str | None:
	if value is None:
		return None
	if not isinstance(value, str):
		raise ScheduleValidationError("timezone must be a string")
	tz = value.strip()
	if not tz:
		return None
	try:
		ZoneInfo(tz)
	except (ZoneInfoNotFoundError, ValueError) as exc:
		raise ScheduleValidationError(f"Unknown timezone '{tz}'") from exc
	return tz


def coerce_interval_minutes(value: Any) -> int:
	"""Accept ints, floats and numeric strings; round fractional minutes up."""
	if isinstance(value, bool):
		raise ScheduleValidationError("intervalMinutes must be a positive number")
	try:
		number = float(str(value).strip()) if isinstance(value, str) else float(value)
	except (TypeError, ValueError) as exc:
		raise ScheduleValidationError("intervalMinutes must be a positive number") from exc
	if not math.isfinite(number) or number <= 0:
		raise ScheduleValidationError("intervalMinutes must be a positive number")
	return math.ceil(number)


def normalize_schedule(raw: Mapping[str, Any] | Schedule | None) -> Schedule:
	"""Build a Schedule variant from a mapping.

	Accepts ``{"intervalMinutes": N}`` or ``{"cron": S}``, each with an optional
	``timezone``. A ``type`` key is tolerated but the variant is decided by which
	field is present.

	Raises:
		ScheduleValidationError: both or neither variant given, bad interval,
			bad cron, or unknown timezone.
	"""
	if isinstance(raw, (IntervalSchedule, CronSchedule)):
		return raw
	if not isinstance(raw, Mapping):
		raise ScheduleValidationError("Mission schedule must be an object")

	interval = _first_present(raw, "intervalMinutes", "interval_minutes")
	cron = raw.get("cron")
	if interval is not None and cron is not None:
		raise ScheduleValidationError("Schedule must specify either intervalMinutes or cron, not both")

	tz = normalize_timezone(raw.get("timezone"))
	if interval is not None:
		return IntervalSchedule(interval_minutes=coerce_interval_minutes(interval), timezone=tz)
	if cron is not None:
		return CronSchedule(cron=str(cron).strip(), timezone=tz)
	raise ScheduleValidationError("Mission schedule requires either intervalMinutes or cron")


def compute_next_run(schedule: Schedule, baseline_ms: int) -> str | None:
	"""Return the next fire instant after ``baseline_ms`` as an ISO string.

	Returns None when a cron expression cannot be evaluated.
	"""
	if isinstance(schedule, IntervalSchedule):
		return to_iso(baseline_ms + schedule.interval_minutes * MS_PER_MINUTE)

	tz = ZoneInfo(schedule.timezone) if schedule.timezone else timezone.utc
	base = datetime.fromtimestamp(baseline_ms / 1000, tz=tz)
	try:
		nxt = croniter(schedule.cron, base).get_next(datetime)
	except (KeyError, ValueError) as exc:
		logger.warning("Failed to compute cron next run for '%s': %s", schedule.cron, exc)
		return None
	return to_iso(nxt.timestamp() * 1000)


def describe_schedule(schedule: Schedule | None) -> str:
	"""Short human label, e.g. ``30m`` or ``cron(0 9 * * 1)@America/New_York``."""
	if schedule is None:
		return "n/a"
	suffix = f"@{schedule.timezone}" if schedule.timezone else ""
	if isinstance(schedule, IntervalSchedule):
		return f"{schedule.interval_minutes}m{suffix}"
	return f"cron({schedule.cron}){suffix}"

"""Time and identifier sources.

All scheduler time arithmetic is done in integer milliseconds since the epoch.
Persisted and wire-visible instants are ISO-8601 strings in UTC.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], int]
IdFactory = Callable[[], str]


def system_clock() -> int:
	return time.time_ns() // 1_000_000


def new_run_id() -> str:
	"""Random 8-byte identifier, hex encoded."""
	return secrets.token_hex(8)


def to_iso(ms: int | float) -> str:
	"""Format epoch milliseconds as ``2025-01-01T00:00:00.000Z``."""
	dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
	return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_instant(value: str | int | float | datetime | None) -> int | None:
	"""Parse an ISO string, datetime, or epoch-ms number into epoch ms.

	Returns None for None/empty or unparseable input.
	"""
	if value is None or value == "":
		return None
	if isinstance(value, bool):
		return None
	if isinstance(value, (int, float)):
		return int(value)
	if isinstance(value, datetime):
		dt = value
	else:
		text = str(value).strip()
		if text.endswith("Z"):
			text = text[:-1] + "+00:00"
		try:
			dt = datetime.fromisoformat(text)
		except ValueError:
			return None
	if dt.tzinfo is None:
		dt = dt.replace(tzinfo=timezone.utc)
	return round(dt.timestamp() * 1000)


def normalize_instant(value: str | int | float | datetime | None, field_name: str) -> str | None:
	"""Canonicalize an instant to ISO form, raising ValueError when unparseable."""
	if value is None:
		return None
	ms = parse_instant(value)
	if ms is None:
		raise ValueError(f"{field_name} must be a valid date or timestamp")
	return to_iso(ms)

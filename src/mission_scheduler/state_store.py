"""Durable single-snapshot store for scheduler tick metrics."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from mission_scheduler.errors import StatePersistenceError
from mission_scheduler.models import SchedulerState

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "scheduler-state.json"


class SchedulerStateRepository:
	"""Reads and atomically overwrites one JSON snapshot.

	No history is kept: every save replaces the previous snapshot.
	"""

	def __init__(self, path: str | Path) -> None:
		self._path = Path(path)

	@property
	def path(self) -> Path:
		return self._path

	def load_state(self) -> SchedulerState | None:
		"""Return the last snapshot, or None when missing, empty, or unreadable.

		Never raises; unreadable or malformed files are logged.
		"""
		try:
			text = self._path.read_text(encoding="utf-8")
		except FileNotFoundError:
			logger.debug("State file %s missing; starting fresh", self._path)
			return None
		except OSError as exc:
			logger.warning("Failed to read scheduler state %s: %s", self._path, exc)
			return None

		if not text.strip():
			return None
		try:
			data = json.loads(text)
		except json.JSONDecodeError as exc:
			logger.warning("Scheduler state %s is not valid JSON: %s", self._path, exc)
			return None
		if not isinstance(data, dict):
			logger.warning("Scheduler state %s must contain an object", self._path)
			return None
		try:
			return SchedulerState.from_dict(data)
		except ValidationError as exc:
			logger.warning("Scheduler state %s has invalid fields: %s", self._path, exc)
			return None

	def save_state(self, state: SchedulerState) -> None:
		"""Write the snapshot via a scratch file in the same directory, then rename.

		Raises:
			StatePersistenceError: the directory or file could not be written.
		"""
		serialized = json.dumps(state.to_dict(), indent=2) + "\n"
		tmp_name: str | None = None
		try:
			self._path.parent.mkdir(parents=True, exist_ok=True)
			fd, tmp_name = tempfile.mkstemp(
				prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent,
			)
			with os.fdopen(fd, "w", encoding="utf-8") as f:
				f.write(serialized)
				f.flush()
				os.fsync(f.fileno())
			os.replace(tmp_name, self._path)
			tmp_name = None
		except OSError as exc:
			raise StatePersistenceError(f"Failed to persist scheduler state to {self._path}: {exc}") from exc
		finally:
			if tmp_name is not None:
				try:
					os.unlink(tmp_name)
				except OSError:
					logger.debug("Could not remove scratch file %s", tmp_name)

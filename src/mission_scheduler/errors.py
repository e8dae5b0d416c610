"""Exception taxonomy for the mission subsystem."""

from __future__ import annotations


class MissionError(Exception):
	"""Base class for mission subsystem errors."""


class ScheduleValidationError(MissionError, ValueError):
	"""A schedule has both/neither variant, a non-positive interval, or a bad cron."""


class TemplateNotFoundError(MissionError, LookupError):
	"""No template exists for the requested slug."""

	def __init__(self, slug: str) -> None:
		super().__init__(f"Mission template '{slug}' not found.")
		self.slug = slug


class MissionNotFoundError(MissionError, LookupError):
	"""No mission record exists for the requested id."""

	def __init__(self, mission_id: str) -> None:
		super().__init__(f"Mission '{mission_id}' not found.")
		self.mission_id = mission_id


class PayloadParseError(MissionError, ValueError):
	"""A payload override given as a string was not valid JSON."""


class InvalidInputError(MissionError, TypeError):
	"""An argument had the wrong type or was empty."""


class ConcurrentRunConflict(MissionError, RuntimeError):
	"""The controller refused mark_running because the mission is already running."""

	def __init__(self, mission_id: str) -> None:
		super().__init__(f"Mission '{mission_id}' is already running.")
		self.mission_id = mission_id


class StatePersistenceError(MissionError, OSError):
	"""The scheduler state snapshot could not be written."""


class ExecutorError(MissionError, RuntimeError):
	"""A built-in executor failed to perform a mission's work."""


class TemplateFormatError(MissionError, ValueError):
	"""A template file is not valid YAML or lacks required fields."""

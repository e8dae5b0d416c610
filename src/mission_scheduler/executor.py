"""Executors perform a mission's work. The scheduler treats them as opaque."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from abc import ABC, abstractmethod
from typing import Any

from mission_scheduler.errors import ExecutorError
from mission_scheduler.models import ExecutorResultSchema, MissionRecord, MissionRunContext

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000


class MissionExecutor(ABC):
	"""Performs one mission run.

	``execute`` returns ``{"success": bool, "result": ..., "error": ...}`` or
	raises. A raised exception is recorded as a failed run.
	"""

	@abstractmethod
	async def execute(self, mission: MissionRecord, context: MissionRunContext) -> dict[str, Any] | None:
		"""Run the mission."""


def normalize_executor_result(raw: Any) -> ExecutorResultSchema:
	"""Coerce whatever an executor returned into success/result/error.

	``None`` counts as success. A mapping is read for ``success``, ``result``
	and ``error``. Any other value is taken as a successful result.
	"""
	if raw is None:
		return ExecutorResultSchema()
	if isinstance(raw, ExecutorResultSchema):
		return raw
	if isinstance(raw, dict):
		data = dict(raw)
		if data.get("success") is None:
			data.pop("success", None)
		return ExecutorResultSchema.model_validate(data)
	return ExecutorResultSchema(result=raw)


def error_message(error: Any) -> str | None:
	if error is None:
		return None
	if isinstance(error, str):
		return error
	if isinstance(error, BaseException):
		return str(error) or type(error).__name__
	if isinstance(error, dict) and error.get("message"):
		return str(error["message"])
	return str(error)


class NoopExecutor(MissionExecutor):
	"""Marks every run complete without doing any work."""

	async def execute(self, mission: MissionRecord, context: MissionRunContext) -> dict[str, Any]:
		logger.info("No executor configured; mission %s marked complete without work", mission.id)
		return {"success": True, "result": {"note": "no-op executor"}}


class ShellExecutor(MissionExecutor):
	"""Runs ``payload["command"]`` as a subprocess.

	The command may be a list of arguments or a string split with ``shlex``.
	``payload["cwd"]`` is passed through and ``payload["env"]`` is layered over
	the current environment. A non-zero
	exit code is a failed run whose error carries the tail of the output.
	"""

	def __init__(self, timeout: float | None = None, cwd: str | None = None) -> None:
		self.timeout = timeout
		self.cwd = cwd

	async def execute(self, mission: MissionRecord, context: MissionRunContext) -> dict[str, Any]:
		argv = self._command(mission)
		payload_timeout = mission.payload.get("timeout")
		timeout = float(payload_timeout) if payload_timeout is not None else self.timeout
		env = mission.payload.get("env")

		logger.info("Running mission %s (run %s): %s", mission.id, context.run_id, shlex.join(argv))
		try:
			proc = await asyncio.create_subprocess_exec(
				*argv,
				cwd=mission.payload.get("cwd") or self.cwd,
				env={**os.environ, **{str(k): str(v) for k, v in env.items()}} if isinstance(env, dict) else None,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except OSError as exc:
			raise ExecutorError(f"Failed to start '{argv[0]}': {exc}") from exc

		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
		except asyncio.TimeoutError:
			proc.kill()
			await proc.wait()
			raise ExecutorError(f"Command timed out after {timeout}s") from None
		except asyncio.CancelledError:
			if proc.returncode is None:
				proc.kill()
				await asyncio.shield(proc.wait())
			raise

		output = stdout.decode("utf-8", errors="replace") if stdout else ""
		tail = output[-OUTPUT_TAIL_CHARS:]
		if proc.returncode != 0:
			return {
				"success": False,
				"error": f"Command exited with code {proc.returncode}: {tail.strip()}".strip(),
			}
		return {"success": True, "result": {"exitCode": proc.returncode, "output": tail}}

	@staticmethod
	def _command(mission: MissionRecord) -> list[str]:
		command = mission.payload.get("command")
		if isinstance(command, str) and command.strip():
			return shlex.split(command)
		if isinstance(command, list) and command and all(isinstance(part, str) for part in command):
			return list(command)
		raise ExecutorError(f"Mission {mission.id} payload has no 'command' to run")


def build_executor(kind: str, timeout: float | None = None) -> MissionExecutor:
	if kind == "noop":
		return NoopExecutor()
	if kind == "shell":
		return ShellExecutor(timeout=timeout)
	raise ValueError(f"Unknown executor type '{kind}'")

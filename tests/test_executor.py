"""Tests for executor result normalization and built-in executors."""

from __future__ import annotations

import asyncio
import os
import shlex
import sys

import pytest
from conftest import T0, make_mission

from mission_scheduler.errors import ExecutorError
from mission_scheduler.executor import (
	NoopExecutor,
	ShellExecutor,
	build_executor,
	error_message,
	normalize_executor_result,
)
from mission_scheduler.models import MissionRunContext


def _context() -> MissionRunContext:
	return MissionRunContext(mission_id="mission-1", run_id="run-1", forced=False, started_at=T0)


def _python(code: str) -> list[str]:
	return [sys.executable, "-c", code]


class TestNormalizeExecutorResult:
	def test_none_is_success(self) -> None:
		result = normalize_executor_result(None)
		assert result.success is True
		assert result.result is None

	def test_mapping(self) -> None:
		result = normalize_executor_result({"success": False, "error": "nope", "extra": 1})
		assert result.success is False
		assert result.error == "nope"

	def test_mapping_without_success(self) -> None:
		assert normalize_executor_result({"result": 3}).success is True
		assert normalize_executor_result({"success": None}).success is True

	def test_other_values_are_results(self) -> None:
		result = normalize_executor_result("done")
		assert result.success is True
		assert result.result == "done"


class TestErrorMessage:
	def test_variants(self) -> None:
		assert error_message(None) is None
		assert error_message("x") == "x"
		assert error_message(RuntimeError("boom")) == "boom"
		assert error_message(KeyError()) == "KeyError"
		assert error_message({"message": "bad"}) == "bad"
		assert error_message(42) == "42"


class TestBuiltInExecutors:
	@pytest.mark.asyncio
	async def test_noop(self) -> None:
		result = await NoopExecutor().execute(make_mission(), _context())
		assert result == {"success": True, "result": {"note": "no-op executor"}}

	def test_build_executor(self) -> None:
		assert isinstance(build_executor("noop"), NoopExecutor)
		shell = build_executor("shell", timeout=5)
		assert isinstance(shell, ShellExecutor)
		assert shell.timeout == 5
		with pytest.raises(ValueError):
			build_executor("docker")


class TestShellExecutor:
	@pytest.mark.asyncio
	async def test_success(self) -> None:
		mission = make_mission(payload={"command": _python("print('hello')")})
		result = await ShellExecutor().execute(mission, _context())

		assert result["success"] is True
		assert result["result"]["exitCode"] == 0
		assert result["result"]["output"].strip() == "hello"

	@pytest.mark.asyncio
	async def test_string_command(self) -> None:
		command = shlex.join(_python("import sys; print(sys.argv[1])")) + " 'two words'"
		result = await ShellExecutor().execute(make_mission(payload={"command": command}), _context())
		assert result["result"]["output"].strip() == "two words"

	@pytest.mark.asyncio
	async def test_non_zero_exit(self) -> None:
		mission = make_mission(payload={"command": _python("import sys; print('bad things'); sys.exit(3)")})
		result = await ShellExecutor().execute(mission, _context())

		assert result == {"success": False, "error": "Command exited with code 3: bad things"}

	@pytest.mark.asyncio
	async def test_env_and_cwd(self, tmp_path) -> None:
		mission = make_mission(payload={
			"command": _python("import os; print(os.environ['MISSION_FLAG'], os.getcwd())"),
			"env": {"MISSION_FLAG": 1},
			"cwd": str(tmp_path),
		})
		result = await ShellExecutor().execute(mission, _context())

		flag, cwd = result["result"]["output"].split()
		assert flag == "1"
		assert cwd == str(tmp_path.resolve())

	@pytest.mark.asyncio
	async def test_timeout(self) -> None:
		mission = make_mission(payload={"command": _python("import time; time.sleep(5)"), "timeout": 0.2})
		with pytest.raises(ExecutorError, match="timed out"):
			await ShellExecutor().execute(mission, _context())

	@pytest.mark.asyncio
	async def test_missing_command(self) -> None:
		with pytest.raises(ExecutorError, match="no 'command'"):
			await ShellExecutor().execute(make_mission(payload={}), _context())

	@pytest.mark.asyncio
	async def test_unknown_program(self) -> None:
		mission = make_mission(payload={"command": ["/nonexistent/mission-binary"]})
		with pytest.raises(ExecutorError, match="Failed to start"):
			await ShellExecutor().execute(mission, _context())

	@pytest.mark.asyncio
	async def test_cancel_kills_child(self, tmp_path) -> None:
		pid_file = tmp_path / "child.pid"
		code = f"import os, pathlib, time; pathlib.Path({str(pid_file)!r}).write_text(str(os.getpid())); time.sleep(30)"
		task = asyncio.create_task(
			ShellExecutor().execute(make_mission(payload={"command": _python(code)}), _context()),
		)
		for _ in range(250):
			if pid_file.exists() and pid_file.read_text():
				break
			await asyncio.sleep(0.02)
		pid = int(pid_file.read_text())

		task.cancel()
		with pytest.raises(asyncio.CancelledError):
			await task

		with pytest.raises(ProcessLookupError):
			os.kill(pid, 0)

"""CLI interface for the mission scheduler."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import yaml

from mission_scheduler.config import (
	DEFAULT_CONFIG_FILE,
	MissionsConfig,
	load_config,
	load_config_or_default,
	validate_config,
)
from mission_scheduler.errors import InvalidInputError, MissionError
from mission_scheduler.models import MissionDraft, MissionRecord
from mission_scheduler.runtime import MissionRuntime, build_runtime
from mission_scheduler.schedule import describe_schedule

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = DEFAULT_CONFIG_FILE
DISABLED_MESSAGE = "Mission controls are disabled"


def _add_config(p: argparse.ArgumentParser) -> None:
	p.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")


def _add_json(p: argparse.ArgumentParser) -> None:
	p.add_argument("--json", action="store_true", help="Print raw JSON payloads")


def _add_mission_fields(p: argparse.ArgumentParser) -> None:
	p.add_argument("--name")
	p.add_argument("--description")
	p.add_argument("--priority")
	p.add_argument("--tags", help="Comma-separated tags")
	p.add_argument("--interval-minutes", dest="interval_minutes")
	p.add_argument("--cron")
	p.add_argument("--timezone")
	p.add_argument("--enable", help="true/false")
	p.add_argument("--payload", help="JSON object")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="missions",
		description="Mission scheduler - persistent in-process job scheduling",
	)
	sub = parser.add_subparsers(dest="command")

	# missions list
	lst = sub.add_parser("list", help="Display stored missions")
	_add_config(lst)
	_add_json(lst)
	lst.add_argument("--status", action="append", help="Filter by status (repeatable)")
	lst.add_argument("--tag")
	lst.add_argument("--include-disabled", action="store_true")

	# missions inspect
	inspect = sub.add_parser("inspect", help="Show mission details")
	_add_config(inspect)
	_add_json(inspect)
	inspect.add_argument("mission_id")

	# missions create
	create = sub.add_parser("create", help="Create a mission")
	_add_config(create)
	_add_json(create)
	_add_mission_fields(create)
	create.add_argument("--id", dest="mission_id")

	# missions run
	run = sub.add_parser("run", help="Force-run a mission immediately")
	_add_config(run)
	_add_json(run)
	run.add_argument("mission_id")

	# missions tick
	tick = sub.add_parser("tick", help="Run one scheduler tick and wait for its runs")
	_add_config(tick)
	_add_json(tick)

	# missions status
	status = sub.add_parser("status", help="Show scheduler state and feature flags")
	_add_config(status)
	_add_json(status)

	# missions templates
	templates = sub.add_parser("templates", help="Manage mission templates")
	_add_config(templates)
	templates.set_defaults(json=False)
	tsub = templates.add_subparsers(dest="templates_action")
	t_list = tsub.add_parser("list", help="List templates")
	_add_json(t_list)
	t_show = tsub.add_parser("show", help="Show one template")
	_add_json(t_show)
	t_show.add_argument("slug")
	t_save = tsub.add_parser("save", help="Create or update a template")
	_add_json(t_save)
	_add_mission_fields(t_save)
	t_save.add_argument("slug", nargs="?")
	t_save.add_argument("--from-file", dest="from_file", help="YAML file with template fields")
	t_delete = tsub.add_parser("delete", help="Delete a template")
	_add_json(t_delete)
	t_delete.add_argument("slug")

	# missions scaffold
	scaffold = sub.add_parser("scaffold", help="Create a mission from a template")
	_add_config(scaffold)
	_add_json(scaffold)
	_add_mission_fields(scaffold)
	scaffold.add_argument("slug")
	scaffold.add_argument("--dry-run", action="store_true", help="Show the draft without creating it")

	# missions serve
	serve = sub.add_parser("serve", help="Serve the HTTP API")
	_add_config(serve)
	serve.add_argument("--host", default=None)
	serve.add_argument("--port", type=int, default=None)

	# missions init
	init = sub.add_parser("init", help="Initialize a mission-scheduler config")
	init.add_argument("path", nargs="?", default=".")

	# missions validate-config
	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	_add_config(vc)

	return parser


def _load(args: argparse.Namespace) -> MissionsConfig:
	if args.config == DEFAULT_CONFIG:
		return load_config_or_default(args.config)
	return load_config(args.config)


def _print_json(payload: Any) -> None:
	print(json.dumps(payload, indent=2, default=str))


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
	"""Collect only the mission fields given on the command line."""
	mapping = {
		"name": "name",
		"description": "description",
		"priority": "priority",
		"tags": "tags",
		"interval_minutes": "intervalMinutes",
		"cron": "cron",
		"timezone": "timezone",
		"enable": "enable",
		"payload": "payload",
	}
	overrides: dict[str, Any] = {}
	for attr, key in mapping.items():
		value = getattr(args, attr, None)
		if value is not None:
			overrides[key] = value
	return overrides


def format_mission_line(mission: MissionRecord) -> str:
	return " | ".join([
		f"{mission.id} :: {mission.name}",
		f"status={mission.status.value}",
		f"priority={mission.priority}",
		f"next={mission.next_run_at or 'n/a'}",
	])


def _print_mission(mission: MissionRecord | MissionDraft) -> None:
	if isinstance(mission, MissionRecord):
		print(f"Mission: {mission.name} ({mission.id})")
		print(f"  Status: {mission.status.value}")
	else:
		print(f"Draft: {mission.name}")
	print(f"  Priority: {mission.priority}")
	print(f"  Enabled: {mission.enable}")
	print(f"  Tags: {', '.join(mission.tags) or 'none'}")
	print(f"  Schedule: {describe_schedule(mission.schedule)}")
	if isinstance(mission, MissionRecord):
		print(f"  Next Run: {mission.next_run_at or 'n/a'}")
		print(f"  Last Run: {mission.last_run_at or 'n/a'}")
		print(f"  Last Finished: {mission.last_run_finished_at or 'n/a'}")
		if mission.last_run_error:
			print(f"  Last Error: {mission.last_run_error}")


def _with_runtime(
	config: MissionsConfig,
	fn: Callable[[MissionRuntime], Awaitable[int]],
) -> int:
	async def runner() -> int:
		runtime = build_runtime(config)
		try:
			return await fn(runtime)
		finally:
			await runtime.close()

	return asyncio.run(runner())


def cmd_list(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""List missions."""
	async def run(runtime: MissionRuntime) -> int:
		missions = await runtime.controller.list(
			include_disabled=args.include_disabled, status=args.status, tag=args.tag,
		)
		if args.json:
			_print_json([m.to_dict() for m in missions])
		elif not missions:
			print("No missions found.")
		else:
			for m in missions:
				print(format_mission_line(m))
		return 0

	return _with_runtime(config, run)


def cmd_inspect(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""Show one mission."""
	async def run(runtime: MissionRuntime) -> int:
		mission = await runtime.controller.get(args.mission_id)
		if mission is None:
			print(f"Mission '{args.mission_id}' not found.")
			return 1
		if args.json:
			_print_json(mission.to_dict())
		else:
			_print_mission(mission)
		return 0

	return _with_runtime(config, run)


def cmd_create(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""Create a mission from command-line fields."""
	async def run(runtime: MissionRuntime) -> int:
		mission = await runtime.controller.create(_overrides(args), mission_id=args.mission_id)
		if args.json:
			_print_json(mission.to_dict())
		else:
			print(f"Created mission {mission.id}")
			_print_mission(mission)
		return 0

	return _with_runtime(config, run)


def cmd_run(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""Force-run a mission now."""
	async def run(runtime: MissionRuntime) -> int:
		outcome = await runtime.scheduler.run_mission_by_id(args.mission_id, forced=True)
		if args.json:
			_print_json(outcome.to_dict())
		elif outcome.skipped:
			print(f"Mission {args.mission_id} skipped: {outcome.reason}")
		elif outcome.success:
			print(f"Mission {args.mission_id} completed successfully.")
		else:
			print(f"Mission {args.mission_id} failed: {outcome.error or 'Unknown error'}")
		return 0 if outcome.success else 1

	return _with_runtime(config, run)


def cmd_tick(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""Run one tick and wait for the launched runs."""
	if not config.missions.scheduler_active:
		print("Scheduler tick disabled: mission scheduler feature flag is off.")
		return 1

	async def run(runtime: MissionRuntime) -> int:
		await runtime.scheduler.trigger()
		await runtime.scheduler.wait_idle()
		state = runtime.scheduler.get_state()
		if args.json:
			_print_json(state.to_dict())
		else:
			print(
				f"Mission scheduler tick executed: evaluated={state.last_tick_evaluated} "
				f"launched={state.last_tick_launched}"
			)
		return 0

	return _with_runtime(config, run)


def cmd_status(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""Show flags and the last persisted scheduler snapshot."""
	async def run(runtime: MissionRuntime) -> int:
		await runtime.scheduler.ensure_restored()
		state = runtime.scheduler.get_state()
		flags = config.missions
		if args.json:
			_print_json({
				"featureEnabled": flags.enabled,
				"schedulerEnabled": flags.scheduler_enabled,
				"httpEnabled": flags.http_enabled,
				"telemetryEnabled": flags.telemetry_enabled,
				"state": state.to_dict(),
			})
			return 0
		print(f"Scheduler feature: {'enabled' if flags.scheduler_active else 'disabled'}")
		print(f"Interval: {state.interval_ms}ms")
		if state.last_tick_started_at:
			print(f"Last tick started: {state.last_tick_started_at}")
		if state.last_tick_completed_at:
			print(f"Last tick completed: {state.last_tick_completed_at}")
		if state.last_tick_duration_ms is not None:
			print(f"Last tick duration: {state.last_tick_duration_ms}ms")
		print(f"Last tick evaluated/launched: {state.last_tick_evaluated}/{state.last_tick_launched}")
		if state.last_tick_error:
			print(f"Last tick error: {state.last_tick_error}")
		return 0

	return _with_runtime(config, run)


def cmd_templates(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""List, show, save or delete templates."""
	action = args.templates_action or "list"

	async def run(runtime: MissionRuntime) -> int:
		repo = runtime.templates
		if action == "list":
			items = repo.list_templates()
			if args.json:
				_print_json([t.to_dict() for t in items])
			elif not items:
				print(f"No mission templates found in {repo.templates_dir}.")
			else:
				for t in items:
					print(f"{t.slug} :: {t.name} | schedule={describe_schedule(t.schedule)} | priority={t.priority}")
			return 0

		if action == "show":
			template = repo.get_template(args.slug)
			if template is None:
				print(f"Template '{args.slug}' not found.")
				return 1
			if args.json:
				_print_json(template.to_dict())
			else:
				print(f"Template: {template.name} ({template.slug})")
				print(f"  Schedule: {describe_schedule(template.schedule)}")
				print(f"  Priority: {template.priority}")
				print(f"  Tags: {', '.join(template.tags) or 'none'}")
				print(f"  Enabled: {template.enable}")
				print(f"  Source: {template.source_path}")
			return 0

		if action == "save":
			data: dict[str, Any] = {}
			if args.from_file:
				try:
					loaded = yaml.safe_load(Path(args.from_file).read_text(encoding="utf-8"))
				except yaml.YAMLError as exc:
					raise InvalidInputError(f"{args.from_file} is not valid YAML: {exc}") from exc
				if not isinstance(loaded, dict):
					raise InvalidInputError(f"{args.from_file} must contain a YAML mapping")
				data.update(loaded)
			data.update(_overrides(args))
			if args.slug:
				data["slug"] = args.slug
			template = repo.save_template(data)
			if args.json:
				_print_json(template.to_dict())
			else:
				print(f"Saved template {template.slug} -> {template.source_path}")
			return 0

		repo.delete_template(args.slug)
		if args.json:
			_print_json({"success": True, "slug": args.slug})
		else:
			print(f"Deleted template {args.slug}")
		return 0

	return _with_runtime(config, run)


def cmd_scaffold(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""Create a mission from a template."""
	async def run(runtime: MissionRuntime) -> int:
		created = await runtime.scaffold(args.slug, _overrides(args), dry_run=args.dry_run)
		if args.json:
			_print_json(created.to_dict())
		elif args.dry_run:
			_print_mission(created)
		elif isinstance(created, MissionRecord):
			print(f"Created mission {created.id} from template {args.slug}")
			_print_mission(created)
		return 0

	return _with_runtime(config, run)


def cmd_serve(args: argparse.Namespace, config: MissionsConfig) -> int:
	"""Serve the HTTP API with uvicorn."""
	import uvicorn

	from mission_scheduler.api import create_app

	if not config.missions.http_active:
		logger.warning("Mission HTTP controls are disabled; routes will report the disabled state")
	host = args.host or config.http.host
	port = args.port or config.http.port
	app = create_app(build_runtime(config), close_runtime=True)
	print(f"Serving mission API at http://{host}:{port}/api/missions")
	uvicorn.run(app, host=host, port=port, log_level="info")
	return 0


INIT_TEMPLATE = """\
[missions]
enabled = true

[scheduler]
interval_ms = 30000
max_concurrent = 4
autostart = false

[storage]
data_dir = ".data/missions"
templates_dir = "missions/templates"

[telemetry]
event_log = ".data/missions/events.jsonl"

[executor]
type = "noop"

[http]
host = "127.0.0.1"
port = 8787
"""

SAMPLE_TEMPLATE = """\
name: Nightly digest
description: Summarize the day's activity.
schedule:
  cron: "0 2 * * *"
  timezone: UTC
priority: 5
tags: [ops, digest]
enable: true
payload:
  command: "echo digest"
"""


def cmd_init(args: argparse.Namespace) -> int:
	"""Initialize a mission-scheduler config and templates directory."""
	target = Path(args.path).resolve()
	config_path = target / DEFAULT_CONFIG

	if config_path.exists():
		print(f"Config already exists: {config_path}")
		return 1

	target.mkdir(parents=True, exist_ok=True)
	config_path.write_text(INIT_TEMPLATE)
	templates_dir = target / "missions" / "templates"
	templates_dir.mkdir(parents=True, exist_ok=True)
	sample = templates_dir / "nightly-digest.mission.yaml"
	if not sample.exists():
		sample.write_text(SAMPLE_TEMPLATE)
	print(f"Created {config_path}")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = load_config(args.config)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS: dict[str, Callable[[argparse.Namespace, MissionsConfig], int]] = {
	"list": cmd_list,
	"inspect": cmd_inspect,
	"create": cmd_create,
	"run": cmd_run,
	"tick": cmd_tick,
	"status": cmd_status,
	"templates": cmd_templates,
	"scaffold": cmd_scaffold,
	"serve": cmd_serve,
}

STANDALONE_COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
	"init": cmd_init,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	try:
		standalone = STANDALONE_COMMANDS.get(args.command)
		if standalone is not None:
			return standalone(args)

		handler = COMMANDS.get(args.command)
		if handler is None:
			print(f"Unknown command: {args.command}")
			return 1

		config = _load(args)
		if not config.missions.enabled:
			print(DISABLED_MESSAGE)
			return 1
		return handler(args, config)
	except FileNotFoundError as e:
		print(f"Error: {e}")
		return 1
	except MissionError as e:
		print(f"Error: {e}")
		return 1


if __name__ == "__main__":
	sys.exit(main())

"""YAML mission templates on disk and the drafts derived from them.

One template per file. The slug is the file name stem before the first dot,
so ``nightly-digest.mission.yaml`` is addressed as ``nightly-digest``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from mission_scheduler.errors import (
	InvalidInputError,
	ScheduleValidationError,
	TemplateFormatError,
	TemplateNotFoundError,
)
from mission_scheduler.models import MissionDraft, MissionTemplate, Schedule
from mission_scheduler.schedule import normalize_schedule, normalize_timezone
from mission_scheduler.schema import (
	coerce_bool,
	normalize_description,
	normalize_draft,
	normalize_name,
	normalize_priority,
	normalize_tags,
	parse_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_FILE_SUFFIX = ".mission.yaml"
SUPPORTED_EXTENSIONS = (".yaml", ".yml")

_SLUG_SUFFIX_RE = re.compile(r"\.(mission|template)$")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")


def normalize_slug(value: Any) -> str:
	"""Lower-case, hyphenate, and trim a slug or display name."""
	if isinstance(value, bool) or not isinstance(value, (str, int)) or value == "":
		raise InvalidInputError("Template slug must be a non-empty string")
	text = _SLUG_SUFFIX_RE.sub("", str(value).strip().lower())
	slug = _SLUG_INVALID_RE.sub("-", text).strip("-")
	if not slug:
		raise InvalidInputError(f"Template slug '{value}' resolved to an empty value")
	return slug


def slug_from_filename(filename: str) -> str:
	return normalize_slug(filename.split(".", 1)[0])


def _schedule_to_yaml(schedule: Schedule) -> dict[str, Any]:
	data = schedule.to_dict()
	data.pop("type", None)
	return data


def _merge_schedule(base: Schedule, override: Mapping[str, Any]) -> Schedule:
	interval = override.get("intervalMinutes")
	cron = override.get("cron")
	if interval is not None and cron is not None:
		raise ScheduleValidationError("Schedule overrides must specify either intervalMinutes or cron, not both")
	tz = override.get("timezone")
	if interval is not None or cron is not None:
		merged: dict[str, Any] = {"timezone": tz if tz is not None else base.timezone}
		if interval is not None:
			merged["intervalMinutes"] = interval
		else:
			merged["cron"] = cron
		return normalize_schedule(merged)
	if tz is not None:
		return replace(base, timezone=normalize_timezone(tz))
	return base


class MissionTemplateRepository:
	"""Lists, reads, writes, and deletes ``*.mission.yaml`` templates."""

	def __init__(self, templates_dir: str | Path) -> None:
		self._dir = Path(templates_dir)

	@property
	def templates_dir(self) -> Path:
		return self._dir

	def list_templates(self) -> list[MissionTemplate]:
		"""Parse every template file in the directory.

		A missing directory yields an empty list. Any invalid template fails
		the whole listing.
		"""
		if not self._dir.is_dir():
			logger.warning("Templates directory '%s' not found", self._dir)
			return []

		templates: dict[str, MissionTemplate] = {}
		for path in sorted(self._dir.iterdir()):
			if not path.is_file() or path.suffix.lower() not in SUPPORTED_EXTENSIONS:
				continue
			template = self._load_template(path)
			if template.slug in templates:
				logger.warning(
					"Duplicate template slug '%s' in %s; keeping %s",
					template.slug, path.name, templates[template.slug].source_path,
				)
				continue
			templates[template.slug] = template
		return list(templates.values())

	def get_template(self, slug: Any) -> MissionTemplate | None:
		if not slug:
			return None
		wanted = normalize_slug(slug)
		for template in self.list_templates():
			if template.slug == wanted:
				return template
		return None

	def create_draft_from_template(
		self,
		slug: Any,
		overrides: Mapping[str, Any] | None = None,
	) -> MissionDraft:
		"""Merge overrides into a template and return a normalized draft.

		Overrides accept the loose forms operators type on a command line:
		comma-separated ``tags``, numeric-string ``priority`` and
		``intervalMinutes``, ``"true"``/``"false"`` for ``enable``, and a JSON
		string for ``payload``. Supplying ``intervalMinutes`` or ``cron``
		replaces the template's schedule variant.

		Raises:
			InvalidInputError: empty slug.
			TemplateNotFoundError: unknown slug.
			ScheduleValidationError: both ``intervalMinutes`` and ``cron`` given.
			PayloadParseError: ``payload`` string is not valid JSON.
		"""
		if not slug:
			raise InvalidInputError("create_draft_from_template requires a template slug")
		template = self.get_template(slug)
		if template is None:
			raise TemplateNotFoundError(str(slug))

		overrides = overrides or {}
		schedule_override: dict[str, Any] = dict(overrides.get("schedule") or {})
		for key in ("intervalMinutes", "cron", "timezone"):
			if overrides.get(key) is not None:
				schedule_override[key] = overrides[key]

		override_tags = normalize_tags(overrides.get("tags"))
		payload_override = overrides.get("payload")

		return MissionDraft(
			name=normalize_name(overrides["name"]) if overrides.get("name") is not None else template.name,
			description=(
				normalize_description(overrides["description"])
				if overrides.get("description") is not None else template.description
			),
			schedule=_merge_schedule(template.schedule, schedule_override),
			priority=(
				normalize_priority(overrides["priority"])
				if overrides.get("priority") is not None else template.priority
			),
			tags=override_tags or list(template.tags),
			payload=parse_payload(payload_override) if payload_override is not None else dict(template.payload or {}),
			enable=coerce_bool(overrides["enable"]) if overrides.get("enable") is not None else template.enable,
		)

	def save_template(self, data: Mapping[str, Any]) -> MissionTemplate:
		"""Create or update a template file.

		The slug comes from ``slug`` or, when absent, from ``name``. Fields
		not supplied are taken from an existing template with the same slug.
		"""
		if not isinstance(data, Mapping):
			raise InvalidInputError("save_template requires a template object")
		if data.get("slug"):
			slug = normalize_slug(data["slug"])
		elif isinstance(data.get("name"), str) and data["name"].strip():
			slug = normalize_slug(data["name"])
		else:
			raise InvalidInputError("Template name is required to generate a slug")

		existing = self.get_template(slug)
		draft = normalize_draft({
			"name": data.get("name") or (existing.name if existing else None),
			"description": data.get("description", existing.description if existing else None),
			"schedule": self._resolve_schedule(data, existing),
			"priority": data.get("priority", existing.priority if existing else 0),
			"tags": data.get("tags", existing.tags if existing else []),
			"payload": data.get("payload", existing.payload if existing else None),
			"enable": data.get("enable", existing.enable if existing else True),
		})

		path = self._dir / self._resolve_filename(slug, data.get("filename"), existing)
		document: dict[str, Any] = {"name": draft.name}
		if draft.description:
			document["description"] = draft.description
		document["schedule"] = _schedule_to_yaml(draft.schedule)
		document["priority"] = draft.priority
		if draft.tags:
			document["tags"] = list(draft.tags)
		if draft.payload:
			document["payload"] = draft.payload
		document["enable"] = draft.enable

		self._dir.mkdir(parents=True, exist_ok=True)
		path.write_text(yaml.safe_dump(document, sort_keys=False, allow_unicode=True), encoding="utf-8")
		logger.info("Saved mission template '%s' to %s", slug, path)

		return MissionTemplate(
			slug=slug,
			name=draft.name,
			description=draft.description,
			schedule=draft.schedule,
			priority=draft.priority,
			tags=list(draft.tags),
			payload=dict(draft.payload) or None,
			enable=draft.enable,
			source_path=str(path),
		)

	def delete_template(self, slug: Any) -> None:
		wanted = normalize_slug(slug)
		existing = self.get_template(wanted)
		if existing is None:
			raise TemplateNotFoundError(wanted)
		try:
			Path(existing.source_path).unlink()
		except FileNotFoundError:
			logger.warning("Template file for '%s' already removed", wanted)
		logger.info("Deleted mission template '%s'", wanted)

	def _load_template(self, path: Path) -> MissionTemplate:
		try:
			data = yaml.safe_load(path.read_text(encoding="utf-8"))
		except yaml.YAMLError as exc:
			raise TemplateFormatError(f"Mission template {path.name} is not valid YAML: {exc}") from exc
		if not isinstance(data, dict):
			raise TemplateFormatError(f"Mission template {path.name} must define an object")

		name = str(data.get("name") or "").strip()
		if not name:
			raise TemplateFormatError(f"Mission template {path.name} is missing required 'name'")

		try:
			schedule = normalize_schedule(data.get("schedule"))
		except ScheduleValidationError as exc:
			raise ScheduleValidationError(f"Mission template {path.name}: {exc}") from exc

		payload = data.get("payload")
		return MissionTemplate(
			slug=slug_from_filename(path.name),
			name=name,
			description=normalize_description(data.get("description")),
			schedule=schedule,
			priority=0 if data.get("priority") is None else normalize_priority(data["priority"]),
			tags=normalize_tags(data.get("tags")),
			payload=dict(payload) if isinstance(payload, dict) and payload else None,
			enable=True if data.get("enable") is None else coerce_bool(data["enable"]),
			source_path=str(path),
		)

	@staticmethod
	def _resolve_schedule(data: Mapping[str, Any], existing: MissionTemplate | None) -> Any:
		if data.get("schedule") is not None:
			return data["schedule"]
		tz = data.get("timezone")
		if data.get("intervalMinutes") is not None or data.get("cron") is not None:
			if data.get("intervalMinutes") is not None and data.get("cron") is not None:
				raise ScheduleValidationError("Template schedule must specify either intervalMinutes or cron, not both")
			base_tz = existing.schedule.timezone if existing else None
			flat: dict[str, Any] = {"timezone": tz if tz is not None else base_tz}
			if data.get("intervalMinutes") is not None:
				flat["intervalMinutes"] = data["intervalMinutes"]
			else:
				flat["cron"] = data["cron"]
			return flat
		if existing is not None:
			if tz is not None:
				return replace(existing.schedule, timezone=normalize_timezone(tz))
			return existing.schedule
		raise ScheduleValidationError("Template schedule requires an intervalMinutes or cron definition")

	@staticmethod
	def _resolve_filename(slug: str, provided: Any, existing: MissionTemplate | None) -> str:
		if provided:
			name = Path(str(provided)).name
			if not Path(name).suffix:
				return f"{name}{DEFAULT_FILE_SUFFIX}"
			if Path(name).suffix.lower() not in SUPPORTED_EXTENSIONS:
				raise InvalidInputError(f"Template filename must use .yaml or .yml (received '{name}')")
			return name
		if existing is not None and existing.source_path:
			return Path(existing.source_path).name
		return f"{slug}{DEFAULT_FILE_SUFFIX}"


__all__ = [
	"MissionTemplateRepository",
	"normalize_slug",
	"slug_from_filename",
]

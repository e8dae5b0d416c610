"""TOML configuration loader for the mission scheduler."""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mission_scheduler.schema import BOOLEAN_FALSE_VALUES, BOOLEAN_TRUE_VALUES

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "mission-scheduler.toml"
EXECUTOR_TYPES = ("noop", "shell")
MIN_RECOMMENDED_INTERVAL_MS = 1000


@dataclass
class FeatureFlags:
	"""Feature switches. Sub-flags only matter while ``enabled`` is on."""

	enabled: bool = True
	scheduler_enabled: bool = True
	http_enabled: bool = True
	telemetry_enabled: bool = True

	@property
	def scheduler_active(self) -> bool:
		return self.enabled and self.scheduler_enabled

	@property
	def http_active(self) -> bool:
		return self.enabled and self.http_enabled

	@property
	def telemetry_active(self) -> bool:
		return self.enabled and self.telemetry_enabled


@dataclass
class SchedulerConfig:
	"""Tick loop settings."""

	interval_ms: int = 30_000
	max_concurrent: int = 4  # 0 = unbounded
	autostart: bool = False


@dataclass
class StorageConfig:
	"""Where missions, scheduler state and templates live."""

	data_dir: str = ".data/missions"
	db_file: str = "missions.db"
	state_file: str = "scheduler-state.json"
	templates_dir: str = "missions/templates"


@dataclass
class TelemetryConfig:
	event_log: str = ""
	webhook_url: str = ""
	webhook_timeout: float = 5.0


@dataclass
class ExecutorConfig:
	type: str = "noop"
	timeout: float = 0.0  # 0 = no timeout


@dataclass
class HttpConfig:
	host: str = "127.0.0.1"
	port: int = 8787


@dataclass
class MissionsConfig:
	"""Top-level mission scheduler configuration."""

	missions: FeatureFlags = field(default_factory=FeatureFlags)
	scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
	storage: StorageConfig = field(default_factory=StorageConfig)
	telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
	executor: ExecutorConfig = field(default_factory=ExecutorConfig)
	http: HttpConfig = field(default_factory=HttpConfig)
	base_dir: Path = field(default_factory=Path.cwd)

	def resolve(self, value: str) -> Path:
		"""Expand ``~`` and anchor relative paths at the config file's directory."""
		path = Path(os.path.expanduser(value))
		return path if path.is_absolute() else self.base_dir / path

	@property
	def data_dir(self) -> Path:
		return self.resolve(self.storage.data_dir)

	@property
	def db_path(self) -> Path:
		return self.data_dir / self.storage.db_file

	@property
	def state_path(self) -> Path:
		return self.data_dir / self.storage.state_file

	@property
	def templates_dir(self) -> Path:
		return self.resolve(self.storage.templates_dir)

	@property
	def event_log_path(self) -> Path | None:
		return self.resolve(self.telemetry.event_log) if self.telemetry.event_log else None


def parse_bool(value: Any) -> bool:
	if isinstance(value, bool):
		return value
	text = str(value).strip().lower()
	if text in BOOLEAN_TRUE_VALUES:
		return True
	if text in BOOLEAN_FALSE_VALUES:
		return False
	raise ValueError(f"Invalid boolean value: {value!r}")


def _build_missions(data: dict[str, Any]) -> FeatureFlags:
	enabled = parse_bool(data.get("enabled", True))
	ff = FeatureFlags(
		enabled=enabled,
		scheduler_enabled=enabled,
		http_enabled=enabled,
		telemetry_enabled=enabled,
	)
	for key in ("scheduler_enabled", "http_enabled", "telemetry_enabled"):
		if key in data:
			setattr(ff, key, parse_bool(data[key]))
	return ff


def _build_scheduler(data: dict[str, Any]) -> SchedulerConfig:
	sc = SchedulerConfig()
	for key in ("interval_ms", "max_concurrent"):
		if key in data:
			setattr(sc, key, int(data[key]))
	if "autostart" in data:
		sc.autostart = parse_bool(data["autostart"])
	return sc


def _build_storage(data: dict[str, Any]) -> StorageConfig:
	sc = StorageConfig()
	for key in ("data_dir", "db_file", "state_file", "templates_dir"):
		if key in data:
			setattr(sc, key, str(data[key]))
	return sc


def _build_telemetry(data: dict[str, Any]) -> TelemetryConfig:
	tc = TelemetryConfig()
	for key in ("event_log", "webhook_url"):
		if key in data:
			setattr(tc, key, str(data[key]))
	if "webhook_timeout" in data:
		tc.webhook_timeout = float(data["webhook_timeout"])
	return tc


def _build_executor(data: dict[str, Any]) -> ExecutorConfig:
	ec = ExecutorConfig()
	if "type" in data:
		ec.type = str(data["type"]).strip().lower()
	if "timeout" in data:
		ec.timeout = float(data["timeout"])
	return ec


def _build_http(data: dict[str, Any]) -> HttpConfig:
	hc = HttpConfig()
	if "host" in data:
		hc.host = str(data["host"])
	if "port" in data:
		hc.port = int(data["port"])
	return hc


def build_config(data: dict[str, Any], base_dir: Path | None = None) -> MissionsConfig:
	mc = MissionsConfig(base_dir=base_dir or Path.cwd())
	if "missions" in data:
		mc.missions = _build_missions(data["missions"])
	if "scheduler" in data:
		mc.scheduler = _build_scheduler(data["scheduler"])
	if "storage" in data:
		mc.storage = _build_storage(data["storage"])
	if "telemetry" in data:
		mc.telemetry = _build_telemetry(data["telemetry"])
	if "executor" in data:
		mc.executor = _build_executor(data["executor"])
	if "http" in data:
		mc.http = _build_http(data["http"])
	return mc


_ENV_FLAGS = {
	"MISSIONS_ENABLED": "enabled",
	"MISSIONS_SCHEDULER_ENABLED": "scheduler_enabled",
	"MISSIONS_HTTP_ENABLED": "http_enabled",
	"MISSIONS_TELEMETRY_ENABLED": "telemetry_enabled",
}


def apply_env_overrides(config: MissionsConfig, environ: Mapping[str, str] | None = None) -> MissionsConfig:
	"""Apply MISSIONS_* environment variables on top of file settings.

	Unparseable values are logged and ignored.
	"""
	env = os.environ if environ is None else environ
	for var, attr in _ENV_FLAGS.items():
		raw = env.get(var)
		if raw is None or not raw.strip():
			continue
		try:
			setattr(config.missions, attr, parse_bool(raw))
		except ValueError:
			logger.warning("Ignoring %s=%r: expected a boolean", var, raw)
	raw_interval = env.get("MISSIONS_POLL_INTERVAL_MS")
	if raw_interval and raw_interval.strip():
		try:
			config.scheduler.interval_ms = int(raw_interval)
		except ValueError:
			logger.warning("Ignoring MISSIONS_POLL_INTERVAL_MS=%r: expected an integer", raw_interval)
	return config


def load_config(path: str | Path, environ: Mapping[str, str] | None = None) -> MissionsConfig:
	"""Load a mission-scheduler.toml config file.

	Args:
		path: Path to the TOML config file.
		environ: Environment used for overrides (defaults to os.environ).

	Returns:
		Parsed MissionsConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	mc = build_config(data, base_dir=config_path.resolve().parent)
	return apply_env_overrides(mc, environ)


def load_config_or_default(path: str | Path, environ: Mapping[str, str] | None = None) -> MissionsConfig:
	"""Like load_config, but fall back to defaults (plus env) when the file is absent."""
	config_path = Path(path)
	if config_path.exists():
		return load_config(config_path, environ)
	logger.debug("Config %s not found; using defaults", config_path)
	return apply_env_overrides(MissionsConfig(), environ)


def validate_config(config: MissionsConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded MissionsConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	interval = config.scheduler.interval_ms
	if interval <= 0:
		issues.append(("error", f"scheduler.interval_ms must be positive (got {interval})"))
	elif interval < MIN_RECOMMENDED_INTERVAL_MS:
		issues.append(("warning", f"scheduler.interval_ms={interval} is very short; ticks may pile up"))

	if config.scheduler.max_concurrent < 0:
		issues.append(("error", f"scheduler.max_concurrent must be >= 0 (got {config.scheduler.max_concurrent})"))
	elif config.scheduler.max_concurrent == 0:
		issues.append(("warning", "scheduler.max_concurrent=0 leaves mission concurrency unbounded"))

	if config.executor.type not in EXECUTOR_TYPES:
		issues.append(("error", f"executor.type must be one of {', '.join(EXECUTOR_TYPES)} (got '{config.executor.type}')"))
	if config.executor.timeout < 0:
		issues.append(("error", "executor.timeout must be >= 0"))

	if not config.templates_dir.is_dir():
		issues.append(("warning", f"templates_dir does not exist: {config.templates_dir}"))

	if config.telemetry.webhook_url and not config.telemetry.webhook_url.startswith(("http://", "https://")):
		issues.append(("error", "telemetry.webhook_url must start with http:// or https://"))

	if not 0 < config.http.port < 65536:
		issues.append(("error", f"http.port out of range: {config.http.port}"))

	return issues

"""SQLite persistence for mission records."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from mission_scheduler.models import MissionRecord, MissionStatus
from mission_scheduler.schedule import normalize_schedule

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS missions (
	id TEXT PRIMARY KEY,
	name TEXT NOT NULL,
	description TEXT,
	status TEXT NOT NULL DEFAULT 'idle',
	enable INTEGER NOT NULL DEFAULT 1,
	priority INTEGER NOT NULL DEFAULT 0,
	schedule TEXT NOT NULL,
	next_run_at TEXT,
	last_run_at TEXT,
	last_run_finished_at TEXT,
	last_run_error TEXT,
	tags TEXT NOT NULL DEFAULT '[]',
	payload TEXT NOT NULL DEFAULT '{}',
	created_at TEXT,
	updated_at TEXT
);
"""


class MissionStore:
	"""Mission records in one SQLite table, listed in insertion order.

	Not synchronized: callers serialize access (see MissionController).
	"""

	def __init__(self, path: str | Path = ":memory:") -> None:
		db_path = str(path)
		if db_path != ":memory:":
			Path(db_path).parent.mkdir(parents=True, exist_ok=True)
		self.conn = sqlite3.connect(db_path, check_same_thread=False)
		self.conn.row_factory = sqlite3.Row
		logger.debug("Opened mission store: %s", db_path)
		if db_path != ":memory:":
			self.conn.execute("PRAGMA journal_mode=WAL")
			self.conn.execute("PRAGMA busy_timeout=5000")
		self.conn.executescript(SCHEMA_SQL)

	def close(self) -> None:
		self.conn.close()

	def list_all(self) -> list[MissionRecord]:
		rows = self.conn.execute("SELECT * FROM missions ORDER BY rowid ASC").fetchall()
		return [self._row_to_mission(r) for r in rows]

	def get(self, mission_id: str) -> MissionRecord | None:
		row = self.conn.execute("SELECT * FROM missions WHERE id=?", (mission_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_mission(row)

	def exists(self, mission_id: str) -> bool:
		row = self.conn.execute("SELECT 1 FROM missions WHERE id=?", (mission_id,)).fetchone()
		return row is not None

	def save(self, mission: MissionRecord) -> None:
		"""Insert or replace a record. Updates keep the original insertion position."""
		self.conn.execute(
			"""INSERT INTO missions
			(id, name, description, status, enable, priority, schedule,
			 next_run_at, last_run_at, last_run_finished_at, last_run_error,
			 tags, payload, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
			ON CONFLICT(id) DO UPDATE SET
				name=excluded.name,
				description=excluded.description,
				status=excluded.status,
				enable=excluded.enable,
				priority=excluded.priority,
				schedule=excluded.schedule,
				next_run_at=excluded.next_run_at,
				last_run_at=excluded.last_run_at,
				last_run_finished_at=excluded.last_run_finished_at,
				last_run_error=excluded.last_run_error,
				tags=excluded.tags,
				payload=excluded.payload,
				created_at=excluded.created_at,
				updated_at=excluded.updated_at""",
			(
				mission.id, mission.name, mission.description,
				mission.status.value, int(mission.enable), mission.priority,
				json.dumps(mission.schedule.to_dict()),
				mission.next_run_at, mission.last_run_at,
				mission.last_run_finished_at, mission.last_run_error,
				json.dumps(list(mission.tags)), json.dumps(mission.payload),
				mission.created_at, mission.updated_at,
			),
		)
		self.conn.commit()

	def delete(self, mission_id: str) -> bool:
		cursor = self.conn.execute("DELETE FROM missions WHERE id=?", (mission_id,))
		self.conn.commit()
		return cursor.rowcount > 0

	@staticmethod
	def _row_to_mission(row: sqlite3.Row) -> MissionRecord:
		return MissionRecord(
			id=row["id"],
			name=row["name"],
			description=row["description"],
			status=MissionStatus(row["status"]),
			enable=bool(row["enable"]),
			priority=row["priority"],
			schedule=normalize_schedule(json.loads(row["schedule"])),
			next_run_at=row["next_run_at"],
			last_run_at=row["last_run_at"],
			last_run_finished_at=row["last_run_finished_at"],
			last_run_error=row["last_run_error"],
			tags=tuple(json.loads(row["tags"])),
			payload=json.loads(row["payload"]),
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)

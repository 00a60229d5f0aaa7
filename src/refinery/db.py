"""SQLite ticket store for refinery state."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from refinery.constants import STATUS_CLOSED, STATUS_IN_PROGRESS, STATUS_OPEN
from refinery.errors import StoreConflictError
from refinery.models import Issue, _now_iso

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS issues (
	id TEXT PRIMARY KEY,
	title TEXT NOT NULL DEFAULT '',
	type TEXT NOT NULL DEFAULT 'task',
	status TEXT NOT NULL DEFAULT 'open',
	priority INTEGER NOT NULL DEFAULT 2,
	assignee TEXT NOT NULL DEFAULT '',
	description TEXT NOT NULL DEFAULT '',
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL,
	closed_at TEXT,
	close_reason TEXT NOT NULL DEFAULT '',
	fields TEXT NOT NULL DEFAULT '{}',
	extra_blockers INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_issues_type_status ON issues(type, status, priority);

CREATE TABLE IF NOT EXISTS dependencies (
	issue_id TEXT NOT NULL,
	depends_on_id TEXT NOT NULL,
	created_at TEXT NOT NULL,
	PRIMARY KEY (issue_id, depends_on_id),
	FOREIGN KEY (issue_id) REFERENCES issues(id)
);

CREATE INDEX IF NOT EXISTS idx_dependencies_blocker ON dependencies(depends_on_id);
"""

# A dependency is unresolved while its blocker is not closed. Blockers the
# store does not know about count as unresolved.
_OPEN_BLOCKERS_SQL = """
SELECT d.depends_on_id FROM dependencies d
LEFT JOIN issues b ON b.id = d.depends_on_id
WHERE d.issue_id = ? AND (b.status IS NULL OR b.status != 'closed')
ORDER BY d.created_at ASC, d.rowid ASC
"""

_ORDER_BY = "ORDER BY priority ASC, created_at ASC, id ASC"


class Database:
	"""SQLite ticket store: issues, merge requests and blocking edges."""

	def __init__(self, path: str | Path = ":memory:") -> None:
		db_path = str(path)
		self.conn = sqlite3.connect(db_path)
		self.conn.row_factory = sqlite3.Row
		logger.debug("Opened database connection: %s", db_path)
		if db_path != ":memory:":
			self.conn.execute("PRAGMA journal_mode=WAL")
			self.conn.execute("PRAGMA busy_timeout=5000")
			logger.debug("WAL mode activated for %s", db_path)
		self.conn.execute("PRAGMA foreign_keys=ON")
		self._lock = asyncio.Lock()
		self._create_tables()

	@staticmethod
	def _validate_identifier(name: str) -> None:
		"""Validate a SQL identifier or field name before it is spliced into a statement."""
		if not name or len(name) > 64 or not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", name):
			raise ValueError(f"Invalid identifier: {name!r}")

	def _create_tables(self) -> None:
		self.conn.executescript(SCHEMA_SQL)
		self._migrate_issue_columns()

	def _migrate_issue_columns(self) -> None:
		"""Add close_reason and extra_blockers to issues (idempotent).

		Only does work on stores whose issues table predates these columns;
		for a store created from SCHEMA_SQL every ALTER hits the duplicate
		column path and is skipped.
		"""
		migrations = [
			("issues", "close_reason", "TEXT NOT NULL DEFAULT ''"),
			("issues", "extra_blockers", "INTEGER NOT NULL DEFAULT 0"),
		]
		for table, column, col_type in migrations:
			self._validate_identifier(table)
			self._validate_identifier(column)
			try:
				self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")  # noqa: S608
				logger.debug("Migration: added column %s.%s", table, column)
			except sqlite3.OperationalError as exc:
				if "duplicate column name" not in str(exc):
					logger.warning("Migration failed for %s.%s: %s", table, column, exc)
					raise

	def close(self) -> None:
		logger.debug("Closing database connection")
		self.conn.close()

	def __enter__(self) -> Database:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	@contextmanager
	def transaction(self) -> Generator[sqlite3.Connection, None, None]:
		"""Context manager for explicit transactions.

		Commits on success, rolls back on exception.
		"""
		try:
			yield self.conn
		except Exception:
			self.conn.rollback()
			raise
		else:
			self.conn.commit()

	async def locked_call(self, fn: str, *args: Any, **kwargs: Any) -> Any:
		"""Call a Database method while holding the asyncio lock.

		Use this to serialize concurrent access from multiple asyncio tasks.
		"""
		async with self._lock:
			return getattr(self, fn)(*args, **kwargs)

	# -- Issues --

	def insert_issue(self, issue: Issue) -> Issue:
		with self.transaction() as conn:
			conn.execute(
				"""INSERT INTO issues
				(id, title, type, status, priority, assignee, description,
				 created_at, updated_at, closed_at, close_reason, fields, extra_blockers)
				VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
				(
					issue.id, issue.title, issue.type, issue.status, issue.priority,
					issue.assignee, issue.description, issue.created_at, issue.updated_at,
					issue.closed_at, issue.close_reason, json.dumps(issue.fields),
					issue.extra_blockers,
				),
			)
		logger.info("Inserted %s %s (status=%s, priority=%d)", issue.type, issue.id, issue.status, issue.priority)
		return issue

	def get_issue(self, issue_id: str) -> Issue | None:
		row = self.conn.execute("SELECT * FROM issues WHERE id=?", (issue_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_issue(row)

	def list_issues(
		self,
		type: str | None = None,
		status: str | None = None,
		assignee: str | None = None,
	) -> list[Issue]:
		"""List issues, optionally filtered by type, raw status and assignee."""
		clauses: list[str] = []
		params: list[Any] = []
		if type is not None:
			clauses.append("type = ?")
			params.append(type)
		if status is not None:
			clauses.append("status = ?")
			params.append(status)
		if assignee is not None:
			clauses.append("assignee = ?")
			params.append(assignee)
		where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
		rows = self.conn.execute(
			f"SELECT * FROM issues {where} {_ORDER_BY}",  # noqa: S608
			params,
		).fetchall()
		return [self._row_to_issue(r) for r in rows]

	def ready_issues(self, type: str | None = None) -> list[Issue]:
		"""Open issues with no unresolved blocker, by priority then age."""
		type_clause = "AND i.type = ?" if type is not None else ""
		params: tuple[Any, ...] = (type,) if type is not None else ()
		rows = self.conn.execute(
			f"""SELECT i.* FROM issues i
			WHERE i.status = 'open'
			AND i.extra_blockers = 0
			{type_clause}
			AND NOT EXISTS (
				SELECT 1 FROM dependencies d
				LEFT JOIN issues b ON b.id = d.depends_on_id
				WHERE d.issue_id = i.id
				AND (b.status IS NULL OR b.status != 'closed')
			)
			ORDER BY i.priority ASC, i.created_at ASC, i.id ASC""",  # noqa: S608
			params,
		).fetchall()
		return [self._row_to_issue(r) for r in rows]

	def update_issue(
		self,
		issue_id: str,
		expected_status: str,
		*,
		status: str | None = None,
		fields: dict[str, str | None] | None = None,
		close_reason: str | None = None,
		expected_fields: dict[str, str | None] | None = None,
	) -> Issue:
		"""Apply a status-guarded update in a single statement.

		The update only lands if the stored status still equals expected_status
		and every key in expected_fields still holds the given value (None or ''
		means absent). Keys in fields are merged into the stored field map; a
		None value removes the key. Raises StoreConflictError when a guard fails.
		"""
		now = _now_iso()
		field_guards = ""
		guard_params: list[Any] = []
		for key, value in (expected_fields or {}).items():
			self._validate_identifier(key)
			field_guards += " AND NULLIF(json_extract(fields, ?), '') IS ?"
			guard_params.extend([f"$.{key}", value or None])
		new_status = status if status is not None else expected_status
		closed_at = now if new_status == STATUS_CLOSED else None
		row = self.conn.execute(
			f"""UPDATE issues SET
				status = ?,
				fields = json_patch(fields, ?),
				close_reason = COALESCE(?, close_reason),
				closed_at = ?,
				updated_at = ?
			WHERE id = ? AND status = ?{field_guards}
			RETURNING *""",  # noqa: S608
			[
				new_status, json.dumps(fields or {}), close_reason, closed_at, now,
				issue_id, expected_status, *guard_params,
			],
		).fetchone()
		self.conn.commit()
		if row is None:
			raise StoreConflictError(issue_id, expected_status, self._current_status(issue_id))
		logger.info("Updated issue %s: %s -> %s", issue_id, expected_status, new_status)
		return self._row_to_issue(row)

	def claim_issue(
		self,
		issue_id: str,
		exclusive_field: str | None = None,
		exclusive_default: str | None = None,
	) -> Issue:
		"""Atomically move an open issue to in_progress.

		With exclusive_field set, the claim also fails while another in_progress
		issue of the same type carries the same value for that field. A missing
		or empty value compares as exclusive_default. Uses a single UPDATE so two
		concurrent claimers cannot both win.
		"""
		now = _now_iso()
		exclusive_clause = ""
		params: list[Any] = [STATUS_IN_PROGRESS, now, issue_id]
		if exclusive_field is not None:
			self._validate_identifier(exclusive_field)
			path = f"$.{exclusive_field}"
			exclusive_clause = """AND NOT EXISTS (
				SELECT 1 FROM issues o
				WHERE o.type = issues.type
				AND o.status = 'in_progress'
				AND o.id != issues.id
				AND COALESCE(NULLIF(json_extract(o.fields, ?), ''), ?)
					IS COALESCE(NULLIF(json_extract(issues.fields, ?), ''), ?)
			)"""
			params.extend([path, exclusive_default, path, exclusive_default])
		row = self.conn.execute(
			f"""UPDATE issues SET status = ?, updated_at = ?
			WHERE id = ? AND status = 'open'
			{exclusive_clause}
			RETURNING *""",  # noqa: S608
			params,
		).fetchone()
		self.conn.commit()
		if row is None:
			actual = self._current_status(issue_id)
			logger.debug("Claim of %s lost (status=%s)", issue_id, actual)
			raise StoreConflictError(issue_id, STATUS_OPEN, actual)
		logger.info("Claimed issue %s", issue_id)
		return self._row_to_issue(row)

	def _current_status(self, issue_id: str) -> str | None:
		row = self.conn.execute("SELECT status FROM issues WHERE id=?", (issue_id,)).fetchone()
		return row["status"] if row else None

	# -- Dependencies --

	def add_dependency(self, issue_id: str, depends_on_id: str) -> None:
		"""Record that issue_id is blocked until depends_on_id closes."""
		if issue_id == depends_on_id:
			raise ValueError(f"Issue cannot depend on itself: {issue_id}")
		with self.transaction() as conn:
			conn.execute(
				"INSERT OR IGNORE INTO dependencies (issue_id, depends_on_id, created_at) VALUES (?, ?, ?)",
				(issue_id, depends_on_id, _now_iso()),
			)
		logger.debug("Dependency added: %s blocked by %s", issue_id, depends_on_id)

	def remove_dependency(self, issue_id: str, depends_on_id: str) -> None:
		with self.transaction() as conn:
			conn.execute(
				"DELETE FROM dependencies WHERE issue_id=? AND depends_on_id=?",
				(issue_id, depends_on_id),
			)

	def set_extra_blockers(self, issue_id: str, count: int) -> None:
		"""Set the count of blockers tracked without a resolvable identity."""
		if count < 0:
			raise ValueError(f"extra_blockers must be >= 0, got {count}")
		with self.transaction() as conn:
			conn.execute(
				"UPDATE issues SET extra_blockers=?, updated_at=? WHERE id=?",
				(count, _now_iso(), issue_id),
			)

	def _open_blockers(self, issue_id: str) -> list[str]:
		rows = self.conn.execute(_OPEN_BLOCKERS_SQL, (issue_id,)).fetchall()
		return [r["depends_on_id"] for r in rows]

	def _row_to_issue(self, row: sqlite3.Row) -> Issue:
		blocked_by = self._open_blockers(row["id"])
		return Issue(
			id=row["id"],
			title=row["title"],
			type=row["type"],
			status=row["status"],
			priority=row["priority"],
			assignee=row["assignee"],
			description=row["description"],
			created_at=row["created_at"],
			updated_at=row["updated_at"],
			closed_at=row["closed_at"],
			close_reason=row["close_reason"],
			fields=self._parse_fields(row["fields"]),
			extra_blockers=row["extra_blockers"],
			blocked_by=blocked_by,
			blocked_by_count=len(blocked_by) + row["extra_blockers"],
		)

	@staticmethod
	def _parse_fields(value: str | None) -> dict[str, str]:
		if not value:
			return {}
		try:
			parsed = json.loads(value)
		except json.JSONDecodeError:
			logger.warning("Discarding malformed fields column: %r", value[:80])
			return {}
		if not isinstance(parsed, dict):
			return {}
		return {str(k): str(v) for k, v in parsed.items() if v is not None}

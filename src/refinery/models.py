"""Data models for refinery state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import uuid4

from pydantic import BaseModel

from refinery.constants import (
	DEFAULT_PRIORITY,
	DEFAULT_TARGET,
	MR_BLOCKED,
	MR_CLOSED,
	MR_FAILED,
	MR_IN_PROGRESS,
	MR_READY,
	STATUS_CLOSED,
	STATUS_IN_PROGRESS,
	STATUS_OPEN,
	TYPE_MERGE_REQUEST,
	TYPE_TASK,
)


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex[:12]


class MRFieldsSchema(BaseModel, extra="ignore"):
	"""Pydantic schema for the type-specific fields of a merge-request ticket."""

	branch: str = ""
	worker: str = ""
	target: str = DEFAULT_TARGET
	source_issue: str = ""
	error: str = ""
	outcome: str = ""


@dataclass
class Issue:
	"""A ticket in the store (task, merge request, mail message, ...)."""

	id: str = field(default_factory=_new_id)
	title: str = ""
	type: str = TYPE_TASK
	status: str = STATUS_OPEN  # open/in_progress/closed
	priority: int = DEFAULT_PRIORITY
	assignee: str = ""
	description: str = ""
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)
	closed_at: str | None = None
	close_reason: str = ""
	fields: dict[str, str] = field(default_factory=dict)
	extra_blockers: int = 0
	# Derived by the store on read, never written back
	blocked_by: list[str] = field(default_factory=list)
	blocked_by_count: int = 0


def derive_status(
	raw_status: str,
	error: str,
	blocked_by: Sequence[str],
	blocked_by_count: int,
) -> str:
	"""Classify a merge request from its stored fields.

	Pure function. Precedence: closed > in_progress > failed > blocked > ready.
	An error left on a closed request is ignored. blocked_by and
	blocked_by_count are checked independently; either one is enough to block.
	"""
	if raw_status == STATUS_CLOSED:
		return MR_CLOSED
	if raw_status == STATUS_IN_PROGRESS:
		return MR_IN_PROGRESS
	if error:
		return MR_FAILED
	if blocked_by or blocked_by_count > 0:
		return MR_BLOCKED
	return MR_READY


@dataclass
class MergeRequest:
	"""A worker branch waiting to land on a target branch."""

	id: str = field(default_factory=_new_id)
	title: str = ""
	branch: str = ""
	worker: str = ""
	target: str = DEFAULT_TARGET
	priority: int = DEFAULT_PRIORITY
	raw_status: str = STATUS_OPEN
	error: str = ""
	created_at: str = field(default_factory=_now_iso)
	blocked_by: list[str] = field(default_factory=list)
	blocked_by_count: int = 0
	source_issue: str = ""
	outcome: str = ""  # merged/rejected once closed
	close_reason: str = ""

	@property
	def status(self) -> str:
		return derive_status(self.raw_status, self.error, self.blocked_by, self.blocked_by_count)

	@classmethod
	def from_issue(cls, issue: Issue) -> MergeRequest:
		parsed = MRFieldsSchema.model_validate(issue.fields)
		return cls(
			id=issue.id,
			title=issue.title,
			branch=parsed.branch,
			worker=parsed.worker,
			target=parsed.target or DEFAULT_TARGET,
			priority=issue.priority,
			raw_status=issue.status,
			error=parsed.error,
			created_at=issue.created_at,
			blocked_by=list(issue.blocked_by),
			blocked_by_count=issue.blocked_by_count,
			source_issue=parsed.source_issue,
			outcome=parsed.outcome,
			close_reason=issue.close_reason,
		)

	def to_issue(self) -> Issue:
		"""Build a new merge-request ticket for insertion."""
		return Issue(
			id=self.id,
			title=self.title or f"Merge {self.branch}",
			type=TYPE_MERGE_REQUEST,
			status=self.raw_status,
			priority=self.priority,
			assignee=self.worker,
			created_at=self.created_at,
			updated_at=self.created_at,
			close_reason=self.close_reason,
			fields={
				k: v for k, v in {
					"branch": self.branch,
					"worker": self.worker,
					"target": self.target,
					"source_issue": self.source_issue,
					"error": self.error,
					"outcome": self.outcome,
				}.items() if v
			},
		)


def selection_key(mr: MergeRequest) -> tuple[int, str, str]:
	"""Sort key for picking the next MR on a target: priority, then age."""
	return (mr.priority, _sortable_ts(mr.created_at), mr.id)


def _sortable_ts(ts: str) -> str:
	try:
		return datetime.fromisoformat(ts).astimezone(timezone.utc).isoformat()
	except ValueError:
		return ts


def format_age(created_at: str, now: datetime | None = None) -> str:
	"""Format the age of a timestamp as Ns / Nm / Nh / Nd, or '?' if unparseable."""
	try:
		created = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
	except (ValueError, AttributeError):
		return "?"
	if created.tzinfo is None:
		created = created.replace(tzinfo=timezone.utc)
	if now is None:
		now = datetime.now(timezone.utc)
	seconds = max(0, int((now - created).total_seconds()))
	if seconds < 60:
		return f"{seconds}s"
	if seconds < 3600:
		return f"{seconds // 60}m"
	if seconds < 86400:
		return f"{seconds // 3600}h"
	return f"{seconds // 86400}d"


@dataclass
class MRView:
	"""Read model handed to the presentation layer."""

	id: str
	status: str
	priority: int
	branch: str
	worker: str
	target: str
	age: str
	blocking_on: list[str] = field(default_factory=list)
	error: str = ""

	@classmethod
	def from_mr(cls, mr: MergeRequest, now: datetime | None = None) -> MRView:
		status = mr.status
		return cls(
			id=mr.id,
			status=status,
			priority=mr.priority,
			branch=mr.branch,
			worker=mr.worker,
			target=mr.target,
			age=format_age(mr.created_at, now),
			blocking_on=list(mr.blocked_by) if status == MR_BLOCKED else [],
			error=mr.error if status == MR_FAILED else "",
		)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class RetryResult:
	"""Outcome of a retry call."""

	mr_id: str
	branch: str
	worker: str
	issue_id: str = ""
	error_cleared: bool = False
	previous_error: str = ""
	processed: bool = False
	status: str = ""
	error: str = ""

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class RejectResult:
	"""Outcome of a reject call."""

	mr_id: str
	branch: str
	worker: str
	issue_id: str = ""
	reason: str = ""
	error_cleared: bool = False
	notified: bool = False

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class PassResult:
	"""Summary of one scheduling pass."""

	merged: list[str] = field(default_factory=list)
	failed: list[str] = field(default_factory=list)
	skipped: list[str] = field(default_factory=list)

	@property
	def attempted(self) -> int:
		return len(self.merged) + len(self.failed)

	def extend(self, other: PassResult) -> None:
		self.merged.extend(other.merged)
		self.failed.extend(other.failed)
		self.skipped.extend(other.skipped)

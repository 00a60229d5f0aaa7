"""Refinery manager -- merge request lookup, retry and reject."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Sequence

from refinery.config import QueueConfig
from refinery.constants import (
	DEFAULT_PRIORITY,
	DEFAULT_TARGET,
	DERIVED_STATUSES,
	INTEGRATION_PREFIX,
	MR_FAILED,
	MR_READY,
	OUTCOME_REJECTED,
	RAW_STATUSES,
	STATUS_CLOSED,
	STATUS_OPEN,
	TYPE_MERGE_REQUEST,
	WORKER_BRANCH_PREFIX,
)
from refinery.db import Database
from refinery.errors import (
	MRAlreadyClosedError,
	MRNotFailedError,
	MRNotFoundError,
	NotifyError,
	RefineryError,
	StoreConflictError,
)
from refinery.models import MergeRequest, RejectResult, RetryResult
from refinery.notifier import Notifier, NullNotifier
from refinery.processor import ATTEMPT_SKIPPED, MergeQueueProcessor

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable["MergeRequest | None"]]


class RefineryManager:
	"""Lifecycle operations on a rig's merge queue."""

	def __init__(
		self,
		db: Database,
		processor: MergeQueueProcessor,
		notifier: Notifier | None = None,
		config: QueueConfig | None = None,
	) -> None:
		self.db = db
		self.processor = processor
		self.notifier = notifier or NullNotifier()
		self.config = config or QueueConfig()

	async def get_mr(self, mr_id: str) -> MergeRequest:
		mr = await self._resolve_by_id(mr_id)
		if mr is None:
			raise MRNotFoundError(mr_id)
		return mr

	async def list_mrs(
		self,
		status: str | None = STATUS_OPEN,
		worker: str | None = None,
		target: str | None = None,
		epic: str | None = None,
	) -> list[MergeRequest]:
		"""List merge requests.

		status accepts a raw status (open/in_progress/closed), a derived one
		(failed/blocked/ready), or None for everything.
		"""
		if status is not None and status not in RAW_STATUSES and status not in DERIVED_STATUSES:
			raise ValueError(f"unknown status filter: {status!r}")
		raw_filter = status if status in RAW_STATUSES else None
		if status in DERIVED_STATUSES and status not in RAW_STATUSES:
			raw_filter = STATUS_OPEN
		issues = await self.db.locked_call("list_issues", type=TYPE_MERGE_REQUEST, status=raw_filter)
		mrs = [MergeRequest.from_issue(i) for i in issues]
		if status is not None and status not in RAW_STATUSES:
			mrs = [mr for mr in mrs if mr.status == status]
		return _filter(mrs, worker, target, epic)

	async def ready_mrs(
		self,
		worker: str | None = None,
		target: str | None = None,
		epic: str | None = None,
	) -> list[MergeRequest]:
		"""Merge requests the store reports unblocked, re-checked as ready."""
		issues = await self.db.locked_call("ready_issues", TYPE_MERGE_REQUEST)
		mrs = [MergeRequest.from_issue(i) for i in issues]
		return _filter([mr for mr in mrs if mr.status == MR_READY], worker, target, epic)

	async def submit_mr(
		self,
		branch: str,
		worker: str = "",
		target: str = DEFAULT_TARGET,
		priority: int = DEFAULT_PRIORITY,
		source_issue: str = "",
		blocked_by: Sequence[str] = (),
		title: str = "",
	) -> MergeRequest:
		"""Create a merge request ticket for a worker branch.

		The worker defaults to the name embedded in a polecat/<worker>/... branch.
		A branch may have only one merge request in flight.
		"""
		if not branch:
			raise ValueError("branch is required")
		if not worker:
			worker = worker_from_branch(branch)
		if not worker:
			raise ValueError(f"cannot infer worker from branch {branch!r}; pass one explicitly")
		if priority < 0:
			raise ValueError(f"priority must be >= 0, got {priority}")
		existing = await self._resolve_by_branch(branch)
		if existing is not None:
			raise RefineryError(f"branch {branch} already has merge request {existing.id} in flight")

		mr = MergeRequest(
			title=title,
			branch=branch,
			worker=worker,
			target=target or DEFAULT_TARGET,
			priority=priority,
			source_issue=source_issue,
		)
		await self.db.locked_call("insert_issue", mr.to_issue())
		for blocker in blocked_by:
			await self.db.locked_call("add_dependency", mr.id, blocker)
		logger.info("Submitted %s: %s -> %s (P%d)", mr.id, branch, mr.target, priority)
		return await self.get_mr(mr.id)

	async def retry(self, mr_id: str, immediate: bool = False) -> RetryResult:
		"""Clear the error on a failed merge request so it can be processed again.

		With immediate set, the merge attempt runs before this returns;
		otherwise the request waits for the next scheduling pass.
		"""
		mr = await self.get_mr(mr_id)
		if mr.status != MR_FAILED:
			raise MRNotFailedError(mr.id, mr.status)

		try:
			issue = await self.db.locked_call(
				"update_issue", mr.id, STATUS_OPEN,
				fields={"error": None},
				expected_fields={"error": mr.error},
			)
		except StoreConflictError:
			# The failure we read is no longer the current one
			current = await self.get_mr(mr_id)
			raise MRNotFailedError(current.id, current.status) from None
		cleared = MergeRequest.from_issue(issue)
		logger.info("Cleared error on %s (was: %s), now %s", mr.id, mr.error, cleared.status)

		result = RetryResult(
			mr_id=mr.id,
			branch=mr.branch,
			worker=mr.worker,
			issue_id=mr.source_issue,
			error_cleared=True,
			previous_error=mr.error,
			status=cleared.status,
		)
		if not immediate:
			return result

		if cleared.status != MR_READY:
			logger.warning("Not processing %s now: status is %s", mr.id, cleared.status)
			return result
		outcome = await self.processor.process_mr(mr.id)
		after = await self.get_mr(mr.id)
		result.processed = outcome != ATTEMPT_SKIPPED
		result.status = after.status
		result.error = after.error if after.status == MR_FAILED else ""
		return result

	async def reject_mr(self, id_or_branch: str, reason: str, notify: bool = False) -> RejectResult:
		"""Close a merge request without merging it.

		Resolves by ID first, then by branch among merge requests that are not
		closed. Works from any non-closed state, including one a processor is
		mid-attempt on. The linked source issue is left open.
		"""
		mr = await self._resolve(id_or_branch)
		error_cleared = False
		for attempt in range(self.config.max_reject_attempts):
			if mr.raw_status == STATUS_CLOSED:
				raise MRAlreadyClosedError(mr.id)
			try:
				await self.db.locked_call(
					"update_issue", mr.id, mr.raw_status,
					status=STATUS_CLOSED,
					fields={"outcome": OUTCOME_REJECTED, "error": None},
					close_reason=reason,
				)
			except StoreConflictError as exc:
				logger.debug("Reject of %s raced a transition (attempt %d): %s", mr.id, attempt + 1, exc)
				mr = await self.get_mr(mr.id)
				continue
			error_cleared = bool(mr.error) and mr.raw_status == STATUS_OPEN
			break
		else:
			raise RefineryError(
				f"could not reject {mr.id}: status kept changing after "
				f"{self.config.max_reject_attempts} attempts"
			)
		logger.info("Rejected %s (%s): %s", mr.id, mr.branch, reason)

		result = RejectResult(
			mr_id=mr.id,
			branch=mr.branch,
			worker=mr.worker,
			issue_id=mr.source_issue,
			reason=reason,
			error_cleared=error_cleared,
		)
		if notify:
			result.notified = await self._notify_rejected(mr, reason)
		return result

	async def _notify_rejected(self, mr: MergeRequest, reason: str) -> bool:
		body = f"Merge request {mr.id} for {mr.branch} was rejected.\nReason: {reason}\n"
		if mr.source_issue:
			body += f"Issue {mr.source_issue} is still open.\n"
		try:
			await self.notifier.notify(mr.worker, f"Merge request rejected: {mr.branch}", body)
		except NotifyError as exc:
			logger.warning("Could not notify %s about %s: %s", mr.worker, mr.id, exc)
			return False
		return True

	async def _resolve(self, ref: str) -> MergeRequest:
		resolvers: tuple[Resolver, ...] = (self._resolve_by_id, self._resolve_by_branch)
		for resolver in resolvers:
			mr = await resolver(ref)
			if mr is not None:
				return mr
		raise MRNotFoundError(ref)

	async def _resolve_by_id(self, mr_id: str) -> MergeRequest | None:
		issue = await self.db.locked_call("get_issue", mr_id)
		if issue is None or issue.type != TYPE_MERGE_REQUEST:
			return None
		return MergeRequest.from_issue(issue)

	async def _resolve_by_branch(self, branch: str) -> MergeRequest | None:
		issues = await self.db.locked_call("list_issues", type=TYPE_MERGE_REQUEST)
		matches = [
			mr for mr in (MergeRequest.from_issue(i) for i in issues)
			if mr.branch == branch and mr.raw_status != STATUS_CLOSED
		]
		if not matches:
			return None
		if len(matches) > 1:
			logger.warning(
				"Branch %s matches %d open merge requests, using %s",
				branch, len(matches), matches[0].id,
			)
		return matches[0]


def worker_from_branch(branch: str) -> str:
	"""Extract <worker> from a polecat/<worker>/... branch name, or ''."""
	if not branch.startswith(WORKER_BRANCH_PREFIX):
		return ""
	return branch[len(WORKER_BRANCH_PREFIX):].split("/", 1)[0]


def _filter(
	mrs: list[MergeRequest],
	worker: str | None,
	target: str | None,
	epic: str | None,
) -> list[MergeRequest]:
	if worker:
		mrs = [mr for mr in mrs if mr.worker.lower() == worker.lower()]
	if target:
		mrs = [mr for mr in mrs if mr.target == target]
	if epic:
		mrs = [mr for mr in mrs if mr.target == f"{INTEGRATION_PREFIX}{epic}"]
	return mrs

"""Merge queue processor -- select, claim, sync, submit, close or record failure."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from refinery.adapters import SourceControlAdapter
from refinery.config import QueueConfig
from refinery.constants import (
	DEFAULT_TARGET,
	MR_READY,
	OUTCOME_MERGED,
	STATUS_CLOSED,
	STATUS_IN_PROGRESS,
	STATUS_OPEN,
	TYPE_MERGE_REQUEST,
)
from refinery.db import Database
from refinery.errors import AdapterError, StoreConflictError
from refinery.models import MergeRequest, PassResult, selection_key

logger = logging.getLogger(__name__)

ATTEMPT_MERGED = "merged"
ATTEMPT_FAILED = "failed"
ATTEMPT_SKIPPED = "skipped"

CANCELLED_ERROR = "merge attempt cancelled"


class MergeQueueProcessor:
	"""Lands ready merge requests, one at a time per target branch.

	Targets are drained concurrently. Every status change goes through a
	status-guarded store update, so a claim lost to another pass or a
	request rejected mid-attempt is skipped rather than overwritten.
	"""

	def __init__(self, config: QueueConfig, db: Database, adapter: SourceControlAdapter) -> None:
		self.config = config
		self.db = db
		self.adapter = adapter
		self.running = True

	async def run(self) -> None:
		"""Main loop: run passes until stopped, sleeping when a pass finds nothing."""
		logger.info("Merge queue processor started (poll every %ds)", self.config.poll_interval)
		while self.running:
			result = await self.run_pass()
			if result.attempted == 0:
				await asyncio.sleep(self.config.poll_interval)
		logger.info("Merge queue processor stopped")

	def stop(self) -> None:
		self.running = False

	async def run_pass(self) -> PassResult:
		"""One scheduling pass over every ready merge request.

		Blocking state is read fresh from the store on every pass.
		"""
		issues = await self.db.locked_call("ready_issues", TYPE_MERGE_REQUEST)
		by_target: dict[str, list[MergeRequest]] = defaultdict(list)
		for issue in issues:
			mr = MergeRequest.from_issue(issue)
			if mr.status == MR_READY:
				by_target[mr.target].append(mr)

		result = PassResult()
		if not by_target:
			logger.debug("Merge queue empty")
			return result

		for queue in by_target.values():
			queue.sort(key=selection_key)
		drained = await asyncio.gather(
			*(self._drain_target(target, queue) for target, queue in by_target.items())
		)
		for partial in drained:
			result.extend(partial)
		logger.info(
			"Pass complete: %d merged, %d failed, %d skipped",
			len(result.merged), len(result.failed), len(result.skipped),
		)
		return result

	async def _drain_target(self, target: str, queue: list[MergeRequest]) -> PassResult:
		"""Attempt each ready request of one target in selection order."""
		result = PassResult()
		for mr in queue:
			outcome = await self.process_mr(mr.id)
			if outcome == ATTEMPT_MERGED:
				result.merged.append(mr.id)
			elif outcome == ATTEMPT_FAILED:
				result.failed.append(mr.id)
			else:
				result.skipped.append(mr.id)
		logger.debug("Target %s drained: %d request(s)", target, len(queue))
		return result

	async def process_mr(self, mr_id: str) -> str:
		"""Claim and attempt a single merge request.

		Returns ATTEMPT_MERGED, ATTEMPT_FAILED, or ATTEMPT_SKIPPED when the
		request is not ready, its target is busy, or it changed underneath us.
		"""
		issue = await self.db.locked_call("get_issue", mr_id)
		if issue is None or issue.type != TYPE_MERGE_REQUEST:
			logger.debug("Skipping %s: no longer in the store", mr_id)
			return ATTEMPT_SKIPPED
		mr = MergeRequest.from_issue(issue)
		if mr.status != MR_READY:
			logger.debug("Skipping %s: status is %s", mr_id, mr.status)
			return ATTEMPT_SKIPPED

		try:
			claimed = await self.db.locked_call(
				"claim_issue", mr_id, exclusive_field="target", exclusive_default=DEFAULT_TARGET,
			)
		except StoreConflictError as exc:
			logger.debug("Skipping %s: claim lost (%s)", mr_id, exc)
			return ATTEMPT_SKIPPED
		mr = MergeRequest.from_issue(claimed)
		logger.info("Processing %s (%s -> %s, worker %s)", mr.id, mr.branch, mr.target, mr.worker)

		try:
			await self._land(mr)
		except asyncio.CancelledError:
			self._release_cancelled(mr)
			raise
		except Exception as exc:
			if not isinstance(exc, AdapterError):
				logger.warning("Unexpected adapter failure on %s", mr.id, exc_info=True)
			return await self._record_failure(mr, str(exc) or type(exc).__name__)
		return await self._record_merged(mr)

	def _release_cancelled(self, mr: MergeRequest) -> None:
		"""Hand a claimed request back as failed when its attempt is cancelled.

		Called without the store lock: store methods are synchronous, so no
		other task can be inside one while this runs.
		"""
		try:
			self.db.update_issue(
				mr.id, STATUS_IN_PROGRESS,
				status=STATUS_OPEN,
				fields={"error": CANCELLED_ERROR},
			)
		except StoreConflictError as exc:
			logger.debug("Cancelled attempt on %s already superseded: %s", mr.id, exc)
			return
		logger.warning("Attempt on %s cancelled, claim released", mr.id)

	async def _land(self, mr: MergeRequest) -> None:
		if not mr.worker:
			raise AdapterError("resolving worker", f"merge request {mr.id} has no worker")
		await self.adapter.sync(mr.worker)
		await self.adapter.submit(mr.worker)

	async def _record_merged(self, mr: MergeRequest) -> str:
		try:
			await self.db.locked_call(
				"update_issue", mr.id, STATUS_IN_PROGRESS,
				status=STATUS_CLOSED,
				fields={"outcome": OUTCOME_MERGED, "error": None},
				close_reason=OUTCOME_MERGED,
			)
		except StoreConflictError as exc:
			# Rejected while we were landing it; leave the rejection in place
			logger.warning("Merged %s but it was superseded: %s", mr.id, exc)
			return ATTEMPT_SKIPPED
		logger.info("Merged %s into %s", mr.branch, mr.target)
		return ATTEMPT_MERGED

	async def _record_failure(self, mr: MergeRequest, detail: str) -> str:
		try:
			await self.db.locked_call(
				"update_issue", mr.id, STATUS_IN_PROGRESS,
				status=STATUS_OPEN,
				fields={"error": detail},
			)
		except StoreConflictError as exc:
			logger.warning("Failure on %s not recorded, superseded: %s", mr.id, exc)
			return ATTEMPT_SKIPPED
		logger.warning("Merge of %s failed: %s", mr.id, detail)
		return ATTEMPT_FAILED

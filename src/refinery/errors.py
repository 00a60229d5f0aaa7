"""Exception hierarchy for refinery operations."""

from __future__ import annotations


class RefineryError(Exception):
	"""Base class for all refinery errors."""


class MRNotFoundError(RefineryError):
	"""No merge request matches the given ID or branch."""

	def __init__(self, ref: str) -> None:
		super().__init__(f"merge request not found: {ref}")
		self.ref = ref


class MRNotFailedError(RefineryError):
	"""Retry was requested on a merge request whose derived status is not failed."""

	def __init__(self, mr_id: str, status: str) -> None:
		super().__init__(f"merge request {mr_id} has not failed (status: {status})")
		self.mr_id = mr_id
		self.status = status


class MRAlreadyClosedError(RefineryError):
	"""Reject was requested on a merge request that is already closed."""

	def __init__(self, mr_id: str) -> None:
		super().__init__(f"merge request {mr_id} is already closed")
		self.mr_id = mr_id


class StoreConflictError(RefineryError):
	"""A status-guarded update found the record in a different status."""

	def __init__(self, issue_id: str, expected: str, actual: str | None = None) -> None:
		detail = f"expected status {expected!r}"
		if actual is not None:
			detail += f", found {actual!r}"
		super().__init__(f"conflicting update on {issue_id}: {detail}")
		self.issue_id = issue_id
		self.expected = expected
		self.actual = actual


class AdapterError(RefineryError):
	"""A source control operation (sync, submit, ...) failed."""

	def __init__(self, operation: str, detail: str) -> None:
		super().__init__(f"{operation}: {detail}")
		self.operation = operation
		self.detail = detail


class NotifyError(RefineryError):
	"""A notification could not be delivered."""


class ConfigError(RefineryError):
	"""Configuration is missing or invalid."""

"""Ticket types, statuses and MR outcomes shared across the engine."""

from __future__ import annotations

TYPE_MERGE_REQUEST = "merge-request"
TYPE_MESSAGE = "message"
TYPE_TASK = "task"

# Raw (stored) ticket statuses
STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in_progress"
STATUS_CLOSED = "closed"
RAW_STATUSES: tuple[str, ...] = (STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_CLOSED)

# Derived MR statuses, in classification precedence order
MR_CLOSED = "closed"
MR_IN_PROGRESS = "in_progress"
MR_FAILED = "failed"
MR_BLOCKED = "blocked"
MR_READY = "ready"
DERIVED_STATUSES: tuple[str, ...] = (MR_CLOSED, MR_IN_PROGRESS, MR_FAILED, MR_BLOCKED, MR_READY)

OUTCOME_MERGED = "merged"
OUTCOME_REJECTED = "rejected"

DEFAULT_PRIORITY = 2
DEFAULT_TARGET = "main"
INTEGRATION_PREFIX = "integration/"
WORKER_BRANCH_PREFIX = "polecat/"

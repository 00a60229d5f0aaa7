"""Shared pytest fixtures and factory functions for refinery tests."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import pytest

from refinery.adapters import SourceControlAdapter
from refinery.adapters.base import AdapterKind
from refinery.config import AdapterConfig, QueueConfig
from refinery.db import Database
from refinery.errors import AdapterError
from refinery.manager import RefineryManager
from refinery.models import Issue, MergeRequest
from refinery.notifier import Notifier
from refinery.processor import MergeQueueProcessor


class FakeAdapter(SourceControlAdapter):
	"""In-memory adapter that records sync/submit calls.

	failures maps a worker name to the AdapterError raised by submit.
	on_submit, if set, runs before submit returns (used to simulate races).
	"""

	kind = AdapterKind.GIT

	def __init__(self) -> None:
		self.calls: list[tuple[str, str]] = []
		self.failures: dict[str, AdapterError] = {}
		self.on_submit: Callable[[str], Awaitable[None]] | None = None

	async def rig_init(self, path: str, config: AdapterConfig) -> None:
		self.calls.append(("rig_init", path))

	async def worker_create(self, worker_path: str) -> None:
		self.calls.append(("worker_create", worker_path))

	async def worker_activate(self, worker: str) -> None:
		self.calls.append(("activate", worker))

	async def worker_deactivate(self, worker: str) -> None:
		self.calls.append(("deactivate", worker))

	def build_root(self) -> str:
		return "/tmp/build"

	async def sync(self, worker: str) -> None:
		self.calls.append(("sync", worker))

	async def submit(self, worker: str) -> None:
		self.calls.append(("submit", worker))
		if self.on_submit is not None:
			await self.on_submit(worker)
		if worker in self.failures:
			raise self.failures[worker]

	def submitted(self) -> list[str]:
		return [w for op, w in self.calls if op == "submit"]


class RecordingNotifier(Notifier):
	"""Collects messages; optionally raises a given error."""

	def __init__(self, error: Exception | None = None) -> None:
		self.sent: list[tuple[str, str, str]] = []
		self.error = error

	async def notify(self, worker: str, subject: str, body: str = "") -> None:
		if self.error is not None:
			raise self.error
		self.sent.append((worker, subject, body))


@pytest.fixture()
def db() -> Database:
	"""In-memory Database with schema initialized."""
	return Database(":memory:")


@pytest.fixture()
def adapter() -> FakeAdapter:
	return FakeAdapter()


@pytest.fixture()
def notifier() -> RecordingNotifier:
	return RecordingNotifier()


@pytest.fixture()
def processor(db: Database, adapter: FakeAdapter) -> MergeQueueProcessor:
	return MergeQueueProcessor(QueueConfig(poll_interval=1), db, adapter)


@pytest.fixture()
def manager(db: Database, processor: MergeQueueProcessor, notifier: RecordingNotifier) -> RefineryManager:
	return RefineryManager(db, processor, notifier=notifier, config=QueueConfig())


def make_mr(**overrides: Any) -> MergeRequest:
	"""Create a MergeRequest with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "mr-1",
		"branch": "polecat/Nux/work-1",
		"worker": "Nux",
		"target": "main",
		"priority": 1,
		"created_at": "2025-01-01T00:00:00+00:00",
	}
	defaults.update(overrides)
	return MergeRequest(**defaults)


def make_issue(**overrides: Any) -> Issue:
	"""Create a plain task Issue with sensible defaults."""
	defaults: dict[str, Any] = {
		"id": "gt-1",
		"title": "Test task",
	}
	defaults.update(overrides)
	return Issue(**defaults)


def insert_mr(db: Database, **overrides: Any) -> MergeRequest:
	"""Insert a merge-request ticket and return it as stored."""
	mr = make_mr(**overrides)
	db.insert_issue(mr.to_issue())
	issue = db.get_issue(mr.id)
	assert issue is not None
	return MergeRequest.from_issue(issue)

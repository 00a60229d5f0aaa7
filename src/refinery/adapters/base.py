"""Abstract base class for source control adapters."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
	from refinery.config import AdapterConfig


class AdapterKind(str, enum.Enum):
	"""Closed set of source control backends."""

	GIT = "git"


class WorkerMode(str, enum.Enum):
	"""How worker copies are laid out by an adapter."""

	WORKTREE = "worktree"
	BRANCH = "branch"


class SourceControlAdapter(ABC):
	"""Unified worker management over a version control backend.

	Every operation raises AdapterError on failure. Timeouts and cancellation
	are the adapter's concern; callers only see success or AdapterError.
	"""

	kind: AdapterKind

	@abstractmethod
	async def rig_init(self, path: str, config: AdapterConfig) -> None:
		"""Set up the shared repository infrastructure for a rig at path."""

	@abstractmethod
	async def worker_create(self, worker_path: str) -> None:
		"""Create a new worker copy at worker_path."""

	@abstractmethod
	async def worker_activate(self, worker: str) -> None:
		"""Make a worker the active working context."""

	@abstractmethod
	async def worker_deactivate(self, worker: str) -> None:
		"""Release a worker's active context; the worker stays available."""

	@abstractmethod
	def build_root(self) -> str:
		"""Root directory for build operations of the active worker."""

	@abstractmethod
	async def sync(self, worker: str) -> None:
		"""Bring the worker's branch up to date with upstream."""

	@abstractmethod
	async def submit(self, worker: str) -> None:
		"""Submit the worker's branch for integration."""

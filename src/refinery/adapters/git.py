"""Git adapter -- workers as worktrees (or branches) of a shared bare repo."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from refinery.adapters.base import AdapterKind, SourceControlAdapter, WorkerMode
from refinery.config import AdapterConfig
from refinery.constants import WORKER_BRANCH_PREFIX
from refinery.errors import AdapterError

logger = logging.getLogger(__name__)

BARE_REPO_DIR = ".repo.git"
WORKERS_DIR = "polecats"
BRANCH_MODE_CLONE_DIR = "workspace"


class GitAdapter(SourceControlAdapter):
	"""Source control over git.

	In worktree mode each worker lives at <rig>/polecats/<worker> as a
	worktree of <rig>/.repo.git on branch polecat/<worker>. In branch mode
	workers are branches of a single clone at <rig>/workspace and activation
	checks the branch out.
	"""

	kind = AdapterKind.GIT

	def __init__(self, config: AdapterConfig, rig_path: str = "") -> None:
		self._config = config
		self._rig_path = rig_path
		self._bare_repo_path = str(Path(rig_path) / BARE_REPO_DIR) if rig_path else ""
		self._worker_path = ""

	@property
	def mode(self) -> WorkerMode:
		return WorkerMode(self._config.worker_mode)

	async def rig_init(self, path: str, config: AdapterConfig) -> None:
		self._rig_path = path
		self._config = config
		if not config.git_url:
			raise AdapterError("rig_init", "git adapter requires git_url in config")

		Path(path).mkdir(parents=True, exist_ok=True)
		self._bare_repo_path = str(Path(path) / BARE_REPO_DIR)

		args = ["clone", "--bare"]
		if config.local_repo:
			args += ["--reference", config.local_repo]
		args += [config.git_url, self._bare_repo_path]
		await self._check("cloning bare repo", path, *args)

		if self.mode is WorkerMode.BRANCH:
			clone = str(Path(path) / BRANCH_MODE_CLONE_DIR)
			await self._check("cloning workspace", path, "clone", self._bare_repo_path, clone)
		logger.info("Initialized git rig at %s from %s", path, config.git_url)

	async def worker_create(self, worker_path: str) -> None:
		if not self._bare_repo_path:
			# Worker is at <rig>/polecats/<name>
			self._rig_path = str(Path(worker_path).parent.parent)
			self._bare_repo_path = str(Path(self._rig_path) / BARE_REPO_DIR)

		branch = f"{WORKER_BRANCH_PREFIX}{Path(worker_path).name}"
		default_branch = await self.default_branch()

		if self.mode is WorkerMode.WORKTREE:
			await self._check(
				"creating worktree", self._bare_repo_path,
				"worktree", "add", "-b", branch, worker_path, default_branch,
			)
			self._worker_path = worker_path
		else:
			await self._check(
				"creating branch", self._bare_repo_path,
				"branch", branch, default_branch,
			)
		logger.info("Created worker %s on %s", worker_path, branch)

	async def worker_activate(self, worker: str) -> None:
		if self.mode is WorkerMode.WORKTREE:
			# Worktrees run in parallel; nothing to switch
			return
		clone = self._clone_path()
		await self._check("activating worker", clone, "checkout", f"{WORKER_BRANCH_PREFIX}{worker}")
		self._worker_path = clone

	async def worker_deactivate(self, worker: str) -> None:
		if self.mode is WorkerMode.WORKTREE:
			return
		default_branch = await self.default_branch()
		await self._check("deactivating worker", self._clone_path(), "checkout", default_branch)

	def build_root(self) -> str:
		return self._config.build_root or self._worker_path

	def worker_path(self, worker: str) -> str:
		"""Resolve a worker name (or absolute path) to its working copy."""
		if Path(worker).is_absolute():
			return worker
		if self.mode is WorkerMode.BRANCH:
			return self._clone_path()
		return str(Path(self._rig_path) / WORKERS_DIR / worker)

	async def sync(self, worker: str) -> None:
		path = self.worker_path(worker)
		remote = self._config.remote
		await self._check(f"fetching from {remote}", path, "fetch", remote)
		await self._check("pulling with rebase", path, "pull", "--rebase")
		logger.info("Synced worker %s", worker)

	async def submit(self, worker: str) -> None:
		path = self.worker_path(worker)
		branch = (await self._check("getting current branch", path, "rev-parse", "--abbrev-ref", "HEAD")).strip()
		await self._check("pushing to remote", path, "push", "-u", self._config.remote, branch)
		logger.info("Submitted worker %s (%s)", worker, branch)

	async def default_branch(self) -> str:
		"""Default branch of the bare repo: origin HEAD, then main/master."""
		ok, output = await self._run_git(self._bare_repo_path, "symbolic-ref", "refs/remotes/origin/HEAD")
		if ok and output.strip():
			# refs/remotes/origin/main -> main
			return output.strip().rsplit("/", 1)[-1]
		for candidate in ("main", "master"):
			ok, _ = await self._run_git(self._bare_repo_path, "rev-parse", "--verify", candidate)
			if ok:
				return candidate
		return "main"

	def _clone_path(self) -> str:
		return str(Path(self._rig_path) / BRANCH_MODE_CLONE_DIR)

	async def _check(self, operation: str, cwd: str, *args: str) -> str:
		ok, output = await self._run_git(cwd, *args)
		if not ok:
			raise AdapterError(operation, output.strip() or "git exited non-zero")
		return output

	async def _run_git(self, cwd: str, *args: str) -> tuple[bool, str]:
		"""Run a git command in cwd. Returns (success, combined output)."""
		try:
			proc = await asyncio.create_subprocess_exec(
				"git", *args,
				cwd=cwd or None,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except OSError as exc:
			return (False, str(exc))
		timeout = self._config.command_timeout or None
		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
		except asyncio.TimeoutError:
			try:
				proc.kill()
				await proc.wait()
			except ProcessLookupError:
				pass
			logger.warning("git %s timed out after %ss in %s", args[0] if args else "", timeout, cwd)
			return (False, f"git {' '.join(args)} timed out after {timeout}s")
		output = stdout.decode(errors="replace") if stdout else ""
		return (proc.returncode == 0, output)

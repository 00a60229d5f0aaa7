"""TOML configuration loader for refinery."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from refinery.constants import DEFAULT_TARGET

ADAPTER_TYPES: tuple[str, ...] = ("git",)
WORKER_MODES: tuple[str, ...] = ("worktree", "branch")
NOTIFIER_TYPES: tuple[str, ...] = ("mail", "webhook", "none")


@dataclass
class RigConfig:
	"""The project whose merge queue this refinery owns."""

	name: str = ""
	path: str = ""
	default_target: str = DEFAULT_TARGET

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.path))


@dataclass
class AdapterConfig:
	"""Source control adapter settings."""

	type: str = "git"
	worker_mode: str = "worktree"
	build_root: str = ""
	git_url: str = ""
	local_repo: str = ""  # optional --reference repo for the bare clone
	remote: str = "origin"
	command_timeout: int = 300  # seconds per git command, 0 disables


@dataclass
class QueueConfig:
	"""Merge queue processing settings."""

	poll_interval: int = 5  # seconds between scheduling passes
	max_reject_attempts: int = 5  # re-reads when a reject races a transition


@dataclass
class WebhookConfig:
	"""Webhook notification settings."""

	url: str = ""
	timeout: float = 10.0


@dataclass
class NotificationConfig:
	"""Worker notification settings."""

	type: str = "mail"
	sender: str = "refinery"
	webhook: WebhookConfig = field(default_factory=WebhookConfig)


@dataclass
class RefineryConfig:
	"""Top-level refinery configuration."""

	rig: RigConfig = field(default_factory=RigConfig)
	adapter: AdapterConfig = field(default_factory=AdapterConfig)
	queue: QueueConfig = field(default_factory=QueueConfig)
	notifications: NotificationConfig = field(default_factory=NotificationConfig)


def _build_rig(data: dict[str, Any]) -> RigConfig:
	rc = RigConfig()
	if "name" in data:
		rc.name = str(data["name"])
	if "path" in data:
		rc.path = str(data["path"])
	if "default_target" in data:
		rc.default_target = str(data["default_target"])
	return rc


def _build_adapter(data: dict[str, Any]) -> AdapterConfig:
	ac = AdapterConfig()
	for key in ("type", "worker_mode", "build_root", "git_url", "local_repo", "remote"):
		if key in data:
			setattr(ac, key, str(data[key]))
	if "command_timeout" in data:
		ac.command_timeout = int(data["command_timeout"])
	return ac


def _build_queue(data: dict[str, Any]) -> QueueConfig:
	qc = QueueConfig()
	if "poll_interval" in data:
		qc.poll_interval = int(data["poll_interval"])
	if "max_reject_attempts" in data:
		qc.max_reject_attempts = int(data["max_reject_attempts"])
	return qc


def _build_notifications(data: dict[str, Any]) -> NotificationConfig:
	nc = NotificationConfig()
	if "type" in data:
		nc.type = str(data["type"])
	if "sender" in data:
		nc.sender = str(data["sender"])
	if "webhook" in data:
		wh = data["webhook"]
		if "url" in wh:
			nc.webhook.url = str(wh["url"])
		if "timeout" in wh:
			nc.webhook.timeout = float(wh["timeout"])
	return nc


def load_config(path: str | Path) -> RefineryConfig:
	"""Load a refinery.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed RefineryConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	rc = RefineryConfig()
	if "rig" in data:
		rc.rig = _build_rig(data["rig"])
	if "adapter" in data:
		rc.adapter = _build_adapter(data["adapter"])
	if "queue" in data:
		rc.queue = _build_queue(data["queue"])
	if "notifications" in data:
		rc.notifications = _build_notifications(data["notifications"])
	if not rc.rig.path:
		rc.rig.path = str(config_path.parent)
	# Allow env var as fallback for the webhook endpoint
	if not rc.notifications.webhook.url:
		rc.notifications.webhook.url = os.environ.get("REFINERY_WEBHOOK_URL", "")
	return rc


def validate_config(config: RefineryConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded RefineryConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	rig_path = config.rig.resolved_path
	if not rig_path.exists():
		issues.append(("error", f"rig.path does not exist: {rig_path}"))

	if config.adapter.type not in ADAPTER_TYPES:
		issues.append(("error", f"adapter.type must be one of {', '.join(ADAPTER_TYPES)}: {config.adapter.type!r}"))
	if config.adapter.worker_mode not in WORKER_MODES:
		issues.append(("error", f"adapter.worker_mode must be one of {', '.join(WORKER_MODES)}"))
	if config.adapter.command_timeout < 0:
		issues.append(("error", f"adapter.command_timeout is negative: {config.adapter.command_timeout}"))
	elif config.adapter.command_timeout == 0:
		issues.append(("warning", "adapter.command_timeout is 0: git commands may hang indefinitely"))

	nc = config.notifications
	if nc.type not in NOTIFIER_TYPES:
		issues.append(("error", f"notifications.type must be one of {', '.join(NOTIFIER_TYPES)}"))
	elif nc.type == "webhook" and not nc.webhook.url:
		issues.append(("error", "notifications.webhook.url is required for webhook notifications"))

	if config.queue.poll_interval <= 0:
		issues.append(("error", f"queue.poll_interval must be positive: {config.queue.poll_interval}"))
	if config.queue.max_reject_attempts < 1:
		issues.append(("error", "queue.max_reject_attempts must be at least 1"))
	if not config.rig.default_target:
		issues.append(("warning", f"rig.default_target is empty, falling back to {DEFAULT_TARGET!r}"))

	return issues

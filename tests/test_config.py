"""Tests for config loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from refinery.config import (
	RefineryConfig,
	load_config,
	validate_config,
)


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
	toml = tmp_path / "refinery.toml"
	toml.write_text(f"""\
[rig]
name = "gastown"
path = "{tmp_path}"
default_target = "develop"

[adapter]
type = "git"
worker_mode = "branch"
git_url = "https://example.com/gastown.git"
local_repo = "/src/gastown"
remote = "upstream"
command_timeout = 120

[queue]
poll_interval = 30
max_reject_attempts = 3

[notifications]
type = "webhook"
sender = "mayor"

[notifications.webhook]
url = "http://hooks.test/refinery"
timeout = 2.5
""")
	return toml


@pytest.fixture()
def minimal_config(tmp_path: Path) -> Path:
	toml = tmp_path / "refinery.toml"
	toml.write_text("""\
[rig]
name = "small"
""")
	return toml


class TestLoadConfig:
	def test_full(self, full_config: Path, tmp_path: Path) -> None:
		config = load_config(full_config)
		assert config.rig.name == "gastown"
		assert config.rig.path == str(tmp_path)
		assert config.rig.default_target == "develop"
		assert config.adapter.worker_mode == "branch"
		assert config.adapter.git_url == "https://example.com/gastown.git"
		assert config.adapter.local_repo == "/src/gastown"
		assert config.adapter.remote == "upstream"
		assert config.adapter.command_timeout == 120
		assert config.queue.poll_interval == 30
		assert config.queue.max_reject_attempts == 3
		assert config.notifications.type == "webhook"
		assert config.notifications.sender == "mayor"
		assert config.notifications.webhook.url == "http://hooks.test/refinery"
		assert config.notifications.webhook.timeout == 2.5

	def test_minimal_defaults(self, minimal_config: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.delenv("REFINERY_WEBHOOK_URL", raising=False)
		config = load_config(minimal_config)
		assert config.rig.path == str(tmp_path)
		assert config.rig.default_target == "main"
		assert config.adapter.type == "git"
		assert config.adapter.worker_mode == "worktree"
		assert config.adapter.remote == "origin"
		assert config.queue.poll_interval == 5
		assert config.notifications.type == "mail"
		assert config.notifications.webhook.url == ""

	def test_webhook_url_from_env(self, minimal_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("REFINERY_WEBHOOK_URL", "http://env.test/hook")
		config = load_config(minimal_config)
		assert config.notifications.webhook.url == "http://env.test/hook"

	def test_file_url_beats_env(self, full_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("REFINERY_WEBHOOK_URL", "http://env.test/hook")
		assert load_config(full_config).notifications.webhook.url == "http://hooks.test/refinery"

	def test_missing_file(self, tmp_path: Path) -> None:
		with pytest.raises(FileNotFoundError):
			load_config(tmp_path / "nope.toml")


class TestValidateConfig:
	def test_valid(self, full_config: Path) -> None:
		assert validate_config(load_config(full_config)) == []

	def test_missing_rig_path(self, tmp_path: Path) -> None:
		config = RefineryConfig()
		config.rig.path = str(tmp_path / "gone")
		errors = [msg for lvl, msg in validate_config(config) if lvl == "error"]
		assert any("rig.path" in msg for msg in errors)

	def test_bad_values(self, tmp_path: Path) -> None:
		config = RefineryConfig()
		config.rig.path = str(tmp_path)
		config.adapter.type = "hg"
		config.adapter.worker_mode = "clone"
		config.queue.poll_interval = 0
		config.queue.max_reject_attempts = 0
		config.notifications.type = "webhook"
		messages = [msg for lvl, msg in validate_config(config) if lvl == "error"]
		assert len(messages) == 5
		assert any("webhook.url" in msg for msg in messages)

	def test_zero_timeout_warns(self, tmp_path: Path) -> None:
		config = RefineryConfig()
		config.rig.path = str(tmp_path)
		config.adapter.command_timeout = 0
		assert validate_config(config) == [
			("warning", "adapter.command_timeout is 0: git commands may hang indefinitely"),
		]

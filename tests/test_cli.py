"""Tests for the rf command line."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from refinery.cli import _priority, build_parser, main
from refinery.errors import AdapterError


@pytest.fixture()
def rig(tmp_path: Path) -> Path:
	config = tmp_path / "refinery.toml"
	config.write_text(f"""\
[rig]
name = "gastown"
path = "{tmp_path}"

[notifications]
type = "none"
""")
	return config


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, str]:
	code = main(list(argv))
	return code, capsys.readouterr().out


class TestParser:
	def test_reject_requires_reason(self) -> None:
		with pytest.raises(SystemExit):
			build_parser().parse_args(["mq", "reject", "mr-1"])

	def test_retry_now(self) -> None:
		args = build_parser().parse_args(["mq", "retry", "mr-1", "--now"])
		assert args.mr_id == "mr-1"
		assert args.now is True

	def test_list_filters(self) -> None:
		args = build_parser().parse_args(["mq", "list", "--status", "failed", "--worker", "Nux", "--epic", "auth"])
		assert (args.status, args.worker, args.epic) == ("failed", "Nux", "auth")

	def test_priority_forms(self) -> None:
		assert _priority("P0") == 0
		assert _priority("3") == 3

	def test_bad_priority(self) -> None:
		with pytest.raises(SystemExit):
			build_parser().parse_args(["mq", "submit", "--branch", "b", "--priority", "high"])


class TestMain:
	def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
		code, out = _run(capsys)
		assert code == 0
		assert "usage" in out.lower()

	def test_mq_without_subcommand(self, capsys: pytest.CaptureFixture[str]) -> None:
		code, out = _run(capsys, "mq")
		assert code == 1
		assert "rf mq" in out

	def test_missing_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		code, out = _run(capsys, "mq", "list", "--config", str(tmp_path / "none.toml"))
		assert code == 1
		assert "not found" in out

	def test_init_and_validate(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		code, out = _run(capsys, "init", str(tmp_path))
		assert code == 0
		assert (tmp_path / "refinery.toml").exists()
		code, out = _run(capsys, "validate-config", "--config", str(tmp_path / "refinery.toml"))
		assert code == 0
		assert "0 error(s)" in out
		code, _ = _run(capsys, "init", str(tmp_path))
		assert code == 1


class TestQueueCommands:
	def test_submit_list_reject(self, rig: Path, capsys: pytest.CaptureFixture[str]) -> None:
		code, out = _run(
			capsys, "mq", "submit", "--config", str(rig),
			"--branch", "polecat/Toast/work-2", "--priority", "P1", "--issue", "gt-7",
		)
		assert code == 0
		assert "polecat/Toast/work-2 -> main (P1, ready)" in out

		code, out = _run(capsys, "mq", "list", "--config", str(rig), "--json")
		assert code == 0
		views = json.loads(out)
		assert len(views) == 1
		assert views[0]["worker"] == "Toast"
		assert views[0]["status"] == "ready"

		code, out = _run(
			capsys, "mq", "reject", "polecat/Toast/work-2", "--config", str(rig),
			"--reason", "superseded", "--notify",
		)
		assert code == 0
		assert "Rejected: polecat/Toast/work-2" in out
		assert "gt-7 (not closed - work not done)" in out

		code, out = _run(capsys, "mq", "list", "--config", str(rig))
		assert code == 0
		assert "(empty)" in out
		code, out = _run(capsys, "mq", "list", "--config", str(rig), "--status", "all", "--json")
		assert json.loads(out)[0]["status"] == "closed"

	def test_retry_unknown_mr(self, rig: Path, capsys: pytest.CaptureFixture[str]) -> None:
		code, out = _run(capsys, "mq", "retry", "mr-404", "--config", str(rig))
		assert code == 1
		assert "merge request not found: mr-404" in out

	def test_retry_ready_mr_refused(self, rig: Path, capsys: pytest.CaptureFixture[str]) -> None:
		_run(capsys, "mq", "submit", "--config", str(rig), "--branch", "polecat/Nux/work-1")
		views = json.loads(_run(capsys, "mq", "list", "--config", str(rig), "--json")[1])
		code, out = _run(capsys, "mq", "retry", views[0]["id"], "--config", str(rig))
		assert code == 1
		assert "has not failed (status: ready)" in out

	def test_process_failure_then_retry_now(self, rig: Path, capsys: pytest.CaptureFixture[str]) -> None:
		_run(capsys, "mq", "submit", "--config", str(rig), "--branch", "polecat/Nux/work-1")

		with (
			patch("refinery.adapters.git.GitAdapter.sync", new_callable=AsyncMock),
			patch(
				"refinery.adapters.git.GitAdapter.submit",
				new_callable=AsyncMock,
				side_effect=AdapterError("pushing to remote", "network unreachable"),
			),
		):
			code, out = _run(capsys, "mq", "process", "--config", str(rig))
		assert code == 1
		assert "Failed: 1" in out

		code, out = _run(capsys, "mq", "list", "--config", str(rig), "--status", "failed", "--json")
		failed = json.loads(out)
		assert "network unreachable" in failed[0]["error"]

		with (
			patch("refinery.adapters.git.GitAdapter.sync", new_callable=AsyncMock),
			patch("refinery.adapters.git.GitAdapter.submit", new_callable=AsyncMock),
		):
			code, out = _run(capsys, "mq", "retry", failed[0]["id"], "--config", str(rig), "--now")
		assert code == 0
		assert "Previous error: pushing to remote: network unreachable" in out
		assert "processed (status: closed)" in out

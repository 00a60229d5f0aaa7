"""CLI interface for refinery."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

from refinery.adapters import create_adapter
from refinery.config import RefineryConfig, load_config, validate_config
from refinery.constants import DERIVED_STATUSES, MR_BLOCKED, MR_FAILED, RAW_STATUSES
from refinery.db import Database
from refinery.errors import RefineryError
from refinery.manager import RefineryManager
from refinery.models import MRView
from refinery.notifier import create_notifier
from refinery.processor import MergeQueueProcessor

DEFAULT_CONFIG = "refinery.toml"
DEFAULT_DB = "refinery.db"

INIT_TEMPLATE = """\
[rig]
name = "{name}"
path = "{path}"
default_target = "main"

[adapter]
type = "git"
worker_mode = "worktree"
remote = "origin"
command_timeout = 300

[queue]
poll_interval = 5

[notifications]
type = "mail"
"""


def _priority(value: str) -> int:
	"""Parse a priority given as 'P1' or '1'."""
	raw = value[1:] if value[:1] in ("P", "p") else value
	try:
		priority = int(raw)
	except ValueError:
		raise argparse.ArgumentTypeError(f"invalid priority: {value!r}") from None
	if priority < 0:
		raise argparse.ArgumentTypeError(f"priority must be >= 0: {value!r}")
	return priority


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="rf",
		description="Refinery - merge queue for parallel worker branches",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
	sub = parser.add_subparsers(dest="command")

	# rf init
	init_cmd = sub.add_parser("init", help="Initialize a refinery config")
	init_cmd.add_argument("path", nargs="?", default=".")

	# rf validate-config
	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	vc.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	# rf mq ...
	mq = sub.add_parser("mq", help="Merge queue operations")
	mq_sub = mq.add_subparsers(dest="mq_command")

	mq_list = mq_sub.add_parser("list", help="Show the merge queue")
	mq_list.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	mq_list.add_argument("--ready", action="store_true", help="Show only ready-to-merge (no blockers)")
	mq_list.add_argument(
		"--status", default=None,
		choices=sorted(set(RAW_STATUSES) | set(DERIVED_STATUSES) | {"all"}),
		help="Filter by status (default: open)",
	)
	mq_list.add_argument("--worker", default=None, help="Filter by worker name")
	mq_list.add_argument("--epic", default=None, help="Show MRs targeting integration/<epic>")
	mq_list.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

	mq_retry = mq_sub.add_parser("retry", help="Retry a failed merge request")
	mq_retry.add_argument("mr_id", help="Merge request ID")
	mq_retry.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	mq_retry.add_argument(
		"--now", action="store_true",
		help="Immediately process instead of waiting for the next pass",
	)

	mq_reject = mq_sub.add_parser("reject", help="Reject a merge request")
	mq_reject.add_argument("ref", metavar="mr-id-or-branch", help="Merge request ID or branch")
	mq_reject.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	mq_reject.add_argument("-r", "--reason", required=True, help="Reason for rejection")
	mq_reject.add_argument("--notify", action="store_true", help="Notify the worker")

	mq_submit = mq_sub.add_parser("submit", help="Submit a worker branch to the merge queue")
	mq_submit.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	mq_submit.add_argument("--branch", required=True, help="Source branch")
	mq_submit.add_argument("--worker", default="", help="Owning worker (default: from polecat/<worker>/...)")
	mq_submit.add_argument("--target", default=None, help="Target branch (default: rig.default_target)")
	mq_submit.add_argument("--priority", type=_priority, default=2, help="Priority, 0 is most urgent")
	mq_submit.add_argument("--issue", default="", help="Linked source issue ID")
	mq_submit.add_argument(
		"--blocked-by", action="append", default=[], dest="blocked_by",
		help="ID this request waits on (repeatable)",
	)

	mq_process = mq_sub.add_parser("process", help="Run a single scheduling pass")
	mq_process.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	mq_process.add_argument("--json", action="store_true", dest="json_output", help="JSON output")

	mq_run = mq_sub.add_parser("run", help="Run the merge queue processor loop")
	mq_run.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	return parser


def _get_db_path(config_path: str) -> Path:
	"""Derive database path from config path location."""
	return Path(config_path).parent / DEFAULT_DB


def _build_manager(config: RefineryConfig, db: Database) -> RefineryManager:
	adapter = create_adapter(config.adapter, rig_path=str(config.rig.resolved_path))
	processor = MergeQueueProcessor(config.queue, db, adapter)
	notifier = create_notifier(config.notifications, db)
	return RefineryManager(db, processor, notifier=notifier, config=config.queue)


async def _run_command(
	manager: RefineryManager,
	config: RefineryConfig,
	fn: Callable[[RefineryManager, RefineryConfig], Awaitable[int]],
) -> int:
	try:
		return await fn(manager, config)
	finally:
		await manager.notifier.close()


def _with_manager(
	args: argparse.Namespace,
	fn: Callable[[RefineryManager, RefineryConfig], Awaitable[int]],
) -> int:
	"""Load config, open the store and run an async manager command."""
	config = load_config(args.config)
	with Database(_get_db_path(args.config)) as db:
		try:
			manager = _build_manager(config, db)
			return asyncio.run(_run_command(manager, config, fn))
		except RefineryError as exc:
			print(f"Error: {exc}")
			return 1


def _print_queue(rig: str, views: list[MRView]) -> None:
	print(f"Merge queue for '{rig}':\n")
	if not views:
		print("  (empty)")
		return
	print(f"  {'ID':<12} {'STATUS':<12} {'PRIORITY':<8} {'BRANCH':<30} {'WORKER':<10} AGE")
	print(f"  {'-' * 90}")
	for v in views:
		branch = v.branch[:27] + "..." if len(v.branch) > 30 else v.branch
		print(f"  {v.id[:12]:<12} {v.status:<12} {'P' + str(v.priority):<8} {branch:<30} {v.worker:<10} {v.age}")
		if v.status == MR_BLOCKED and v.blocking_on:
			print(f"  {'':<12} (waiting on {v.blocking_on[0]})")
		elif v.status == MR_FAILED and v.error:
			print(f"  {'':<12} (error: {v.error[:70]})")


def cmd_mq_list(args: argparse.Namespace) -> int:
	"""Show the merge queue."""

	async def _list(manager: RefineryManager, config: RefineryConfig) -> int:
		if args.ready:
			mrs = await manager.ready_mrs(worker=args.worker, epic=args.epic)
		else:
			status = None if args.status == "all" else (args.status or "open")
			mrs = await manager.list_mrs(status=status, worker=args.worker, epic=args.epic)
		views = [MRView.from_mr(mr) for mr in mrs]
		if args.json_output:
			print(json.dumps([v.to_dict() for v in views], indent=2))
		else:
			_print_queue(config.rig.name, views)
		return 0

	return _with_manager(args, _list)


def cmd_mq_retry(args: argparse.Namespace) -> int:
	"""Retry a failed merge request."""

	async def _retry(manager: RefineryManager, config: RefineryConfig) -> int:
		mr = await manager.get_mr(args.mr_id)
		print(f"Retrying merge request: {mr.id}")
		print(f"  Branch: {mr.branch}")
		print(f"  Worker: {mr.worker}")
		if mr.error:
			print(f"  Previous error: {mr.error}")

		result = await manager.retry(mr.id, immediate=args.now)
		if not args.now:
			print("[+] Merge request queued for retry")
			print("  Will be processed on next refinery pass")
			return 0
		if not result.processed:
			print(f"[!] Merge request queued for retry but not processed now (status: {result.status})")
			return 0
		if result.status == MR_FAILED:
			print(f"[x] Merge request failed again: {result.error}")
			return 1
		print(f"[+] Merge request processed (status: {result.status})")
		return 0

	return _with_manager(args, _retry)


def cmd_mq_reject(args: argparse.Namespace) -> int:
	"""Reject a merge request without merging it."""

	async def _reject(manager: RefineryManager, config: RefineryConfig) -> int:
		result = await manager.reject_mr(args.ref, args.reason, notify=args.notify)
		print(f"[x] Rejected: {result.branch}")
		print(f"  Worker: {result.worker}")
		print(f"  Reason: {result.reason}")
		if result.issue_id:
			print(f"  Issue:  {result.issue_id} (not closed - work not done)")
		if args.notify:
			print("  Worker notified" if result.notified else "  Worker notification failed (see log)")
		return 0

	return _with_manager(args, _reject)


def cmd_mq_submit(args: argparse.Namespace) -> int:
	"""Submit a branch to the merge queue."""

	async def _submit(manager: RefineryManager, config: RefineryConfig) -> int:
		try:
			mr = await manager.submit_mr(
				branch=args.branch,
				worker=args.worker,
				target=args.target or config.rig.default_target,
				priority=args.priority,
				source_issue=args.issue,
				blocked_by=args.blocked_by,
			)
		except ValueError as exc:
			print(f"Error: {exc}")
			return 1
		print(f"[+] Submitted {mr.id}: {mr.branch} -> {mr.target} (P{mr.priority}, {mr.status})")
		return 0

	return _with_manager(args, _submit)


def cmd_mq_process(args: argparse.Namespace) -> int:
	"""Run one scheduling pass."""

	async def _process(manager: RefineryManager, config: RefineryConfig) -> int:
		result = await manager.processor.run_pass()
		if args.json_output:
			data: dict[str, Any] = {
				"merged": result.merged, "failed": result.failed, "skipped": result.skipped,
			}
			print(json.dumps(data, indent=2))
		else:
			print(f"Merged: {len(result.merged)}, Failed: {len(result.failed)}, Skipped: {len(result.skipped)}")
			for mr_id in result.failed:
				print(f"  [x] {mr_id}")
		return 1 if result.failed else 0

	return _with_manager(args, _process)


def cmd_mq_run(args: argparse.Namespace) -> int:
	"""Run the processor loop until interrupted."""

	async def _run(manager: RefineryManager, config: RefineryConfig) -> int:
		await manager.processor.run()
		return 0

	try:
		return _with_manager(args, _run)
	except KeyboardInterrupt:
		print("Stopped.")
		return 0


def cmd_init(args: argparse.Namespace) -> int:
	"""Initialize a refinery config."""
	target = Path(args.path).resolve()
	config_path = target / DEFAULT_CONFIG

	if config_path.exists():
		print(f"Config already exists: {config_path}")
		return 1

	config_path.write_text(INIT_TEMPLATE.format(
		name=target.name,
		path=str(target),
	))
	print(f"Created {config_path}")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = load_config(args.config)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


MQ_COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
	"list": cmd_mq_list,
	"retry": cmd_mq_retry,
	"reject": cmd_mq_reject,
	"submit": cmd_mq_submit,
	"process": cmd_mq_process,
	"run": cmd_mq_run,
}

COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
	"init": cmd_init,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)

	if args.command is None:
		parser.print_help()
		return 0

	if args.command == "mq":
		handler = MQ_COMMANDS.get(args.mq_command or "")
		if handler is None:
			print(f"Usage: rf mq {{{','.join(MQ_COMMANDS)}}} ...")
			return 1
	else:
		handler = COMMANDS.get(args.command)
		if handler is None:
			print(f"Unknown command: {args.command}")
			return 1

	try:
		return handler(args)
	except FileNotFoundError as exc:
		print(f"Error: {exc}")
		return 1


if __name__ == "__main__":
	sys.exit(main())

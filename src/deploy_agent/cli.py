"""CLI interface for deploy-agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from deploy_agent.config import DeployAgentConfig, load_config, validate_config
from deploy_agent.errors import PipelineCrashedError, SchedulerExhaustedError
from deploy_agent.git import GitRepository
from deploy_agent.notifier import SlackNotifier
from deploy_agent.pipeline import PipelineRunner
from deploy_agent.runner import ShellCommandRunner
from deploy_agent.scheduler import PollScheduler

DEFAULT_CONFIG = "deploy-agent.toml"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="deploy-agent",
		description="Deploy Agent - poll a git branch and deploy new commits",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
	sub = parser.add_subparsers(dest="command")

	# deploy-agent run
	run = sub.add_parser("run", help="Poll the remote and deploy new commits until stopped")
	run.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	run.add_argument("--debug", action="store_true", help="Deploy on every tick, log notifications only")

	# deploy-agent once
	once = sub.add_parser("once", help="Run a single sync and deploy if the remote moved")
	once.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	once.add_argument("--debug", action="store_true", help="Deploy even without new commits, log notifications only")

	# deploy-agent init
	init_cmd = sub.add_parser("init", help="Write a deploy-agent config template")
	init_cmd.add_argument("path", nargs="?", default=".")

	# deploy-agent validate-config
	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	vc.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	return parser


def _load(args: argparse.Namespace) -> DeployAgentConfig | None:
	try:
		config = load_config(args.config)
	except (FileNotFoundError, ValueError) as e:
		print(f"Error: {e}")
		return None
	if getattr(args, "debug", False):
		config.debug = True

	errors = [msg for level, msg in validate_config(config) if level == "error"]
	for msg in errors:
		print(f"[ERROR] {msg}")
	if errors:
		return None
	return config


def _build_scheduler(config: DeployAgentConfig, notifier: SlackNotifier) -> PollScheduler:
	repo = config.repository
	runner = ShellCommandRunner(config.pipeline.environment)
	pipeline = PipelineRunner(config, runner, notifier)
	git = GitRepository(str(repo.resolved_path), remote=repo.remote, branch=repo.branch)
	return PollScheduler(config, git, pipeline)


async def _run_forever(config: DeployAgentConfig) -> None:
	notifier = SlackNotifier(config.notifications.slack.webhook_url)
	try:
		await _build_scheduler(config, notifier).run()
	finally:
		await notifier.close()


async def _run_once(config: DeployAgentConfig) -> bool:
	notifier = SlackNotifier(config.notifications.slack.webhook_url)
	try:
		result = await _build_scheduler(config, notifier).run_once()
	finally:
		await notifier.close()
	if result is None:
		print("Nothing to deploy.")
		return True
	print("Deploy succeeded." if result.success else f"Deploy failed at {result.failed_stage.label}.")
	return result.success


def cmd_run(args: argparse.Namespace) -> int:
	"""Start the poll loop."""
	config = _load(args)
	if config is None:
		return 1
	try:
		asyncio.run(_run_forever(config))
	except SchedulerExhaustedError as exc:
		logger.critical("%s", exc)
		return 1
	except KeyboardInterrupt:
		logger.info("Interrupted, shutting down")
	return 0


def cmd_once(args: argparse.Namespace) -> int:
	"""Run a single sync-and-deploy cycle."""
	config = _load(args)
	if config is None:
		return 1
	try:
		ok = asyncio.run(_run_once(config))
	except PipelineCrashedError as exc:
		print(f"Deploy failed: {exc}")
		return 1
	except RuntimeError as exc:
		logger.error("Sync failed: %s", exc)
		return 1
	return 0 if ok else 1


INIT_TEMPLATE = """\
debug = false
strict = false

[repository]
path = "{path}"
branch = "master"
remote = "origin"

[poll]
interval = 60
max_retries = 10

[pipeline]
deploy_path = ""
# restart = "pm2 restart app"
# commit_tag = "__COMMIT__"

[pipeline.build]
install = ["npm ci"]

# [pipeline.test]
# unit = ["npm test"]

# [pipeline.post_tasks]
# warm_cache = ["curl -fsS https://example.com/"]

[pipeline.environment]

[notifications.slack]
webhook_url = ""
channel = ""
username = "deploy-agent"
"""


def cmd_init(args: argparse.Namespace) -> int:
	"""Write a config template."""
	target = Path(args.path).resolve()
	config_path = target / DEFAULT_CONFIG

	if config_path.exists():
		print(f"Config already exists: {config_path}")
		return 1

	config_path.write_text(INIT_TEMPLATE.format(path=str(target)))
	print(f"Created {config_path}")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	try:
		config = load_config(args.config)
	except (FileNotFoundError, ValueError) as e:
		print(f"Error: {e}")
		return 1
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"run": cmd_run,
	"once": cmd_once,
	"init": cmd_init,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	# Force line-buffered stderr for nohup/redirect scenarios
	if hasattr(sys.stderr, "reconfigure"):
		sys.stderr.reconfigure(line_buffering=True)  # type: ignore[union-attr]
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

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	return handler(args)


if __name__ == "__main__":
	sys.exit(main())

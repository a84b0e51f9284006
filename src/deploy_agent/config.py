"""TOML configuration loader for deploy-agent."""

from __future__ import annotations

import os
import re
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter

from deploy_agent.constants import DEFAULT_EXCLUDE_DIRS, DEFAULT_MAX_RETRIES, DEFAULT_POLL_INTERVAL
from deploy_agent.models import Steps
from deploy_agent.path_security import check_deploy_target

_STEPS_ADAPTER: TypeAdapter[dict[str, list[str]]] = TypeAdapter(dict[str, list[str]])
_ENV_ADAPTER: TypeAdapter[dict[str, str]] = TypeAdapter(dict[str, str])


@dataclass
class RepositoryConfig:
	"""Watched repository and branch."""

	path: str = ""
	branch: str = "master"
	remote: str = "origin"

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.path))


@dataclass
class PollConfig:
	"""Poll loop settings."""

	interval: int = DEFAULT_POLL_INTERVAL  # seconds between ticks, also the retry delay
	max_retries: int = DEFAULT_MAX_RETRIES  # consecutive sync failures before giving up


@dataclass
class PipelineConfig:
	"""Build, test, deploy and restart settings."""

	build_path: str = ""  # empty = repository path
	deploy_path: str = ""
	build: Steps = field(default_factory=dict)
	test: Steps | None = None
	post_tasks: Steps | None = None
	restart: str = ""
	commit_tag: str = ""
	environment: dict[str, str] = field(default_factory=dict)
	exclude_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_DIRS))


@dataclass
class SlackConfig:
	"""Slack incoming webhook settings."""

	webhook_url: str = ""
	channel: str = ""
	username: str = "deploy-agent"
	title: str = "Deployment"
	success_text: str = "Build success!"
	failed_text: str = "Build failed!"


@dataclass
class NotificationConfig:
	"""Notification settings."""

	slack: SlackConfig = field(default_factory=SlackConfig)


@dataclass
class DeployAgentConfig:
	"""Top-level deploy-agent configuration."""

	debug: bool = False  # deploy on every tick and log notifications instead of sending
	strict: bool = False  # treat validation warnings as errors
	repository: RepositoryConfig = field(default_factory=RepositoryConfig)
	poll: PollConfig = field(default_factory=PollConfig)
	pipeline: PipelineConfig = field(default_factory=PipelineConfig)
	notifications: NotificationConfig = field(default_factory=NotificationConfig)


def _build_repository(data: dict[str, Any]) -> RepositoryConfig:
	rc = RepositoryConfig()
	for key in ("path", "branch", "remote"):
		if key in data:
			setattr(rc, key, str(data[key]))
	return rc


def _build_poll(data: dict[str, Any]) -> PollConfig:
	pc = PollConfig()
	if "interval" in data:
		pc.interval = int(data["interval"])
	if "max_retries" in data:
		pc.max_retries = int(data["max_retries"])
	return pc


def _build_steps(data: Any) -> Steps:
	return _STEPS_ADAPTER.validate_python(data)


def _build_pipeline(data: dict[str, Any]) -> PipelineConfig:
	pc = PipelineConfig()
	for key in ("build_path", "deploy_path", "restart", "commit_tag"):
		if key in data:
			setattr(pc, key, str(data[key]))
	if "build" in data:
		pc.build = _build_steps(data["build"])
	if "test" in data:
		pc.test = _build_steps(data["test"]) or None
	if "post_tasks" in data:
		pc.post_tasks = _build_steps(data["post_tasks"]) or None
	if "environment" in data:
		pc.environment = _ENV_ADAPTER.validate_python(data["environment"])
	if "exclude_dirs" in data:
		pc.exclude_dirs = [str(d) for d in data["exclude_dirs"]]
	return pc


def _build_notifications(data: dict[str, Any]) -> NotificationConfig:
	nc = NotificationConfig()
	if "slack" in data:
		sc = SlackConfig()
		for key in ("webhook_url", "channel", "username", "title", "success_text", "failed_text"):
			if key in data["slack"]:
				setattr(sc, key, str(data["slack"][key]))
		nc.slack = sc
	return nc


def load_config(path: str | Path) -> DeployAgentConfig:
	"""Load a deploy-agent.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed DeployAgentConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
		pydantic.ValidationError: If a steps or environment table is malformed.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	dc = DeployAgentConfig()
	if "debug" in data:
		dc.debug = bool(data["debug"])
	if "strict" in data:
		dc.strict = bool(data["strict"])
	if "repository" in data:
		dc.repository = _build_repository(data["repository"])
	if "poll" in data:
		dc.poll = _build_poll(data["poll"])
	if "pipeline" in data:
		dc.pipeline = _build_pipeline(data["pipeline"])
	if "notifications" in data:
		dc.notifications = _build_notifications(data["notifications"])

	if not dc.pipeline.build_path:
		dc.pipeline.build_path = dc.repository.path
	# Allow env vars as fallback for secrets and debug toggling
	slack = dc.notifications.slack
	if not slack.webhook_url:
		slack.webhook_url = os.environ.get("SLACK_WEBHOOK_URL", "")
	if os.environ.get("DEPLOY_AGENT_DEBUG", "") in ("1", "true", "yes"):
		dc.debug = True
	return dc


_WEBHOOK_RE = re.compile(r"^https://[^\s/]+/\S+$")


def validate_config(config: DeployAgentConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded DeployAgentConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	With `strict` enabled every warning is reported as an error.
	"""
	issues: list[tuple[str, str]] = []

	# 1. repository.path exists and is a git repo
	repo_path = config.repository.resolved_path
	if not config.repository.path:
		issues.append(("error", "repository.path is required"))
	elif not repo_path.exists():
		issues.append(("error", f"repository.path does not exist: {repo_path}"))
	elif not (repo_path / ".git").is_dir():
		issues.append(("error", f"repository.path is not a git repository (no .git dir): {repo_path}"))

	if not config.repository.branch:
		issues.append(("error", "repository.branch must not be empty"))
	if not config.repository.remote:
		issues.append(("error", "repository.remote must not be empty"))

	# 2. pipeline essentials
	pipeline = config.pipeline
	if not pipeline.build:
		issues.append(("error", "pipeline.build must define at least one task group"))
	for section, steps in (("build", pipeline.build), ("test", pipeline.test), ("post_tasks", pipeline.post_tasks)):
		for group, commands in (steps or {}).items():
			if not commands:
				issues.append(("warning", f"pipeline.{section}.{group} has no commands"))

	if not pipeline.deploy_path:
		issues.append(("error", "pipeline.deploy_path is required"))
	else:
		for message in check_deploy_target(pipeline.deploy_path, pipeline.build_path or config.repository.path):
			issues.append(("error", message))

	build_path = Path(os.path.expanduser(pipeline.build_path)) if pipeline.build_path else None
	if build_path is not None and not build_path.exists():
		issues.append(("warning", f"pipeline.build_path does not exist yet: {build_path}"))

	if shutil.which("rsync") is None:
		issues.append(("error", "rsync not found on PATH (required for the deploy stage)"))

	# 3. notifications
	slack = config.notifications.slack
	if not slack.webhook_url:
		level = "warning" if config.debug else "error"
		issues.append((level, "notifications.slack.webhook_url is not set"))
	elif not _WEBHOOK_RE.match(slack.webhook_url):
		issues.append(("error", "notifications.slack.webhook_url must be an https URL"))
	if not slack.channel:
		issues.append(("warning", "notifications.slack.channel is not set (webhook default is used)"))

	# 4. Suspicious values
	if config.poll.interval <= 0:
		issues.append(("error", f"poll.interval must be positive: {config.poll.interval}"))
	elif config.poll.interval < 10:
		issues.append(("warning", f"poll.interval is very low: {config.poll.interval}s"))
	if config.poll.max_retries <= 0:
		issues.append(("error", f"poll.max_retries must be positive: {config.poll.max_retries}"))
	if config.debug:
		issues.append(("warning", "debug is enabled: the pipeline runs on every tick"))

	if config.strict:
		issues = [("error", msg) for _, msg in issues]
	return issues

"""Deploy pipeline: Build -> Test -> Deploy -> PostDeploy -> Restart, then PostTasks."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import stat
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any

from deploy_agent.config import DeployAgentConfig
from deploy_agent.constants import ICON_FAILURE, ICON_SUCCESS, POST_TASKS_PREFIX
from deploy_agent.executor import TaskGroupExecutor
from deploy_agent.formatter import format_progress
from deploy_agent.models import (
	Branch,
	DeployStage,
	NotificationHandle,
	PipelineResult,
	RunContext,
	StageFailed,
	StageOk,
	StageOutcome,
)
from deploy_agent.notifier import Notifier
from deploy_agent.runner import CommandRunner

logger = logging.getLogger(__name__)

StageHandler = Callable[[RunContext], Awaitable[Any]]


def stamp_commit(root: str | Path, marker: str, commit: str, exclude_dirs: Iterable[str] = ()) -> list[Path]:
	"""Replace every occurrence of `marker` with `commit` in text files under `root`.

	Binary files (NUL bytes or invalid UTF-8), symlinks, anything that is
	not a regular file (FIFOs, sockets, devices) and any directory named in
	`exclude_dirs` are skipped. Returns the rewritten files.
	"""
	excluded = set(exclude_dirs)
	marker_b = marker.encode("utf-8")
	changed: list[Path] = []
	for dirpath, dirnames, filenames in os.walk(os.path.expanduser(str(root))):
		dirnames[:] = [d for d in dirnames if d not in excluded]
		for filename in filenames:
			path = Path(dirpath) / filename
			st = path.lstat()
			if not stat.S_ISREG(st.st_mode):
				continue
			raw = path.read_bytes()
			if marker_b not in raw or b"\x00" in raw:
				continue
			try:
				text = raw.decode("utf-8")
			except UnicodeDecodeError:
				continue
			path.write_bytes(text.replace(marker, commit).encode("utf-8"))
			changed.append(path)
	return changed


def build_deploy_command(build_path: str, deploy_path: str) -> str:
	"""rsync mirror: recursive, keep mtimes and symlinks, drop files gone from the build.

	`.git` is never copied; `build_path` defaults to the repository itself.
	"""
	source = os.path.expanduser(build_path).rstrip("/") + "/"
	target = os.path.expanduser(deploy_path)
	return f"rsync -rtl --delete --exclude=.git {shlex.quote(source)} {shlex.quote(target)}"


class PipelineRunner:
	"""Drives one deploy run through its stages and reports the outcome."""

	def __init__(
		self,
		config: DeployAgentConfig,
		runner: CommandRunner,
		notifier: Notifier,
		executor: TaskGroupExecutor | None = None,
	) -> None:
		self.config = config
		self._runner = runner
		self._notifier = notifier
		self._executor = executor or TaskGroupExecutor(runner)
		self._handlers: dict[DeployStage, StageHandler] = {
			DeployStage.BUILD: self._build,
			DeployStage.TEST: self._test,
			DeployStage.DEPLOY: self._deploy,
			DeployStage.POST_DEPLOY: self._post_deploy,
			DeployStage.RESTART: self._restart,
			DeployStage.POST_TASKS: self._post_tasks,
		}

	def plan_stages(self) -> list[DeployStage]:
		"""Stages this configuration includes, in execution order."""
		pipeline = self.config.pipeline
		stages = [DeployStage.BUILD]
		if pipeline.test:
			stages.append(DeployStage.TEST)
		stages.append(DeployStage.DEPLOY)
		if pipeline.commit_tag:
			stages.append(DeployStage.POST_DEPLOY)
		if pipeline.restart:
			stages.append(DeployStage.RESTART)
		if pipeline.post_tasks:
			stages.append(DeployStage.POST_TASKS)
		return stages

	async def run(self, branch: Branch) -> PipelineResult:
		"""Run the pipeline for `branch`. Stage failures never escape as exceptions."""
		ctx = RunContext(branch=branch, stages=self.plan_stages())
		logger.info("%s - Start processing %s (%s)", ctx.started_at, branch.name, branch.commit)

		outcome = await self._run_main(ctx)
		if isinstance(outcome, StageFailed):
			result = await self._report_failure(ctx, outcome)
		else:
			result = await self._report_success(ctx)

		if result.success and DeployStage.POST_TASKS in ctx.stages:
			await self._run_post_tasks(ctx, result)
		return result

	async def _run_main(self, ctx: RunContext) -> StageOutcome:
		for stage in ctx.stages:
			if stage is DeployStage.POST_TASKS:
				continue
			ctx.advance(stage)
			outcome = await self._run_stage(ctx, stage)
			if isinstance(outcome, StageFailed):
				return outcome
		return StageOk(ctx.results)

	async def _run_stage(self, ctx: RunContext, stage: DeployStage) -> StageOutcome:
		logger.info("%s started", stage.label)
		try:
			value = await self._handlers[stage](ctx)
		except Exception as exc:
			logger.error("%s failed: %s", stage.label, exc)
			return StageFailed(stage, exc)
		ctx.results[stage] = value
		logger.info("%s done", stage.label)
		logger.debug("%s result: %s", stage.label, value)
		return StageOk(value)

	async def _build(self, ctx: RunContext) -> Any:
		return await self._executor.run(self.config.pipeline.build, self.config.pipeline.build_path or None)

	async def _test(self, ctx: RunContext) -> Any:
		return await self._executor.run(self.config.pipeline.test or {}, self.config.pipeline.build_path or None)

	async def _deploy(self, ctx: RunContext) -> Any:
		pipeline = self.config.pipeline
		return await self._runner.run(build_deploy_command(pipeline.build_path, pipeline.deploy_path))

	async def _post_deploy(self, ctx: RunContext) -> Any:
		pipeline = self.config.pipeline
		changed = await asyncio.to_thread(
			stamp_commit, pipeline.deploy_path, pipeline.commit_tag, ctx.branch.commit, pipeline.exclude_dirs,
		)
		logger.info("Stamped commit %s into %d file(s)", ctx.branch.commit, len(changed))
		return changed

	async def _restart(self, ctx: RunContext) -> Any:
		return await self._runner.run(self.config.pipeline.restart)

	async def _post_tasks(self, ctx: RunContext) -> Any:
		return await self._executor.run(self.config.pipeline.post_tasks or {}, self.config.pipeline.build_path or None)

	def _text(self, base: str, branch: Branch) -> str:
		return f"{base}\ncommit:{branch.label}, {branch.commit}"

	async def _dispatch(self, payload: dict[str, Any], icon: str, allowed: bool = True) -> NotificationHandle | None:
		slack = self.config.notifications.slack
		msg = dict(payload)
		if slack.channel:
			msg["channel"] = slack.channel
		msg["username"] = slack.username
		msg["icon_emoji"] = icon

		if self.config.debug or not allowed:
			logger.info("Slack message: %s", json.dumps(msg, indent=2))
			return None
		return await self._notifier.send(msg)

	async def _report_success(self, ctx: RunContext) -> PipelineResult:
		branch = ctx.branch
		slack = self.config.notifications.slack
		logger.info("DEPLOYMENT SUCCESS!, commit: %s, %s", branch.label, branch.commit)
		main_stages = [s for s in ctx.stages if s is not DeployStage.POST_TASKS]
		payload = format_progress(
			self._text(slack.success_text, branch), main_stages, ctx.current_stage, title=slack.title,
		)
		notification = await self._dispatch(payload, ICON_SUCCESS, allowed=bool(slack.success_text))
		return PipelineResult(success=True, notification=notification)

	async def _report_failure(self, ctx: RunContext, failed: StageFailed) -> PipelineResult:
		branch = ctx.branch
		slack = self.config.notifications.slack
		error = failed.error
		logger.error(
			"DEPLOYMENT FAILED at %s, commit: %s: %s",
			failed.stage.label, branch.commit, getattr(error, "stderr", None) or error,
		)
		payload = format_progress(
			self._text(slack.failed_text, branch), ctx.stages, ctx.current_stage, error, title=slack.title,
		)
		notification = await self._dispatch(payload, ICON_FAILURE)
		return PipelineResult(success=False, notification=notification, failed_stage=failed.stage)

	async def _run_post_tasks(self, ctx: RunContext, result: PipelineResult) -> None:
		branch = ctx.branch
		slack = self.config.notifications.slack
		ctx.advance(DeployStage.POST_TASKS)
		outcome = await self._run_stage(ctx, DeployStage.POST_TASKS)
		if isinstance(outcome, StageOk):
			result.post_tasks_success = True
			return

		logger.error(
			"POST TASKS FAILED, commit: %s: %s",
			branch.commit, getattr(outcome.error, "stderr", None) or outcome.error,
		)
		payload = format_progress(
			POST_TASKS_PREFIX + self._text(slack.failed_text, branch),
			ctx.stages, ctx.current_stage, outcome.error, title=slack.title,
		)
		result.post_tasks_success = False
		result.post_tasks_notification = await self._dispatch(payload, ICON_FAILURE)

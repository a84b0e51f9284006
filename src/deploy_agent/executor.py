"""Task group executor: parallel commands inside a group, groups in series."""

from __future__ import annotations

import asyncio
import logging

from deploy_agent.errors import AggregateTaskError
from deploy_agent.models import CommandResult, Steps, TaskProgress, TaskState
from deploy_agent.runner import CommandRunner

logger = logging.getLogger(__name__)


class TaskGroupExecutor:
	"""Runs a Steps mapping against a CommandRunner.

	Groups run one after another in insertion order. All commands of a
	group start together and the group is judged only after every one of
	them has finished. The first group with a failing command stops the
	run and raises AggregateTaskError carrying the whole progress map.
	"""

	def __init__(self, runner: CommandRunner) -> None:
		self._runner = runner

	async def run_group(self, name: str, commands: list[str], cwd: str | None) -> list[CommandResult]:
		"""Run one group's commands concurrently and wait for all of them.

		Raises the first failing command's error, in command order.
		"""
		outcomes = await asyncio.gather(
			*(self._runner.run(command, cwd) for command in commands),
			return_exceptions=True,
		)
		for outcome in outcomes:
			if isinstance(outcome, BaseException):
				raise outcome
		return list(outcomes)  # type: ignore[arg-type]

	async def run(self, steps: Steps, cwd: str | None = None) -> list[CommandResult]:
		progress: TaskProgress = {name: TaskState() for name in steps}
		results: list[CommandResult] = []

		for name, commands in steps.items():
			try:
				group_results = await self.run_group(name, commands, cwd)
			except Exception as exc:
				logger.error("%s - failed: %s", name, exc)
				progress[name].error = exc
				raise AggregateTaskError(progress) from exc
			logger.info("%s - Completed", name)
			progress[name].done = True
			results.extend(group_results)

		return results

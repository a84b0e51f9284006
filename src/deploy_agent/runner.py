"""Shell command execution for pipeline stages."""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping

from deploy_agent.errors import CommandError
from deploy_agent.models import CommandResult

logger = logging.getLogger(__name__)


class CommandRunner(ABC):
	"""Abstract capability for running one shell command."""

	@abstractmethod
	async def run(
		self, command: str, cwd: str | None = None, env: Mapping[str, str] | None = None,
	) -> CommandResult:
		"""Run `command` and return its output. Raises CommandError on non-zero exit."""


class ShellCommandRunner(CommandRunner):
	"""Run commands through the system shell with an environment overlay.

	The overlay is read-only and shared by every command, including the
	ones a task group runs concurrently.
	"""

	def __init__(self, environment: Mapping[str, str] | None = None) -> None:
		self._environment = dict(environment or {})

	def _build_env(self, env: Mapping[str, str] | None) -> dict[str, str]:
		merged = dict(os.environ)
		merged.update(self._environment)
		if env:
			merged.update(env)
		return merged

	async def run(
		self, command: str, cwd: str | None = None, env: Mapping[str, str] | None = None,
	) -> CommandResult:
		if cwd is not None:
			cwd = os.path.expanduser(cwd)
		proc = await asyncio.create_subprocess_shell(
			command,
			cwd=cwd,
			env=self._build_env(env),
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
		stdout_b, stderr_b = await proc.communicate()
		stdout = stdout_b.decode(errors="replace") if stdout_b else ""
		stderr = stderr_b.decode(errors="replace") if stderr_b else ""

		if proc.returncode != 0:
			logger.error('X "%s" (exit %s)', command, proc.returncode)
			raise CommandError(command, proc.returncode, stdout, stderr)

		logger.info('✓ "%s"', command)
		return CommandResult(command=command, stdout=stdout, stderr=stderr)

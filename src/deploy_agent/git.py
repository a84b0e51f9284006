"""Git operations used to sync the deploy working tree."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from deploy_agent.errors import GitOperationError
from deploy_agent.models import Branch, RepositoryStatus

logger = logging.getLogger(__name__)


class RepositoryClient(ABC):
	"""Abstract capability for the git operations the scheduler needs."""

	@abstractmethod
	async def current_branch(self) -> Branch:
		"""Return the checked-out branch with its head commit."""

	@abstractmethod
	async def checkout(self, branch: str) -> None:
		"""Switch the working tree to `branch`."""

	@abstractmethod
	async def fetch(self) -> None:
		"""Fetch from the configured remote."""

	@abstractmethod
	async def status(self) -> RepositoryStatus:
		"""Return ahead/behind counts against the remote tracking branch."""

	@abstractmethod
	async def reset_hard(self) -> None:
		"""Discard local modifications to tracked files."""

	@abstractmethod
	async def clean_untracked(self) -> None:
		"""Remove untracked files."""

	@abstractmethod
	async def pull(self) -> None:
		"""Pull the tracked branch from the remote."""


class GitRepository(RepositoryClient):
	"""RepositoryClient backed by the git CLI."""

	def __init__(self, path: str, remote: str = "origin", branch: str = "master") -> None:
		self.path = path
		self.remote = remote
		self.branch = branch

	async def _run_git(self, *args: str) -> str:
		"""Run a git command in self.path, raising GitOperationError on failure."""
		try:
			proc = await asyncio.create_subprocess_exec(
				"git", *args,
				cwd=self.path,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except OSError as exc:
			raise GitOperationError(args[0], str(exc)) from exc
		stdout, _ = await proc.communicate()
		output = stdout.decode(errors="replace") if stdout else ""
		if proc.returncode != 0:
			raise GitOperationError(args[0], output)
		return output

	async def current_branch(self) -> Branch:
		name = (await self._run_git("rev-parse", "--abbrev-ref", "HEAD")).strip()
		head = await self._run_git("log", "-1", "--format=%H%n%s")
		commit, _, label = head.strip().partition("\n")
		return Branch(name=name, commit=commit.strip(), label=label.strip(), is_current=True)

	async def checkout(self, branch: str) -> None:
		await self._run_git("checkout", branch)

	async def fetch(self) -> None:
		await self._run_git("fetch", self.remote)

	async def status(self) -> RepositoryStatus:
		output = await self._run_git(
			"rev-list", "--left-right", "--count", f"HEAD...{self.remote}/{self.branch}",
		)
		parts = output.split()
		if len(parts) != 2:
			raise GitOperationError("rev-list", f"unexpected output: {output!r}")
		return RepositoryStatus(ahead=int(parts[0]), behind=int(parts[1]))

	async def reset_hard(self) -> None:
		await self._run_git("reset", "--hard")

	async def clean_untracked(self) -> None:
		await self._run_git("clean", "-f")

	async def pull(self) -> None:
		await self._run_git("pull", self.remote, self.branch)

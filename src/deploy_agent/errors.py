"""Error taxonomy for deploy-agent."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
	from deploy_agent.models import TaskProgress


class CommandError(RuntimeError):
	"""Raised when a shell command exits non-zero."""

	def __init__(self, command: str, exit_code: int | None, stdout: str = "", stderr: str = "") -> None:
		self.command = command
		self.exit_code = exit_code
		self.stdout = stdout
		self.stderr = stderr
		super().__init__(f"`{command}` (exited with error code {exit_code})")


class AggregateTaskError(RuntimeError):
	"""Raised when a task group contains at least one failing command.

	`progress` holds every group's outcome up to and including the failing
	one; later groups are left pending.
	"""

	def __init__(self, progress: TaskProgress) -> None:
		self.progress = progress
		failed = [name for name, state in progress.items() if state.failed]
		super().__init__(f"Task group(s) failed: {', '.join(failed) or 'unknown'}")


class GitOperationError(RuntimeError):
	"""Raised when a git command used for syncing the working tree fails."""

	def __init__(self, operation: str, output: str = "") -> None:
		self.operation = operation
		self.output = output
		detail = output.strip().splitlines()[-1] if output.strip() else "no output"
		super().__init__(f"git {operation} failed: {detail}")


class PipelineCrashedError(RuntimeError):
	"""Raised by a one-shot cycle when the pipeline itself raised instead of reporting."""

	def __init__(self, commit: str, error: BaseException) -> None:
		self.commit = commit
		self.error = error
		super().__init__(f"Pipeline run crashed for commit {commit}: {error}")


class SchedulerExhaustedError(RuntimeError):
	"""Raised when the poll loop hits its consecutive failure budget."""

	def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
		self.attempts = attempts
		self.last_error = last_error
		super().__init__(
			f"Polling stopped after {attempts} consecutive failures"
			+ (f": {last_error}" if last_error is not None else "")
		)

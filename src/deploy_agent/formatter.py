"""Render pipeline progress and error details as Slack payloads."""

from __future__ import annotations

from typing import Any

from deploy_agent.constants import (
	ERROR_TAIL_CHARS,
	STAGE_DONE,
	STAGE_FAILED,
	STAGE_WITHHELD,
	STDOUT_TAIL_CHARS,
	TASK_DONE,
	TASK_FAILED,
	TASK_PENDING,
)
from deploy_agent.errors import AggregateTaskError
from deploy_agent.models import DeployStage, TaskProgress, TaskState


def _tail(text: str | None, limit: int) -> str:
	text = text or ""
	return text[-limit:] if len(text) > limit else text


def _command_of(error: BaseException) -> tuple[str, int | None] | None:
	command = getattr(error, "command", None) or getattr(error, "cmd", None)
	if command is None:
		return None
	code = getattr(error, "exit_code", getattr(error, "returncode", None))
	if isinstance(command, (list, tuple)):
		command = " ".join(str(c) for c in command)
	return str(command), code


def _output_blocks(stdout: str | None, stderr: str | None) -> str:
	return (
		f"```STDOUT:\n{_tail(stdout, STDOUT_TAIL_CHARS)}```\n"
		f"```STDERR:\n{stderr or ''}```"
	)


def _task_marker(state: TaskState) -> str:
	if state.failed:
		return TASK_FAILED
	return TASK_DONE if state.done else TASK_PENDING


def format_aggregate(progress: TaskProgress) -> str:
	"""One line per task group; failed groups carry their own error below."""
	lines: list[str] = []
	for name, state in progress.items():
		line = f"{_task_marker(state)} {name}"
		if state.failed:
			line += "\n" + format_error(state.error)
		lines.append(line)
	return "\n".join(lines)


def format_error(error: BaseException) -> str:
	"""Render error details for the "Error details" attachment."""
	if isinstance(error, AggregateTaskError):
		return format_aggregate(error.progress)

	command = _command_of(error)
	stdout = getattr(error, "stdout", None)
	stderr = getattr(error, "stderr", None)
	if command is not None:
		cmd, code = command
		return f"`[{code}] {cmd}`\n>" + _output_blocks(stdout, stderr)
	if stdout is not None or stderr is not None:
		return _output_blocks(stdout, stderr)
	return f"UNEXPECTED ERROR:\n```{_tail(str(error), ERROR_TAIL_CHARS)}```"


def format_stage_lines(
	stages: list[DeployStage],
	current_stage: DeployStage,
	error: BaseException | None = None,
) -> list[str]:
	"""Mark stages before the failure done, the failed one, and the rest withheld."""
	lines: list[str] = []
	failed = False
	for stage in stages:
		if error is not None and stage == current_stage:
			failed = True
			lines.append(f"{STAGE_FAILED} {stage.label}")
		elif failed:
			lines.append(f"{STAGE_WITHHELD} {stage.label}")
		else:
			lines.append(f"{STAGE_DONE} {stage.label}")
	return lines


def format_progress(
	text: str,
	stages: list[DeployStage],
	current_stage: DeployStage,
	error: BaseException | None = None,
	title: str = "Deployment",
) -> dict[str, Any]:
	"""Build the notification payload for one run outcome.

	Without an error every stage is marked complete and the payload is a
	plain message with a single green attachment. With an error the payload
	has a progress attachment and an error details attachment.
	"""
	progress = "\n".join(format_stage_lines(stages, current_stage, error))
	if error is None:
		return {
			"text": text,
			"attachments": [
				{
					"color": "good",
					"title": title,
					"text": progress,
				},
			],
		}
	return {
		"attachments": [
			{
				"pretext": text,
				"color": "danger",
				"title": title,
				"text": progress,
			},
			{
				"color": "warning",
				"mrkdwn_in": ["text"],
				"text": format_error(error),
				"title": "Error details",
			},
		],
	}

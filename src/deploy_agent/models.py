"""Data models for deploy-agent runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

Steps = dict[str, list[str]]


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Branch:
	"""Snapshot of the checked-out branch."""

	name: str
	commit: str
	label: str = ""
	is_current: bool = True


@dataclass
class RepositoryStatus:
	"""Working tree position relative to the remote tracking branch."""

	behind: int = 0
	ahead: int = 0


@dataclass
class CommandResult:
	"""Captured output of one successful command."""

	command: str
	stdout: str = ""
	stderr: str = ""


@dataclass
class TaskState:
	"""Outcome of one task group inside an executor invocation."""

	done: bool = False
	error: BaseException | None = None

	@property
	def failed(self) -> bool:
		return self.error is not None


TaskProgress = dict[str, TaskState]


class DeployStage(Enum):
	BUILD = 0
	TEST = 1
	DEPLOY = 2
	POST_DEPLOY = 3
	RESTART = 4
	POST_TASKS = 5

	@property
	def label(self) -> str:
		return _STAGE_LABELS[self]


_STAGE_LABELS: dict[DeployStage, str] = {
	DeployStage.BUILD: "Build",
	DeployStage.TEST: "Test",
	DeployStage.DEPLOY: "Deploy",
	DeployStage.POST_DEPLOY: "PostDeploy",
	DeployStage.RESTART: "Restart",
	DeployStage.POST_TASKS: "PostTasks",
}


@dataclass
class StageOk:
	value: Any = None


@dataclass
class StageFailed:
	stage: DeployStage
	error: BaseException


StageOutcome = Union[StageOk, StageFailed]


@dataclass
class NotificationHandle:
	"""Response of the notification sink for a delivered payload."""

	status_code: int
	body: str = ""


@dataclass
class RunContext:
	"""Mutable state of a single pipeline run.

	A new context is built for every run, so `current_stage` and the
	collected results never carry over between runs.
	"""

	branch: Branch
	stages: list[DeployStage]
	current_stage: DeployStage = DeployStage.BUILD
	results: dict[DeployStage, Any] = field(default_factory=dict)
	started_at: str = field(default_factory=_now_iso)

	def advance(self, stage: DeployStage) -> None:
		"""Move to `stage`; stages only ever move forward."""
		if stage.value < self.current_stage.value:
			raise ValueError(
				f"Cannot move back from {self.current_stage.label} to {stage.label}"
			)
		self.current_stage = stage


@dataclass
class PipelineResult:
	"""Terminal value of one pipeline run."""

	success: bool = False
	notification: NotificationHandle | None = None
	post_tasks_success: bool | None = None
	post_tasks_notification: NotificationHandle | None = None
	failed_stage: DeployStage | None = None

"""Shared pytest fixtures for deploy-agent tests."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeNotifier, FakeRepository, FakeRunner

from deploy_agent.config import (
	DeployAgentConfig,
	NotificationConfig,
	PipelineConfig,
	PollConfig,
	RepositoryConfig,
	SlackConfig,
)


@pytest.fixture()
def config(tmp_path: Path) -> DeployAgentConfig:
	"""Minimal config: one build group, nothing optional, zero poll interval."""
	return DeployAgentConfig(
		repository=RepositoryConfig(path=str(tmp_path / "repo"), branch="master", remote="origin"),
		poll=PollConfig(interval=0, max_retries=10),
		pipeline=PipelineConfig(
			build_path=str(tmp_path / "repo"),
			deploy_path=str(tmp_path / "www"),
			build={"install": ["npm ci"]},
		),
		notifications=NotificationConfig(
			slack=SlackConfig(
				webhook_url="https://hooks.slack.com/services/T000/B000/XXXX",
				channel="#deploys",
				username="deploy-bot",
			),
		),
	)


@pytest.fixture()
def runner() -> FakeRunner:
	return FakeRunner()


@pytest.fixture()
def notifier() -> FakeNotifier:
	return FakeNotifier()


@pytest.fixture()
def repo() -> FakeRepository:
	return FakeRepository()

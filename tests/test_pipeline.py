"""Tests for the deploy pipeline state machine."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from fakes import FakeNotifier, FakeRunner, stage_lines

from deploy_agent.config import DeployAgentConfig
from deploy_agent.models import Branch, DeployStage, RunContext
from deploy_agent.pipeline import PipelineRunner, build_deploy_command, stamp_commit

BRANCH = Branch(name="master", commit="abc123", label="Update things")


def _pipeline(config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier) -> PipelineRunner:
	return PipelineRunner(config, runner, notifier)


def _full(config: DeployAgentConfig) -> DeployAgentConfig:
	config.pipeline.test = {"unit": ["npm test"]}
	config.pipeline.restart = "pm2 restart site"
	config.pipeline.post_tasks = {"warm": ["curl -s localhost"]}
	return config


class TestPlanStages:
	def test_minimal(self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier) -> None:
		assert _pipeline(config, runner, notifier).plan_stages() == [DeployStage.BUILD, DeployStage.DEPLOY]

	def test_all_optional_stages(self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier) -> None:
		_full(config)
		config.pipeline.commit_tag = "__COMMIT__"
		assert _pipeline(config, runner, notifier).plan_stages() == [
			DeployStage.BUILD,
			DeployStage.TEST,
			DeployStage.DEPLOY,
			DeployStage.POST_DEPLOY,
			DeployStage.RESTART,
			DeployStage.POST_TASKS,
		]

	def test_post_tasks_listed_once(self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier) -> None:
		_full(config)
		stages = _pipeline(config, runner, notifier).plan_stages()
		assert stages.count(DeployStage.POST_TASKS) == 1
		assert stages.count(DeployStage.POST_DEPLOY) == 0


class TestPipelineRun:
	async def test_minimal_end_to_end(
		self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier,
	) -> None:
		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.success is True
		assert result.notification is not None
		assert result.post_tasks_success is None
		assert runner.calls[0] == ("npm ci", config.pipeline.build_path)
		assert runner.commands[1].startswith("rsync -rtl --delete ")
		assert len(runner.calls) == 2

		assert len(notifier.sent) == 1
		msg = notifier.sent[0]
		assert stage_lines(msg) == [":white_check_mark: Build", ":white_check_mark: Deploy"]
		assert msg["text"] == "Build success!\ncommit:Update things, abc123"
		assert msg["channel"] == "#deploys"
		assert msg["username"] == "deploy-bot"
		assert msg["icon_emoji"] == ":simple_smile:"

	async def test_stage_order(self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier) -> None:
		_full(config)
		await _pipeline(config, runner, notifier).run(BRANCH)

		assert runner.commands[0] == "npm ci"
		assert runner.commands[1] == "npm test"
		assert runner.commands[2].startswith("rsync")
		assert runner.commands[3] == "pm2 restart site"
		assert runner.commands[4] == "curl -s localhost"

	async def test_build_failure_stops_run(
		self, config: DeployAgentConfig, notifier: FakeNotifier,
	) -> None:
		config.pipeline.test = {"unit": ["npm test"]}
		runner = FakeRunner(failures={"npm ci"})

		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.success is False
		assert result.failed_stage == DeployStage.BUILD
		assert runner.commands == ["npm ci"]
		assert len(notifier.sent) == 1
		assert stage_lines(notifier.sent[0]) == [
			":x: Build",
			":double_vertical_bar: Test",
			":double_vertical_bar: Deploy",
		]

	async def test_test_failure_marks_stages(self, config: DeployAgentConfig, notifier: FakeNotifier) -> None:
		_full(config)
		runner = FakeRunner(failures={"npm test"})

		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.success is False
		assert result.failed_stage == DeployStage.TEST
		assert not any(c.startswith("rsync") for c in runner.commands)
		msg = notifier.sent[0]
		assert stage_lines(msg) == [
			":white_check_mark: Build",
			":x: Test",
			":double_vertical_bar: Deploy",
			":double_vertical_bar: Restart",
			":double_vertical_bar: PostTasks",
		]
		assert msg["attachments"][0]["pretext"] == "Build failed!\ncommit:Update things, abc123"
		assert msg["icon_emoji"] == ":monkey_face:"
		assert ":small_red_triangle_down: unit" in msg["attachments"][1]["text"]

	async def test_restart_failure(self, config: DeployAgentConfig, notifier: FakeNotifier) -> None:
		config.pipeline.restart = "pm2 restart site"
		runner = FakeRunner(failures={"pm2 restart site"})

		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.failed_stage == DeployStage.RESTART
		assert stage_lines(notifier.sent[0])[-1] == ":x: Restart"
		assert notifier.sent[0]["attachments"][1]["text"].startswith("`[1] pm2 restart site`")

	async def test_deploy_failure(self, config: DeployAgentConfig, notifier: FakeNotifier) -> None:
		deploy_cmd = build_deploy_command(config.pipeline.build_path, config.pipeline.deploy_path)
		runner = FakeRunner(failures={deploy_cmd})

		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.failed_stage == DeployStage.DEPLOY
		assert stage_lines(notifier.sent[0]) == [":white_check_mark: Build", ":x: Deploy"]

	async def test_post_tasks_failure_sends_second_notification(
		self, config: DeployAgentConfig, notifier: FakeNotifier,
	) -> None:
		config.pipeline.post_tasks = {"warm": ["curl -s localhost"]}
		runner = FakeRunner(failures={"curl -s localhost"})

		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.success is True
		assert result.post_tasks_success is False
		assert result.post_tasks_notification is not None
		assert len(notifier.sent) == 2
		success, post = notifier.sent
		assert stage_lines(success) == [":white_check_mark: Build", ":white_check_mark: Deploy"]
		assert post["attachments"][0]["pretext"].startswith("[Post tasks] Build failed!")
		assert stage_lines(post) == [
			":white_check_mark: Build",
			":white_check_mark: Deploy",
			":x: PostTasks",
		]

	async def test_post_tasks_success(self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier) -> None:
		config.pipeline.post_tasks = {"warm": ["curl -s localhost"]}

		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.post_tasks_success is True
		assert len(notifier.sent) == 1

	async def test_post_tasks_skipped_after_failure(self, config: DeployAgentConfig, notifier: FakeNotifier) -> None:
		config.pipeline.post_tasks = {"warm": ["curl -s localhost"]}
		runner = FakeRunner(failures={"npm ci"})

		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.post_tasks_success is None
		assert "curl -s localhost" not in runner.commands
		assert len(notifier.sent) == 1

	async def test_debug_suppresses_dispatch(
		self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier,
	) -> None:
		config.debug = True
		result = await _pipeline(config, runner, notifier).run(BRANCH)
		assert result.success is True
		assert result.notification is None
		assert notifier.sent == []

	async def test_empty_success_text_is_not_sent(
		self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier,
	) -> None:
		config.notifications.slack.success_text = ""
		result = await _pipeline(config, runner, notifier).run(BRANCH)
		assert result.success is True
		assert notifier.sent == []

	async def test_channel_omitted_when_unset(
		self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier,
	) -> None:
		config.notifications.slack.channel = ""
		await _pipeline(config, runner, notifier).run(BRANCH)
		assert "channel" not in notifier.sent[0]

	async def test_runs_do_not_share_stage_state(self, config: DeployAgentConfig, notifier: FakeNotifier) -> None:
		config.pipeline.restart = "pm2 restart site"
		runner = FakeRunner(failures={"pm2 restart site"})
		pipeline = _pipeline(config, runner, notifier)
		await pipeline.run(BRANCH)

		runner.failures = {"npm ci"}
		result = await pipeline.run(BRANCH)

		assert result.failed_stage == DeployStage.BUILD
		assert stage_lines(notifier.sent[1])[0] == ":x: Build"

	async def test_post_deploy_stamps_commit(
		self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier,
	) -> None:
		www = Path(config.pipeline.deploy_path)
		www.mkdir()
		(www / "index.html").write_text("<meta name=rev content=__COMMIT__>")
		config.pipeline.commit_tag = "__COMMIT__"

		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.success is True
		assert (www / "index.html").read_text() == "<meta name=rev content=abc123>"
		assert stage_lines(notifier.sent[0])[-1] == ":white_check_mark: PostDeploy"

	async def test_post_deploy_failure(
		self, config: DeployAgentConfig, runner: FakeRunner, notifier: FakeNotifier, monkeypatch: pytest.MonkeyPatch,
	) -> None:
		config.pipeline.commit_tag = "__COMMIT__"

		def broken(*args: object, **kwargs: object) -> list[Path]:
			raise PermissionError("read-only file system")

		monkeypatch.setattr("deploy_agent.pipeline.stamp_commit", broken)
		result = await _pipeline(config, runner, notifier).run(BRANCH)

		assert result.failed_stage == DeployStage.POST_DEPLOY
		details = notifier.sent[0]["attachments"][1]["text"]
		assert details == "UNEXPECTED ERROR:\n```read-only file system```"


class TestStampCommit:
	def test_replaces_every_occurrence(self, tmp_path: Path) -> None:
		(tmp_path / "a.js").write_text("v=__TAG__;w=__TAG__\n")
		sub = tmp_path / "sub"
		sub.mkdir()
		(sub / "b.txt").write_text("__TAG__")

		changed = stamp_commit(tmp_path, "__TAG__", "deadbeef")

		assert sorted(p.name for p in changed) == ["a.js", "b.txt"]
		assert (tmp_path / "a.js").read_text() == "v=deadbeef;w=deadbeef\n"
		assert (sub / "b.txt").read_text() == "deadbeef"

	def test_skips_excluded_dirs(self, tmp_path: Path) -> None:
		deps = tmp_path / "node_modules" / "pkg"
		deps.mkdir(parents=True)
		(deps / "index.js").write_text("__TAG__")

		changed = stamp_commit(tmp_path, "__TAG__", "deadbeef", exclude_dirs=["node_modules"])

		assert changed == []
		assert (deps / "index.js").read_text() == "__TAG__"

	def test_skips_binary_files(self, tmp_path: Path) -> None:
		blob = b"\x00\x01__TAG__\x02"
		(tmp_path / "logo.png").write_bytes(blob)

		assert stamp_commit(tmp_path, "__TAG__", "deadbeef") == []
		assert (tmp_path / "logo.png").read_bytes() == blob

	def test_preserves_line_endings(self, tmp_path: Path) -> None:
		(tmp_path / "win.txt").write_bytes(b"a __TAG__\r\nb\r\n")
		stamp_commit(tmp_path, "__TAG__", "c0ffee")
		assert (tmp_path / "win.txt").read_bytes() == b"a c0ffee\r\nb\r\n"

	@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs named pipes")
	def test_skips_fifos(self, tmp_path: Path) -> None:
		os.mkfifo(tmp_path / "control.fifo")
		(tmp_path / "index.html").write_text("__TAG__")

		changed = stamp_commit(tmp_path, "__TAG__", "deadbeef")

		assert [p.name for p in changed] == ["index.html"]

	def test_skips_symlinks(self, tmp_path: Path) -> None:
		outside = tmp_path / "outside.txt"
		outside.write_text("__TAG__")
		site = tmp_path / "site"
		site.mkdir()
		(site / "link.txt").symlink_to(outside)

		assert stamp_commit(site, "__TAG__", "deadbeef") == []
		assert outside.read_text() == "__TAG__"


class TestDeployCommand:
	def test_mirror_flags_and_trailing_slash(self) -> None:
		cmd = build_deploy_command("/srv/build", "/var/www")
		assert cmd == "rsync -rtl --delete --exclude=.git /srv/build/ /var/www"

	def test_quotes_paths(self) -> None:
		cmd = build_deploy_command("/srv/my build/", "/var/www/my site")
		assert cmd == "rsync -rtl --delete --exclude=.git '/srv/my build/' '/var/www/my site'"


class TestRunContext:
	def test_advance_forward(self) -> None:
		ctx = RunContext(branch=BRANCH, stages=[DeployStage.BUILD, DeployStage.DEPLOY])
		ctx.advance(DeployStage.DEPLOY)
		assert ctx.current_stage == DeployStage.DEPLOY

	def test_advance_backward_rejected(self) -> None:
		ctx = RunContext(branch=BRANCH, stages=[DeployStage.BUILD, DeployStage.DEPLOY])
		ctx.advance(DeployStage.DEPLOY)
		with pytest.raises(ValueError):
			ctx.advance(DeployStage.BUILD)

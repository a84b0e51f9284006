"""Poll loop: sync the working tree and start a deploy when the remote moved."""

from __future__ import annotations

import asyncio
import logging

from deploy_agent.config import DeployAgentConfig
from deploy_agent.errors import PipelineCrashedError, SchedulerExhaustedError
from deploy_agent.git import RepositoryClient
from deploy_agent.models import Branch, PipelineResult
from deploy_agent.pipeline import PipelineRunner

logger = logging.getLogger(__name__)


class SingleFlightLock:
	"""Non-blocking lock: callers that lose the race skip their work instead of waiting."""

	def __init__(self) -> None:
		self._held = False

	@property
	def held(self) -> bool:
		return self._held

	def try_acquire(self) -> bool:
		if self._held:
			return False
		self._held = True
		logger.info("Processing state changed: True")
		return True

	def release(self) -> None:
		if not self._held:
			return
		self._held = False
		logger.info("Processing state changed: False")


class RetryBudget:
	"""Counts consecutive sync failures; any success resets the count."""

	def __init__(self, max_failures: int) -> None:
		self.max_failures = max_failures
		self.consecutive_failures = 0
		self.last_error: BaseException | None = None

	@property
	def exhausted(self) -> bool:
		return self.consecutive_failures >= self.max_failures

	def record_success(self) -> None:
		self.consecutive_failures = 0
		self.last_error = None

	def record_failure(self, error: BaseException) -> bool:
		"""Record a failure. Returns True when the budget is used up."""
		self.consecutive_failures += 1
		self.last_error = error
		return self.exhausted


class PollScheduler:
	"""Fixed-interval poller with single-flight deploys.

	Every tick syncs the repository with its remote. When new commits
	arrived (or debug is on) the tick takes the lock, resets and pulls the
	working tree, and starts the pipeline in the background. Ticks that
	find the lock held are dropped without touching the repository.
	"""

	def __init__(
		self,
		config: DeployAgentConfig,
		repository: RepositoryClient,
		pipeline: PipelineRunner,
		lock: SingleFlightLock | None = None,
	) -> None:
		self.config = config
		self.repository = repository
		self.pipeline = pipeline
		self.lock = lock or SingleFlightLock()
		self.retry = RetryBudget(config.poll.max_retries)
		self.running = True
		self.last_result: PipelineResult | None = None
		self.last_crash: PipelineCrashedError | None = None
		self._deploy_task: asyncio.Task[PipelineResult | None] | None = None

	async def run(self, max_ticks: int | None = None) -> None:
		"""Poll until stopped, `max_ticks` is reached, or the retry budget runs out.

		The first tick fires immediately.

		Raises:
			SchedulerExhaustedError: After `poll.max_retries` consecutive sync failures.
		"""
		interval = self.config.poll.interval
		ticks = 0
		logger.info(
			"Polling %s/%s every %ds", self.config.repository.remote, self.config.repository.branch, interval,
		)
		try:
			while self.running and (max_ticks is None or ticks < max_ticks):
				await self.tick()
				ticks += 1
				if self.running and (max_ticks is None or ticks < max_ticks):
					await asyncio.sleep(interval)
		finally:
			await self.wait_idle()

	async def tick(self) -> bool:
		"""Run one sync-and-maybe-deploy cycle. Returns True if a deploy started.

		Sync errors are counted against the retry budget instead of raised.
		"""
		if self.lock.held:
			logger.debug("Deploy in progress, skipping tick")
			return False

		try:
			started = await self._sync()
		except Exception as exc:
			exhausted = self.retry.record_failure(exc)
			logger.warning(
				"Sync failed (%d/%d): %s",
				self.retry.consecutive_failures, self.retry.max_failures, exc,
			)
			if exhausted:
				self.running = False
				raise SchedulerExhaustedError(self.retry.consecutive_failures, exc) from exc
			return False

		self.retry.record_success()
		return started

	async def run_once(self) -> PipelineResult | None:
		"""Sync once and wait for the deploy it triggers, letting sync errors raise.

		Returns None when there was nothing to deploy.

		Raises:
			PipelineCrashedError: The deploy started but the pipeline raised.
		"""
		if self.lock.held:
			return None
		if not await self._sync():
			return None
		await self.wait_idle()
		if self.last_crash is not None:
			raise self.last_crash from self.last_crash.error
		return self.last_result

	async def _sync(self) -> bool:
		repo = self.repository
		target = self.config.repository.branch
		logger.info("Fetching from remote for branch %s", target)

		current = await repo.current_branch()
		if current.name != target:
			logger.info("Not on correct branch, switching from %s to %s", current.name, target)
			await repo.checkout(target)

		await repo.fetch()
		behind = (await repo.status()).behind
		logger.info("Repository is %d commit(s) behind", behind)
		if behind <= 0 and not self.config.debug:
			return False

		if not self.lock.try_acquire():
			return False
		try:
			await repo.reset_hard()
			await repo.clean_untracked()
			logger.info("Pulling from remote")
			await repo.pull()
			branch = await repo.current_branch()
		except BaseException:
			self.lock.release()
			raise

		self._deploy_task = asyncio.create_task(self._deploy(branch))
		return True

	async def _deploy(self, branch: Branch) -> PipelineResult | None:
		self.last_result = None
		self.last_crash = None
		try:
			self.last_result = await self.pipeline.run(branch)
			return self.last_result
		except Exception as exc:
			logger.exception("Pipeline run crashed for commit %s", branch.commit)
			self.last_crash = PipelineCrashedError(branch.commit, exc)
			return None
		finally:
			self.lock.release()

	async def wait_idle(self) -> None:
		"""Wait for the in-flight deploy, if any."""
		task = self._deploy_task
		if task is not None and not task.done():
			await task

	def stop(self) -> None:
		"""Signal the poll loop to stop after the current tick."""
		self.running = False

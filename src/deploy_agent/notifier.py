"""Slack notifications for deploy runs.

Uses async httpx client. Every pipeline run produces one payload (plus one
more when post tasks fail); payloads are posted as-is to an incoming
webhook. Delivery failures are logged and never fail the run.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from deploy_agent.models import NotificationHandle

logger = logging.getLogger(__name__)


class Notifier(ABC):
	"""Abstract notification sink."""

	@abstractmethod
	async def send(self, payload: dict[str, Any]) -> NotificationHandle | None:
		"""Deliver a formatted payload. Returns None when delivery failed."""

	async def close(self) -> None:
		"""Release transport resources."""


class SlackNotifier(Notifier):
	"""Posts payloads to a Slack incoming webhook."""

	def __init__(self, webhook_url: str, timeout: float = 10.0) -> None:
		self._webhook_url = webhook_url
		self._timeout = timeout
		self._client: httpx.AsyncClient | None = None

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self._timeout)
		return self._client

	async def send(self, payload: dict[str, Any]) -> NotificationHandle | None:
		try:
			client = await self._ensure_client()
			response = await client.post(self._webhook_url, json=payload)
			response.raise_for_status()
		except httpx.HTTPError as exc:
			logger.warning("Slack send failed: %s", exc)
			return None
		return NotificationHandle(status_code=response.status_code, body=response.text)

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None

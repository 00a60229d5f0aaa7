"""Best-effort notifications to workers.

Mail is delivered as a `message` ticket assigned to the worker, so a worker
sees it the next time it checks its inbox in the ticket store. The webhook
notifier posts the same content as JSON through an async httpx client.
Callers treat every failure as non-fatal.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from refinery.config import NotificationConfig
from refinery.constants import TYPE_MESSAGE
from refinery.db import Database
from refinery.errors import ConfigError, NotifyError
from refinery.models import Issue

logger = logging.getLogger(__name__)


class Notifier(ABC):
	"""Delivers a message to a worker."""

	@abstractmethod
	async def notify(self, worker: str, subject: str, body: str = "") -> None:
		"""Send a message. Raises NotifyError on delivery failure."""

	async def close(self) -> None:
		return None


class NullNotifier(Notifier):
	"""Drops every message."""

	async def notify(self, worker: str, subject: str, body: str = "") -> None:
		logger.debug("Notification to %s dropped: %s", worker, subject)


class MailNotifier(Notifier):
	"""Writes mail as message tickets in the ticket store."""

	def __init__(self, db: Database, sender: str = "refinery") -> None:
		self._db = db
		self._sender = sender

	async def notify(self, worker: str, subject: str, body: str = "") -> None:
		if not worker:
			raise NotifyError("cannot send mail: no recipient")
		message = Issue(
			title=subject,
			type=TYPE_MESSAGE,
			priority=1,
			assignee=worker,
			description=body,
			fields={"from": self._sender},
		)
		try:
			await self._db.locked_call("insert_issue", message)
		except Exception as exc:
			raise NotifyError(f"mail to {worker} failed: {exc}") from exc
		logger.info("Mailed %s: %s", worker, subject)


class WebhookNotifier(Notifier):
	"""Posts messages to an HTTP endpoint."""

	def __init__(self, url: str, timeout: float = 10.0) -> None:
		self._url = url
		self._timeout = timeout
		self._client: httpx.AsyncClient | None = None

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self._timeout)
		return self._client

	async def notify(self, worker: str, subject: str, body: str = "") -> None:
		client = await self._ensure_client()
		try:
			response = await client.post(self._url, json={
				"worker": worker,
				"subject": subject,
				"body": body,
			})
			response.raise_for_status()
		except httpx.HTTPError as exc:
			raise NotifyError(f"webhook delivery to {worker} failed: {exc}") from exc
		logger.info("Webhook notified %s: %s", worker, subject)

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None


def create_notifier(config: NotificationConfig, db: Database) -> Notifier:
	if config.type == "mail":
		return MailNotifier(db, sender=config.sender)
	if config.type == "webhook":
		if not config.webhook.url:
			raise ConfigError("notifications.webhook.url is required for webhook notifications")
		return WebhookNotifier(config.webhook.url, timeout=config.webhook.timeout)
	if config.type == "none":
		return NullNotifier()
	raise ConfigError(f"unknown notifier: {config.type!r}")

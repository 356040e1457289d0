"""
Email notifiers — tell technicians a new ticket arrived.

MailgunNotifier posts to the Mailgun messages API:
  POST {base_url}/{domain}/messages
  auth: basic api:<key>
  form: from, to, subject, html, h:X-Correlation-ID=<ticket id>

Transport errors (connect/read failures) are retried with exponential
backoff. HTTP error responses are not retried: they come back as a
failed NotificationResult.

LogNotifier writes the notification to the log instead (development).
"""
from __future__ import annotations

import structlog
from typing import Optional

import httpx
from tenacity import (
    RetryError, retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from channels.base import NotificationResult, Notifier, render_html, render_subject
from config.settings import NotifierConfig
from models.schemas import Ticket

logger = structlog.get_logger()


class MailgunNotifier(Notifier):

    name = "mailgun"

    def __init__(self, config: NotifierConfig, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        self.config = config
        self.client = client
        self._timeout = timeout
        self._from_email = config.from_email or f"postmaster@{config.domain}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                auth=("api", self.config.api_key),
                timeout=self._timeout,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
    )
    async def _post(self, form: dict) -> httpx.Response:
        client = await self._get_client()
        return await client.post(f"/{self.config.domain}/messages", data=form)

    async def send(self, ticket: Ticket) -> NotificationResult:
        recipients = list(self.config.recipients)
        if not recipients:
            logger.warning("notification_no_recipients", ticket_id=ticket.id)
            return NotificationResult(success=False, channel=self.name,
                                      error="no recipients configured")

        form = {
            "from": f"{self.config.from_name} <{self._from_email}>",
            "to": ", ".join(recipients),
            "subject": render_subject(ticket),
            "html": render_html(ticket),
            "h:X-Correlation-ID": ticket.id,
        }

        try:
            response = await self._post(form)
        except (RetryError, httpx.HTTPError) as e:
            logger.error("notification_transport_failed", ticket_id=ticket.id, error=str(e))
            return NotificationResult(success=False, channel=self.name,
                                      recipients=recipients, error=str(e))

        if response.is_success:
            provider_id = ""
            try:
                provider_id = response.json().get("id", "")
            except ValueError:
                pass
            logger.info("notification_sent",
                        ticket_id=ticket.id,
                        recipients=len(recipients),
                        provider_message_id=provider_id)
            return NotificationResult(success=True, channel=self.name,
                                      recipients=recipients,
                                      provider_message_id=provider_id,
                                      status_code=response.status_code)

        logger.error("notification_rejected",
                     ticket_id=ticket.id,
                     status_code=response.status_code,
                     body=response.text[:500])
        return NotificationResult(success=False, channel=self.name,
                                  recipients=recipients,
                                  status_code=response.status_code,
                                  error=f"HTTP {response.status_code}")

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


class LogNotifier(Notifier):
    """Logs the notification instead of sending it."""

    name = "log"

    def __init__(self, recipients: list[str] = None):
        self.recipients = list(recipients or [])

    async def send(self, ticket: Ticket) -> NotificationResult:
        logger.info("notification_logged",
                    ticket_id=ticket.id,
                    subject=render_subject(ticket),
                    recipients=self.recipients)
        return NotificationResult(success=True, channel=self.name,
                                  recipients=self.recipients)


def create_notifier(config: NotifierConfig) -> Notifier:
    if config.backend == "mailgun":
        if not (config.api_key and config.domain):
            logger.warning("mailgun_not_configured", fallback="log")
            return LogNotifier(config.recipients)
        return MailgunNotifier(config)
    return LogNotifier(config.recipients)

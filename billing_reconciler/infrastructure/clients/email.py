"""Transactional email client (Postmark REST API)"""

import logging
import re
from typing import Optional

import httpx

from billing_reconciler.config import settings
from billing_reconciler.domain.exceptions import ExternalDependencyError
from billing_reconciler.infrastructure.observability.metrics import external_call_latency_histogram

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")


def html_to_text(html: str) -> str:
    """Crude plain-text fallback for clients that can't render HTML"""
    return _TAG_RE.sub("", html)


class EmailClient:
    """Client for sending transactional email"""

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        from_address: str | None = None,
        from_name: str | None = None,
        message_stream: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.email_api_base).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.email_api_token
        self.from_address = from_address or settings.email_from_address
        self.from_name = from_name or settings.email_from_name
        self.message_stream = message_stream or settings.email_message_stream
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_token)

    async def send(self, to: str, subject: str, html: str, text: str | None = None) -> Optional[str]:
        """
        Send one email.

        Returns:
            Provider message id, or None when email is not configured

        Raises:
            ExternalDependencyError: On timeout, HTTP errors, or invalid response
        """
        if not self.configured:
            logger.warning("Email provider not configured - skipping email", extra={"subject": subject})
            return None

        payload = {
            "From": f"{self.from_name} <{self.from_address}>",
            "To": to,
            "Subject": subject,
            "HtmlBody": html,
            "TextBody": text if text is not None else html_to_text(html),
            "MessageStream": self.message_stream,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                with external_call_latency_histogram.labels(provider="email").time():
                    response = await client.post(
                        f"{self.base_url}/email",
                        json=payload,
                        headers={
                            "Accept": "application/json",
                            "X-Postmark-Server-Token": self.api_token,
                        },
                    )
                response.raise_for_status()
                message_id = response.json()["MessageID"]
                logger.info("Email sent", extra={"message_id": message_id})
                return message_id

            except httpx.TimeoutException as e:
                raise ExternalDependencyError(f"Email provider timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise ExternalDependencyError(f"Email provider error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise ExternalDependencyError(f"Email provider unreachable: {e}") from e
            except (KeyError, ValueError) as e:
                raise ExternalDependencyError(f"Invalid response from email provider: {e}") from e

"""Transactional email client.

The mailer talks to a Resend-compatible HTTP API. It is created once at
application startup (see ``api.lifespan``) and handed to request handlers
through the ``get_mailer`` dependency, so tests can swap the transport.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from email.utils import parseaddr

import httpx

from .config import Settings
from .utils import is_valid_email

logger = logging.getLogger("uvicorn.error")


class EmailConfigurationError(RuntimeError):
    """Raised when the mailer cannot send because it is misconfigured."""


class EmailDeliveryError(RuntimeError):
    """Raised when the email provider rejects or fails a send."""


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: str | bytes
    content_type: str = "text/calendar"

    def encoded(self) -> str:
        raw = self.content.encode("utf-8") if isinstance(self.content, str) else self.content
        return base64.b64encode(raw).decode("ascii")


def sender_address(sender: str) -> str:
    """Return the bare address portion of ``Name <addr>`` style senders."""
    _, address = parseaddr(sender or "")
    return address


class Mailer:
    def __init__(
        self,
        *,
        api_key: str,
        sender: str,
        api_url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key or ""
        self.sender = sender or ""
        self.api_url = api_url
        self._client = httpx.Client(timeout=timeout, transport=transport)
        for problem in self.configuration_problems():
            logger.warning("Email sending is disabled until fixed: %s", problem)

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: httpx.BaseTransport | None = None
    ) -> "Mailer":
        return cls(
            api_key=settings.email_api_key,
            sender=settings.email_sender,
            api_url=settings.email_api_url,
            timeout=settings.email_timeout_seconds,
            transport=transport,
        )

    def configuration_problems(self) -> list[str]:
        problems: list[str] = []
        if not self.api_key:
            problems.append("email API key is not configured")
        if not is_valid_email(sender_address(self.sender)):
            problems.append(f"sender address {self.sender!r} is not a valid email")
        return problems

    def send(
        self,
        *,
        to: str | Sequence[str],
        subject: str,
        html: str,
        attachments: Sequence[Attachment] | None = None,
    ) -> str:
        """Send one message and return the provider message id."""
        problems = self.configuration_problems()
        if problems:
            raise EmailConfigurationError("; ".join(problems))
        recipients = [to] if isinstance(to, str) else list(to)
        payload: dict = {
            "from": self.sender,
            "to": recipients,
            "subject": subject,
            "html": html,
        }
        if attachments:
            payload["attachments"] = [
                {
                    "filename": attachment.filename,
                    "content": attachment.encoded(),
                    "content_type": attachment.content_type,
                }
                for attachment in attachments
            ]
        try:
            response = self._client.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
            message_id = data.get("id") if isinstance(data, dict) else None
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Email provider rejected message to %s (%s): %s %s",
                ", ".join(recipients),
                subject,
                exc.response.status_code,
                exc.response.text,
            )
            raise EmailDeliveryError(
                f"Email provider returned {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "Email send to %s (%s) failed: %s", ", ".join(recipients), subject, exc
            )
            raise EmailDeliveryError(str(exc)) from exc
        if not message_id:
            logger.error(
                "Email provider returned no id for message to %s (%s)",
                ", ".join(recipients),
                subject,
            )
            raise EmailDeliveryError("No email ID returned")
        logger.info(
            "Email sent to %s (%s) id=%s", ", ".join(recipients), subject, message_id
        )
        return message_id

    def close(self) -> None:
        self._client.close()

"""
Email delivery collaborator.

SmtpMailTransport wraps the blocking smtplib client in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailEnvelope:
    """Message envelope handed to a MailTransport."""

    to: str
    sender: str
    subject: str
    text: str
    html: str

    def to_message(self) -> EmailMessage:
        message = EmailMessage()
        message["To"] = self.to
        message["From"] = self.sender
        message["Subject"] = self.subject
        message.set_content(self.text)
        message.add_alternative(self.html, subtype="html")
        return message


@runtime_checkable
class MailTransport(Protocol):
    """Deliver an envelope; raise on failure."""

    async def send(self, envelope: EmailEnvelope) -> None: ...


class SmtpMailTransport:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    async def send(self, envelope: EmailEnvelope) -> None:
        await asyncio.to_thread(self._send_blocking, envelope)
        logger.info(f"Sent '{envelope.subject}' to {envelope.to} via {self.host}:{self.port}")

    def _send_blocking(self, envelope: EmailEnvelope) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls(context=ssl.create_default_context())
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(envelope.to_message())

"""
Email delivery senders.

A sender takes one message and either returns a ``SendResult`` or raises.
Provider failures are left as raised (``smtplib`` exceptions, OSError,
``DeliveryError``) for the delivery error classifier to judge.
"""

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from docflow.utils.errors import ConfigurationError, DeliveryError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class OutboundEmail:
    recipients: List[str]
    subject: str
    body: str
    attachments: Sequence[str] = ()
    cc: Sequence[str] = ()


@dataclass
class SendResult:
    """Outcome of a successful send."""
    message_id: str
    provider: str
    recipient_count: int


class EmailSender(Protocol):
    provider: str

    async def send(self, email: OutboundEmail) -> SendResult:
        ...


class SmtpSender:
    """Plain SMTP delivery with optional STARTTLS."""

    provider = "smtp"

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "noreply@localhost",
        use_tls: bool = True,
        timeout: float = 30.0,
        provider: Optional[str] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout
        if provider:
            self.provider = provider

    @classmethod
    def from_settings(cls, settings) -> "SmtpSender":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            sender=settings.email_from,
            use_tls=settings.smtp_use_tls,
            provider=settings.email_provider,
        )

    def build_message(self, email: OutboundEmail) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["Subject"] = email.subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(email.recipients)
        if email.cc:
            msg["Cc"] = ", ".join(email.cc)
        msg["Message-ID"] = make_msgid(domain=self.sender.rpartition("@")[2] or None)
        msg["Date"] = formatdate(localtime=True)
        subtype = "html" if email.body.lstrip().startswith("<") else "plain"
        msg.attach(MIMEText(email.body, subtype))

        for attachment in email.attachments:
            path = Path(attachment)
            if not path.is_file():
                raise DeliveryError(f"Attachment does not exist: {path.name}")
            part = MIMEBase("application", "octet-stream")
            part.set_payload(path.read_bytes())
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", f'attachment; filename="{path.name}"')
            msg.attach(part)
        return msg

    def _send_sync(self, email: OutboundEmail) -> SendResult:
        if not self.host:
            raise ConfigurationError("SMTP_HOST is not configured")
        msg = self.build_message(email)
        recipients = list(email.recipients) + list(email.cc)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls(context=ssl.create_default_context())
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.sendmail(self.sender, recipients, msg.as_string())
        return SendResult(
            message_id=msg["Message-ID"],
            provider=self.provider,
            recipient_count=len(recipients),
        )

    async def send(self, email: OutboundEmail) -> SendResult:
        result = await asyncio.to_thread(self._send_sync, email)
        logger.info(
            "email_sent",
            provider=self.provider,
            recipients=result.recipient_count,
            message_id=result.message_id,
        )
        return result

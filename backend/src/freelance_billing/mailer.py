from __future__ import annotations

import logging
import smtplib
import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Protocol

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailAttachment:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


@dataclass(frozen=True)
class MailMessage:
    to: str
    subject: str
    html: str
    text: str
    attachments: tuple[MailAttachment, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MailReceipt:
    message_id: str
    sent_at: datetime


class MailSendError(Exception):
    error_code = "mail_send_failed"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MailAuthenticationError(MailSendError):
    error_code = "mail_auth_failed"


class MailConnectionError(MailSendError):
    error_code = "mail_connection_failed"


class MailRejectedError(MailSendError):
    error_code = "mail_rejected"


class MailSender(Protocol):
    def send(self, message: MailMessage) -> MailReceipt: ...


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


def build_email_message(message: MailMessage, *, from_address: str, from_name: str, message_id: str) -> EmailMessage:
    email = EmailMessage()
    email["From"] = formataddr((from_name, from_address)) if from_name else from_address
    email["To"] = message.to
    email["Subject"] = message.subject
    email["Message-ID"] = message_id
    email.set_content(message.text)
    email.add_alternative(message.html, subtype="html")
    for attachment in message.attachments:
        maintype, _, subtype = attachment.mime_type.partition("/")
        email.add_attachment(
            attachment.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return email


class StubMailSender:
    """Keeps sent messages in memory; recipients containing "fail" are rejected."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sent: list[MailMessage] = []

    @property
    def sent(self) -> list[MailMessage]:
        with self._lock:
            return list(self._sent)

    def reset(self) -> None:
        with self._lock:
            self._sent.clear()

    def send(self, message: MailMessage) -> MailReceipt:
        sent_at = datetime.now(timezone.utc)
        if "fail" in message.to.lower():
            raise MailRejectedError(f"Stub sender forced failure for {mask_email(message.to)}")
        with self._lock:
            self._sent.append(message)
            sequence = len(self._sent)
        return MailReceipt(message_id=f"stub-{sequence}-{int(sent_at.timestamp())}", sent_at=sent_at)


class SmtpMailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        from_name: str = "",
        use_tls: bool = True,
        timeout_seconds: int = 30,
    ) -> None:
        if not host.strip():
            raise ValueError("host must not be empty")
        if not from_address.strip():
            raise ValueError("from_address must not be empty")
        self._host = host.strip()
        self._port = port
        self._username = username
        self._password = password
        self._from_address = from_address.strip()
        self._from_name = from_name
        self._use_tls = use_tls
        self._timeout_seconds = timeout_seconds

    def send(self, message: MailMessage) -> MailReceipt:
        domain = self._from_address.split("@", 1)[-1] or None
        message_id = make_msgid(domain=domain)
        email = build_email_message(
            message,
            from_address=self._from_address,
            from_name=self._from_name,
            message_id=message_id,
        )
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds) as server:
                if self._use_tls:
                    server.starttls()
                if self._username:
                    server.login(self._username, self._password)
                server.send_message(email)
        except smtplib.SMTPAuthenticationError as exc:
            raise MailAuthenticationError(f"SMTP authentication failed: {exc.smtp_code}") from exc
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused, smtplib.SMTPDataError) as exc:
            raise MailRejectedError(f"SMTP server rejected the message for {mask_email(message.to)}") from exc
        except (smtplib.SMTPException, socket.timeout, OSError) as exc:
            raise MailConnectionError(f"SMTP connection error: {exc}") from exc
        sent_at = datetime.now(timezone.utc)
        logger.info("sent mail to %s via %s", mask_email(message.to), self._host)
        return MailReceipt(message_id=message_id, sent_at=sent_at)


def create_mail_sender(settings: Settings) -> MailSender:
    sender_type = settings.mail_sender_type.strip().lower()
    if sender_type == "smtp":
        return SmtpMailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_address=settings.mail_sender_address,
            from_name=settings.mail_from_name,
            use_tls=settings.smtp_use_tls,
            timeout_seconds=settings.mail_send_timeout_seconds,
        )
    if sender_type == "stub":
        return StubMailSender()
    raise RuntimeError(f"unsupported MAIL_SENDER_TYPE: {settings.mail_sender_type}")

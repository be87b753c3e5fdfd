from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .documents import DocumentStore, invoice_document_name
from .email_templates import (
    RenderedEmail,
    SenderSignature,
    build_invoice_email,
    build_reminder_email,
    build_update_email,
)
from .errors import (
    ClientEmailMissingError,
    EmailDeliveryError,
    InvoiceDocumentNotFoundError,
    InvoiceNotFoundError,
    ReminderNotAllowedError,
)
from .mailer import MailAttachment, MailMessage, MailReceipt, MailSender, MailSendError, mask_email
from .models import InvoiceEmailResponse
from .reminder_ledger import ReminderLedger
from .reminder_planner import ReminderKind
from .tables import ClientRow, InvoiceRow, UserRow

logger = logging.getLogger(__name__)

EmailTrigger = Literal["manual", "scheduler"]


@dataclass(frozen=True)
class ComposedEmail:
    invoice_id: int
    user_id: int
    email_type: str
    message: MailMessage


class InvoiceEmailService:
    """Builds invoice, reminder and update emails and hands them to the mail sender."""

    def __init__(self, *, mail_sender: MailSender, document_store: DocumentStore) -> None:
        self._mail_sender = mail_sender
        self._document_store = document_store

    def _render(self, email_type: str, invoice: InvoiceRow, client: ClientRow, user: UserRow) -> RenderedEmail:
        signature = SenderSignature(full_name=user.full_name, email=user.email, phone=user.phone)
        invoice_number = invoice.invoice_number or f"INV{invoice.id:05d}"
        if email_type == "reminder":
            return build_reminder_email(
                client_name=client.full_name,
                amount=invoice.total_amount,
                currency=invoice.currency,
                invoice_number=invoice_number,
                date_sent=invoice.invoice_date,
                signature=signature,
            )
        if email_type == "update":
            return build_update_email(
                client_name=client.full_name,
                amount=invoice.total_amount,
                currency=invoice.currency,
                invoice_number=invoice_number,
                signature=signature,
            )
        if email_type == "invoice":
            return build_invoice_email(
                client_name=client.full_name,
                amount=invoice.total_amount,
                currency=invoice.currency,
                signature=signature,
            )
        raise ValueError(f"unsupported email type: {email_type!r}")

    def compose(
        self,
        session: Session,
        invoice_id: int,
        user_id: int,
        email_type: str,
        *,
        today: date,
        skip_overdue_check: bool = False,
    ) -> ComposedEmail:
        invoice = session.get(InvoiceRow, invoice_id)
        if invoice is None or invoice.user_id != user_id:
            raise InvoiceNotFoundError(invoice_id)
        client = session.get(ClientRow, invoice.client_id)
        user = session.get(UserRow, invoice.user_id)
        if client is None or user is None:
            raise InvoiceNotFoundError(invoice_id)
        recipient = (client.email or "").strip()
        if not recipient:
            raise ClientEmailMissingError("Client email is missing")

        if email_type == "reminder" and not skip_overdue_check and not invoice.due_date < today:
            raise ReminderNotAllowedError("Reminder emails can only be sent for overdue invoices")

        file_name = invoice_document_name(invoice.invoice_file_name, invoice.invoice_number)
        if file_name is None:
            raise InvoiceDocumentNotFoundError(invoice_id)
        content = self._document_store.load(invoice.user_id, file_name)

        rendered = self._render(email_type, invoice, client, user)
        message = MailMessage(
            to=recipient,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            attachments=(MailAttachment(filename=file_name, content=content),),
        )
        return ComposedEmail(invoice_id=invoice.id, user_id=invoice.user_id, email_type=email_type, message=message)

    def deliver(self, composed: ComposedEmail) -> MailReceipt:
        receipt = self._mail_sender.send(composed.message)
        logger.info(
            "sent %s email for invoice %s to %s",
            composed.email_type,
            composed.invoice_id,
            mask_email(composed.message.to),
        )
        return receipt

    def send_invoice_email(
        self,
        session: Session,
        invoice_id: int,
        user_id: int,
        email_type: str,
        *,
        today: date,
        trigger: EmailTrigger = "manual",
        reminder_kind: ReminderKind | None = None,
    ) -> InvoiceEmailResponse:
        """Send one email for an invoice and append the matching ledger row.

        Manual reminders need an overdue invoice. A scheduler send passes the
        ``reminder_kind`` it fulfilled when no ledger row exists for it yet.
        """
        composed = self.compose(
            session,
            invoice_id,
            user_id,
            email_type,
            today=today,
            skip_overdue_check=trigger == "scheduler",
        )
        try:
            receipt = self.deliver(composed)
        except MailSendError as exc:
            logger.warning("email delivery failed for invoice %s: %s", invoice_id, exc.message)
            raise EmailDeliveryError(f"Failed to send email: {exc.message}", error_code=exc.error_code) from exc

        audit_recorded = True
        if email_type == "reminder":
            audit_recorded = self._record_audit(session, invoice_id, trigger, reminder_kind, today)
        return InvoiceEmailResponse(
            invoice_id=invoice_id,
            type=email_type,
            recipient=composed.message.to,
            subject=composed.message.subject,
            message_id=receipt.message_id,
            audit_recorded=audit_recorded,
        )

    def _record_audit(
        self,
        session: Session,
        invoice_id: int,
        trigger: EmailTrigger,
        reminder_kind: ReminderKind | None,
        today: date,
    ) -> bool:
        ledger = ReminderLedger(session)
        try:
            with session.begin_nested():
                if trigger == "manual":
                    ledger.record_manual(invoice_id, today=today)
                elif reminder_kind is not None:
                    ledger.record_automated_send(invoice_id, reminder_kind, today)
        except SQLAlchemyError:
            logger.exception("could not record reminder audit row for invoice %s", invoice_id)
            return False
        return True

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .accounts import AccountService
from .clock import coerce_utc
from .documents import DocumentStore, invoice_document_name
from .errors import InvalidStatusError, InvoiceDateError, InvoiceNotFoundError, NothingToUpdateError
from .models import (
    INVOICE_STATUSES,
    InvoiceCreateRequest,
    InvoiceDocumentResponse,
    InvoiceRecord,
    InvoiceUpdateRequest,
)
from .payments import delete_payments_for_invoice
from .reminder_ledger import ReminderLedger, decode_policy, encode_policy
from .tables import InvoiceRow, PaymentRow, ReminderRow

logger = logging.getLogger(__name__)

REMINDER_WARNING = "invoice saved but the reminder schedule could not be updated"

_REQUIRED_FIELDS = frozenset(
    {"client_id", "invoice_date", "due_date", "sub_total_amount", "gst", "total_amount", "currency"}
)
_PLAIN_FIELDS = ("invoice_number", "invoice_date", "sub_total_amount", "gst", "total_amount", "additional_notes")


def derive_status(due_date: date, today: date) -> str:
    return "overdue" if due_date < today else "pending"


def compute_total(sub_total_amount: float, gst: float) -> float:
    return round(sub_total_amount * (1 + gst / 100), 2)


def validate_status(value: str) -> str:
    normalized = str(value).strip().lower()
    if normalized not in INVOICE_STATUSES:
        raise InvalidStatusError(f"invalid status: {value!r}")
    return normalized


def to_invoice_record(row: InvoiceRow, *, reminder_warning: str | None = None) -> InvoiceRecord:
    return InvoiceRecord(
        id=row.id,
        user_id=row.user_id,
        client_id=row.client_id,
        invoice_number=row.invoice_number,
        invoice_date=row.invoice_date,
        due_date=row.due_date,
        sub_total_amount=row.sub_total_amount,
        gst=row.gst,
        total_amount=row.total_amount,
        currency=row.currency,
        additional_notes=row.additional_notes,
        payment_reminder_repetition=decode_policy(row.payment_reminder_repetition),
        status=row.status,
        invoice_file_name=row.invoice_file_name,
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
        reminder_warning=reminder_warning,
    )


class InvoiceLifecycle:
    """Status transitions of invoices and the reminder side effects they carry.

    Every method works inside the caller's session; the caller owns the
    transaction boundary. ``today`` is the calendar date in the billing
    timezone.
    """

    def __init__(self, session: Session, *, today: date, default_currency: str = "INR") -> None:
        self._session = session
        self._today = today
        self._accounts = AccountService(session, default_currency=default_currency)

    def _owned_invoice(self, invoice_id: int, user_id: int) -> InvoiceRow:
        invoice = self._session.get(InvoiceRow, invoice_id)
        if invoice is None or invoice.user_id != user_id:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def _regenerate_reminders(self, invoice: InvoiceRow) -> str | None:
        try:
            with self._session.begin_nested():
                ReminderLedger(self._session).regenerate(invoice.id)
        except SQLAlchemyError:
            logger.exception("reminder regeneration failed for invoice %s", invoice.id)
            return REMINDER_WARNING
        return None

    def _apply_status(self, invoice: InvoiceRow, status: str) -> None:
        if invoice.status == "paid" and status != "paid":
            delete_payments_for_invoice(self._session, invoice.id)
            logger.info("invoice %s reverted from paid to %s", invoice.id, status)
        invoice.status = status

    def create_invoice(self, user_id: int, request: InvoiceCreateRequest) -> InvoiceRecord:
        user = self._accounts.get_user_row(user_id)
        self._accounts.get_client_row(request.client_id, user_id)
        total_amount = request.total_amount
        if total_amount is None:
            total_amount = compute_total(request.sub_total_amount, request.gst)

        invoice = InvoiceRow(
            user_id=user_id,
            client_id=request.client_id,
            invoice_number=request.invoice_number,
            invoice_date=request.invoice_date,
            due_date=request.due_date,
            sub_total_amount=request.sub_total_amount,
            gst=request.gst,
            total_amount=total_amount,
            currency=(request.currency or user.currency).upper(),
            additional_notes=request.additional_notes,
            payment_reminder_repetition=encode_policy(request.payment_reminder_repetition),
            status=derive_status(request.due_date, self._today),
        )
        self._session.add(invoice)
        self._session.flush()
        if not invoice.invoice_number:
            invoice.invoice_number = f"INV{invoice.id:05d}"

        warning = None
        if invoice.payment_reminder_repetition is not None:
            warning = self._regenerate_reminders(invoice)
        self._session.flush()
        logger.info("created invoice %s with status %s", invoice.id, invoice.status)
        return to_invoice_record(invoice, reminder_warning=warning)

    def get_invoice(self, invoice_id: int, user_id: int) -> InvoiceRecord:
        return to_invoice_record(self._owned_invoice(invoice_id, user_id))

    def list_invoices(self, user_id: int, *, status: str | None = None) -> list[InvoiceRecord]:
        """List a user's invoices, refreshing pending/overdue against today."""
        wanted = validate_status(status) if status is not None else None
        rows = self._session.scalars(
            select(InvoiceRow).where(InvoiceRow.user_id == user_id).order_by(InvoiceRow.id.desc())
        ).all()
        for row in rows:
            if row.status == "paid":
                continue
            derived = derive_status(row.due_date, self._today)
            if derived != row.status:
                row.status = derived
        self._session.flush()
        return [to_invoice_record(row) for row in rows if wanted is None or row.status == wanted]

    def update_invoice(self, invoice_id: int, user_id: int, request: InvoiceUpdateRequest) -> InvoiceRecord:
        changes = {
            name: value
            for name, value in request.changes().items()
            if value is not None or name not in _REQUIRED_FIELDS
        }
        if not changes:
            raise NothingToUpdateError("no fields to update")
        invoice = self._owned_invoice(invoice_id, user_id)
        invoice_date = changes.get("invoice_date", invoice.invoice_date)
        due_date = changes.get("due_date", invoice.due_date)
        if due_date < invoice_date:
            raise InvoiceDateError("due_date must be on or after invoice_date")

        explicit_status = changes.get("status")
        if explicit_status is not None:
            explicit_status = validate_status(explicit_status)
        if "client_id" in changes and changes["client_id"] != invoice.client_id:
            self._accounts.get_client_row(changes["client_id"], user_id)
            invoice.client_id = changes["client_id"]
        for name in _PLAIN_FIELDS:
            if name in changes:
                setattr(invoice, name, changes[name])
        if "currency" in changes:
            invoice.currency = changes["currency"].upper()
        if "total_amount" not in changes and ("sub_total_amount" in changes or "gst" in changes):
            invoice.total_amount = compute_total(invoice.sub_total_amount, invoice.gst)

        due_changed = "due_date" in changes and changes["due_date"] != invoice.due_date
        if due_changed:
            invoice.due_date = changes["due_date"]

        policy_changed = False
        if "payment_reminder_repetition" in changes:
            encoded = encode_policy(changes["payment_reminder_repetition"])
            policy_changed = encoded != invoice.payment_reminder_repetition
            invoice.payment_reminder_repetition = encoded

        if explicit_status is not None:
            self._apply_status(invoice, explicit_status)
        elif due_changed and invoice.status != "paid":
            invoice.status = derive_status(invoice.due_date, self._today)

        self._session.flush()
        warning = None
        if due_changed or policy_changed:
            warning = self._regenerate_reminders(invoice)
        logger.info("updated invoice %s fields=%s", invoice.id, sorted(changes))
        return to_invoice_record(invoice, reminder_warning=warning)

    def set_status(self, invoice_id: int, user_id: int, status: str) -> InvoiceRecord:
        normalized = validate_status(status)
        invoice = self._owned_invoice(invoice_id, user_id)
        self._apply_status(invoice, normalized)
        self._session.flush()
        return to_invoice_record(invoice)

    def update_invoice_status(self, invoice_id: int, status: str) -> InvoiceRecord:
        """Status write without an ownership check, for internal callers."""
        normalized = validate_status(status)
        invoice = self._session.get(InvoiceRow, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        self._apply_status(invoice, normalized)
        self._session.flush()
        return to_invoice_record(invoice)

    def delete_invoice(self, invoice_id: int, user_id: int) -> None:
        invoice = self._owned_invoice(invoice_id, user_id)
        self._session.execute(delete(ReminderRow).where(ReminderRow.invoice_id == invoice.id))
        self._session.execute(delete(PaymentRow).where(PaymentRow.invoice_id == invoice.id))
        self._session.delete(invoice)
        self._session.flush()
        logger.info("deleted invoice %s", invoice_id)

    def attach_pdf(
        self,
        invoice_id: int,
        user_id: int,
        content: bytes,
        store: DocumentStore,
    ) -> InvoiceDocumentResponse:
        invoice = self._owned_invoice(invoice_id, user_id)
        file_name = invoice_document_name(invoice.invoice_file_name, invoice.invoice_number)
        if file_name is None:
            file_name = f"INV{invoice.id:05d}.pdf"
        stored_name = store.save(user_id, file_name, content)
        invoice.invoice_file_name = stored_name
        self._session.flush()
        return InvoiceDocumentResponse(
            invoice_id=invoice.id,
            invoice_file_name=stored_name,
            size_bytes=len(content),
        )

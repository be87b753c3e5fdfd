from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .clock import coerce_utc
from .errors import InvoiceNotFoundError, PaymentNotFoundError, PaymentValidationError
from .models import PaymentCreateRequest, PaymentRecord
from .tables import InvoiceRow, PaymentRow

logger = logging.getLogger(__name__)


def delete_payments_for_invoice(session: Session, invoice_id: int) -> int:
    result = session.execute(
        delete(PaymentRow)
        .where(PaymentRow.invoice_id == invoice_id)
        .execution_options(synchronize_session="fetch")
    )
    removed = int(result.rowcount or 0)
    if removed:
        logger.info("deleted %d payments for invoice %s", removed, invoice_id)
    return removed


def compute_final_amount(
    amount_received: float,
    payment_gateway_fee: float,
    tds_deducted: float,
    other_deduction: float,
) -> float:
    return round(amount_received - payment_gateway_fee - tds_deducted - other_deduction, 2)


def to_payment_record(row: PaymentRow) -> PaymentRecord:
    return PaymentRecord(
        id=row.id,
        invoice_id=row.invoice_id,
        user_id=row.user_id,
        client_id=row.client_id,
        invoice_amount=row.invoice_amount,
        amount_received=row.amount_received,
        payment_gateway_fee=row.payment_gateway_fee,
        tds_deducted=row.tds_deducted,
        other_deduction=row.other_deduction,
        final_amount=row.final_amount,
        payment_date=row.payment_date,
        notes=row.notes,
        created_at=coerce_utc(row.created_at),
    )


class PaymentService:
    def __init__(self, session: Session) -> None:
        self._session = session

    def _owned_invoice(self, invoice_id: int, user_id: int) -> InvoiceRow:
        invoice = self._session.get(InvoiceRow, invoice_id)
        if invoice is None or invoice.user_id != user_id:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def create_payment(self, user_id: int, request: PaymentCreateRequest) -> PaymentRecord:
        """Record a payment and mark its invoice paid.

        Reminders are left in place; the dispatcher closes out reminders of
        paid invoices without sending them.
        """
        invoice = self._owned_invoice(request.invoice_id, user_id)
        if request.amount_received <= 0:
            raise PaymentValidationError("amount_received must be greater than zero")
        if request.amount_received > invoice.total_amount:
            raise PaymentValidationError("amount_received cannot exceed the invoice total")
        deductions = (request.payment_gateway_fee, request.tds_deducted, request.other_deduction)
        if any(value < 0 for value in deductions):
            raise PaymentValidationError("deductions cannot be negative")
        final_amount = compute_final_amount(request.amount_received, *deductions)
        if final_amount < 0:
            raise PaymentValidationError("deductions cannot exceed amount_received")

        row = PaymentRow(
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            client_id=invoice.client_id,
            invoice_amount=invoice.total_amount,
            amount_received=request.amount_received,
            payment_gateway_fee=request.payment_gateway_fee,
            tds_deducted=request.tds_deducted,
            other_deduction=request.other_deduction,
            final_amount=final_amount,
            payment_date=request.payment_date,
            notes=request.notes,
        )
        self._session.add(row)
        invoice.status = "paid"
        self._session.flush()
        logger.info("recorded payment %s for invoice %s", row.id, invoice.id)
        return to_payment_record(row)

    def list_for_invoice(self, invoice_id: int, user_id: int) -> list[PaymentRecord]:
        self._owned_invoice(invoice_id, user_id)
        rows = self._session.scalars(
            select(PaymentRow)
            .where(PaymentRow.invoice_id == invoice_id)
            .order_by(PaymentRow.payment_date.asc(), PaymentRow.id.asc())
        ).all()
        return [to_payment_record(row) for row in rows]

    def delete_payment(self, payment_id: int, user_id: int) -> None:
        # The invoice keeps its status; reverting is an explicit status update.
        row = self._session.get(PaymentRow, payment_id)
        if row is None or row.user_id != user_id:
            raise PaymentNotFoundError(payment_id)
        self._session.delete(row)
        self._session.flush()

    def delete_payments_for_invoice(self, invoice_id: int) -> int:
        return delete_payments_for_invoice(self._session, invoice_id)


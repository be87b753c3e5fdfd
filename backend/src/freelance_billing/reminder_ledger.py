from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import delete, exists, select, update
from sqlalchemy.orm import Session

from .clock import coerce_utc, now_utc
from .errors import InvoiceNotFoundError, ReminderNotFoundError
from .models import ReminderDebugItem, ReminderRecord
from .reminder_planner import AUTOMATIC_KINDS, ReminderKind, normalize_policy, plan
from .tables import ClientRow, InvoiceRow, ReminderRow, UserRow

logger = logging.getLogger(__name__)

_AUTOMATIC_VALUES = sorted(kind.value for kind in AUTOMATIC_KINDS)


def encode_policy(policy: Iterable[object] | None) -> str | None:
    codes = normalize_policy(policy)
    if not codes:
        return None
    return json.dumps([code.value for code in codes])


def decode_policy(raw: str | None) -> list[str]:
    """Stored policies are JSON lists; older rows hold comma separated labels."""
    if not raw:
        return []
    try:
        loaded = json.loads(raw)
    except ValueError:
        loaded = [part for part in raw.split(",") if part.strip()]
    if not isinstance(loaded, list):
        loaded = [loaded]
    return [code.value for code in normalize_policy(loaded)]


def to_reminder_record(row: ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        id=row.id,
        invoice_id=row.invoice_id,
        user_id=row.user_id,
        client_id=row.client_id,
        kind=row.kind,
        trigger_date=row.trigger_date,
        sent=row.sent,
        sent_at=coerce_utc(row.sent_at) if row.sent_at is not None else None,
        created_at=coerce_utc(row.created_at),
    )


@dataclass(frozen=True)
class DueReminder:
    reminder_id: int
    invoice_id: int
    user_id: int
    kind: str
    trigger_date: date
    invoice_number: str | None
    invoice_status: str
    client_name: str
    client_email: str | None
    user_name: str


@dataclass(frozen=True)
class SyncResult:
    invoice_ids: list[int]
    reminders_created: int


@dataclass(frozen=True)
class LedgerInspection:
    today: date
    items: list[ReminderDebugItem]
    invoices_without_reminders: list[int]

    @property
    def unsent(self) -> int:
        return sum(1 for item in self.items if not item.sent)


class ReminderLedger:
    """Reminder rows for invoices, read and written inside the caller's session."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def _invoice(self, invoice_id: int) -> InvoiceRow:
        invoice = self._session.get(InvoiceRow, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def regenerate(
        self,
        invoice_id: int,
        due_date: date | None = None,
        policy: Iterable[object] | None = None,
    ) -> list[ReminderRow]:
        """Replace the automatic rows of an invoice with a fresh plan.

        ``due_date`` and ``policy`` default to what is stored on the invoice.
        Automatic rows are always discarded; paid invoices get no new ones.
        Manual rows are never removed.
        """
        invoice = self._invoice(invoice_id)
        if invoice.status == "paid":
            self.discard_automatic(invoice_id)
            logger.debug("cleared automatic reminders of paid invoice %s", invoice_id)
            return []
        effective_due = due_date if due_date is not None else invoice.due_date
        effective_policy = policy if policy is not None else decode_policy(invoice.payment_reminder_repetition)

        self.discard_automatic(invoice_id)
        rows = [
            ReminderRow(
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                client_id=invoice.client_id,
                kind=planned.kind.value,
                trigger_date=planned.trigger_date,
                sent=False,
            )
            for planned in plan(effective_due, effective_policy)
        ]
        if rows:
            self._session.add_all(rows)
            self._session.flush()
        logger.info("regenerated %d reminders for invoice %s", len(rows), invoice_id)
        return rows

    def discard_automatic(self, invoice_id: int) -> int:
        result = self._session.execute(
            delete(ReminderRow)
            .where(ReminderRow.invoice_id == invoice_id)
            .where(ReminderRow.kind.in_(_AUTOMATIC_VALUES))
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def record_manual(self, invoice_id: int, *, today: date, now: datetime | None = None) -> ReminderRow:
        return self._record_sent(invoice_id, ReminderKind.MANUAL, today, now)

    def record_automated_send(
        self,
        invoice_id: int,
        kind: ReminderKind | str,
        trigger_date: date,
        *,
        now: datetime | None = None,
    ) -> ReminderRow:
        resolved = ReminderKind(kind)
        if not resolved.automatic:
            raise ValueError(f"not an automatic reminder kind: {resolved.value}")
        return self._record_sent(invoice_id, resolved, trigger_date, now)

    def _record_sent(
        self,
        invoice_id: int,
        kind: ReminderKind,
        trigger_date: date,
        now: datetime | None,
    ) -> ReminderRow:
        invoice = self._invoice(invoice_id)
        sent_at = now or now_utc()
        row = ReminderRow(
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            client_id=invoice.client_id,
            kind=kind.value,
            trigger_date=trigger_date,
            sent=True,
            sent_at=sent_at,
        )
        self._session.add(row)
        self._session.flush()
        return row

    def list_due(self, as_of: date) -> list[ReminderRow]:
        return list(
            self._session.scalars(
                select(ReminderRow)
                .where(ReminderRow.sent.is_(False))
                .where(ReminderRow.trigger_date <= as_of)
                .order_by(ReminderRow.trigger_date.asc(), ReminderRow.id.asc())
            ).all()
        )

    def list_due_with_details(self, as_of: date) -> list[DueReminder]:
        # Paid invoices stay in the result; the dispatcher closes them out.
        rows = self._session.execute(
            select(ReminderRow, InvoiceRow, ClientRow, UserRow)
            .join(InvoiceRow, InvoiceRow.id == ReminderRow.invoice_id)
            .join(ClientRow, ClientRow.id == InvoiceRow.client_id)
            .join(UserRow, UserRow.id == InvoiceRow.user_id)
            .where(ReminderRow.sent.is_(False))
            .where(ReminderRow.trigger_date <= as_of)
            .order_by(ReminderRow.trigger_date.asc(), ReminderRow.id.asc())
        ).all()
        return [
            DueReminder(
                reminder_id=reminder.id,
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                kind=reminder.kind,
                trigger_date=reminder.trigger_date,
                invoice_number=invoice.invoice_number,
                invoice_status=invoice.status,
                client_name=client.full_name,
                client_email=client.email,
                user_name=user.full_name,
            )
            for reminder, invoice, client, user in rows
        ]

    def mark_sent(self, reminder_id: int, *, now: datetime | None = None) -> ReminderRow:
        """Flip ``sent`` once; later calls keep the original ``sent_at``."""
        self._session.execute(
            update(ReminderRow)
            .where(ReminderRow.id == reminder_id)
            .where(ReminderRow.sent.is_(False))
            .values(sent=True, sent_at=now or now_utc(), updated_at=now_utc())
            .execution_options(synchronize_session="fetch")
        )
        row = self._session.get(ReminderRow, reminder_id, populate_existing=True)
        if row is None:
            raise ReminderNotFoundError(reminder_id)
        return row

    def list_for_invoice(self, invoice_id: int) -> list[ReminderRow]:
        return list(
            self._session.scalars(
                select(ReminderRow)
                .where(ReminderRow.invoice_id == invoice_id)
                .order_by(ReminderRow.trigger_date.asc(), ReminderRow.id.asc())
            ).all()
        )

    def _invoices_missing_reminders(self) -> list[InvoiceRow]:
        return list(
            self._session.scalars(
                select(InvoiceRow)
                .where(InvoiceRow.status != "paid")
                .where(InvoiceRow.payment_reminder_repetition.is_not(None))
                .where(~exists().where(ReminderRow.invoice_id == InvoiceRow.id))
                .order_by(InvoiceRow.id.asc())
            ).all()
        )

    def sync_missing(self, today: date) -> SyncResult:
        """Plan reminders for open invoices that carry a policy but have no rows."""
        invoice_ids: list[int] = []
        created = 0
        for invoice in self._invoices_missing_reminders():
            rows = self.regenerate(invoice.id)
            if not rows:
                continue
            invoice_ids.append(invoice.id)
            created += len(rows)
        logger.info("reminder sync on %s created %d reminders for %d invoices", today, created, len(invoice_ids))
        return SyncResult(invoice_ids=invoice_ids, reminders_created=created)

    def inspect(self, today: date) -> LedgerInspection:
        rows = self._session.scalars(
            select(ReminderRow).order_by(ReminderRow.trigger_date.asc(), ReminderRow.id.asc())
        ).all()
        items = [
            ReminderDebugItem(
                reminder_id=row.id,
                invoice_id=row.invoice_id,
                kind=row.kind,
                trigger_date=row.trigger_date,
                sent=row.sent,
                sent_at=coerce_utc(row.sent_at) if row.sent_at is not None else None,
                days_until_trigger=(row.trigger_date - today).days,
            )
            for row in rows
        ]
        missing = [invoice.id for invoice in self._invoices_missing_reminders()]
        return LedgerInspection(today=today, items=items, invoices_without_reminders=missing)
